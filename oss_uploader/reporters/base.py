"""Base reporter interface."""

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from oss_uploader.errors import TransferError
    from oss_uploader.models import TransferRequest, TransferResult


class Reporter(ABC):
    """Abstract base class for transfer reporters."""

    @abstractmethod
    def on_transfer_start(self, request: "TransferRequest") -> None:
        """Called before a transfer begins."""
        pass

    @abstractmethod
    def on_progress(self, bytes_done: int, bytes_total: int) -> None:
        """Called after each part or chunk completes."""
        pass

    @abstractmethod
    def on_transfer_complete(self, result: "TransferResult") -> None:
        """Called when a transfer succeeds."""
        pass

    @abstractmethod
    def on_transfer_error(self, request: "TransferRequest", error: "TransferError") -> None:
        """Called when a transfer fails."""
        pass
