"""JSON reporter for structured output.

Writes the outcome of a transfer (result or error) to a file, for scripts
that wrap the CLI.
"""

import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from oss_uploader.errors import PartialMultipartFailure, StoreError, TransferError
from oss_uploader.models import TransferRequest, TransferResult
from oss_uploader.reporters.base import Reporter


def error_to_dict(request: TransferRequest, error: TransferError) -> dict[str, Any]:
    """Describe a failed transfer as a JSON-serializable dictionary."""
    data: dict[str, Any] = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "operation": request.operation.value,
        "key": request.key,
        "local_path": request.local_path,
        "success": False,
        "error": {
            "type": type(error).__name__,
            "message": error.message,
            "attempts": error.attempts,
        },
    }
    if error.part_number is not None:
        data["error"]["part_number"] = error.part_number
    if isinstance(error, StoreError):
        data["error"]["status"] = error.status
        data["error"]["code"] = error.code
    if isinstance(error, PartialMultipartFailure):
        data["error"]["failed_parts"] = error.failed_parts
    return data


class JsonReporter(Reporter):
    """JSON reporter for structured output.

    Args:
        output_path: Optional file path to write JSON output
    """

    def __init__(self, output_path: Optional[str] = None):
        """Initialize the JSON reporter.

        Args:
            output_path: File path for JSON output (optional)
        """
        self.output_path = output_path
        self.output: Optional[dict[str, Any]] = None

    def on_transfer_start(self, request: TransferRequest) -> None:
        """Called before a transfer begins. No-op for JSON reporter."""
        pass

    def on_progress(self, bytes_done: int, bytes_total: int) -> None:
        """Called after each part completes. No-op for JSON reporter."""
        pass

    def on_transfer_complete(self, result: TransferResult) -> None:
        """Record and write the successful result."""
        output = result.to_dict()
        output["success"] = True
        self._emit(output)

    def on_transfer_error(self, request: TransferRequest, error: TransferError) -> None:
        """Record and write the failure."""
        self._emit(error_to_dict(request, error))

    def _emit(self, output: dict[str, Any]) -> None:
        self.output = output
        if self.output_path:
            self._write_to_file(output)

    def _write_to_file(self, output: dict) -> None:
        """Write JSON output to file.

        Args:
            output: The data to write
        """
        path = Path(self.output_path)

        # Create parent directories if needed
        path.parent.mkdir(parents=True, exist_ok=True)

        with open(self.output_path, "w") as f:
            json.dump(output, f, indent=2)
