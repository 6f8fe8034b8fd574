"""Error types raised by the transfer engine.

Every failure that leaves the engine is a TransferError subclass carrying
enough context (operation, object key, part number) for a user-facing
message:

- ConfigurationError: missing or invalid credentials/settings (fatal)
- NetworkError: connection failure or timeout (retryable)
- StoreError: non-2xx response from the store (5xx/429 retryable)
- AuthenticationError: signature or credentials rejected (fatal)
- IntegrityError: size or checksum mismatch after a transfer (fatal)
- PartialMultipartFailure: one or more parts failed permanently
"""

from typing import Optional

# HTTP status codes that indicate transient server issues
RETRYABLE_STATUS_CODES = {429, 500, 502, 503, 504}

# S3 error codes that are transient even when the HTTP status is not
RETRYABLE_ERROR_CODES = {"InternalError", "SlowDown", "RequestTimeout", "ServiceUnavailable"}


class TransferError(Exception):
    """Base class for all transfer engine errors."""

    retryable = False

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        key: Optional[str] = None,
        part_number: Optional[int] = None,
    ):
        super().__init__(message)
        self.message = message
        self.operation = operation
        self.key = key
        self.part_number = part_number
        self.attempts = 1

    def annotate(
        self,
        operation: Optional[str] = None,
        key: Optional[str] = None,
        part_number: Optional[int] = None,
    ) -> "TransferError":
        """Fill in context that is not already set. Returns self."""
        if self.operation is None:
            self.operation = operation
        if self.key is None:
            self.key = key
        if self.part_number is None:
            self.part_number = part_number
        return self

    def __str__(self) -> str:
        context = []
        if self.operation:
            context.append(self.operation)
        if self.key:
            context.append(f"key={self.key}")
        if self.part_number is not None:
            context.append(f"part={self.part_number}")
        if not context:
            return self.message
        return f"{self.message} [{' '.join(context)}]"


class ConfigurationError(TransferError):
    """Raised when credentials or transfer settings are missing or invalid."""

    pass


class NetworkError(TransferError):
    """Raised on connection failures and timeouts."""

    retryable = True


class StoreError(TransferError):
    """Raised when the store answers with an error response."""

    def __init__(
        self,
        message: str,
        status: int,
        code: Optional[str] = None,
        body: bytes = b"",
        **context,
    ):
        super().__init__(message, **context)
        self.status = status
        self.code = code
        self.body = body

    @property
    def retryable(self) -> bool:
        return self.status in RETRYABLE_STATUS_CODES or self.code in RETRYABLE_ERROR_CODES


class AuthenticationError(StoreError):
    """Raised when the store rejects the request signature or credentials.

    Usually a signing bug or local clock skew; never retried.
    """

    @property
    def retryable(self) -> bool:
        return False


class IntegrityError(TransferError):
    """Raised when transferred content does not match the source."""

    pass


class PartialMultipartFailure(TransferError):
    """Raised when parts of a multipart transfer failed permanently.

    Args:
        failures: Mapping of part number to the error that part ended with.
    """

    def __init__(self, failures: dict[int, TransferError], **context):
        self.failures = dict(sorted(failures.items()))
        numbers = ", ".join(str(n) for n in self.failures)
        first = next(iter(self.failures.values()), None)
        message = f"{len(self.failures)} part(s) failed: {numbers}"
        if first is not None:
            message += f" (first error: {first.message})"
        super().__init__(message, **context)

    @property
    def failed_parts(self) -> list[int]:
        """Part numbers that failed, in ascending order."""
        return list(self.failures)
