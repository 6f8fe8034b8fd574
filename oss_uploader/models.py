"""Data models for the object store transfer engine."""

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Optional

from oss_uploader.errors import ConfigurationError, TransferError
from oss_uploader.retry import RetryPolicy

MiB = 1024 * 1024

# Objects at or below this size go through a single PUT/GET
DEFAULT_MULTIPART_THRESHOLD = 10 * MiB

# Default part size for multipart transfers
DEFAULT_PART_SIZE = 10 * MiB

# S3 minimum part size (all parts except the last)
DEFAULT_MIN_PART_SIZE = 5 * MiB

# Maximum number of simultaneous part transfers
DEFAULT_MAX_CONCURRENCY = 10

DEFAULT_TIMEOUT = 60.0

# Progress callback: (bytes_so_far, total_bytes)
ProgressCallback = Callable[[int, int], None]


class Operation(Enum):
    """Kind of transfer requested by the CLI layer."""

    UPLOAD = "upload"
    DOWNLOAD = "download"
    DELETE = "delete"


class PartStatus(Enum):
    """Terminal state of a single part transfer."""

    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass(frozen=True)
class Credentials:
    """Resolved access configuration for one bucket on an S3-compatible store."""

    access_key: str
    secret_key: str
    region: str
    endpoint_url: str
    bucket: str
    addressing_style: str = "path"

    def validate(self) -> None:
        """Raise ConfigurationError if any field is unusable."""
        for name in ("access_key", "secret_key", "region", "endpoint_url", "bucket"):
            if not getattr(self, name):
                raise ConfigurationError(f"Missing credential field: {name}")
        if not self.endpoint_url.startswith(("http://", "https://")):
            raise ConfigurationError(
                f"Endpoint must start with http:// or https://: {self.endpoint_url}"
            )
        if self.addressing_style not in ("path", "virtual"):
            raise ConfigurationError(
                f"Invalid addressing style '{self.addressing_style}'. Expected: path|virtual"
            )


@dataclass
class TransferConfig:
    """Tuning values for the transfer engine."""

    multipart_threshold: int = DEFAULT_MULTIPART_THRESHOLD
    part_size: int = DEFAULT_PART_SIZE
    min_part_size: int = DEFAULT_MIN_PART_SIZE
    max_concurrency: int = DEFAULT_MAX_CONCURRENCY
    timeout: float = DEFAULT_TIMEOUT
    retry: RetryPolicy = field(default_factory=RetryPolicy)

    def validate(self) -> None:
        """Raise ConfigurationError if the settings are inconsistent."""
        if self.min_part_size < 1:
            raise ConfigurationError("min_part_size must be positive")
        if self.part_size < self.min_part_size:
            raise ConfigurationError(
                f"part_size ({self.part_size}) is below the minimum part size "
                f"({self.min_part_size})"
            )
        if self.multipart_threshold < 0:
            raise ConfigurationError("multipart_threshold must not be negative")
        if self.max_concurrency < 1:
            raise ConfigurationError("max_concurrency must be at least 1")
        if self.timeout <= 0:
            raise ConfigurationError("timeout must be positive")
        if self.retry.max_attempts < 1:
            raise ConfigurationError("retry max_attempts must be at least 1")


@dataclass
class TransferRequest:
    """A single upload, download or delete requested by the caller."""

    operation: Operation
    key: str
    local_path: Optional[str] = None
    size: Optional[int] = None


@dataclass
class PartDescriptor:
    """One contiguous byte range [start, end) of an object."""

    part_number: int
    start: int
    end: int
    etag: Optional[str] = None

    @property
    def size(self) -> int:
        return self.end - self.start


@dataclass
class PartOutcome:
    """Terminal result of transferring one part."""

    part_number: int
    status: PartStatus
    etag: Optional[str] = None
    error: Optional[TransferError] = None

    @classmethod
    def succeeded(cls, part_number: int, etag: Optional[str] = None) -> "PartOutcome":
        return cls(part_number, PartStatus.SUCCEEDED, etag=etag)

    @classmethod
    def failed(cls, part_number: int, error: TransferError) -> "PartOutcome":
        return cls(part_number, PartStatus.FAILED, error=error)

    @classmethod
    def skipped(cls, part_number: int) -> "PartOutcome":
        return cls(part_number, PartStatus.SKIPPED)


@dataclass
class TransferResult:
    """Outcome of a successful transfer, returned to the CLI layer."""

    operation: Operation
    key: str
    bytes_transferred: int = 0
    local_path: Optional[str] = None
    multipart: bool = False
    part_count: int = 0
    duration_seconds: float = 0.0
    url: Optional[str] = None
    timestamp: str = field(
        default_factory=lambda: time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime())
    )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "timestamp": self.timestamp,
            "operation": self.operation.value,
            "key": self.key,
            "bytes_transferred": self.bytes_transferred,
            "local_path": self.local_path,
            "multipart": self.multipart,
            "part_count": self.part_count,
            "duration_seconds": self.duration_seconds,
            "url": self.url,
        }
