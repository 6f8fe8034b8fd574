"""Transfer engine facade.

Single entry point used by the CLI layer. Given a TransferRequest it
resolves the object size, picks a single-request transfer when the size is
at or below the multipart threshold and a multipart transfer otherwise,
and returns a TransferResult or raises a TransferError annotated with the
operation and key.
"""

import logging
import os
import time
from typing import Optional

from oss_uploader.errors import ConfigurationError, IntegrityError, TransferError
from oss_uploader.models import (
    Credentials,
    Operation,
    ProgressCallback,
    TransferConfig,
    TransferRequest,
    TransferResult,
)
from oss_uploader.multipart import MultipartDownloader, MultipartUploader, plan_parts
from oss_uploader.signer import presign_url, public_url
from oss_uploader.single_part import SingleShotTransfer
from oss_uploader.transport import Transport

logger = logging.getLogger(__name__)


class TransferEngine:
    """Uploads, downloads and deletes objects on an S3-compatible store.

    Args:
        credentials: Resolved store credentials
        config: Transfer tuning values (defaults if omitted)
        transport: Optional pre-built transport; one is created otherwise
        progress: Optional callback invoked with (bytes_so_far, total_bytes)
    """

    def __init__(
        self,
        credentials: Credentials,
        config: Optional[TransferConfig] = None,
        transport: Optional[Transport] = None,
        progress: Optional[ProgressCallback] = None,
    ):
        credentials.validate()
        self.credentials = credentials
        self.config = config or TransferConfig()
        self.config.validate()
        self._owns_transport = transport is None
        self.transport = transport or Transport(credentials, timeout=self.config.timeout)
        self.progress = progress
        self.single = SingleShotTransfer(self.transport, self.config.retry)

    def execute(self, request: TransferRequest) -> TransferResult:
        """Run one transfer request.

        Raises:
            TransferError: Annotated with the operation and key. Local
                file-system failures (unreadable source, unwritable or
                invalid destination) surface as ConfigurationError.
        """
        if not request.key or not request.key.strip("/"):
            raise ConfigurationError("Object key must not be empty",
                                     operation=request.operation.value)

        start_time = time.time()
        try:
            if request.operation == Operation.UPLOAD:
                result = self._upload(request)
            elif request.operation == Operation.DOWNLOAD:
                result = self._download(request)
            elif request.operation == Operation.DELETE:
                result = self._delete(request)
            else:
                raise ConfigurationError(f"Unsupported operation: {request.operation}")
        except TransferError as e:
            raise e.annotate(operation=request.operation.value, key=request.key)
        except OSError as e:
            raise ConfigurationError(
                f"Local file error: {e}",
                operation=request.operation.value,
                key=request.key,
            ) from e

        result.duration_seconds = time.time() - start_time
        return result

    def upload(self, file_path: str, key: str) -> TransferResult:
        return self.execute(TransferRequest(Operation.UPLOAD, key, local_path=file_path))

    def download(self, key: str, file_path: str) -> TransferResult:
        return self.execute(TransferRequest(Operation.DOWNLOAD, key, local_path=file_path))

    def delete(self, key: str) -> TransferResult:
        return self.execute(TransferRequest(Operation.DELETE, key))

    def presign(self, key: str, expires: int = 3600) -> str:
        """Presigned GET URL for temporary access to a private object."""
        return presign_url(self.credentials, key, expires=expires)

    def public_url(self, key: str) -> str:
        """Unsigned virtual-hosted URL for a publicly readable object."""
        return public_url(self.credentials, key)

    def _upload(self, request: TransferRequest) -> TransferResult:
        if not request.local_path or not os.path.isfile(request.local_path):
            raise ConfigurationError(f"File not found: {request.local_path}")
        request.size = os.path.getsize(request.local_path)

        result = TransferResult(
            operation=Operation.UPLOAD,
            key=request.key,
            local_path=request.local_path,
            url=self.public_url(request.key),
        )

        if request.size <= self.config.multipart_threshold:
            logger.info("Uploading %s (%d bytes) in a single request", request.key, request.size)
            result.bytes_transferred = self.single.upload(request.local_path, request.key)
            result.part_count = 1
            self._report(request.size, request.size)
            return result

        uploader = MultipartUploader(self.transport, self.config, self.progress)
        session = uploader.upload(request.local_path, request.key, request.size)

        remote = self.single.head(request.key)
        if remote.size != request.size:
            logger.warning("Size mismatch after upload of %s, deleting remote object", request.key)
            self.single.delete(request.key)
            raise IntegrityError(
                f"Remote size {remote.size} does not match local size {request.size}"
            )

        result.bytes_transferred = request.size
        result.multipart = True
        result.part_count = len(session.completed_parts())
        return result

    def _download(self, request: TransferRequest) -> TransferResult:
        destination = request.local_path or os.path.basename(request.key.rstrip("/"))
        info = self.single.head(request.key)

        result = TransferResult(
            operation=Operation.DOWNLOAD,
            key=request.key,
            local_path=destination,
        )

        if info.size <= self.config.multipart_threshold:
            logger.info("Downloading %s (%d bytes) in a single request", request.key, info.size)
            result.bytes_transferred = self.single.download(
                request.key, destination, expected_size=info.size
            )
            result.part_count = 1
            self._report(result.bytes_transferred, info.size)
            return result

        downloader = MultipartDownloader(self.transport, self.config, self.progress)
        result.bytes_transferred = downloader.download(
            request.key, destination, info.size, etag=info.etag
        )
        result.multipart = True
        result.part_count = len(
            plan_parts(info.size, self.config.part_size, self.config.min_part_size)
        )
        return result

    def _delete(self, request: TransferRequest) -> TransferResult:
        existed = self.single.delete(request.key)
        if not existed:
            logger.info("Object %s did not exist", request.key)
        return TransferResult(operation=Operation.DELETE, key=request.key)

    def _report(self, done: int, total: int) -> None:
        if self.progress is not None:
            self.progress(done, total)

    def close(self) -> None:
        if self._owns_transport:
            self.transport.close()

    def __enter__(self) -> "TransferEngine":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> bool:
        self.close()
        return False
