"""Multipart transfer orchestration.

Handles the complete lifecycle of S3 multipart uploads:
- Initiate upload
- Upload parts concurrently through a bounded worker pool
- Track uploaded parts and their ETags
- Complete (parts listed in part-number order) or abort

and the download counterpart: concurrent ranged GETs, each written at its
own offset of a preallocated temporary file that is renamed into place once
every range has landed.

Session states:

    INITIATING -> PARTS_IN_FLIGHT -> COMPLETING -> COMPLETED
         \\               \\              \\
          +---------------+--------------+-> ABORTING -> ABORTED
"""

import hashlib
import logging
import math
import os
import threading
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from enum import Enum
from pathlib import Path
from typing import Callable, Optional
from xml.sax.saxutils import escape

from oss_uploader.errors import (
    ConfigurationError,
    IntegrityError,
    PartialMultipartFailure,
    StoreError,
    TransferError,
)
from oss_uploader.models import (
    MiB,
    PartDescriptor,
    PartOutcome,
    PartStatus,
    ProgressCallback,
    TransferConfig,
)
from oss_uploader.retry import RetryPolicy
from oss_uploader.single_part import (
    PLAIN_ETAG,
    normalize_etag,
    remove_quietly,
    replace_into,
    temp_path_for,
)
from oss_uploader.transport import Transport, find_xml_text, xml_root_tag

logger = logging.getLogger(__name__)

# S3 limit on the number of parts in one multipart upload
MAX_PARTS = 10000


class SessionState(Enum):
    """Lifecycle state of a multipart session."""

    INITIATING = "initiating"
    PARTS_IN_FLIGHT = "parts_in_flight"
    COMPLETING = "completing"
    COMPLETED = "completed"
    ABORTING = "aborting"
    ABORTED = "aborted"


_TRANSITIONS = {
    SessionState.INITIATING: {SessionState.PARTS_IN_FLIGHT, SessionState.ABORTING},
    SessionState.PARTS_IN_FLIGHT: {SessionState.COMPLETING, SessionState.ABORTING},
    SessionState.COMPLETING: {SessionState.COMPLETED, SessionState.ABORTING},
    SessionState.ABORTING: {SessionState.ABORTED},
    SessionState.COMPLETED: set(),
    SessionState.ABORTED: set(),
}


def plan_parts(
    size: int,
    part_size: int,
    min_part_size: int = 5 * MiB,
) -> list[PartDescriptor]:
    """Split an object of the given size into contiguous parts.

    Every part except the last is exactly part_size bytes. If that would
    exceed MAX_PARTS, the part size is raised to the smallest whole number
    of MiB that fits.

    Args:
        size: Object size in bytes.
        part_size: Requested part size in bytes.
        min_part_size: Store minimum for all parts but the last.

    Returns:
        Parts numbered 1..N in source order; empty for a zero-byte object.

    Raises:
        ConfigurationError: If part_size is below min_part_size.
    """
    if part_size < min_part_size:
        raise ConfigurationError(
            f"part_size ({part_size}) is below the minimum part size ({min_part_size})"
        )
    if size < 0:
        raise ValueError(f"Invalid object size: {size}")

    if math.ceil(size / part_size) > MAX_PARTS:
        adjusted = math.ceil(math.ceil(size / MAX_PARTS) / MiB) * MiB
        logger.debug("Raising part size from %d to %d to stay within %d parts",
                     part_size, adjusted, MAX_PARTS)
        part_size = adjusted

    parts = []
    part_number = 1
    for start in range(0, size, part_size):
        parts.append(PartDescriptor(part_number, start, min(start + part_size, size)))
        part_number += 1
    return parts


def read_range(file_path: str, start: int, length: int) -> bytes:
    """Read exactly length bytes at offset start."""
    with open(file_path, "rb") as f:
        f.seek(start)
        data = f.read(length)
    if len(data) != length:
        raise IntegrityError(
            f"Source file shrank: read {len(data)} of {length} bytes at offset {start}"
        )
    return data


class ProgressTracker:
    """Thread-safe byte counter that forwards to a progress callback."""

    def __init__(self, total: int, callback: Optional[ProgressCallback] = None):
        self.total = total
        self.done = 0
        self._callback = callback
        self._lock = threading.Lock()

    def advance(self, amount: int) -> None:
        with self._lock:
            self.done += amount
            if self._callback is not None:
                self._callback(self.done, self.total)


class MultipartUpload:
    """Manages the lifecycle of one multipart upload session.

    This class handles:
    - Initiating a multipart upload
    - Uploading individual parts
    - Tracking uploaded parts and their ETags (safe to call from workers)
    - Completing or aborting the upload

    Can be used as a context manager: initiates on enter, aborts when the
    block raises.
    """

    def __init__(self, transport: Transport, key: str, retry_policy: RetryPolicy):
        """Initialize the multipart upload session.

        Args:
            transport: Transport used to issue signed requests
            key: Target object key
            retry_policy: Policy applied to initiate, complete and abort
        """
        self.transport = transport
        self.key = key
        self.retry_policy = retry_policy
        self.upload_id: Optional[str] = None
        self.state = SessionState.INITIATING
        self._etags: dict[int, str] = {}
        self._lock = threading.Lock()

    def _transition(self, new_state: SessionState) -> None:
        if new_state not in _TRANSITIONS[self.state]:
            raise RuntimeError(
                f"Invalid multipart session transition {self.state.value} -> {new_state.value}"
            )
        logger.debug("Session %s for %s: %s -> %s",
                     self.upload_id, self.key, self.state.value, new_state.value)
        self.state = new_state

    def initiate(self) -> str:
        """Initiate a new multipart upload.

        Returns:
            The upload ID issued by the store.
        """
        response = self.retry_policy.call(
            self.transport.request,
            "POST",
            self.key,
            query={"uploads": None},
            headers={"content-type": "application/octet-stream"},
        )
        upload_id = find_xml_text(response.body, "UploadId")
        if not upload_id:
            raise StoreError(
                "Initiate response did not contain an UploadId",
                status=response.status,
                body=response.body,
                key=self.key,
            )
        self.upload_id = upload_id
        self._transition(SessionState.PARTS_IN_FLIGHT)
        return upload_id

    def upload_part(self, part_number: int, data: bytes) -> str:
        """Upload one part (single attempt) and return its ETag."""
        if self.upload_id is None:
            raise RuntimeError("Upload not initiated")

        response = self.transport.request(
            "PUT",
            self.key,
            query={"partNumber": str(part_number), "uploadId": self.upload_id},
            body=data,
        )
        etag = normalize_etag(response.header("etag"))
        if not etag:
            raise IntegrityError("Store returned no ETag for part", part_number=part_number)
        if PLAIN_ETAG.match(etag) and etag != hashlib.md5(data).hexdigest():
            raise IntegrityError(
                f"Part ETag {etag} does not match local MD5", part_number=part_number
            )
        return response.header("etag").strip()

    def record(self, part_number: int, etag: str) -> None:
        """Record a successfully uploaded part."""
        with self._lock:
            self._etags[part_number] = etag

    def completed_parts(self) -> list[tuple[int, str]]:
        """Recorded (part number, ETag) pairs in ascending part-number order."""
        with self._lock:
            return sorted(self._etags.items())

    def completion_body(self) -> bytes:
        """XML body for CompleteMultipartUpload."""
        lines = ["<CompleteMultipartUpload>"]
        for part_number, etag in self.completed_parts():
            lines.append(
                f"<Part><PartNumber>{part_number}</PartNumber>"
                f"<ETag>{escape(etag)}</ETag></Part>"
            )
        lines.append("</CompleteMultipartUpload>")
        return "".join(lines).encode("utf-8")

    def complete(self, part_count: int) -> str:
        """Complete the multipart upload.

        Args:
            part_count: Number of parts the object was split into; every
                part 1..part_count must have been recorded.

        Returns:
            The final object ETag reported by the store.
        """
        if self.upload_id is None:
            raise RuntimeError("Upload not initiated")

        recorded = [number for number, _ in self.completed_parts()]
        if recorded != list(range(1, part_count + 1)):
            missing = sorted(set(range(1, part_count + 1)) - set(recorded))
            raise IntegrityError(
                f"Cannot complete upload, missing parts: {missing}", key=self.key
            )

        self._transition(SessionState.COMPLETING)
        body = self.completion_body()

        def attempt():
            response = self.transport.request(
                "POST",
                self.key,
                query={"uploadId": self.upload_id},
                headers={"content-type": "application/xml"},
                body=body,
            )
            # The store may answer 200 and still report an error in the body
            if xml_root_tag(response.body) == "Error":
                code = find_xml_text(response.body, "Code")
                raise StoreError(
                    f"CompleteMultipartUpload failed: {find_xml_text(response.body, 'Message') or code}",
                    status=response.status,
                    code=code,
                    body=response.body,
                )
            return response

        response = self.retry_policy.call(attempt)
        self._transition(SessionState.COMPLETED)
        return normalize_etag(find_xml_text(response.body, "ETag")) or ""

    def abort(self) -> None:
        """Abort the multipart upload, releasing all uploaded parts on the store.

        Safe to call even if upload was not initiated or already finished.
        An abort request that fails is logged; the error that caused the
        abort is what the caller reports.
        """
        if self.state in (SessionState.COMPLETED, SessionState.ABORTED):
            return
        if self.state != SessionState.ABORTING:
            self._transition(SessionState.ABORTING)

        if self.upload_id is not None:
            try:
                self.retry_policy.call(
                    self.transport.request,
                    "DELETE",
                    self.key,
                    query={"uploadId": self.upload_id},
                )
            except StoreError as e:
                if e.status != 404:
                    logger.warning("Failed to abort multipart upload %s for %s: %s",
                                   self.upload_id, self.key, e)
            except TransferError as e:
                logger.warning("Failed to abort multipart upload %s for %s: %s",
                               self.upload_id, self.key, e)

        with self._lock:
            self._etags.clear()
        self._transition(SessionState.ABORTED)

    def __enter__(self) -> "MultipartUpload":
        """Enter context manager - initiates upload."""
        try:
            self.initiate()
        except BaseException:
            self.abort()
            raise
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> bool:
        """Exit context manager - aborts on exception."""
        if exc_type is not None:
            self.abort()
        return False  # Don't suppress exceptions


class _Aborted(Exception):
    """Stops a part between retry attempts once the transfer is aborting.

    Not a TransferError, so RetryPolicy re-raises it without another attempt.
    """


def _run_parts(
    parts: list[PartDescriptor],
    worker: Callable[[PartDescriptor, threading.Event], PartOutcome],
    max_concurrency: int,
) -> dict[int, PartOutcome]:
    """Run worker over all parts in a bounded pool and wait for every part.

    Workers set the abort event on permanent failure; parts that have not
    started by then are skipped, in-flight ones run to completion.

    Returns:
        Outcomes keyed by part number.
    """
    abort_flag = threading.Event()
    outcomes: dict[int, PartOutcome] = {}

    with ThreadPoolExecutor(max_workers=max_concurrency, thread_name_prefix="part") as pool:
        futures: list[Future] = [pool.submit(worker, part, abort_flag) for part in parts]
        try:
            for future in as_completed(futures):
                outcome = future.result()
                outcomes[outcome.part_number] = outcome
        except BaseException:
            abort_flag.set()
            raise
    return outcomes


def _collect_failures(outcomes: dict[int, PartOutcome]) -> dict[int, TransferError]:
    return {
        number: outcome.error
        for number, outcome in outcomes.items()
        if outcome.status == PartStatus.FAILED
    }


class MultipartUploader:
    """Uploads a large file as concurrently transferred parts.

    Args:
        transport: Transport used to issue signed requests
        config: Part size, concurrency and retry settings
        progress: Optional callback invoked with (bytes_so_far, total_bytes)
            after each part completes
    """

    def __init__(
        self,
        transport: Transport,
        config: TransferConfig,
        progress: Optional[ProgressCallback] = None,
    ):
        self.transport = transport
        self.config = config
        self.progress = progress

    def upload(self, file_path: str, key: str, size: Optional[int] = None) -> MultipartUpload:
        """Upload a file as a multipart session.

        Returns:
            The completed session.

        Raises:
            PartialMultipartFailure: If any part failed permanently; the
                session has been aborted.
            TransferError: If initiation or completion failed; the session
                has been aborted.
        """
        if size is None:
            size = os.path.getsize(file_path)
        parts = plan_parts(size, self.config.part_size, self.config.min_part_size)
        tracker = ProgressTracker(size, self.progress)

        logger.info("Multipart upload of %s to %s: %d parts", file_path, key, len(parts))

        with MultipartUpload(self.transport, key, self.config.retry) as session:

            def worker(part: PartDescriptor, abort_flag: threading.Event) -> PartOutcome:
                return self._upload_part(session, file_path, part, abort_flag, tracker)

            outcomes = _run_parts(parts, worker, self.config.max_concurrency)
            failures = _collect_failures(outcomes)
            if failures:
                raise PartialMultipartFailure(failures, operation="upload", key=key)

            session.complete(len(parts))

        return session

    def _upload_part(
        self,
        session: MultipartUpload,
        file_path: str,
        part: PartDescriptor,
        abort_flag: threading.Event,
        tracker: ProgressTracker,
    ) -> PartOutcome:
        if abort_flag.is_set():
            return PartOutcome.skipped(part.part_number)

        def attempt(data: bytes) -> str:
            if abort_flag.is_set():
                raise _Aborted()
            return session.upload_part(part.part_number, data)

        try:
            data = read_range(file_path, part.start, part.size)
            etag = self.config.retry.call(attempt, data)
        except _Aborted:
            return PartOutcome.skipped(part.part_number)
        except TransferError as e:
            abort_flag.set()
            logger.debug("Part %d of %s failed permanently: %s", part.part_number, session.key, e)
            return PartOutcome.failed(part.part_number, e.annotate(part_number=part.part_number))

        if abort_flag.is_set():
            # Session is being aborted, result is discarded
            return PartOutcome.skipped(part.part_number)

        part.etag = etag
        session.record(part.part_number, etag)
        tracker.advance(part.size)
        return PartOutcome.succeeded(part.part_number, etag)


class MultipartDownloader:
    """Downloads a large object with concurrent ranged GETs.

    Args:
        transport: Transport used to issue signed requests
        config: Part size, concurrency and retry settings
        progress: Optional callback invoked with (bytes_so_far, total_bytes)
            after each range lands
    """

    def __init__(
        self,
        transport: Transport,
        config: TransferConfig,
        progress: Optional[ProgressCallback] = None,
    ):
        self.transport = transport
        self.config = config
        self.progress = progress

    def download(
        self,
        key: str,
        destination: str,
        size: int,
        etag: Optional[str] = None,
    ) -> int:
        """Download an object of known size into destination.

        Args:
            key: Object key
            destination: Final local path
            size: Object size in bytes (from a HEAD request)
            etag: If given, every range is requested with If-Match so a
                concurrent overwrite of the object fails the download

        Returns:
            Number of bytes written.
        """
        parts = plan_parts(size, self.config.part_size, self.config.min_part_size)
        tracker = ProgressTracker(size, self.progress)
        dest = Path(destination)
        temp_path = temp_path_for(dest)

        logger.info("Ranged download of %s: %d ranges", key, len(parts))

        try:
            with open(temp_path, "r+b") as f:
                f.truncate(size)

            def worker(part: PartDescriptor, abort_flag: threading.Event) -> PartOutcome:
                return self._download_range(key, temp_path, part, etag, abort_flag, tracker)

            outcomes = _run_parts(parts, worker, self.config.max_concurrency)
            failures = _collect_failures(outcomes)
            if failures:
                raise PartialMultipartFailure(failures, operation="download", key=key)

            actual = os.path.getsize(temp_path)
            if actual != size or tracker.done != size:
                raise IntegrityError(
                    f"Downloaded {tracker.done} bytes into a {actual} byte file, expected {size}",
                    key=key,
                )
            replace_into(temp_path, dest)
        except BaseException:
            remove_quietly(temp_path)
            raise

        return size

    def _download_range(
        self,
        key: str,
        temp_path: str,
        part: PartDescriptor,
        etag: Optional[str],
        abort_flag: threading.Event,
        tracker: ProgressTracker,
    ) -> PartOutcome:
        if abort_flag.is_set():
            return PartOutcome.skipped(part.part_number)

        headers = {"range": f"bytes={part.start}-{part.end - 1}"}
        if etag:
            headers["if-match"] = f'"{etag}"'

        def attempt() -> int:
            if abort_flag.is_set():
                raise _Aborted()
            with open(temp_path, "r+b") as f:
                f.seek(part.start)
                response = self.transport.request("GET", key, headers=headers, sink=f)
            if response.status != 206:
                raise IntegrityError(f"Store ignored the Range header (HTTP {response.status})")
            if response.bytes_streamed != part.size:
                raise IntegrityError(
                    f"Range returned {response.bytes_streamed} bytes, expected {part.size}"
                )
            return response.bytes_streamed

        try:
            received = self.config.retry.call(attempt)
        except _Aborted:
            return PartOutcome.skipped(part.part_number)
        except TransferError as e:
            abort_flag.set()
            return PartOutcome.failed(part.part_number, e.annotate(part_number=part.part_number))

        tracker.advance(received)
        return PartOutcome.succeeded(part.part_number)
