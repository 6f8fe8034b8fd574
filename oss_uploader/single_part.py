"""Single-request transfers: whole-object PUT, GET, DELETE and HEAD.

Used for objects at or below the multipart threshold. Each operation is
synchronous and issues one logical request, retried on transient errors
through the configured RetryPolicy.
"""

import hashlib
import logging
import os
import re
import stat
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from oss_uploader.errors import IntegrityError, StoreError
from oss_uploader.retry import RetryPolicy
from oss_uploader.transport import Response, Transport

logger = logging.getLogger(__name__)

# ETags of single-PUT objects are the hex MD5 of the content (unless encrypted
# with a customer key, in which case they do not match this shape reliably)
PLAIN_ETAG = re.compile(r"^[0-9a-f]{32}$")


def normalize_etag(etag: Optional[str]) -> Optional[str]:
    """Strip surrounding quotes and whitespace from an ETag header value."""
    if etag is None:
        return None
    return etag.strip().strip('"')


def file_mode_for(destination: Path) -> int:
    """Permission bits a download into destination should end up with.

    The mode of an existing destination is kept; a new file gets the
    default mode under the current umask.
    """
    try:
        return stat.S_IMODE(destination.stat().st_mode)
    except FileNotFoundError:
        # The umask can only be read by setting it
        umask = os.umask(0)
        os.umask(umask)
        return 0o666 & ~umask


def temp_path_for(destination: Path) -> str:
    """Create an empty temporary file next to destination and return its path."""
    destination.parent.mkdir(parents=True, exist_ok=True)
    fd, temp_path = tempfile.mkstemp(
        dir=destination.parent, prefix=f".{destination.name}.", suffix=".part"
    )
    os.close(fd)
    return temp_path


def replace_into(temp_path: str, destination: Path) -> None:
    """Rename a finished temporary file onto destination.

    mkstemp creates files with mode 0600 and os.replace keeps the mode of
    the renamed file, so the permissions are set first.
    """
    os.chmod(temp_path, file_mode_for(destination))
    os.replace(temp_path, destination)


def remove_quietly(path: str) -> None:
    """Remove a file if it exists."""
    try:
        os.remove(path)
    except FileNotFoundError:
        pass


@dataclass
class ObjectInfo:
    """Metadata returned by a HEAD request."""

    size: int
    etag: Optional[str] = None


class SingleShotTransfer:
    """Whole-object transfers for small objects.

    Args:
        transport: Transport used to issue signed requests
        retry_policy: Policy applied to each request
    """

    def __init__(self, transport: Transport, retry_policy: RetryPolicy):
        self.transport = transport
        self.retry_policy = retry_policy

    def upload(self, file_path: str, key: str) -> int:
        """Upload a whole file with one PUT.

        Returns:
            Number of bytes uploaded.

        Raises:
            IntegrityError: If the store reports a different MD5 than the
                local content; the remote object is deleted first.
        """
        with open(file_path, "rb") as f:
            data = f.read()

        response = self.retry_policy.call(
            self.transport.request,
            "PUT",
            key,
            headers={"content-type": "application/octet-stream"},
            body=data,
        )

        etag = normalize_etag(response.header("etag"))
        if etag and PLAIN_ETAG.match(etag):
            local_md5 = hashlib.md5(data).hexdigest()
            if etag != local_md5:
                logger.warning("ETag mismatch for %s, deleting remote object", key)
                self.delete(key)
                raise IntegrityError(
                    f"Remote ETag {etag} does not match local MD5 {local_md5}", key=key
                )

        logger.debug("Uploaded %s (%d bytes) in a single request", key, len(data))
        return len(data)

    def download(self, key: str, destination: str, expected_size: Optional[int] = None) -> int:
        """Download a whole object with one GET.

        The body is streamed into a temporary file next to destination,
        which is renamed onto destination only after the transfer
        succeeded; on failure the temporary file is removed.

        Args:
            key: Object key
            destination: Final local path
            expected_size: Size reported by an earlier HEAD, if known

        Returns:
            Number of bytes written.
        """
        dest = Path(destination)
        temp_path = temp_path_for(dest)

        def attempt() -> Response:
            with open(temp_path, "wb") as sink:
                return self.transport.request("GET", key, sink=sink)

        try:
            response = self.retry_policy.call(attempt)

            for expected in (response.header("content-length"), expected_size):
                if expected is not None and int(expected) != response.bytes_streamed:
                    raise IntegrityError(
                        f"Received {response.bytes_streamed} bytes, expected {expected}",
                        key=key,
                    )
            replace_into(temp_path, dest)
        except BaseException:
            remove_quietly(temp_path)
            raise

        logger.debug("Downloaded %s to %s (%d bytes)", key, dest, response.bytes_streamed)
        return response.bytes_streamed

    def delete(self, key: str) -> bool:
        """Delete an object. Deleting an absent object is not an error.

        Returns:
            True if the object existed (2xx), False on 404.
        """
        try:
            self.retry_policy.call(self.transport.request, "DELETE", key)
        except StoreError as e:
            if e.status == 404:
                return False
            raise
        return True

    def head(self, key: str) -> ObjectInfo:
        """Fetch the size and ETag of an object."""
        response = self.retry_policy.call(self.transport.request, "HEAD", key)
        return ObjectInfo(
            size=int(response.header("content-length", "0")),
            etag=normalize_etag(response.header("etag")),
        )
