"""HTTP transport for signed object store requests.

One call to send() is one physical request: no retries happen here. Retry
is a policy applied by the callers, so idempotency assumptions stay
explicit at each call site.

Failures are mapped onto the engine's error types:
- connection errors and timeouts -> NetworkError
- 401/403 -> AuthenticationError
- any other non-2xx -> StoreError (status, S3 error code, body)
"""

import logging
import xml.etree.ElementTree as ET
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import BinaryIO, Callable, Mapping, Optional

import httpx

from oss_uploader.errors import AuthenticationError, NetworkError, StoreError
from oss_uploader.models import DEFAULT_TIMEOUT, Credentials
from oss_uploader.signer import SignedRequest, sign_request

logger = logging.getLogger(__name__)

# Chunk size used when streaming response bodies to disk
STREAM_CHUNK_SIZE = 1024 * 1024


@dataclass
class Response:
    """Status, headers and body of a successful response."""

    status: int
    headers: dict[str, str]
    body: bytes = field(default=b"", repr=False)
    bytes_streamed: int = 0

    def header(self, name: str, default: Optional[str] = None) -> Optional[str]:
        return self.headers.get(name.lower(), default)


def find_xml_text(body: bytes, tag: str) -> Optional[str]:
    """Return the text of the first element named tag, ignoring namespaces."""
    if not body:
        return None
    try:
        root = ET.fromstring(body)
    except ET.ParseError:
        return None
    for element in root.iter():
        if element.tag.rsplit("}", 1)[-1] == tag:
            return element.text
    return None


def xml_root_tag(body: bytes) -> Optional[str]:
    """Return the namespace-stripped root tag of an XML document."""
    try:
        return ET.fromstring(body).tag.rsplit("}", 1)[-1]
    except ET.ParseError:
        return None


def status_error(status: int, body: bytes, method: str = "", url: str = "") -> StoreError:
    """Build the error for a non-2xx response."""
    code = find_xml_text(body, "Code")
    detail = find_xml_text(body, "Message") or code or "no details"
    message = f"{method} {url} returned HTTP {status}: {detail}".strip()
    if status in (401, 403):
        return AuthenticationError(message, status=status, code=code, body=body)
    return StoreError(message, status=status, code=code, body=body)


class Transport:
    """Issues signed requests against the store endpoint.

    Args:
        credentials: Store credentials used for signing
        timeout: Per-request timeout in seconds
        client: Optional pre-built httpx client (tests inject one with a
            MockTransport); an owned client is created otherwise
        clock: Returns the current time used for request signatures
    """

    def __init__(
        self,
        credentials: Credentials,
        timeout: float = DEFAULT_TIMEOUT,
        client: Optional[httpx.Client] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.credentials = credentials
        self.timeout = timeout
        self._owns_client = client is None
        self._client = client if client is not None else httpx.Client(timeout=timeout)
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def request(
        self,
        method: str,
        key: str,
        query: Optional[Mapping[str, Optional[str]]] = None,
        headers: Optional[Mapping[str, str]] = None,
        body: bytes = b"",
        sink: Optional[BinaryIO] = None,
    ) -> Response:
        """Sign a request for an object key with a fresh timestamp and send it."""
        signed = sign_request(
            self.credentials,
            method,
            key,
            query=query,
            headers=headers,
            body=body,
            timestamp=self._clock(),
        )
        return self.send(signed, sink=sink)

    def send(self, signed_request: SignedRequest, sink: Optional[BinaryIO] = None) -> Response:
        """Send one signed request.

        Args:
            signed_request: The request produced by the signer
            sink: Optional binary file; a successful body is streamed into
                it undecoded instead of being buffered

        Returns:
            Response for any 2xx status.

        Raises:
            NetworkError: On connection failure or timeout.
            StoreError: On a non-2xx status (AuthenticationError for 401/403).
        """
        request = self._client.build_request(
            signed_request.method,
            signed_request.url,
            headers=signed_request.headers,
            content=signed_request.body,
            timeout=self.timeout,
        )
        logger.debug("%s %s", signed_request.method, signed_request.url)

        try:
            response = self._client.send(request, stream=True)
            try:
                if not response.is_success:
                    body = response.read()
                    raise status_error(
                        response.status_code, body, signed_request.method, signed_request.url
                    )

                headers = {name.lower(): value for name, value in response.headers.items()}
                if sink is None:
                    return Response(response.status_code, headers, response.read())

                streamed = 0
                for chunk in response.iter_raw(STREAM_CHUNK_SIZE):
                    sink.write(chunk)
                    streamed += len(chunk)
                return Response(response.status_code, headers, bytes_streamed=streamed)
            finally:
                response.close()
        except httpx.TransportError as e:
            raise NetworkError(
                f"{signed_request.method} {signed_request.url} failed: {e.__class__.__name__}: {e}"
            ) from e

    def close(self) -> None:
        """Close the underlying client if this transport created it."""
        if self._owns_client:
            self._client.close()

    def __enter__(self) -> "Transport":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> bool:
        self.close()
        return False
