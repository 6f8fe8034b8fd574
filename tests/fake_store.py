"""In-memory S3-compatible store for tests.

Served through httpx.MockTransport, so the engine's real signing and
transport code runs unchanged. Supports single PUT/GET/HEAD/DELETE, ranged
GET, and the multipart initiate/upload-part/complete/abort calls, with
fault injection per request.
"""

import hashlib
import itertools
import re
import threading
import time
import xml.etree.ElementTree as ET
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Optional
from urllib.parse import parse_qsl

import httpx

from oss_uploader.models import Credentials, TransferConfig
from oss_uploader.retry import RetryPolicy
from oss_uploader.signer import compute_signature, sha256_hex
from oss_uploader.transport import Transport

BUCKET = "test-bucket"
ENDPOINT = "https://s3.test.example.com"
FIXED_TIME = datetime(2024, 1, 2, 3, 4, 5, tzinfo=timezone.utc)


def make_credentials(**overrides) -> Credentials:
    """Create test credentials for the fake store."""
    values = dict(
        access_key="test-access-key",
        secret_key="test-secret-key",
        region="us-east-1",
        endpoint_url=ENDPOINT,
        bucket=BUCKET,
    )
    values.update(overrides)
    return Credentials(**values)


def fast_config(**overrides) -> TransferConfig:
    """TransferConfig with tiny parts and no retry delays."""
    values = dict(
        multipart_threshold=100 * 1024,
        part_size=8 * 1024,
        min_part_size=1024,
        max_concurrency=4,
        retry=RetryPolicy(max_attempts=3, base_delay=0, jitter=0, sleep=lambda _: None),
    )
    values.update(overrides)
    return TransferConfig(**values)


def make_transport(store: "FakeObjectStore", credentials: Optional[Credentials] = None) -> Transport:
    """Transport wired to the fake store with a fixed signing clock."""
    client = httpx.Client(transport=httpx.MockTransport(store.handle))
    return Transport(credentials or make_credentials(), client=client, clock=lambda: FIXED_TIME)


@dataclass
class Fault:
    """Injected failure for requests matching method and query.

    Fires for the first `times` matching requests, either raising `error`
    or answering with `status`.
    """

    method: str
    times: int
    status: Optional[int] = None
    error: Optional[Callable[[httpx.Request], Exception]] = None
    part_number: Optional[int] = None
    range_start: Optional[int] = None
    query_key: Optional[str] = None
    code: str = "InternalError"

    def matches(self, request: httpx.Request, query: dict) -> bool:
        if self.times <= 0 or request.method != self.method:
            return False
        if self.part_number is not None and query.get("partNumber") != str(self.part_number):
            return False
        if self.query_key is not None and self.query_key not in query:
            return False
        if self.range_start is not None:
            match = re.match(r"bytes=(\d+)-", request.headers.get("range", ""))
            if not match or int(match.group(1)) != self.range_start:
                return False
        return True


@dataclass
class RecordedRequest:
    method: str
    key: str
    query: dict
    headers: dict
    body: bytes = field(repr=False, default=b"")


def _error(status: int, code: str, message: str = "") -> httpx.Response:
    body = (
        f"<?xml version=\"1.0\" encoding=\"UTF-8\"?>"
        f"<Error><Code>{code}</Code><Message>{message or code}</Message></Error>"
    )
    return httpx.Response(status, content=body.encode(), headers={"content-type": "application/xml"})


def streamed_response(status: int, data: bytes, headers: Optional[dict] = None) -> httpx.Response:
    """Response whose body is still unread, as a real socket response is."""
    headers = dict(headers or {}, **{"content-length": str(len(data))})
    return httpx.Response(status, stream=httpx.ByteStream(data), headers=headers)


def _etag(data: bytes) -> str:
    return f'"{hashlib.md5(data).hexdigest()}"'


class FakeObjectStore:
    """Thread-safe in-memory object store speaking the S3 REST API.

    Args:
        min_part_size: Minimum size of all parts but the last, enforced on
            CompleteMultipartUpload
        delete_missing_status: Status returned when deleting an absent key
        credentials: If given, every request signature is recomputed from
            what arrived on the wire and rejected on mismatch
    """

    def __init__(
        self,
        min_part_size: int = 0,
        delete_missing_status: int = 404,
        credentials: Optional[Credentials] = None,
    ):
        self.credentials = credentials
        self.min_part_size = min_part_size
        self.delete_missing_status = delete_missing_status
        self.objects: dict[str, bytes] = {}
        self.uploads: dict[str, dict[int, bytes]] = {}
        self.aborted: list[str] = []
        self.requests: list[RecordedRequest] = []
        self.faults: list[Fault] = []
        self.active = 0
        self.max_active = 0
        self.delay: float = 0.0
        self._ids = itertools.count(1)
        self._lock = threading.Lock()

    def inject(self, method: str, times: int = 1, **kwargs) -> Fault:
        """Register a fault; see Fault for the options."""
        fault = Fault(method=method, times=times, **kwargs)
        self.faults.append(fault)
        return fault

    def calls(self, method: str, query_key: Optional[str] = None) -> list[RecordedRequest]:
        """Recorded requests with the given method (and query parameter)."""
        with self._lock:
            return [
                r for r in self.requests
                if r.method == method and (query_key is None or query_key in r.query)
            ]

    def handle(self, request: httpx.Request) -> httpx.Response:
        query = dict(parse_qsl(request.url.query.decode(), keep_blank_values=True))
        path = request.url.path
        prefix = f"/{BUCKET}/"
        if not path.startswith(prefix):
            return _error(404, "NoSuchBucket")
        key = path[len(prefix):]
        body = request.read()

        with self._lock:
            self.requests.append(
                RecordedRequest(request.method, key, query, dict(request.headers), body)
            )
            fault = next((f for f in self.faults if f.matches(request, query)), None)
            if fault is not None:
                fault.times -= 1
            self.active += 1
            self.max_active = max(self.max_active, self.active)

        try:
            if self.delay:
                time.sleep(self.delay)
            if fault is not None:
                if fault.error is not None:
                    raise fault.error(request)
                return _error(fault.status, fault.code)

            if "authorization" not in request.headers:
                return _error(403, "AccessDenied")
            if request.headers.get("x-amz-content-sha256") != sha256_hex(body):
                return _error(400, "XAmzContentSHA256Mismatch")
            if self.credentials is not None and not self._signature_valid(request, query):
                return _error(403, "SignatureDoesNotMatch")

            return self._dispatch(request, key, query, body)
        finally:
            with self._lock:
                self.active -= 1

    def _dispatch(self, request: httpx.Request, key: str, query: dict, body: bytes) -> httpx.Response:
        method = request.method
        if method == "POST" and "uploads" in query:
            return self._initiate(key)
        if method == "POST" and "uploadId" in query:
            return self._complete(key, query["uploadId"], body)
        if method == "PUT" and "uploadId" in query:
            return self._upload_part(query["uploadId"], int(query["partNumber"]), body)
        if method == "DELETE" and "uploadId" in query:
            return self._abort(query["uploadId"])
        if method == "PUT":
            with self._lock:
                self.objects[key] = body
            return httpx.Response(200, headers={"etag": _etag(body)})
        if method == "DELETE":
            with self._lock:
                existed = self.objects.pop(key, None) is not None
            if not existed:
                if self.delete_missing_status == 204:
                    return httpx.Response(204)
                return _error(self.delete_missing_status, "NoSuchKey")
            return httpx.Response(204)
        if method in ("GET", "HEAD"):
            return self._get(request, key)
        return _error(405, "MethodNotAllowed")

    def _initiate(self, key: str) -> httpx.Response:
        with self._lock:
            upload_id = f"upload-{next(self._ids)}"
            self.uploads[upload_id] = {}
        body = (
            "<?xml version=\"1.0\" encoding=\"UTF-8\"?>"
            "<InitiateMultipartUploadResult xmlns=\"http://s3.amazonaws.com/doc/2006-03-01/\">"
            f"<Bucket>{BUCKET}</Bucket><Key>{key}</Key><UploadId>{upload_id}</UploadId>"
            "</InitiateMultipartUploadResult>"
        )
        return httpx.Response(200, content=body.encode())

    def _upload_part(self, upload_id: str, part_number: int, body: bytes) -> httpx.Response:
        with self._lock:
            if upload_id not in self.uploads:
                return _error(404, "NoSuchUpload")
            self.uploads[upload_id][part_number] = body
        return httpx.Response(200, headers={"etag": _etag(body)})

    def _abort(self, upload_id: str) -> httpx.Response:
        with self._lock:
            if self.uploads.pop(upload_id, None) is None:
                return _error(404, "NoSuchUpload")
            self.aborted.append(upload_id)
        return httpx.Response(204)

    def _complete(self, key: str, upload_id: str, body: bytes) -> httpx.Response:
        root = ET.fromstring(body)
        listed = [
            (int(part.findtext("PartNumber")), part.findtext("ETag"))
            for part in root.iter("Part")
        ]
        with self._lock:
            parts = self.uploads.get(upload_id)
            if parts is None:
                return _error(404, "NoSuchUpload")
            numbers = [number for number, _ in listed]
            if numbers != sorted(numbers) or len(set(numbers)) != len(numbers):
                return _error(400, "InvalidPartOrder")
            for number, etag in listed:
                if number not in parts or _etag(parts[number]) != etag:
                    return _error(400, "InvalidPart")
            for number, _ in listed[:-1]:
                if len(parts[number]) < self.min_part_size:
                    return _error(400, "EntityTooSmall")

            data = b"".join(parts[number] for number in numbers)
            self.objects[key] = data
            del self.uploads[upload_id]

        digest = hashlib.md5(b"".join(hashlib.md5(parts[n]).digest() for n in numbers)).hexdigest()
        result = (
            "<CompleteMultipartUploadResult>"
            f"<Key>{key}</Key><ETag>\"{digest}-{len(numbers)}\"</ETag>"
            "</CompleteMultipartUploadResult>"
        )
        return httpx.Response(200, content=result.encode())

    def _get(self, request: httpx.Request, key: str) -> httpx.Response:
        with self._lock:
            data = self.objects.get(key)
        if data is None:
            return _error(404, "NoSuchKey")

        etag = _etag(data)
        if_match = request.headers.get("if-match")
        if if_match is not None and if_match != etag:
            return _error(412, "PreconditionFailed")

        if request.method == "HEAD":
            return httpx.Response(200, headers={"content-length": str(len(data)), "etag": etag})

        match = re.match(r"bytes=(\d+)-(\d+)", request.headers.get("range", ""))
        if match:
            start, end = int(match.group(1)), int(match.group(2))
            chunk = data[start:end + 1]
            return streamed_response(
                206,
                chunk,
                {
                    "etag": etag,
                    "content-range": f"bytes {start}-{start + len(chunk) - 1}/{len(data)}",
                },
            )
        return streamed_response(200, data, {"etag": etag})

    def _signature_valid(self, request: httpx.Request, query: dict) -> bool:
        match = re.match(
            r"AWS4-HMAC-SHA256 Credential=([^/]+)/[^,]+, SignedHeaders=([^,]+), Signature=([0-9a-f]+)$",
            request.headers["authorization"],
        )
        if not match or match.group(1) != self.credentials.access_key:
            return False
        names = match.group(2).split(";")
        headers = {name: request.headers.get(name, "") for name in names}
        signature, _, _ = compute_signature(
            self.credentials,
            request.method,
            request.url.path,
            query,
            headers,
            request.headers["x-amz-content-sha256"],
            request.headers["x-amz-date"],
        )
        return signature == match.group(3)
