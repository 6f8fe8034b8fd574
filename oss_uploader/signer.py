"""AWS Signature Version 4 request signing for S3-compatible stores.

Signatures are computed from scratch over a canonical form of the request:

    METHOD
    /uri-encoded/path
    sorted=query&string=
    lower-cased:trimmed header values
    (blank line)
    signed;header;names
    payload-hash

A signature mismatch is reported by the store as a plain 403, so every
normalization step here has to be exact.
"""

import hashlib
import hmac
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Mapping, Optional
from urllib.parse import quote, urlsplit

from oss_uploader.errors import ConfigurationError
from oss_uploader.models import Credentials

ALGORITHM = "AWS4-HMAC-SHA256"
SERVICE = "s3"
TERMINATOR = "aws4_request"

# Hex SHA-256 of the empty string
EMPTY_SHA256 = "e3b0c44298fc1c149afbf4c8996fb92427ae41e4649b934ca495991b7852b855"

# Payload hash sentinel for requests whose body is not signed
UNSIGNED_PAYLOAD = "UNSIGNED-PAYLOAD"

TIMESTAMP_FORMAT = "%Y%m%dT%H%M%SZ"

# Presigned URLs are valid for at most seven days
MAX_PRESIGN_EXPIRES = 7 * 24 * 3600


@dataclass
class SignedRequest:
    """A request ready to put on the wire. Never persisted."""

    method: str
    url: str
    headers: dict[str, str]
    body: bytes = field(default=b"", repr=False)


def sha256_hex(data: bytes) -> str:
    """Return the lowercase hex SHA-256 digest of data."""
    return hashlib.sha256(data).hexdigest()


def _hmac(key: bytes, message: str) -> bytes:
    return hmac.new(key, message.encode("utf-8"), hashlib.sha256).digest()


def format_timestamp(timestamp: datetime) -> str:
    """Render a datetime as a SigV4 timestamp (YYYYMMDDTHHMMSSZ, UTC)."""
    if timestamp.tzinfo is not None:
        timestamp = timestamp.astimezone(timezone.utc)
    return timestamp.strftime(TIMESTAMP_FORMAT)


def canonical_uri(path: str) -> str:
    """Encode a request path, keeping '/' separators."""
    if not path.startswith("/"):
        path = "/" + path
    return quote(path, safe="/~")


def canonical_query_string(query: Optional[Mapping[str, Optional[str]]]) -> str:
    """Encode and sort query parameters by name, then value.

    Parameters without a value (``?uploads``) are rendered as ``uploads=``.
    """
    if not query:
        return ""
    pairs = sorted(
        (quote(str(name), safe="~"), quote("" if value is None else str(value), safe="~"))
        for name, value in query.items()
    )
    return "&".join(f"{name}={value}" for name, value in pairs)


def _normalize_headers(headers: Mapping[str, str]) -> dict[str, str]:
    normalized: dict[str, str] = {}
    for name, value in headers.items():
        normalized[name.strip().lower()] = " ".join(str(value).split())
    return normalized


def canonical_request(
    method: str,
    path: str,
    query: Optional[Mapping[str, Optional[str]]],
    headers: Mapping[str, str],
    payload_hash: str,
) -> tuple[str, str]:
    """Build the canonical request string.

    Returns:
        Tuple of (canonical request, signed header names joined by ';').
    """
    normalized = _normalize_headers(headers)
    names = sorted(normalized)
    canonical_headers = "".join(f"{name}:{normalized[name]}\n" for name in names)
    signed_headers = ";".join(names)
    request = "\n".join([
        method.upper(),
        canonical_uri(path),
        canonical_query_string(query),
        canonical_headers,
        signed_headers,
        payload_hash,
    ])
    return request, signed_headers


def credential_scope(date: str, region: str) -> str:
    """Return ``<date>/<region>/s3/aws4_request``."""
    return f"{date}/{region}/{SERVICE}/{TERMINATOR}"


def string_to_sign(timestamp: str, scope: str, request: str) -> str:
    return "\n".join([ALGORITHM, timestamp, scope, sha256_hex(request.encode("utf-8"))])


def signing_key(secret_key: str, date: str, region: str, service: str = SERVICE) -> bytes:
    """Derive the SigV4 signing key through the four-step HMAC chain."""
    k_date = _hmac(("AWS4" + secret_key).encode("utf-8"), date)
    k_region = _hmac(k_date, region)
    k_service = _hmac(k_region, service)
    return _hmac(k_service, TERMINATOR)


def compute_signature(
    credentials: Credentials,
    method: str,
    path: str,
    query: Optional[Mapping[str, Optional[str]]],
    headers: Mapping[str, str],
    payload_hash: str,
    timestamp: str,
) -> tuple[str, str, str]:
    """Compute a signature over the canonical request.

    Returns:
        Tuple of (signature hex, credential scope, signed header names).
    """
    date = timestamp[:8]
    scope = credential_scope(date, credentials.region)
    request, signed_headers = canonical_request(method, path, query, headers, payload_hash)
    key = signing_key(credentials.secret_key, date, credentials.region)
    signature = hmac.new(
        key, string_to_sign(timestamp, scope, request).encode("utf-8"), hashlib.sha256
    ).hexdigest()
    return signature, scope, signed_headers


def sign(
    credentials: Credentials,
    method: str,
    path: str,
    query: Optional[Mapping[str, Optional[str]]],
    headers: Mapping[str, str],
    payload_hash: str,
    timestamp: datetime,
) -> dict[str, str]:
    """Sign a request with an Authorization header.

    The ``host`` header must be among ``headers``. ``x-amz-date`` and
    ``x-amz-content-sha256`` are added (and signed) here.

    Returns:
        The headers to send: the input headers plus Authorization,
        x-amz-date and x-amz-content-sha256.
    """
    amz_date = format_timestamp(timestamp)
    to_sign = {name.lower(): value for name, value in headers.items()}
    if "host" not in to_sign:
        raise ValueError("The host header must be signed")
    to_sign["x-amz-date"] = amz_date
    to_sign["x-amz-content-sha256"] = payload_hash

    signature, scope, signed_headers = compute_signature(
        credentials, method, path, query, to_sign, payload_hash, amz_date
    )
    to_sign["authorization"] = (
        f"{ALGORITHM} Credential={credentials.access_key}/{scope}, "
        f"SignedHeaders={signed_headers}, Signature={signature}"
    )
    return to_sign


def object_location(credentials: Credentials, key: str) -> tuple[str, str, str]:
    """Resolve the URL base, host and path for an object key.

    Path-style: ``<endpoint>/<bucket>/<key>``.
    Virtual-hosted: ``<scheme>://<bucket>.<host>/<key>``.

    Returns:
        Tuple of (scheme://host, host, unencoded path).
    """
    key = key.lstrip("/")
    if not key:
        raise ConfigurationError("Object key must not be empty")
    parts = urlsplit(credentials.endpoint_url.rstrip("/"))
    base_path = parts.path.rstrip("/")

    if credentials.addressing_style == "virtual":
        host = f"{credentials.bucket}.{parts.netloc}"
        path = f"{base_path}/{key}"
    else:
        host = parts.netloc
        path = f"{base_path}/{credentials.bucket}/{key}"
    return f"{parts.scheme}://{host}", host, path


def sign_request(
    credentials: Credentials,
    method: str,
    key: str,
    query: Optional[Mapping[str, Optional[str]]] = None,
    headers: Optional[Mapping[str, str]] = None,
    body: bytes = b"",
    timestamp: Optional[datetime] = None,
    payload_hash: Optional[str] = None,
) -> SignedRequest:
    """Build a fully signed request for an object key."""
    if timestamp is None:
        timestamp = datetime.now(timezone.utc)
    if payload_hash is None:
        payload_hash = sha256_hex(body) if body else EMPTY_SHA256

    base, host, path = object_location(credentials, key)
    request_headers = {"host": host}
    for name, value in (headers or {}).items():
        request_headers[name.lower()] = value

    signed_headers = sign(
        credentials, method, path, query, request_headers, payload_hash, timestamp
    )

    url = base + canonical_uri(path)
    query_string = canonical_query_string(query)
    if query_string:
        url += "?" + query_string
    return SignedRequest(method=method.upper(), url=url, headers=signed_headers, body=body)


def presign_url(
    credentials: Credentials,
    key: str,
    expires: int = 3600,
    method: str = "GET",
    timestamp: Optional[datetime] = None,
) -> str:
    """Generate a presigned URL granting temporary access to an object.

    The signature is carried in the query string and covers only the host
    header, with an unsigned payload.
    """
    if not 1 <= expires <= MAX_PRESIGN_EXPIRES:
        raise ConfigurationError(
            f"Presigned URL expiry must be between 1 and {MAX_PRESIGN_EXPIRES} seconds"
        )
    if timestamp is None:
        timestamp = datetime.now(timezone.utc)

    amz_date = format_timestamp(timestamp)
    base, host, path = object_location(credentials, key)
    scope = credential_scope(amz_date[:8], credentials.region)
    query = {
        "X-Amz-Algorithm": ALGORITHM,
        "X-Amz-Credential": f"{credentials.access_key}/{scope}",
        "X-Amz-Date": amz_date,
        "X-Amz-Expires": str(expires),
        "X-Amz-SignedHeaders": "host",
    }
    signature, _, _ = compute_signature(
        credentials, method, path, query, {"host": host}, UNSIGNED_PAYLOAD, amz_date
    )
    query["X-Amz-Signature"] = signature
    return f"{base}{canonical_uri(path)}?{canonical_query_string(query)}"


def public_url(credentials: Credentials, key: str) -> str:
    """Plain (unsigned) URL of an object, for publicly readable buckets."""
    base, _, path = object_location(replace(credentials, addressing_style="virtual"), key)
    return base + canonical_uri(path)
