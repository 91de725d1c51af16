"""AWS Signature Version 4 signing for S3 requests.

Provides:
- Header signing (``Authorization: AWS4-HMAC-SHA256 ...``)
- Query-string signing for presigned URLs

The signer is a pure function of request, credentials and timestamp. It
never touches the network and never buffers streamed bodies: callers
streaming a body pass ``UNSIGNED_PAYLOAD`` as the payload hash.
"""

import hashlib
import hmac
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional
from urllib.parse import SplitResult, parse_qsl, quote, unquote, urlsplit

from s3wire.errors import SigningError
from s3wire.models import Credentials

ALGORITHM = "AWS4-HMAC-SHA256"
SERVICE = "s3"
TERMINATOR = "aws4_request"

# Payload hash sentinel for bodies that are streamed rather than hashed
UNSIGNED_PAYLOAD = "UNSIGNED-PAYLOAD"

# SHA-256 of the empty string
EMPTY_SHA256 = hashlib.sha256(b"").hexdigest()

# Presigned URL lifetime bounds (seconds)
MIN_PRESIGN_EXPIRY = 1
MAX_PRESIGN_EXPIRY = 7 * 24 * 60 * 60

# Headers signed in addition to every x-amz-* header
SIGNED_HEADER_NAMES = {"host", "content-md5", "content-type", "range"}

_DEFAULT_PORTS = {"http": 80, "https": 443}


@dataclass
class HttpRequest:
    """An outbound request before signing.

    Attributes:
        method: HTTP method (GET, PUT, ...).
        url: Absolute URL, already percent-encoded.
        headers: Request headers. Must contain ``Host``.
        body: Request body when it is small enough to hash.
        payload_hash: Explicit payload hash; overrides ``body``.
    """

    method: str
    url: str
    headers: dict[str, str] = field(default_factory=dict)
    body: Optional[bytes] = None
    payload_hash: Optional[str] = None


@dataclass(frozen=True)
class SignedRequest:
    """A request with SigV4 headers attached."""

    method: str
    url: str
    canonical_uri: str
    query: tuple[tuple[str, str], ...]
    headers: dict[str, str]
    signed_headers: str
    signature: str

    @property
    def authorization(self) -> str:
        return self.headers["Authorization"]


def uri_encode(value: str, encode_slash: bool = True) -> str:
    """Percent-encode using the RFC 3986 unreserved set, uppercase hex."""
    return quote(value, safe="~" if encode_slash else "/~")


def host_from_url(url: str) -> str:
    """Return host[:port] for a URL, dropping the scheme's default port."""
    return _host_from_parts(urlsplit(url))


def _host_from_parts(parts: SplitResult) -> str:
    host = parts.hostname or ""
    if ":" in host:
        host = f"[{host}]"
    port = parts.port
    if port is None or _DEFAULT_PORTS.get(parts.scheme) == port:
        return host
    return f"{host}:{port}"


def format_amz_date(timestamp: datetime) -> str:
    """Format a timezone-aware timestamp as ``YYYYMMDDTHHMMSSZ``.

    Raises:
        SigningError: If the timestamp is naive.
    """
    if timestamp.tzinfo is None:
        raise SigningError("Signing timestamp must be timezone-aware")
    return timestamp.astimezone(timezone.utc).strftime("%Y%m%dT%H%M%SZ")


def canonical_uri(path: str) -> str:
    """Canonical URI for S3: decode, then encode once, keeping slashes."""
    if not path:
        return "/"
    return uri_encode(unquote(path), encode_slash=False)


def canonical_query(query: str) -> tuple[tuple[str, str], ...]:
    """Encode and sort query parameters; blank values are kept."""
    pairs = parse_qsl(query, keep_blank_values=True)
    return tuple(sorted((uri_encode(k), uri_encode(v)) for k, v in pairs))


def canonical_headers(headers: dict[str, str]) -> tuple[str, str]:
    """Build the canonical header block and the signed header list.

    Returns:
        Tuple of (canonical_headers, signed_headers).
    """
    selected: dict[str, str] = {}
    for name, value in headers.items():
        lower = name.lower()
        if lower in SIGNED_HEADER_NAMES or lower.startswith("x-amz-"):
            selected[lower] = " ".join(str(value).split())

    names = sorted(selected)
    block = "".join(f"{name}:{selected[name]}\n" for name in names)
    return block, ";".join(names)


def build_canonical_request(
    method: str,
    uri: str,
    query: tuple[tuple[str, str], ...],
    header_block: str,
    signed_headers: str,
    payload_hash: str,
) -> str:
    """Assemble the canonical request string."""
    query_string = "&".join(f"{k}={v}" for k, v in query)
    return "\n".join(
        [method, uri, query_string, header_block, signed_headers, payload_hash]
    )


def string_to_sign(amz_date: str, scope: str, canonical_request: str) -> str:
    """Build the SigV4 string to sign."""
    digest = hashlib.sha256(canonical_request.encode("utf-8")).hexdigest()
    return "\n".join([ALGORITHM, amz_date, scope, digest])


def _hmac(key: bytes, msg: str) -> bytes:
    return hmac.new(key, msg.encode("utf-8"), hashlib.sha256).digest()


def derive_signing_key(secret_key: str, date: str, region: str) -> bytes:
    """Derive the SigV4 signing key for a date/region/s3 scope."""
    k_date = _hmac(("AWS4" + secret_key).encode("utf-8"), date)
    k_region = _hmac(k_date, region)
    k_service = _hmac(k_region, SERVICE)
    return _hmac(k_service, TERMINATOR)


def _check_credentials(credentials: Optional[Credentials]) -> None:
    if credentials is None:
        raise SigningError("No credentials available for signing")
    if not credentials.access_key or not credentials.secret_key:
        raise SigningError("Access key and secret key are required for signing")
    if not credentials.region:
        raise SigningError("A region is required for signing")


def _split_url(url: str) -> SplitResult:
    parts = urlsplit(url)
    if not parts.scheme or not parts.netloc:
        raise SigningError(f"Request URL must be absolute: {url!r}")
    return parts


def _signature(credentials: Credentials, amz_date: str, creq: str) -> tuple[str, str]:
    date = amz_date[:8]
    scope = f"{date}/{credentials.region}/{SERVICE}/{TERMINATOR}"
    key = derive_signing_key(credentials.secret_key, date, credentials.region)
    sts = string_to_sign(amz_date, scope, creq)
    return scope, hmac.new(key, sts.encode("utf-8"), hashlib.sha256).hexdigest()


def sign(
    request: HttpRequest,
    credentials: Optional[Credentials],
    timestamp: datetime,
) -> SignedRequest:
    """Sign a request with AWS Signature Version 4.

    The returned headers contain ``x-amz-date``, ``x-amz-content-sha256``
    and ``Authorization`` in addition to the caller's headers.

    Args:
        request: The request to sign.
        credentials: Access key, secret key and region.
        timestamp: Signing time (timezone-aware).

    Returns:
        The signed request.

    Raises:
        SigningError: If credentials are missing or the request is malformed.
    """
    _check_credentials(credentials)
    if not request.method:
        raise SigningError("Request method is required")
    method = request.method.upper()
    parts = _split_url(request.url)

    headers = dict(request.headers)
    if not any(name.lower() == "host" and value for name, value in headers.items()):
        raise SigningError("Request is missing a Host header")

    amz_date = format_amz_date(timestamp)
    if request.payload_hash:
        payload_hash = request.payload_hash
    elif request.body is not None:
        payload_hash = hashlib.sha256(request.body).hexdigest()
    else:
        payload_hash = EMPTY_SHA256

    for name in list(headers):
        if name.lower() in ("x-amz-date", "x-amz-content-sha256", "authorization"):
            del headers[name]
    headers["x-amz-content-sha256"] = payload_hash
    headers["x-amz-date"] = amz_date

    uri = canonical_uri(parts.path)
    query = canonical_query(parts.query)
    header_block, signed_headers = canonical_headers(headers)
    creq = build_canonical_request(
        method, uri, query, header_block, signed_headers, payload_hash
    )
    scope, signature = _signature(credentials, amz_date, creq)

    headers["Authorization"] = (
        f"{ALGORITHM} Credential={credentials.access_key}/{scope}, "
        f"SignedHeaders={signed_headers}, Signature={signature}"
    )

    return SignedRequest(
        method=method,
        url=request.url,
        canonical_uri=uri,
        query=query,
        headers=headers,
        signed_headers=signed_headers,
        signature=signature,
    )


def presign_url(
    method: str,
    url: str,
    credentials: Optional[Credentials],
    timestamp: datetime,
    expires_seconds: int,
) -> str:
    """Generate a presigned URL with the signature in the query string.

    Args:
        method: HTTP method the URL will be used with.
        url: Absolute object URL, already percent-encoded.
        credentials: Access key, secret key and region.
        timestamp: Signing time (timezone-aware).
        expires_seconds: Lifetime in seconds, 1 second to 7 days.

    Returns:
        The presigned URL.

    Raises:
        ValueError: If the expiry is out of range.
        SigningError: If credentials are missing or the URL is malformed.
    """
    if not MIN_PRESIGN_EXPIRY <= expires_seconds <= MAX_PRESIGN_EXPIRY:
        raise ValueError(
            f"Expiry must be between {MIN_PRESIGN_EXPIRY} and "
            f"{MAX_PRESIGN_EXPIRY} seconds, got {expires_seconds}"
        )
    _check_credentials(credentials)
    if not method:
        raise SigningError("Request method is required")
    method = method.upper()
    parts = _split_url(url)

    amz_date = format_amz_date(timestamp)
    scope = f"{amz_date[:8]}/{credentials.region}/{SERVICE}/{TERMINATOR}"
    pairs = parse_qsl(parts.query, keep_blank_values=True)
    pairs += [
        ("X-Amz-Algorithm", ALGORITHM),
        ("X-Amz-Credential", f"{credentials.access_key}/{scope}"),
        ("X-Amz-Date", amz_date),
        ("X-Amz-Expires", str(int(expires_seconds))),
        ("X-Amz-SignedHeaders", "host"),
    ]
    query = tuple(sorted((uri_encode(k), uri_encode(v)) for k, v in pairs))

    host = _host_from_parts(parts)
    uri = canonical_uri(parts.path)
    creq = build_canonical_request(
        method, uri, query, f"host:{host}\n", "host", UNSIGNED_PAYLOAD
    )
    _, signature = _signature(credentials, amz_date, creq)

    query_string = "&".join(f"{k}={v}" for k, v in query)
    return (
        f"{parts.scheme}://{parts.netloc}{uri}?{query_string}"
        f"&X-Amz-Signature={signature}"
    )
