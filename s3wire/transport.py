"""HTTP transport for the s3wire client.

Wraps a single httpx client and handles:
- URL construction (path-style or virtual-hosted addressing)
- SigV4 signing of every outbound request
- Streaming uploads and downloads through fixed-size buffers
- Mapping non-2xx responses to StorageError
"""

import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import BinaryIO, Callable, Iterator, Optional

import httpx

from s3wire import xmlutil
from s3wire.errors import StorageError, TransferError
from s3wire.models import Credentials
from s3wire.signer import (
    HttpRequest,
    SignedRequest,
    UNSIGNED_PAYLOAD,
    host_from_url,
    presign_url,
    sign,
    uri_encode,
)

logger = logging.getLogger(__name__)

# Streaming buffer size for uploads and downloads
BUFFER_SIZE = 64 * 1024

USER_AGENT = "s3wire/1.0.0"

ADDRESSING_STYLES = ("path", "virtual")

ProgressCallback = Callable[[int], None]

# Fallback error codes when the backend sends no XML body (e.g. HEAD)
_STATUS_ERROR_CODES = {
    301: ("PermanentRedirect", "Bucket is in a different region or endpoint"),
    307: ("TemporaryRedirect", "Request redirected"),
    400: ("BadRequest", "Bad request"),
    403: ("AccessDenied", "Access denied"),
    405: ("MethodNotAllowed", "The specified method is not allowed against this resource"),
    409: ("Conflict", "Request conflicts with the current state of the resource"),
    412: ("PreconditionFailed", "At least one precondition did not hold"),
    416: ("InvalidRange", "The requested range is not satisfiable"),
    429: ("SlowDown", "Request rate too high"),
    500: ("InternalError", "Internal server error"),
    501: ("NotImplemented", "Not implemented"),
    503: ("ServiceUnavailable", "Service unavailable"),
}


def encode_query(query: dict[str, Optional[str]]) -> str:
    """Encode query parameters the same way the signer canonicalizes them."""
    return "&".join(
        f"{uri_encode(str(k))}={uri_encode('' if v is None else str(v))}"
        for k, v in query.items()
    )


def error_from_response(
    response: httpx.Response,
    bucket: Optional[str] = None,
    key: Optional[str] = None,
) -> StorageError:
    """Build a StorageError from a non-2xx response.

    The response body must already be read.
    """
    status = response.status_code
    code = message = request_id = resource = None

    body = response.content
    if body:
        try:
            root = xmlutil.parse(body)
        except ValueError:
            message = body.decode("utf-8", errors="replace")[:200]
        else:
            code = xmlutil.child_text(root, "Code")
            message = xmlutil.child_text(root, "Message")
            request_id = xmlutil.child_text(root, "RequestId")
            resource = xmlutil.child_text(root, "Resource")

    if not code:
        if status == 404:
            if key:
                code, default = "NoSuchKey", "Object does not exist"
            elif bucket:
                code, default = "NoSuchBucket", "Bucket does not exist"
            else:
                code, default = "NotFound", "Resource not found"
        else:
            code, default = _STATUS_ERROR_CODES.get(status, (None, None))
        message = message or default

    return StorageError(
        message or f"Request failed with HTTP status {status}",
        status_code=status,
        code=code,
        request_id=request_id or response.headers.get("x-amz-request-id"),
        resource=resource or "/".join(p for p in (bucket, key) if p) or None,
    )


def copy_response(
    response: httpx.Response,
    destination: BinaryIO,
    on_progress: Optional[ProgressCallback] = None,
) -> int:
    """Copy a streamed response body into a binary target.

    Returns:
        Number of bytes written.
    """
    total = 0
    for block in response.iter_bytes(BUFFER_SIZE):
        destination.write(block)
        total += len(block)
        if on_progress is not None:
            on_progress(total)
    return total


class Transport:
    """Signs and sends requests against one S3-compatible endpoint.

    Can be used as a context manager to close the underlying
    connection pool.
    """

    def __init__(
        self,
        credentials: Credentials,
        timeout: float = 30.0,
        addressing_style: str = "path",
        http_transport: Optional[httpx.BaseTransport] = None,
        clock: Optional[Callable[[], datetime]] = None,
        verify: bool = True,
    ):
        """Initialize the transport.

        Args:
            credentials: Endpoint and signing credentials.
            timeout: Per-request timeout in seconds.
            addressing_style: "path" (endpoint/bucket/key) or "virtual"
                              (bucket.endpoint/key).
            http_transport: Optional httpx transport (tests inject a mock).
            clock: Returns the signing time; defaults to now (UTC).
            verify: Verify TLS certificates.
        """
        if addressing_style not in ADDRESSING_STYLES:
            raise ValueError(f"Unknown addressing style: {addressing_style}")
        if not credentials.endpoint:
            raise ValueError("An endpoint is required")

        self.credentials = credentials
        self.addressing_style = addressing_style
        self.scheme = "https" if credentials.secure else "http"
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._http = httpx.Client(
            timeout=timeout,
            transport=http_transport,
            verify=verify,
        )
        self._closed = False

    def build_url(
        self,
        bucket: Optional[str] = None,
        key: Optional[str] = None,
        query: Optional[dict[str, Optional[str]]] = None,
    ) -> str:
        """Build the request URL for a bucket/key.

        Args:
            bucket: Bucket name, or None for the service root.
            key: Object key, or None for bucket-level requests.
            query: Query parameters; None values encode as ``name=``.

        Returns:
            Absolute, percent-encoded URL.
        """
        netloc = self.credentials.endpoint
        encoded_key = uri_encode(key, encode_slash=False) if key else ""

        if bucket and self.addressing_style == "virtual":
            netloc = f"{bucket}.{netloc}"
            path = f"/{encoded_key}"
        elif bucket:
            path = f"/{bucket}/{encoded_key}" if key else f"/{bucket}"
        else:
            path = "/"

        url = f"{self.scheme}://{netloc}{path}"
        if query:
            url = f"{url}?{encode_query(query)}"
        return url

    def sign_request(
        self,
        method: str,
        url: str,
        headers: Optional[dict[str, str]] = None,
        body: Optional[bytes] = None,
        payload_hash: Optional[str] = None,
    ) -> SignedRequest:
        """Attach Host/User-Agent and sign a request for this endpoint."""
        request_headers = dict(headers or {})
        request_headers["Host"] = host_from_url(url)
        request_headers.setdefault("User-Agent", USER_AGENT)
        return sign(
            HttpRequest(
                method=method,
                url=url,
                headers=request_headers,
                body=body,
                payload_hash=payload_hash,
            ),
            self.credentials,
            self._clock(),
        )

    def request(
        self,
        method: str,
        bucket: Optional[str] = None,
        key: Optional[str] = None,
        query: Optional[dict[str, Optional[str]]] = None,
        headers: Optional[dict[str, str]] = None,
        body: Optional[bytes] = None,
    ) -> httpx.Response:
        """Send a signed request and read the full response.

        Raises:
            StorageError: If the response status is not 2xx.
            SigningError: If the request cannot be signed.
            httpx.TransportError: On network failures.
        """
        if body is None and method in ("PUT", "POST"):
            body = b""
        url = self.build_url(bucket, key, query)
        signed = self.sign_request(method, url, headers, body=body)

        logger.debug("%s %s", method, url)
        response = self._http.request(method, url, headers=signed.headers, content=body)

        if not 200 <= response.status_code < 300:
            raise error_from_response(response, bucket, key)
        return response

    def upload_stream(
        self,
        method: str,
        bucket: str,
        key: str,
        stream: BinaryIO,
        length: int,
        query: Optional[dict[str, Optional[str]]] = None,
        headers: Optional[dict[str, str]] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> httpx.Response:
        """Stream ``length`` bytes from ``stream`` as the request body.

        The payload is sent as UNSIGNED-PAYLOAD, so nothing is buffered
        beyond one BUFFER_SIZE block. ``on_progress`` receives the number
        of bytes handed to the connection so far.

        Raises:
            TransferError: If the source ends before ``length`` bytes.
            StorageError: If the response status is not 2xx.
        """
        request_headers = dict(headers or {})
        request_headers["Content-Length"] = str(length)

        def body() -> Iterator[bytes]:
            sent = 0
            while sent < length:
                block = stream.read(min(BUFFER_SIZE, length - sent))
                if not block:
                    raise TransferError(
                        f"Source ended after {sent} of {length} bytes"
                    )
                yield block
                sent += len(block)
                if on_progress is not None:
                    on_progress(sent)

        url = self.build_url(bucket, key, query)
        signed = self.sign_request(
            method, url, request_headers, payload_hash=UNSIGNED_PAYLOAD
        )

        logger.debug("%s %s (%d bytes streamed)", method, url, length)
        response = self._http.request(
            method, url, headers=signed.headers, content=body()
        )

        if not 200 <= response.status_code < 300:
            raise error_from_response(response, bucket, key)
        return response

    @contextmanager
    def stream(
        self,
        method: str,
        bucket: Optional[str] = None,
        key: Optional[str] = None,
        query: Optional[dict[str, Optional[str]]] = None,
        headers: Optional[dict[str, str]] = None,
    ) -> Iterator[httpx.Response]:
        """Send a signed request and yield the response unread.

        Raises:
            StorageError: If the response status is not 2xx.
        """
        url = self.build_url(bucket, key, query)
        signed = self.sign_request(method, url, headers)

        logger.debug("%s %s (streamed response)", method, url)
        with self._http.stream(method, url, headers=signed.headers) as response:
            if not 200 <= response.status_code < 300:
                response.read()
                raise error_from_response(response, bucket, key)
            yield response

    def download_to(
        self,
        bucket: str,
        key: str,
        destination: BinaryIO,
        headers: Optional[dict[str, str]] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> int:
        """Stream an object (or a Range of it) into a binary target.

        Returns:
            Number of bytes written.
        """
        with self.stream("GET", bucket, key, headers=headers) as response:
            return copy_response(response, destination, on_progress)

    def presign(
        self,
        method: str,
        bucket: str,
        key: str,
        expires_seconds: int,
        query: Optional[dict[str, Optional[str]]] = None,
    ) -> str:
        """Build a presigned URL for this endpoint."""
        url = self.build_url(bucket, key, query)
        return presign_url(method, url, self.credentials, self._clock(), expires_seconds)

    def close(self) -> None:
        if not self._closed:
            self._http.close()
            self._closed = True

    def __enter__(self) -> "Transport":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> bool:
        self.close()
        return False
