"""Exception hierarchy for the s3wire client.

Error categories:
- SigningError: the request could not be signed (fatal, never retried)
- StorageError: the backend answered with a non-2xx status
- TransferError: a chunked transfer could not finish
- ResumeDataInvalid: stored resume data no longer matches the source
"""

from typing import Any, Optional

# Backend error codes that signal throttling rather than a real failure
THROTTLING_ERROR_CODES = {
    "SlowDown",
    "Throttling",
    "ThrottlingException",
    "RequestTimeout",
    "RequestLimitExceeded",
    "TooManyRequests",
    "ServiceUnavailable",
    "InternalError",
}

# 5xx answers that will not change on retry
PERMANENT_SERVER_STATUS_CODES = {501, 505}


def is_retryable_status(status_code: int) -> bool:
    """True for 429 and 5xx, except Not Implemented and HTTP Version Not Supported."""
    if status_code == 429:
        return True
    return 500 <= status_code < 600 and status_code not in PERMANENT_SERVER_STATUS_CODES


class S3WireError(Exception):
    """Base class for all s3wire errors."""

    pass


class SigningError(S3WireError):
    """Raised when a request cannot be signed.

    Missing credentials and malformed requests (no host, no method)
    end up here. Never retried.
    """

    pass


class StorageError(S3WireError):
    """Raised when the storage backend returns a non-2xx response.

    Attributes:
        status_code: HTTP status code of the response.
        code: Backend error code (e.g. ``NoSuchKey``), if known.
        request_id: Backend request id, if the backend sent one.
        resource: Resource the error refers to, if known.
    """

    def __init__(
        self,
        message: str,
        status_code: int,
        code: Optional[str] = None,
        request_id: Optional[str] = None,
        resource: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.code = code
        self.request_id = request_id
        self.resource = resource

    @property
    def retryable(self) -> bool:
        """True for server errors and throttling responses."""
        if is_retryable_status(self.status_code):
            return True
        return self.code in THROTTLING_ERROR_CODES

    @property
    def not_found(self) -> bool:
        return self.status_code == 404

    def __str__(self) -> str:
        parts = [f"{self.message} (HTTP {self.status_code}"]
        if self.code:
            parts.append(f", code={self.code}")
        if self.request_id:
            parts.append(f", request_id={self.request_id}")
        parts.append(")")
        return "".join(parts)


class TransferError(S3WireError):
    """Raised when a chunked transfer fails.

    The transfer state (if any) is attached so callers can inspect
    which chunks completed before the failure.
    """

    def __init__(self, message: str, state: Optional[Any] = None):
        super().__init__(message)
        self.state = state


class IncompleteChunkError(TransferError):
    """A chunk transferred fewer bytes than its range requires.

    Treated as transient: the chunk is retried.
    """

    pass


class ResumeDataInvalid(S3WireError):
    """Stored resume data does not match the current source.

    Surfaced as a warning; the managers fall back to a fresh transfer.
    """

    pass
