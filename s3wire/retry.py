"""Retry logic with backoff for transient failures.

This module provides retry functionality for chunk transfers, with
error classification to distinguish between transient failures (worth
retrying) and permanent failures (retry won't help).

Transient (Retryable):
- Connection timeouts, connection resets, read/write errors
- Server errors (5xx) and throttling (429, SlowDown, ...)
- Chunks that arrived short (IncompleteChunkError)

Permanent (Not Retryable):
- Signing failures
- Client errors (4xx except 429/throttling)
- Local protocol errors (body length differs from Content-Length,
  meaning the local source changed under us)
"""

import logging
import threading
import time
from typing import Any, Callable, Optional, Sequence

import httpx
from h11 import LocalProtocolError as H11LocalProtocolError

from s3wire.errors import (
    IncompleteChunkError,
    SigningError,
    StorageError,
    is_retryable_status,
)

logger = logging.getLogger(__name__)

DEFAULT_DELAYS = (0.5, 1.0, 2.0)


class RetryExhausted(Exception):
    """Raised when all retry attempts have been exhausted."""

    def __init__(
        self,
        message: str,
        attempts: int,
        last_error: Optional[Exception] = None,
    ):
        super().__init__(message)
        self.attempts = attempts
        self.last_error = last_error


def is_retryable_error(error: Exception) -> bool:
    """Determine if an error is transient and worth retrying.

    Args:
        error: The exception that was raised.

    Returns:
        True if the error is transient and should trigger a retry,
        False if the error is permanent and retrying won't help.
    """
    if isinstance(error, (SigningError, H11LocalProtocolError, httpx.LocalProtocolError)):
        return False

    if isinstance(error, IncompleteChunkError):
        return True

    # Network-level errors are transient
    if isinstance(
        error,
        (
            httpx.TimeoutException,
            httpx.ConnectError,
            httpx.ReadError,
            httpx.WriteError,
            httpx.RemoteProtocolError,
        ),
    ):
        return True

    if isinstance(error, StorageError):
        return error.retryable

    if isinstance(error, httpx.HTTPStatusError):
        return is_retryable_status(error.response.status_code)

    # All other errors are not retryable by default
    return False


def retry_with_backoff(
    func: Callable[..., Any],
    max_attempts: int = 3,
    delays: Sequence[float] = DEFAULT_DELAYS,
    args: tuple = (),
    kwargs: Optional[dict] = None,
    cancel_event: Optional[threading.Event] = None,
    on_retry: Optional[Callable[[int, Exception], None]] = None,
) -> Any:
    """Execute a function with retry logic and backoff.

    Args:
        func: The function to execute.
        max_attempts: Maximum number of attempts (including first try).
        delays: Sequence of delay times (seconds) between retries.
                delays[0] is used after first failure, etc.
        args: Positional arguments to pass to func.
        kwargs: Keyword arguments to pass to func.
        cancel_event: When set, no further attempts are made and the
                      last error is raised as-is.
        on_retry: Called with (attempt, error) before each retry.

    Returns:
        The return value of func if successful.

    Raises:
        RetryExhausted: If all attempts fail with retryable errors.
        Exception: If a non-retryable error occurs (or the operation is
                   cancelled), it's raised immediately.
    """
    if kwargs is None:
        kwargs = {}
    max_attempts = max(1, max_attempts)

    last_error: Optional[Exception] = None

    for attempt in range(1, max_attempts + 1):
        try:
            return func(*args, **kwargs)
        except Exception as e:
            last_error = e

            # Permanent error - raise immediately
            if not is_retryable_error(e):
                raise

            if cancel_event is not None and cancel_event.is_set():
                raise

            if attempt >= max_attempts:
                raise RetryExhausted(
                    f"Operation failed after {max_attempts} attempts: {e}",
                    attempts=max_attempts,
                    last_error=last_error,
                ) from last_error

            delay = delays[min(attempt - 1, len(delays) - 1)] if delays else 0.0
            logger.debug(
                "Attempt %d/%d failed (%s), retrying in %.2fs",
                attempt, max_attempts, e, delay,
            )
            if on_retry is not None:
                on_retry(attempt, e)

            # Wait before retrying; a cancel wakes the wait early
            if cancel_event is not None:
                if cancel_event.wait(delay):
                    raise
            else:
                time.sleep(delay)

    # This should never be reached, but just in case
    raise RetryExhausted(
        f"Operation failed after {max_attempts} attempts",
        attempts=max_attempts,
        last_error=last_error,
    )
