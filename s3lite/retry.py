"""Retry policy for transient S3 failures.

S3Client never retries on its own. Re-sending a request is safe for
signing, but whether to restart a failed upload is the caller's call, so
callers that want retries wrap an operation in ``retry_with_backoff``
(the CLI does this for uploads).

Transient:
- Network failures and timeouts raised by httpx
- 5xx responses and 429 Too Many Requests
- S3 error codes that mean "try again", whatever their status
  (``RequestTimeout`` arrives as a 400)

Permanent:
- Every other ServerError (``AccessDenied``, ``NoSuchKey``,
  ``SignatureDoesNotMatch``...)
- Configuration, protocol and usage errors
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional, Sequence

import httpx

from s3lite.errors import ServerError

logger = logging.getLogger(__name__)

RETRYABLE_STATUS_CODES = {429, 500, 502, 503, 504}

RETRYABLE_ERROR_CODES = {
    "InternalError",
    "RequestTimeout",
    "ServiceUnavailable",
    "SlowDown",
}

TRANSPORT_ERRORS = (httpx.TimeoutException, httpx.NetworkError, httpx.RemoteProtocolError)


class RetryExhausted(Exception):
    """Every attempt failed with a transient error.

    Attributes:
        attempts: Number of attempts made.
        last_error: Error raised by the final attempt.
    """

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
    """Return True if ``error`` is transient and a new attempt may succeed."""
    if isinstance(error, TRANSPORT_ERRORS):
        return True
    if isinstance(error, ServerError):
        return (
            error.status_code in RETRYABLE_STATUS_CODES
            or error.code in RETRYABLE_ERROR_CODES
        )
    return False


async def retry_with_backoff(
    func: Callable[..., Awaitable[Any]],
    max_attempts: int = 3,
    delays: Sequence[float] = (1.0, 5.0, 15.0),
    args: tuple = (),
    kwargs: Optional[dict] = None,
    should_retry: Callable[[Exception], bool] = is_retryable_error,
) -> Any:
    """Await ``func(*args, **kwargs)``, retrying transient failures.

    Args:
        func: Coroutine function, called afresh on every attempt so that
            streams and other one-shot inputs can be recreated.
        max_attempts: Attempts in total, including the first.
        delays: Seconds to sleep after the first, second, ... failure.
            The last delay is reused once the sequence runs out.
        args: Positional arguments for func.
        kwargs: Keyword arguments for func.
        should_retry: Classifier deciding which errors are transient.

    Returns:
        Whatever func returns on the first successful attempt.

    Raises:
        RetryExhausted: If the final attempt also failed transiently.
        Exception: Any permanent error, unchanged, as soon as it happens.

    Example:
        >>> info = await retry_with_backoff(
        ...     client.put_object,
        ...     args=("report.csv", data),
        ...     kwargs={"metadata": {"Content-Type": "text/csv"}},
        ... )
    """
    kwargs = kwargs or {}
    attempt = 0
    while True:
        attempt += 1
        try:
            return await func(*args, **kwargs)
        except Exception as e:
            if not should_retry(e):
                raise
            if attempt >= max_attempts:
                raise RetryExhausted(
                    f"Operation failed after {attempt} attempts",
                    attempts=attempt,
                    last_error=e,
                ) from e

            delay = delays[min(attempt - 1, len(delays) - 1)]
            logger.info(
                "Attempt %d/%d failed (%s), retrying in %.1fs",
                attempt,
                max_attempts,
                e,
                delay,
            )
            await asyncio.sleep(delay)
