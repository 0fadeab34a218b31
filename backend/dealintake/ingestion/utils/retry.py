"""Retry utilities with exponential backoff for HTTP requests."""

import logging

import httpx
from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)


# tenacity logs through the stdlib logger API
logger = logging.getLogger(__name__)


# Upstream statuses worth another attempt; everything else 4xx is final.
RETRYABLE_STATUS_CODES = frozenset({408, 429, 500, 502, 503, 504, 522, 524})


def is_retryable_http_error(exc: BaseException) -> bool:
    """Return True for transport failures and transient HTTP statuses."""
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code in RETRYABLE_STATUS_CODES
    return isinstance(exc, (httpx.TransportError, httpx.TimeoutException))


def http_retrying(
    max_attempts: int = 3,
    min_wait: float = 2.0,
    max_wait: float = 30.0,
) -> AsyncRetrying:
    """Build an AsyncRetrying controller for one HTTP call.

    Args:
        max_attempts: Total attempts including the first one
        min_wait: Lower bound of the exponential backoff, in seconds
        max_wait: Upper bound of the exponential backoff, in seconds

    Returns:
        AsyncRetrying that re-raises the last error once attempts run out
    """
    return AsyncRetrying(
        stop=stop_after_attempt(max(1, max_attempts)),
        wait=wait_exponential(multiplier=1, min=min_wait, max=max_wait),
        retry=retry_if_exception(is_retryable_http_error),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True,
    )
