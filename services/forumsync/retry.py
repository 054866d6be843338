"""
Retry policy for Ed API calls.

Exponential backoff starting at 100ms and doubling per attempt
(100, 200, 400, 800, 1600 ms), with two overrides:
- rate-limited calls never wait less than 2000ms
- a timeout on the first attempt is retried immediately

The policy is stateless so the thread-list and thread-detail paths share it.
"""

from __future__ import annotations

import time
from enum import Enum
from typing import Callable, Optional, TypeVar

from loguru import logger

from .utils import (
    AuthError,
    EdAPIError,
    RateLimitError,
    RequestTimeoutError,
)

T = TypeVar("T")

BASE_DELAY_MS = 100
RATE_LIMIT_FLOOR_MS = 2000
DEFAULT_MAX_ATTEMPTS = 5

_TIMEOUT_STATUS_CODES = (408, 504)


class RetryClass(str, Enum):
    """How a failed call should be retried."""
    RATE_LIMIT = "rate_limit"
    TIMEOUT = "timeout"
    OTHER = "other"


def classify(error: BaseException) -> RetryClass:
    """Classify an error by its type and embedded status code."""
    if isinstance(error, RateLimitError):
        return RetryClass.RATE_LIMIT
    if isinstance(error, RequestTimeoutError):
        return RetryClass.TIMEOUT
    if isinstance(error, EdAPIError):
        if error.status_code == 429:
            return RetryClass.RATE_LIMIT
        if error.status_code in _TIMEOUT_STATUS_CODES:
            return RetryClass.TIMEOUT
    if isinstance(error, TimeoutError):
        return RetryClass.TIMEOUT
    return RetryClass.OTHER


def backoff_delay(attempt: int, retry_class: RetryClass) -> float:
    """
    Delay in seconds to wait after a failed attempt.

    Args:
        attempt: 1-based number of the attempt that just failed.
        retry_class: Classification of the failure.
    """
    delay_ms = BASE_DELAY_MS * (2 ** (attempt - 1))

    if retry_class is RetryClass.RATE_LIMIT:
        delay_ms = max(delay_ms, RATE_LIMIT_FLOOR_MS)

    if retry_class is RetryClass.TIMEOUT and attempt == 1:
        delay_ms = 0

    return delay_ms / 1000


def with_retry(
    operation: Callable[[], T],
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    context: Optional[str] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """
    Run an operation, retrying failures with classified backoff.

    Args:
        operation: Zero-argument callable to run.
        max_attempts: Total number of attempts, including the first.
        context: Description used in retry log messages.
        sleep: Sleep function (injectable for tests).

    Returns:
        The operation's result.

    Raises:
        The last error once attempts are exhausted. AuthError is raised
        immediately.
    """
    if max_attempts < 1:
        raise ValueError(f"max_attempts must be at least 1, got {max_attempts}")

    last_error: Optional[Exception] = None

    for attempt in range(1, max_attempts + 1):
        try:
            return operation()
        except AuthError:
            raise
        except Exception as e:
            last_error = e

            if attempt == max_attempts:
                break

            retry_class = classify(e)
            wait_time = backoff_delay(attempt, retry_class)

            if context and wait_time > 0:
                logger.warning(
                    f"{context} failed (attempt {attempt}/{max_attempts}, {retry_class.value}), "
                    f"retrying in {wait_time * 1000:.0f}ms: {e}"
                )
            elif context:
                logger.debug(f"{context} timed out on first attempt, retrying immediately")

            if wait_time > 0:
                sleep(wait_time)

    raise last_error
