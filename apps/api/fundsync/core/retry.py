"""
Retry Logic for fallible, idempotent operations.

Provides:
- Error classification (transient vs permanent)
- Tenacity-based retry with exponential backoff and jitter

Backoff before attempt ``n + 1`` is ``initial_delay * 2 ** (n - 1)`` plus a
small random jitter, capped at ``max_delay``.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Optional, TypeVar

import httpx
from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
    wait_random,
)

from fundsync.core.config import settings
from fundsync.core.exceptions import (
    DatabaseError,
    ProviderError,
    ReconciliationError,
    RetryExhaustedError,
    TaskTimeoutError,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

JITTER_RATIO = 0.1


def is_retryable_error(exception: BaseException) -> bool:
    """
    Determine if an exception should trigger a retry.

    Retryable errors:
    - Transient provider errors (timeout, rate limit, 5xx, connection)
    - Task deadline exceeded
    - httpx transport errors and temporary server errors (500, 502, 503, 504)

    Non-retryable errors:
    - Not found / authentication errors
    - Persistence and reconciliation errors
    - Anything else not known to be transient
    """
    if isinstance(exception, ProviderError):
        return exception.transient

    if isinstance(exception, (DatabaseError, ReconciliationError, RetryExhaustedError)):
        return False

    if isinstance(exception, TaskTimeoutError):
        return True

    if isinstance(exception, (httpx.TransportError, ConnectionError, asyncio.TimeoutError)):
        return True

    if isinstance(exception, httpx.HTTPStatusError):
        return exception.response.status_code in (500, 502, 503, 504)

    return False


async def retry(
    operation: Callable[[], Awaitable[T]],
    max_attempts: Optional[int] = None,
    initial_delay: Optional[float] = None,
    *,
    max_delay: Optional[float] = None,
    retry_on: Callable[[BaseException], bool] = is_retryable_error,
    label: Optional[str] = None,
) -> T:
    """
    Run ``operation`` up to ``max_attempts`` times.

    The first success is returned immediately. Errors rejected by
    ``retry_on`` propagate unchanged on the attempt that raised them. When
    every attempt fails with a retryable error, ``RetryExhaustedError`` is
    raised with the last error as its cause.

    Args:
        operation: Zero-argument coroutine function; must be idempotent
        max_attempts: Total attempts (default: settings.retry_max_attempts)
        initial_delay: Seconds before the second attempt (default: settings)
        max_delay: Upper bound on a single wait
        retry_on: Predicate selecting retryable errors
        label: Name used in log messages
    """
    max_attempts = max_attempts if max_attempts is not None else settings.retry_max_attempts
    initial_delay = initial_delay if initial_delay is not None else settings.retry_initial_delay
    max_delay = max_delay if max_delay is not None else settings.retry_max_delay
    if max_attempts < 1:
        raise ValueError("max_attempts must be >= 1")

    retrying = AsyncRetrying(
        retry=retry_if_exception(retry_on),
        stop=stop_after_attempt(max_attempts),
        wait=wait_exponential(multiplier=initial_delay, max=max_delay)
        + wait_random(0, initial_delay * JITTER_RATIO),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True,
    )

    try:
        async for attempt in retrying:
            with attempt:
                return await operation()
    except Exception as exc:
        if not retry_on(exc):
            raise
        attempts = retrying.statistics.get("attempt_number", max_attempts)
        logger.error(
            f"All {attempts} attempts failed for {label or getattr(operation, '__name__', 'operation')}: {exc}"
        )
        raise RetryExhaustedError(attempts, exc) from exc

    # Unreachable: AsyncRetrying either returns or raises.
    raise RuntimeError("retry loop exited without a result")

