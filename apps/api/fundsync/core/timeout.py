"""
Deadline enforcement for async operations.

``with_timeout`` races an operation against a timer. On expiry the
operation's ``CancellationToken`` is cancelled, its task is cancelled
best-effort and the caller gets ``TaskTimeoutError``. The operation may still
be running its last statement when that happens, so anything it writes must
be idempotent.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Optional, TypeVar

from fundsync.core.exceptions import TaskTimeoutError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class OperationCancelled(asyncio.CancelledError):
    """Raised by ``CancellationToken.raise_if_cancelled``."""


class CancellationToken:
    """Cooperative cancellation flag handed to timed operations."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: Optional[str] = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "cancelled") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    def raise_if_cancelled(self) -> None:
        """Checkpoint for long-running operations."""
        if self._event.is_set():
            raise OperationCancelled(self.reason)

    async def wait(self) -> None:
        await self._event.wait()


def _consume_result(task: asyncio.Task) -> None:
    # An abandoned task may still fail after the deadline; retrieve its
    # exception so asyncio does not report it as never retrieved.
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.debug(f"Abandoned task finished with error: {exc!r}")


async def with_timeout(
    operation: Callable[[CancellationToken], Awaitable[T]],
    deadline_ms: float,
    *,
    label: Optional[str] = None,
) -> T:
    """
    Run ``operation(token)`` with a deadline of ``deadline_ms`` milliseconds.

    Raises:
        TaskTimeoutError: the deadline passed before the operation finished
    """
    if deadline_ms <= 0:
        raise ValueError("deadline_ms must be > 0")

    token = CancellationToken()
    task = asyncio.ensure_future(operation(token))

    try:
        done, _ = await asyncio.wait({task}, timeout=deadline_ms / 1000)
    except asyncio.CancelledError:
        token.cancel("caller cancelled")
        task.cancel()
        raise

    if task in done:
        return task.result()

    token.cancel("deadline exceeded")
    task.cancel()
    task.add_done_callback(_consume_result)
    logger.warning(f"Task {label or 'operation'} exceeded {deadline_ms:.0f}ms deadline")
    raise TaskTimeoutError(deadline_ms, label)
