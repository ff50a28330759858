"""
Bounded-concurrency batch execution.

A fixed pool of worker coroutines pulls items from a queue, so no more than
``max_concurrency`` operations are ever in flight no matter how many items
are submitted. Results come back index-aligned with the input and one
failing item never cancels the others.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Generic, Iterable, List, Optional, TypeVar

logger = logging.getLogger(__name__)

ItemT = TypeVar("ItemT")
ResultT = TypeVar("ResultT")


@dataclass
class TaskOutcome(Generic[ItemT, ResultT]):
    """Result of one task in a batch."""
    item: ItemT
    value: Optional[ResultT] = None
    error: Optional[BaseException] = None
    elapsed_ms: float = 0.0

    @property
    def ok(self) -> bool:
        return self.error is None


class ConcurrencyManager:
    """
    Runs async functions over a batch of items with a concurrency cap.

    Attributes:
        in_flight: Number of operations currently running
        peak_in_flight: Highest ``in_flight`` observed since creation
    """

    def __init__(self, max_concurrency: int):
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be >= 1")
        self.max_concurrency = max_concurrency
        self.in_flight = 0
        self.peak_in_flight = 0

    async def execute_batch(
        self,
        items: Iterable[ItemT],
        fn: Callable[[ItemT], Awaitable[ResultT]],
        max_concurrency: Optional[int] = None,
    ) -> List[TaskOutcome[ItemT, ResultT]]:
        """
        Apply ``fn`` to every item, at most ``max_concurrency`` at a time.

        Args:
            items: Inputs, one task each
            fn: Async function applied to each item
            max_concurrency: Cap for this call only; defaults to the manager's

        Returns:
            One ``TaskOutcome`` per item, in input order
        """
        limit = self.max_concurrency if max_concurrency is None else max_concurrency
        if limit < 1:
            raise ValueError("max_concurrency must be >= 1")

        items = list(items)
        outcomes: List[Any] = [None] * len(items)
        if not items:
            return []

        queue: asyncio.Queue = asyncio.Queue()
        for index, item in enumerate(items):
            queue.put_nowait((index, item))

        async def worker() -> None:
            while True:
                try:
                    index, item = queue.get_nowait()
                except asyncio.QueueEmpty:
                    return

                self.in_flight += 1
                self.peak_in_flight = max(self.peak_in_flight, self.in_flight)
                start = time.perf_counter()
                try:
                    value = await fn(item)
                    outcomes[index] = TaskOutcome(
                        item=item,
                        value=value,
                        elapsed_ms=(time.perf_counter() - start) * 1000,
                    )
                except Exception as e:
                    logger.debug(f"Task for {item!r} failed: {e}")
                    outcomes[index] = TaskOutcome(
                        item=item,
                        error=e,
                        elapsed_ms=(time.perf_counter() - start) * 1000,
                    )
                finally:
                    self.in_flight -= 1

        workers = [
            asyncio.create_task(worker())
            for _ in range(min(limit, len(items)))
        ]
        await asyncio.gather(*workers)
        return outcomes
