"""
Rate limiter for outbound Web API calls.

Queues work and dispatches it in batches of at most `max_concurrent` tasks,
keeping at least `min_delay` seconds between batch starts. Every caller gets
its own future, so one failing task never affects its batch siblings.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Deque, Optional, TypeVar

from relmap.exceptions import QueueClearedError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class _QueuedRequest:
    task: Callable[[], Awaitable[Any]]
    future: asyncio.Future


class RateLimiter:
    """
    Batching, spacing rate limiter for a single event loop.

    Usage:
        limiter = RateLimiter(min_delay=0.05, max_concurrent=3)
        data = await limiter.execute(lambda: client.get_entity_definition("account"))
    """

    def __init__(self, min_delay: float = 0.05, max_concurrent: int = 5):
        """
        Args:
            min_delay: Minimum seconds between the start of two batches
            max_concurrent: Maximum number of tasks in flight per batch
        """
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be at least 1")
        if min_delay < 0:
            raise ValueError("min_delay must not be negative")

        self.min_delay = min_delay
        self.max_concurrent = max_concurrent

        self._queue: Deque[_QueuedRequest] = deque()
        self._drain_task: Optional[asyncio.Task] = None
        self._last_batch_start: Optional[float] = None
        self.batches_dispatched = 0

    @property
    def queue_size(self) -> int:
        return len(self._queue)

    async def execute(self, task: Callable[[], Awaitable[T]]) -> T:
        """Queue a task and wait for its own result."""
        loop = asyncio.get_running_loop()
        future = loop.create_future()
        self._queue.append(_QueuedRequest(task=task, future=future))
        self._arm()
        return await future

    def clear_queue(self) -> None:
        """Reject every pending caller with QueueClearedError."""
        pending = list(self._queue)
        self._queue.clear()
        for request in pending:
            if not request.future.done():
                request.future.set_exception(QueueClearedError())
        if pending:
            logger.debug(f"Cleared {len(pending)} queued requests")

    def _arm(self) -> None:
        if self._drain_task is None or self._drain_task.done():
            self._drain_task = asyncio.ensure_future(self._drain())

    async def _drain(self) -> None:
        loop = asyncio.get_running_loop()

        while self._queue:
            batch = [self._queue.popleft() for _ in range(min(self.max_concurrent, len(self._queue)))]

            if self._last_batch_start is not None:
                wait = self.min_delay - (loop.time() - self._last_batch_start)
                if wait > 0:
                    await asyncio.sleep(wait)

            self._last_batch_start = loop.time()
            self.batches_dispatched += 1
            logger.debug(
                f"Dispatching batch {self.batches_dispatched} with {len(batch)} tasks "
                f"({len(self._queue)} still queued)"
            )

            await asyncio.gather(*(self._run(request) for request in batch))

            # Re-arm after the minimum delay when work is left
            if self._queue:
                await asyncio.sleep(self.min_delay)

    @staticmethod
    async def _run(request: _QueuedRequest) -> None:
        if request.future.done():
            return
        try:
            result = await request.task()
        except asyncio.CancelledError:
            if not request.future.done():
                request.future.cancel()
            raise
        except Exception as e:
            if not request.future.done():
                request.future.set_exception(e)
        else:
            if not request.future.done():
                request.future.set_result(result)
