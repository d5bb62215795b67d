"""
Tests for the rate limiter.

Tests batching, spacing between batches, error isolation and queue clearing.
"""

import asyncio
import functools

import pytest

from relmap.exceptions import QueueClearedError
from relmap.utils.rate_limiter import RateLimiter

# asyncio timers may fire up to one clock tick early
TIMER_SLACK = 0.005


class TestRateLimiter:
    """Tests for RateLimiter."""

    def test_rejects_bad_settings(self):
        """Test invalid limiter settings raise."""
        with pytest.raises(ValueError):
            RateLimiter(min_delay=0.1, max_concurrent=0)
        with pytest.raises(ValueError):
            RateLimiter(min_delay=-1, max_concurrent=1)

    @pytest.mark.asyncio
    async def test_returns_task_result(self):
        """Test callers get their own result."""
        limiter = RateLimiter(min_delay=0, max_concurrent=2)

        async def task():
            return "done"

        assert await limiter.execute(task) == "done"
        assert limiter.queue_size == 0

    @pytest.mark.asyncio
    async def test_twelve_tasks_run_in_spaced_batches(self):
        """Twelve tasks with at most five per batch need at least three spaced batches."""
        limiter = RateLimiter(min_delay=0.05, max_concurrent=5)
        loop = asyncio.get_running_loop()
        starts = []

        async def task(i):
            starts.append(loop.time())
            await asyncio.sleep(0)
            return i

        results = await asyncio.gather(
            *(limiter.execute(functools.partial(task, i)) for i in range(12))
        )

        assert results == list(range(12))
        assert limiter.batches_dispatched >= 3

        starts.sort()
        batch_starts = [starts[0], starts[5], starts[10]]
        assert batch_starts[1] - batch_starts[0] >= 0.05 - TIMER_SLACK
        assert batch_starts[2] - batch_starts[1] >= 0.05 - TIMER_SLACK

    @pytest.mark.asyncio
    async def test_never_exceeds_max_concurrent(self):
        """Test concurrency stays within the limit."""
        limiter = RateLimiter(min_delay=0, max_concurrent=3)
        in_flight = 0
        peak = 0

        async def task():
            nonlocal in_flight, peak
            in_flight += 1
            peak = max(peak, in_flight)
            await asyncio.sleep(0.01)
            in_flight -= 1

        await asyncio.gather(*(limiter.execute(task) for _ in range(10)))

        assert peak <= 3

    @pytest.mark.asyncio
    async def test_failing_task_rejects_only_its_caller(self):
        """Test a failure only affects its own caller."""
        limiter = RateLimiter(min_delay=0, max_concurrent=5)

        async def ok():
            return 1

        async def boom():
            raise RuntimeError("boom")

        results = await asyncio.gather(
            limiter.execute(ok),
            limiter.execute(boom),
            limiter.execute(ok),
            return_exceptions=True,
        )

        assert results[0] == 1
        assert isinstance(results[1], RuntimeError)
        assert results[2] == 1

    @pytest.mark.asyncio
    async def test_clear_queue_rejects_pending_callers(self):
        """Test clearing the queue rejects waiting callers."""
        limiter = RateLimiter(min_delay=0.2, max_concurrent=1)

        async def task(i):
            return i

        pending = [
            asyncio.ensure_future(limiter.execute(functools.partial(task, i)))
            for i in range(3)
        ]
        await asyncio.sleep(0.02)

        assert limiter.queue_size == 2
        limiter.clear_queue()
        assert limiter.queue_size == 0

        assert await pending[0] == 0
        for future in pending[1:]:
            with pytest.raises(QueueClearedError, match="Queue cleared"):
                await future

    @pytest.mark.asyncio
    async def test_rearms_after_queue_drains(self):
        """Test the limiter restarts after going idle."""
        limiter = RateLimiter(min_delay=0, max_concurrent=1)

        async def task():
            return "again"

        assert await limiter.execute(task) == "again"
        assert await limiter.execute(task) == "again"
        assert limiter.batches_dispatched == 2
