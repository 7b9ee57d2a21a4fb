"""
Tests for the concurrency limiter.
"""

import asyncio

import pytest
from codementor.limiter import ConcurrencyLimiter


class TestConcurrencyLimiter:
    """Test admission, ordering and failure handling."""

    def test_rejects_non_positive_concurrency(self):
        with pytest.raises(ValueError):
            ConcurrencyLimiter(0)

    def test_peak_concurrency_never_exceeds_limit(self):
        """Submit 100 tasks at once with N=5 and track the peak."""
        limiter = ConcurrencyLimiter(5)
        running = 0
        peak = 0

        async def task(value: int) -> int:
            nonlocal running, peak
            running += 1
            peak = max(peak, running)
            await asyncio.sleep(0.001)
            running -= 1
            return value * 2

        async def main() -> list[int]:
            return await asyncio.gather(
                *(limiter.limit(lambda v=v: task(v)) for v in range(100))
            )

        results = asyncio.run(main())

        assert results == [v * 2 for v in range(100)]
        assert peak <= 5
        assert peak == 5
        assert limiter.active == 0
        assert limiter.pending == 0

    def test_queued_tasks_start_in_fifo_order(self):
        limiter = ConcurrencyLimiter(1)
        started: list[int] = []

        async def task(value: int) -> None:
            started.append(value)
            await asyncio.sleep(0)

        async def main() -> None:
            await asyncio.gather(*(limiter.limit(lambda v=v: task(v)) for v in range(10)))

        asyncio.run(main())
        assert started == list(range(10))

    def test_failing_task_frees_its_slot(self):
        """A failure must not deadlock the queue behind it."""
        limiter = ConcurrencyLimiter(1)
        completed: list[int] = []

        async def task(value: int) -> int:
            await asyncio.sleep(0)
            if value % 2 == 0:
                raise RuntimeError(f"task {value} failed")
            completed.append(value)
            return value

        async def main() -> list:
            return await asyncio.gather(
                *(limiter.limit(lambda v=v: task(v)) for v in range(6)),
                return_exceptions=True,
            )

        results = asyncio.run(main())

        assert completed == [1, 3, 5]
        assert [isinstance(r, RuntimeError) for r in results] == [
            True, False, True, False, True, False
        ]
        assert limiter.active == 0

    def test_exception_propagates_unchanged(self):
        limiter = ConcurrencyLimiter(2)

        async def boom() -> None:
            raise KeyError("missing")

        with pytest.raises(KeyError):
            asyncio.run(limiter.limit(boom))

    def test_active_and_pending_counts(self):
        limiter = ConcurrencyLimiter(2)
        observed: list[tuple[int, int]] = []

        async def main() -> None:
            release = asyncio.Event()

            async def task() -> None:
                await release.wait()

            tasks = [asyncio.create_task(limiter.limit(task)) for _ in range(5)]
            await asyncio.sleep(0.01)
            observed.append((limiter.active, limiter.pending))
            release.set()
            await asyncio.gather(*tasks)
            observed.append((limiter.active, limiter.pending))

        asyncio.run(main())
        assert observed == [(2, 3), (0, 0)]
