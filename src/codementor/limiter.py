"""
Concurrency limiter for outbound requests to the repository host.

Bounds how many tasks are in flight at once. It does not shape throughput
over time; rate-limit headroom is checked separately before bulk work.
"""

import asyncio
from collections import deque
from collections.abc import Awaitable, Callable
from typing import TypeVar

T = TypeVar("T")


class ConcurrencyLimiter:
    """
    FIFO admission gate allowing at most ``concurrency`` running tasks.

    Tasks that arrive while every slot is taken wait in arrival order. When
    a running task finishes, successfully or not, its slot is handed
    directly to the oldest waiter.
    """

    def __init__(self, concurrency: int = 5):
        """
        Initialize the limiter.

        Args:
            concurrency: Maximum number of simultaneously running tasks
        """
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        self.concurrency = concurrency
        self._active = 0
        self._waiters: deque[asyncio.Future[None]] = deque()

    @property
    def active(self) -> int:
        """Number of tasks currently holding a slot."""
        return self._active

    @property
    def pending(self) -> int:
        """Number of tasks queued for a slot."""
        return sum(1 for waiter in self._waiters if not waiter.done())

    async def limit(self, task: Callable[[], Awaitable[T]]) -> T:
        """
        Run a deferred task once a slot is free.

        Args:
            task: Zero-argument callable returning an awaitable

        Returns:
            Whatever the task returns; its exceptions propagate unchanged
        """
        await self._acquire()
        try:
            return await task()
        finally:
            self._release()

    async def _acquire(self) -> None:
        if self._active < self.concurrency and not self._waiters:
            self._active += 1
            return

        waiter: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        self._waiters.append(waiter)
        try:
            await waiter
        except asyncio.CancelledError:
            if waiter.done() and not waiter.cancelled():
                # The slot was handed over just before cancellation.
                self._release()
            elif waiter in self._waiters:
                self._waiters.remove(waiter)
            raise

    def _release(self) -> None:
        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                # Hand the slot over; the active count stays the same.
                waiter.set_result(None)
                return
        self._active -= 1
