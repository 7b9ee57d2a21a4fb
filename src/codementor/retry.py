"""
Retry policy shared by the content fetcher and the persistence layer.

A policy is parameterized by an attempt ceiling, a base delay and a
predicate deciding which errors deserve another attempt. The delay before
attempt ``n + 1`` is ``base_delay * 2 ** (n - 1)``.
"""

import asyncio
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import TypeVar

from .errors import is_retryable
from .logging import get_logger

T = TypeVar("T")

logger = get_logger("retry")


@dataclass
class RetryPolicy:
    """Exponential backoff with a fixed attempt ceiling."""

    max_attempts: int = 3
    base_delay: float = 1.0
    retryable: Callable[[BaseException], bool] = is_retryable
    sleep: Callable[[float], None] = field(default=time.sleep, repr=False)
    async_sleep: Callable[[float], Awaitable[None]] = field(
        default=asyncio.sleep, repr=False
    )

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.base_delay < 0:
            raise ValueError("base_delay cannot be negative")

    def delay_for(self, attempt: int) -> float:
        """Delay to wait after the given (1-based) failed attempt."""
        return self.base_delay * (2 ** (attempt - 1))

    def call(self, operation: Callable[[], T], description: str = "operation") -> T:
        """Run a blocking operation under this policy.

        Raises:
            The last error once attempts are exhausted, or the first error
            the predicate rejects.
        """
        attempt = 0
        while True:
            attempt += 1
            try:
                return operation()
            except Exception as e:
                if not self._should_retry(e, attempt, description):
                    raise
                self.sleep(self.delay_for(attempt))

    async def acall(
        self, operation: Callable[[], Awaitable[T]], description: str = "operation"
    ) -> T:
        """Async counterpart of :meth:`call`."""
        attempt = 0
        while True:
            attempt += 1
            try:
                return await operation()
            except Exception as e:
                if not self._should_retry(e, attempt, description):
                    raise
                await self.async_sleep(self.delay_for(attempt))

    def _should_retry(self, error: Exception, attempt: int, description: str) -> bool:
        if not self.retryable(error):
            return False
        if attempt >= self.max_attempts:
            logger.warning(
                "%s failed after %d attempts: %s", description, attempt, error
            )
            return False
        logger.debug(
            "%s failed (attempt %d/%d): %s",
            description,
            attempt,
            self.max_attempts,
            error,
        )
        return True
