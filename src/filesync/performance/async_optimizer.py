"""Pacing and bounded concurrency for async backend work."""

import asyncio
import time
from typing import List, Callable, Optional, TypeVar, Union, Awaitable
from contextlib import asynccontextmanager

from ..utils.logging import get_logger


T = TypeVar('T')


class AsyncRateLimiter:
    """Sliding window rate limiter for async operations."""

    def __init__(self, max_calls: int, time_window: float):
        """Initialize rate limiter.

        Args:
            max_calls: Maximum number of calls in the time window
            time_window: Time window in seconds
        """
        self.max_calls = max_calls
        self.time_window = time_window
        self.calls: List[float] = []
        self.lock = asyncio.Lock()

        self.logger = get_logger(self.__class__.__name__)

    async def acquire(self):
        """Wait until a call is allowed, then record it."""
        while True:
            async with self.lock:
                now = time.monotonic()
                self.calls = [t for t in self.calls if now - t < self.time_window]

                if len(self.calls) < self.max_calls:
                    self.calls.append(now)
                    return

                wait_time = self.time_window - (now - min(self.calls))

            self.logger.debug("Rate limit reached, waiting", wait_seconds=round(wait_time, 2))
            await asyncio.sleep(max(wait_time, 0.0))

    @asynccontextmanager
    async def limit(self):
        """Context manager for rate limiting."""
        await self.acquire()
        yield


class ConcurrentExecutor:
    """Runs batches of coroutines with a concurrency ceiling."""

    def __init__(
        self,
        max_concurrent: int = 10,
        rate_limit_calls: Optional[int] = None,
        rate_limit_window: Optional[float] = None
    ):
        """Initialize concurrent executor.

        Args:
            max_concurrent: Maximum concurrent operations
            rate_limit_calls: Rate limit - max calls per window
            rate_limit_window: Rate limit - time window in seconds
        """
        self.max_concurrent = max_concurrent
        self.semaphore = asyncio.Semaphore(max_concurrent)

        self.rate_limiter = None
        if rate_limit_calls and rate_limit_window:
            self.rate_limiter = AsyncRateLimiter(rate_limit_calls, rate_limit_window)

        self.logger = get_logger(self.__class__.__name__)

    async def _run(self, task_func: Callable[[], Awaitable[T]]) -> T:
        async with self.semaphore:
            if self.rate_limiter:
                async with self.rate_limiter.limit():
                    return await task_func()
            return await task_func()

    async def execute_batch(
        self,
        tasks: List[Callable[[], Awaitable[T]]],
        return_exceptions: bool = False
    ) -> List[Union[T, BaseException]]:
        """Execute a batch of async tasks concurrently.

        Args:
            tasks: List of async callables
            return_exceptions: Whether to return exceptions instead of raising

        Returns:
            Results in the order of ``tasks``
        """
        results = await asyncio.gather(
            *(self._run(task) for task in tasks),
            return_exceptions=return_exceptions
        )

        self.logger.debug(
            "Batch execution completed",
            total_tasks=len(tasks),
            successful=len([r for r in results if not isinstance(r, BaseException)])
        )

        return results
