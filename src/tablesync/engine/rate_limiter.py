"""
Per-service request spacing.

Each external service gets its own RateLimiter instance, owned by the caller
and injected wherever that service is called. Calls through one instance are
started in FIFO order, at least 1 / requests_per_second apart. Only the start
is serialised: once an operation has been released it runs concurrently with
whatever is admitted after it.
"""
import asyncio
import logging
import time
from typing import Awaitable, Callable, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RateLimiter:
    def __init__(
        self,
        requests_per_second: float,
        *,
        name: str = "",
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        """
        Args:
            requests_per_second: maximum start rate. Must be positive.
            name: service name, used in log lines only.
            clock: monotonic clock in seconds (injectable for tests).
            sleep: coroutine used to wait (injectable for tests).
        """
        if requests_per_second <= 0:
            raise ValueError("requests_per_second must be positive")
        self.requests_per_second = requests_per_second
        self.min_interval = 1.0 / requests_per_second
        self.name = name
        self._clock = clock
        self._sleep = sleep
        self._last_start: Optional[float] = None
        # asyncio.Lock wakes waiters in acquisition order, which gives FIFO admission
        self._lock = asyncio.Lock()

    async def execute(self, operation: Callable[[], Awaitable[T]]) -> T:
        """Wait for this caller's slot, then run operation and return its result."""
        await self._acquire()
        return await operation()

    async def _acquire(self) -> None:
        async with self._lock:
            now = self._clock()
            if self._last_start is not None:
                wait = self._last_start + self.min_interval - now
                if wait > 0:
                    logger.debug("Rate limiter %s waiting %.3fs", self.name, wait)
                    await self._sleep(wait)
                    now = max(self._clock(), self._last_start + self.min_interval)
            self._last_start = now
