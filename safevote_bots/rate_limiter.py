"""Process-wide request spacing for backend calls."""

import asyncio
import logging
import time
from typing import Awaitable, Callable, Optional

logger = logging.getLogger(__name__)


class RateLimiter:
    """
    Fixed-spacing limiter (a token bucket of size one).

    Callers acquire a slot before each request; consecutive slots are at
    least `min_interval` seconds apart no matter how many tasks share the
    limiter. The lock is held across the spacing sleep so waiting callers
    queue up in order.
    """

    def __init__(
        self,
        min_interval: float,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.min_interval = max(0.0, min_interval)
        self._clock = clock
        self._sleep = sleep
        self._lock = asyncio.Lock()
        self._last: Optional[float] = None
        self.request_count = 0
        self.total_wait = 0.0

    async def acquire(self) -> None:
        async with self._lock:
            now = self._clock()
            if self._last is not None:
                wait = self._last + self.min_interval - now
                if wait > 0:
                    logger.debug(f"Rate limiting: waiting {wait:.2f}s")
                    self.total_wait += wait
                    await self._sleep(wait)
                    now = self._clock()
            self._last = now
            self.request_count += 1

    async def __aenter__(self) -> 'RateLimiter':
        await self.acquire()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        return None
