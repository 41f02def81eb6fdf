"""Minimum-spacing rate limiter for outbound provider calls."""

import asyncio
import time
from typing import Awaitable, Callable


class RateLimiter:
    """Spaces calls at least ``60 / requests_per_minute`` seconds apart.

    Callers are scheduled in arrival order: each ``acquire()`` reserves the
    next free slot under a lock, then sleeps until that slot outside the lock,
    so a burst of concurrent callers gets evenly spaced, strictly increasing
    call times. ``requests_per_minute`` of 0 or None disables limiting.
    """

    def __init__(
        self,
        requests_per_minute: int | None,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        if not requests_per_minute or requests_per_minute <= 0:
            self.min_interval = 0.0
        else:
            self.min_interval = 60.0 / requests_per_minute
        self._clock = clock
        self._sleep = sleep
        self._last_scheduled: float | None = None
        self._lock = asyncio.Lock()

    async def acquire(self) -> float:
        """Wait for the next slot and return the scheduled call time."""
        if self.min_interval <= 0:
            return self._clock()

        async with self._lock:
            now = self._clock()
            if self._last_scheduled is None:
                scheduled = now
            else:
                scheduled = max(self._last_scheduled + self.min_interval, now)
            self._last_scheduled = scheduled

        delay = scheduled - now
        if delay > 0:
            await self._sleep(delay)
        return scheduled
