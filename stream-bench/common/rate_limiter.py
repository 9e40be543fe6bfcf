"""
Async token-bucket rate limiter for the write loop.
"""

import asyncio
import time
import logging
from typing import Awaitable, Callable, Optional

from configuration import RATE_LIMIT_BURST_SECONDS

logger = logging.getLogger(__name__)


class RateLimiter:
    """Smooth bursty rate limiter.

    Permits are issued at a steady ``rate`` per second. While the limiter
    is idle it stores up to ``rate * burst_seconds`` permits, which later
    callers can take without waiting. A caller that finds no stored
    permit reserves the next free slot and sleeps until it arrives, so
    over any long window acquisitions converge to ``rate``.
    """

    def __init__(
        self,
        rate: float,
        burst_seconds: float = RATE_LIMIT_BURST_SECONDS,
        clock: Optional[Callable[[], float]] = None,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
    ):
        """Initialize the rate limiter.

        Args:
            rate: Permits per second, must be positive
            burst_seconds: Seconds worth of permits stored while idle
            clock: Monotonic clock in seconds (default: time.monotonic)
            sleep: Coroutine function used to wait (default: asyncio.sleep)
        """
        if rate <= 0:
            raise ValueError(f"rate must be > 0, got {rate}")
        if burst_seconds < 0:
            raise ValueError(f"burst_seconds must be >= 0, got {burst_seconds}")

        self._clock = clock or time.monotonic
        self._sleep = sleep or asyncio.sleep
        self._rate = float(rate)
        self._interval = 1.0 / self._rate
        self._max_permits = self._rate * burst_seconds
        self._stored_permits = 0.0
        self._next_free = self._clock()

        logger.info(f"Initialized RateLimiter at {rate} permits/s (burst {self._max_permits:.0f})")

    @property
    def rate(self) -> float:
        return self._rate

    @property
    def stored_permits(self) -> float:
        return self._stored_permits

    def _resync(self, now: float) -> None:
        """Credit permits accumulated since the last free slot."""
        if now > self._next_free:
            idle_permits = (now - self._next_free) / self._interval
            self._stored_permits = min(self._max_permits, self._stored_permits + idle_permits)
            self._next_free = now

    def _reserve(self, permits: int, now: float) -> float:
        """Reserve permits and return how long the caller must wait."""
        self._resync(now)
        wait = max(self._next_free - now, 0.0)

        from_stored = min(float(permits), self._stored_permits)
        fresh = permits - from_stored
        self._stored_permits -= from_stored
        self._next_free += fresh * self._interval
        return wait

    async def acquire(self, permits: int = 1) -> float:
        """Wait until the requested permits are granted.

        Always yields to the event loop at least once, so a caller that
        never has to wait still lets other tasks run.

        Args:
            permits: Number of permits to take

        Returns:
            Seconds spent waiting for the permits
        """
        if permits <= 0:
            raise ValueError(f"permits must be > 0, got {permits}")

        wait = self._reserve(permits, self._clock())
        await self._sleep(wait)
        return wait

    def try_acquire(self, permits: int = 1) -> bool:
        """Take permits only if they are available without waiting."""
        if permits <= 0:
            raise ValueError(f"permits must be > 0, got {permits}")

        now = self._clock()
        self._resync(now)
        if self._next_free > now:
            return False
        self._reserve(permits, now)
        return True
