"""
Rate-limited write loop for the benchmark.
"""

import asyncio
import logging
import random
from typing import Optional

from common.atomic import AtomicCounter, BenchCounters
from common.rate_limiter import RateLimiter
from common.record_factory import Record
from configuration import ORDERING_KEY_PREFIX
from systems.base import BufferedProducer

logger = logging.getLogger(__name__)


class ProducerLoop:
    """Generates write pressure at a steady rate and tracks write outcomes."""

    def __init__(
        self,
        producer: BufferedProducer,
        rate_limiter: RateLimiter,
        record: Record,
        ordering_keys: int,
        counters: BenchCounters,
        rng: Optional[random.Random] = None,
    ):
        """Initialize the write loop.

        Args:
            producer: Buffered producer the records are written to
            rate_limiter: Limiter gating every write
            record: Record template; each write sends a copy with its own ordering key
            ordering_keys: Number of distinct ordering keys to spread writes over
            counters: Shared counters receiving success/failure increments
            rng: Random source for ordering key selection
        """
        if ordering_keys <= 0:
            raise ValueError(f"ordering_keys must be > 0, got {ordering_keys}")

        self.producer = producer
        self.rate_limiter = rate_limiter
        self.record = record
        self.ordering_keys = ordering_keys
        self.counters = counters
        self.rng = rng or random.Random()
        self.attempts = AtomicCounter()

    def next_ordering_key(self) -> str:
        return f"{ORDERING_KEY_PREFIX}{self.rng.randrange(self.ordering_keys)}"

    async def run(self, stop_event: asyncio.Event, max_writes: Optional[int] = None) -> int:
        """Write records until stopped.

        Suspends only at the rate limiter; write completion is observed
        through a callback and never awaited.

        Args:
            stop_event: Set to end the loop
            max_writes: Stop after this many write attempts (None = unbounded)

        Returns:
            Number of writes issued
        """
        issued = 0
        logger.info(
            f"Producer loop started: {self.rate_limiter.rate:.0f} records/s over "
            f"{self.ordering_keys} ordering keys"
        )

        while not stop_event.is_set():
            if max_writes is not None and issued >= max_writes:
                break

            await self.rate_limiter.acquire()
            if stop_event.is_set():
                break

            self.write_once()
            issued += 1

        logger.info(f"Producer loop stopped after {issued} writes")
        return issued

    def write_once(self) -> None:
        """Submit a single write and register its completion callback."""
        record = self.record.with_ordering_key(self.next_ordering_key())
        self.attempts.increment()
        try:
            future = self.producer.write(record)
        except Exception as e:
            logger.debug(f"Write rejected by transport: {e}")
            self.counters.failed.increment()
            return
        future.add_done_callback(self._on_write_done)

    def _on_write_done(self, future: asyncio.Future) -> None:
        if future.cancelled() or future.exception() is not None:
            self.counters.failed.increment()
        else:
            self.counters.success.increment()
