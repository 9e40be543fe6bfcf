"""
Lock-free counters shared between producer callbacks, consumer workers
and the reporter.
"""

import itertools
import logging

logger = logging.getLogger(__name__)


class AtomicCounter:
    """Monotonic counter with atomic increments.

    ``next()`` on an ``itertools.count`` is a single C-level call and
    cannot interleave with another increment, so increments from any
    number of threads or tasks are never lost. Reads draw from a second
    count to discount the read itself.

    Atomicity comes from the GIL: on free-threaded builds (no GIL)
    increments can be lost. ``value()`` supports a single reader only
    (the reporter loop); concurrent readers can observe a wrong value.
    """

    def __init__(self):
        self._increments = itertools.count()
        self._reads = itertools.count()

    def increment(self) -> None:
        next(self._increments)

    def value(self) -> int:
        # Each read advances _increments once; _reads tracks how many.
        return next(self._increments) - next(self._reads)


class BenchCounters:
    """The benchmark's shared counters."""

    def __init__(self):
        self.success = AtomicCounter()
        self.failed = AtomicCounter()
        self.fetched = AtomicCounter()
        self.ack_failed = AtomicCounter()

    def snapshot(self) -> dict:
        return {
            "success": self.success.value(),
            "failed": self.failed.value(),
            "fetched": self.fetched.value(),
            "ack_failed": self.ack_failed.value(),
        }
