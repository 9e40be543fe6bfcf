"""
Metrics aggregator turning the shared counters into windowed rates.
"""

import asyncio
import time
import logging
from typing import Callable, Optional, Tuple

from common.atomic import BenchCounters
from configuration import BYTES_PER_KB, MILLIS_PER_SECOND
from metrics.sample import ReportSample, ReportWindow

logger = logging.getLogger(__name__)


def monotonic_ms() -> int:
    return int(time.monotonic() * MILLIS_PER_SECOND)


class MetricsAggregator:
    """Samples counters on a fixed cadence and computes rates between samples.

    The aggregator is the only reader of the counters and keeps exactly
    one previous sample; every report replaces it.
    """

    def __init__(
        self,
        counters: BenchCounters,
        record_size: int,
        clock: Optional[Callable[[], int]] = None,
        exporter=None,
    ):
        """Initialize the metrics aggregator.

        Args:
            counters: Shared benchmark counters
            record_size: Configured record size in bytes, used for throughput
            clock: Millisecond clock (default: monotonic milliseconds)
            exporter: Optional Prometheus exporter updated on every report
        """
        self.counters = counters
        self.record_size = record_size
        self.clock = clock or monotonic_ms
        self.exporter = exporter
        self.reports = 0
        self.previous: ReportSample = self.sample()

        logger.info(f"Initialized MetricsAggregator (record size {record_size} bytes)")

    def sample(self) -> ReportSample:
        """Read the current timestamp and every counter."""
        return ReportSample(
            timestamp_ms=self.clock(),
            success=self.counters.success.value(),
            failed=self.counters.failed.value(),
            fetched=self.counters.fetched.value(),
        )

    def reset(self) -> None:
        """Start the next window now."""
        self.previous = self.sample()

    @staticmethod
    def compute_window(previous: ReportSample, current: ReportSample, record_size: int) -> ReportWindow:
        """Compute rates between two samples.

        Rates are ``delta * 1000 / elapsed_ms``; throughputs additionally
        multiply by the record size and divide by 1024 twice for MB/s.
        A window with no elapsed time reports zero rates.

        Args:
            previous: Earlier sample
            current: Later sample
            record_size: Record size in bytes

        Returns:
            ReportWindow with non-negative rates
        """
        duration_ms = current.timestamp_ms - previous.timestamp_ms
        success = max(current.success - previous.success, 0)
        failed = max(current.failed - previous.failed, 0)
        fetched = max(current.fetched - previous.fetched, 0)

        if duration_ms <= 0:
            return ReportWindow(
                duration_ms=max(duration_ms, 0),
                success_per_second=0.0,
                failure_per_second=0.0,
                throughput_mb=0.0,
                fetch_throughput_mb=0.0,
                success=success,
                failed=failed,
                fetched=fetched,
            )

        return ReportWindow(
            duration_ms=duration_ms,
            success_per_second=success * MILLIS_PER_SECOND / duration_ms,
            failure_per_second=failed * MILLIS_PER_SECOND / duration_ms,
            throughput_mb=success * record_size * MILLIS_PER_SECOND / duration_ms / BYTES_PER_KB / BYTES_PER_KB,
            fetch_throughput_mb=fetched * record_size * MILLIS_PER_SECOND / duration_ms / BYTES_PER_KB / BYTES_PER_KB,
            success=success,
            failed=failed,
            fetched=fetched,
        )

    @staticmethod
    def format_lines(window: ReportWindow) -> Tuple[str, str]:
        """Render a window as the append and fetch report lines."""
        append_line = (
            f"[Append]: success {window.success_per_second:f} record/s, "
            f"failed {window.failure_per_second:f} record/s, "
            f"throughput {window.throughput_mb:f} MB/s"
        )
        fetch_line = f"[Fetch]: throughput {window.fetch_throughput_mb:f} MB/s"
        return append_line, fetch_line

    def report(self) -> ReportWindow:
        """Sample the counters and compute the window since the previous report."""
        current = self.sample()
        window = self.compute_window(self.previous, current, self.record_size)
        self.previous = current
        self.reports += 1

        if window.failed > 0 and window.success == 0:
            logger.warning(
                f"All {window.failed} writes in the last {window.duration_ms} ms failed"
            )

        if self.exporter is not None:
            self.exporter.update(window, self.counters.ack_failed.value())

        return window

    async def run(
        self,
        interval_seconds: float,
        stop_event: asyncio.Event,
        out: Callable[[str], None] = print,
    ) -> int:
        """Report every interval until stopped.

        Args:
            interval_seconds: Seconds between reports
            stop_event: Set to end the loop; wakes the loop immediately
            out: Sink for the report lines (default: print to stdout)

        Returns:
            Number of reports emitted
        """
        emitted = 0
        while not stop_event.is_set():
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=interval_seconds)
                break
            except asyncio.TimeoutError:
                pass

            append_line, fetch_line = self.format_lines(self.report())
            out(append_line)
            out(fetch_line)
            emitted += 1

        return emitted
