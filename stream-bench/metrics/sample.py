"""
Data structures for periodic benchmark reports.
"""

from dataclasses import dataclass


@dataclass(frozen=True)
class ReportSample:
    """Point-in-time read of the benchmark counters."""

    timestamp_ms: int
    success: int
    failed: int
    fetched: int


@dataclass(frozen=True)
class ReportWindow:
    """Rates between two consecutive samples."""

    duration_ms: int
    success_per_second: float
    failure_per_second: float
    throughput_mb: float
    fetch_throughput_mb: float
    success: int
    failed: int
    fetched: int
