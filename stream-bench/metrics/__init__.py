"""
Reporting for the stream benchmark.
"""

from .aggregator import MetricsAggregator
from .sample import ReportSample, ReportWindow

__all__ = ['MetricsAggregator', 'ReportSample', 'ReportWindow']
