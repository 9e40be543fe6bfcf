"""
Common utilities for the stream benchmark.
"""

from .atomic import AtomicCounter, BenchCounters
from .bench_config import BenchConfig
from .rate_limiter import RateLimiter

__all__ = ['AtomicCounter', 'BenchCounters', 'BenchConfig', 'RateLimiter']
