"""
Tests for the write/read benchmark runner.
"""

import unittest
import sys
import os
import asyncio

# Add the parent directory to Python path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from cli.benchmark import BenchmarkRunner, SetupError
from common.bench_config import BenchConfig
from configuration import BATCH_RECORD_COUNT_LIMIT
from systems.memory import MemoryStreamSystem


class UnreachableSystem(MemoryStreamSystem):
    async def connect(self):
        raise ConnectionError("connection refused")


class ReadOnlySystem(MemoryStreamSystem):
    async def create_stream(self, name, replication_factor, backlog_seconds, partitions=1):
        raise PermissionError("not allowed to create streams")


def _config(**overrides):
    values = dict(
        service_url="memory://",
        record_size=128,
        rate_limit=1000,
        report_interval_seconds=1,
        consumer_count=2,
        ordering_keys=4,
    )
    values.update(overrides)
    return BenchConfig(**values)


class TestBenchmarkRunner(unittest.IsolatedAsyncioTestCase):
    """Test a complete benchmark run against the in-memory service."""

    async def test_run_reports_and_counts(self):
        """A timed run emits report pairs, writes without failures and reads back."""
        lines = []
        system = MemoryStreamSystem()
        runner = BenchmarkRunner(_config(duration_seconds=2), system=system, out=lines.append)

        summary = await asyncio.wait_for(runner.run_benchmark(), timeout=10)

        self.assertGreaterEqual(summary["reports"], 1)
        self.assertEqual(len(lines), 2 * summary["reports"])
        self.assertTrue(all(line.startswith("[Append]: ") for line in lines[0::2]))
        self.assertTrue(all(line.startswith("[Fetch]: ") for line in lines[1::2]))

        self.assertEqual(summary["failed"], 0)
        self.assertGreater(summary["success"], 100)
        self.assertLessEqual(summary["success"], summary["attempts"])
        self.assertLessEqual(summary["attempts"], 1000 * 3)
        self.assertGreater(summary["fetched"], 0)
        self.assertTrue(summary["stream_name"].startswith("write_bench_stream_"))

        # Resources are kept unless deletion was requested
        self.assertIn(runner.stream_name, system.streams)

    async def test_single_consumer_keeps_up(self):
        """At 1000 records/s for 5 s one consumer reads back nearly everything written."""
        runner = BenchmarkRunner(
            _config(record_size=1024, consumer_count=1, duration_seconds=5),
            system=MemoryStreamSystem(),
            out=lambda line: None,
        )

        summary = await asyncio.wait_for(runner.run_benchmark(), timeout=15)

        expected = 1000 * 5
        self.assertEqual(summary["failed"], 0)
        self.assertGreaterEqual(summary["success"], 0.9 * expected)
        self.assertGreaterEqual(summary["fetched"], 0.9 * expected)
        self.assertLessEqual(summary["fetched"], summary["success"])
        self.assertEqual(runner.producer.batch_setting.record_count_limit, BATCH_RECORD_COUNT_LIMIT)

    async def test_injected_failures(self):
        """Every write outcome is counted exactly once."""
        system = MemoryStreamSystem(fail_every=10)
        runner = BenchmarkRunner(_config(), system=system, out=lambda line: None)
        asyncio.get_running_loop().call_later(0.5, runner.stop)

        summary = await asyncio.wait_for(runner.run_benchmark(), timeout=5)

        self.assertGreater(summary["attempts"], 0)
        self.assertEqual(summary["failed"], summary["attempts"] // 10)
        self.assertEqual(summary["success"] + summary["failed"], summary["attempts"])

    async def test_delete_stream(self):
        system = MemoryStreamSystem()
        runner = BenchmarkRunner(_config(delete_stream=True), system=system, out=lambda line: None)
        asyncio.get_running_loop().call_later(0.3, runner.stop)

        await asyncio.wait_for(runner.run_benchmark(), timeout=5)

        self.assertEqual(system.streams, {})
        self.assertEqual(system.subscriptions, {})

    async def test_stop_returns_promptly(self):
        """Stopping does not wait for the report interval."""
        runner = BenchmarkRunner(
            _config(report_interval_seconds=60), system=MemoryStreamSystem(), out=lambda line: None
        )
        asyncio.get_running_loop().call_later(0.2, runner.stop)

        summary = await asyncio.wait_for(runner.run_benchmark(), timeout=5)
        self.assertEqual(summary["reports"], 0)

    async def test_connect_failure(self):
        runner = BenchmarkRunner(_config(), system=UnreachableSystem(), out=lambda line: None)
        with self.assertRaises(SetupError):
            await runner.run_benchmark()

    async def test_create_stream_failure(self):
        """Nothing is measured when the stream cannot be created."""
        lines = []
        runner = BenchmarkRunner(_config(), system=ReadOnlySystem(), out=lines.append)

        with self.assertRaises(SetupError):
            await runner.run_benchmark()
        self.assertEqual(lines, [])
        self.assertIsNone(runner.producer_task)

    async def test_unique_names(self):
        first = BenchmarkRunner(_config(), system=MemoryStreamSystem())
        second = BenchmarkRunner(_config(), system=MemoryStreamSystem())
        self.assertNotEqual(first.stream_name, second.stream_name)
        self.assertNotEqual(first.subscription_id, second.subscription_id)


if __name__ == '__main__':
    unittest.main()
