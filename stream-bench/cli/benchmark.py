"""
Write/read benchmark: produce at a fixed rate, consume through a
subscription, and report rates until stopped.
"""

import asyncio
import logging
import uuid
from typing import Any, Callable, Dict, Optional

from algorithms.producer_loop import ProducerLoop
from common.atomic import BenchCounters
from common.bench_config import BenchConfig
from common.rate_limiter import RateLimiter
from common.record_factory import make_record
from common.stream_factory import create_stream_system
from common.worker_pool import ConsumerPool
from configuration import BATCH_RECORD_COUNT_LIMIT, SUBSCRIPTION_NAME_PREFIX
from metrics.aggregator import MetricsAggregator
from systems.base import BatchSetting, BufferedProducer, FlowControlSetting, StreamSystem, Subscription

logger = logging.getLogger(__name__)


class SetupError(Exception):
    """Raised when the benchmark cannot be set up; nothing was measured."""


class BenchmarkRunner:
    """Wires the producer loop, consumer pool and reporter together."""

    def __init__(
        self,
        config: BenchConfig,
        system: Optional[StreamSystem] = None,
        out: Callable[[str], None] = print,
        exporter=None,
    ):
        self.config = config
        self.system = system or create_stream_system(config.service_url)
        self.out = out
        self.exporter = exporter

        self.counters = BenchCounters()
        self.stop_event = asyncio.Event()
        self.stream_name = f"{config.stream_name_prefix}{uuid.uuid4()}"
        self.subscription_id = f"{SUBSCRIPTION_NAME_PREFIX}{uuid.uuid4()}"

        self.producer: Optional[BufferedProducer] = None
        self.producer_loop: Optional[ProducerLoop] = None
        self.producer_task: Optional[asyncio.Task] = None
        self.consumer_pool: Optional[ConsumerPool] = None
        self.aggregator: Optional[MetricsAggregator] = None
        self.stream_created = False
        self.reports = 0

        logger.info(f"Initialized benchmark runner for {config.service_url}")

    def stop(self) -> None:
        """Ask every loop to finish."""
        self.stop_event.set()

    async def run_benchmark(self) -> Dict[str, Any]:
        """Execute the benchmark until stopped or the configured duration elapses.

        Returns:
            Summary with the stream and subscription names and final counters

        Raises:
            SetupError: If connecting, creating the stream or subscription,
                or starting the producer or consumers fails
        """
        logger.info("Starting benchmark")
        try:
            await self.system.connect()
        except Exception as e:
            raise SetupError(f"Failed to connect to {self.config.service_url}: {e}") from e

        try:
            await self._setup()
            self.aggregator.reset()

            duration_handle = None
            if self.config.duration_seconds > 0:
                duration_handle = asyncio.get_running_loop().call_later(
                    self.config.duration_seconds, self.stop
                )
            try:
                self.reports = await self.aggregator.run(
                    self.config.report_interval_seconds, self.stop_event, out=self.out
                )
            finally:
                if duration_handle is not None:
                    duration_handle.cancel()
        finally:
            await self._teardown()

        return self.summary()

    async def _setup(self) -> None:
        config = self.config

        # Stream
        try:
            await self.system.create_stream(
                self.stream_name,
                config.stream_replication_factor,
                config.stream_backlog_duration,
                config.stream_partitions,
            )
        except Exception as e:
            raise SetupError(f"Failed to create stream {self.stream_name}: {e}") from e
        self.stream_created = True

        # Write
        batch_setting = BatchSetting(
            bytes_limit=config.batch_bytes_limit,
            age_limit_ms=config.batch_age_limit,
            record_count_limit=BATCH_RECORD_COUNT_LIMIT,
        )
        flow_control_setting = FlowControlSetting(bytes_limit=config.total_bytes_limit)
        try:
            self.producer = self.system.new_producer(self.stream_name, batch_setting, flow_control_setting)
            await self.producer.start()
        except Exception as e:
            raise SetupError(f"Failed to start producer on {self.stream_name}: {e}") from e

        self.producer_loop = ProducerLoop(
            producer=self.producer,
            rate_limiter=RateLimiter(config.rate_limit),
            record=make_record(config),
            ordering_keys=config.ordering_keys,
            counters=self.counters,
        )
        self.aggregator = MetricsAggregator(self.counters, config.record_size, exporter=self.exporter)
        self.producer_task = asyncio.create_task(self.producer_loop.run(self.stop_event))
        self.producer_task.add_done_callback(self._on_producer_done)

        # Read
        try:
            await self.system.create_subscription(
                Subscription(
                    subscription_id=self.subscription_id,
                    stream_name=self.stream_name,
                    ack_timeout_seconds=config.ack_timeout_seconds,
                )
            )
            self.consumer_pool = ConsumerPool(
                self.system, self.subscription_id, config.consumer_count, self.counters
            )
            await self.consumer_pool.start()
        except Exception as e:
            raise SetupError(f"Failed to start consumers on {self.subscription_id}: {e}") from e

        logger.info(f"Benchmark running on stream {self.stream_name}")

    def _on_producer_done(self, task: asyncio.Task) -> None:
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(f"Producer loop failed: {error}")
            self.stop()

    async def _teardown(self) -> None:
        self.stop()

        if self.producer_task is not None and not self.producer_task.done():
            self.producer_task.cancel()
            await asyncio.gather(self.producer_task, return_exceptions=True)

        if self.consumer_pool is not None:
            await self.consumer_pool.stop()

        if self.producer is not None:
            try:
                await self.producer.close()
            except Exception as e:
                logger.warning(f"Failed to close producer: {e}")
            # Let completion callbacks of the final flush run
            await asyncio.sleep(0)

        if self.config.delete_stream and self.stream_created:
            await self._delete_resources()

        try:
            await self.system.close()
        except Exception as e:
            logger.warning(f"Failed to close stream service connection: {e}")

        logger.info("Benchmark stopped")

    async def _delete_resources(self) -> None:
        if self.consumer_pool is not None:
            try:
                await self.system.delete_subscription(self.subscription_id)
            except Exception as e:
                logger.warning(f"Failed to delete subscription {self.subscription_id}: {e}")
        try:
            await self.system.delete_stream(self.stream_name)
        except Exception as e:
            logger.warning(f"Failed to delete stream {self.stream_name}: {e}")

    def summary(self) -> Dict[str, Any]:
        summary = {
            "stream_name": self.stream_name,
            "subscription_id": self.subscription_id,
            "attempts": self.producer_loop.attempts.value() if self.producer_loop else 0,
            "reports": self.reports,
        }
        summary.update(self.counters.snapshot())
        return summary
