"""
Async pool of consumers draining the benchmark subscription.
"""

import asyncio
import logging
from typing import List

from common.atomic import BenchCounters
from systems.base import Consumer, ReceivedRecord, Responder, StreamSystem

logger = logging.getLogger(__name__)


class ConsumerPool:
    """Runs independent consumers attached to one subscription."""

    def __init__(
        self,
        system: StreamSystem,
        subscription_id: str,
        consumer_count: int,
        counters: BenchCounters,
    ):
        """Initialize the consumer pool.

        Args:
            system: Stream service the subscription lives on
            subscription_id: Subscription every consumer attaches to
            consumer_count: Number of concurrent consumers to start
            counters: Shared counters receiving fetched increments
        """
        self.system = system
        self.subscription_id = subscription_id
        self.consumer_count = consumer_count
        self.counters = counters

        self.consumers: List[Consumer] = []
        self.is_running = False

        logger.info(f"Initialized ConsumerPool with {consumer_count} consumers on {subscription_id}")

    @property
    def active_consumers(self) -> int:
        return sum(1 for consumer in self.consumers if consumer.is_running)

    def receive(self, received: ReceivedRecord, responder: Responder) -> None:
        """Receive handler shared by every consumer, raw or structured."""
        self.counters.fetched.increment()
        try:
            responder.ack()
        except Exception as e:
            logger.debug(f"Ack failed for {received.record_id}: {e}")
            self.counters.ack_failed.increment()

    async def start(self):
        """Start all consumers and wait until each is running."""
        if self.is_running:
            return

        self.is_running = True
        for _ in range(self.consumer_count):
            consumer = self.system.new_consumer(self.subscription_id, self.receive)
            self.consumers.append(consumer)
            await consumer.start()

        logger.info(f"Consumer pool ready: {self.active_consumers} consumers")

    async def stop(self):
        """Stop all consumers."""
        if not self.is_running:
            return

        logger.info("Stopping consumer pool...")
        results = await asyncio.gather(
            *(consumer.stop() for consumer in self.consumers), return_exceptions=True
        )
        for result in results:
            if isinstance(result, Exception):
                logger.warning(f"Consumer stop error: {result}")

        self.consumers.clear()
        self.is_running = False
        logger.info("Consumer pool stopped")
