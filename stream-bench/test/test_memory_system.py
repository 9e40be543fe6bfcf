"""
Tests for the in-process stream service.
"""

import unittest
import sys
import os
import asyncio

# Add the parent directory to Python path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from common.record_factory import Record
from systems.base import (
    BatchSetting,
    FlowControlSetting,
    StreamExistsError,
    StreamNotFoundError,
    Subscription,
    WriteRejectedError,
)
from systems.memory import MemoryStreamSystem


class FakeClock:
    def __init__(self, now: float = 0.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


def _record(size=100, key="test_0"):
    return Record(payload=b"x" * size, ordering_key=key)


async def _wait_for(predicate, timeout=2.0):
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


class TestMemoryStreams(unittest.IsolatedAsyncioTestCase):
    """Test stream administration."""

    async def asyncSetUp(self):
        self.system = MemoryStreamSystem()
        await self.system.connect()

    async def test_create_and_list(self):
        await self.system.create_stream("bench_a", 1, 60)
        await self.system.create_stream("bench_b", 1, 60)
        self.assertEqual(await self.system.list_streams(), ["bench_a", "bench_b"])

    async def test_duplicate_stream(self):
        await self.system.create_stream("bench_a", 1, 60)
        with self.assertRaises(StreamExistsError):
            await self.system.create_stream("bench_a", 1, 60)

    async def test_delete_stream_drops_subscriptions(self):
        await self.system.create_stream("bench_a", 1, 60)
        await self.system.create_subscription(Subscription("sub_a", "bench_a"))
        await self.system.delete_stream("bench_a")

        self.assertEqual(await self.system.list_streams(), [])
        self.assertNotIn("sub_a", self.system.subscriptions)
        with self.assertRaises(StreamNotFoundError):
            await self.system.delete_stream("bench_a")

    async def test_missing_stream(self):
        with self.assertRaises(StreamNotFoundError):
            await self.system.create_subscription(Subscription("sub_a", "missing"))
        with self.assertRaises(StreamNotFoundError):
            self.system.new_producer("missing", BatchSetting(1024, 10))
        with self.assertRaises(StreamNotFoundError):
            self.system.new_consumer("missing", lambda received, responder: None)

    async def test_backlog_expiry(self):
        """Records older than the backlog duration are dropped."""
        clock = FakeClock()
        system = MemoryStreamSystem(clock=clock)
        await system.create_stream("bench_a", 1, backlog_seconds=5)
        producer = system.new_producer("bench_a", BatchSetting(bytes_limit=1, age_limit_ms=1000))

        producer.write(_record())
        clock.now = 10.0
        producer.write(_record())

        self.assertEqual(len(system.streams["bench_a"].records), 1)

    async def test_retention_is_bounded(self):
        """Streams and undrained subscriptions keep at most max_records records."""
        system = MemoryStreamSystem(max_records=10)
        await system.create_stream("bench_a", 1, backlog_seconds=1800)
        await system.create_subscription(Subscription("sub_a", "bench_a"))
        producer = system.new_producer("bench_a", BatchSetting(bytes_limit=1, age_limit_ms=1000))

        futures = [producer.write(_record()) for _ in range(25)]

        self.assertTrue(all(future.done() for future in futures))
        records = system.streams["bench_a"].records
        self.assertEqual(len(records), 10)
        self.assertEqual(records[0].record_id, "bench_a-15")
        subscription = system.subscriptions["sub_a"]
        self.assertEqual(subscription.queue.qsize(), 10)
        self.assertEqual(subscription.dropped, 15)


class TestMemoryProducer(unittest.IsolatedAsyncioTestCase):
    """Test buffered producer batching and flow control."""

    async def asyncSetUp(self):
        self.system = MemoryStreamSystem()
        await self.system.create_stream("bench", 1, 60)

    async def test_age_triggered_flush(self):
        """Batches below the byte limit flush once they reach the age limit."""
        producer = self.system.new_producer("bench", BatchSetting(bytes_limit=1024 * 1024, age_limit_ms=5))
        futures = [producer.write(_record()) for _ in range(5)]

        self.assertFalse(any(future.done() for future in futures))
        record_ids = await asyncio.wait_for(asyncio.gather(*futures), timeout=1)

        self.assertEqual(len(set(record_ids)), 5)
        self.assertEqual(len(self.system.streams["bench"].records), 5)

    async def test_size_triggered_flush(self):
        """A batch reaching the byte limit is sent at once."""
        producer = self.system.new_producer("bench", BatchSetting(bytes_limit=200, age_limit_ms=60000))

        first = producer.write(_record(100))
        self.assertFalse(first.done())
        second = producer.write(_record(100))

        self.assertTrue(first.done())
        self.assertTrue(second.done())
        self.assertEqual(producer.in_flight_bytes, 0)

    async def test_batches_per_ordering_key(self):
        """Each ordering key is batched separately."""
        producer = self.system.new_producer("bench", BatchSetting(bytes_limit=200, age_limit_ms=60000))

        a = producer.write(_record(100, key="test_0"))
        b = producer.write(_record(100, key="test_1"))
        self.assertFalse(a.done())
        self.assertFalse(b.done())

        producer.write(_record(100, key="test_0"))
        self.assertTrue(a.done())
        self.assertFalse(b.done())
        await producer.close()
        self.assertTrue(b.done())

    async def test_record_count_limit(self):
        producer = self.system.new_producer(
            "bench", BatchSetting(bytes_limit=1024 * 1024, age_limit_ms=60000, record_count_limit=2)
        )
        first = producer.write(_record())
        producer.write(_record())
        self.assertTrue(first.done())

    async def test_flow_control_rejects_excess_bytes(self):
        """Writes beyond the in-flight byte cap are rejected through their future."""
        producer = self.system.new_producer(
            "bench",
            BatchSetting(bytes_limit=1024 * 1024, age_limit_ms=60000),
            FlowControlSetting(bytes_limit=250),
        )
        accepted = [producer.write(_record(100)) for _ in range(2)]
        rejected = producer.write(_record(100))

        with self.assertRaises(WriteRejectedError):
            await rejected

        await producer.flush()
        self.assertEqual(producer.in_flight_bytes, 0)
        self.assertTrue(all(future.done() and future.exception() is None for future in accepted))

    async def test_fail_every(self):
        """Every Nth write is rejected when failure injection is on."""
        system = MemoryStreamSystem(fail_every=10)
        await system.create_stream("bench", 1, 60)
        producer = system.new_producer("bench", BatchSetting(bytes_limit=1, age_limit_ms=10))

        futures = [producer.write(_record()) for _ in range(25)]
        failures = [future for future in futures if future.exception() is not None]

        self.assertEqual(len(failures), 2)
        self.assertIs(futures[9], failures[0])
        self.assertIs(futures[19], failures[1])

    async def test_closed_producer_rejects(self):
        producer = self.system.new_producer("bench", BatchSetting(bytes_limit=1024, age_limit_ms=10))
        await producer.close()
        with self.assertRaises(WriteRejectedError):
            await producer.write(_record())


class TestMemorySubscription(unittest.IsolatedAsyncioTestCase):
    """Test subscription delivery and acknowledgement."""

    async def asyncSetUp(self):
        self.clock = FakeClock()
        self.system = MemoryStreamSystem(clock=self.clock)
        await self.system.create_stream("bench", 1, 60)
        self.producer = self.system.new_producer("bench", BatchSetting(bytes_limit=1, age_limit_ms=10))

    async def test_each_record_goes_to_one_consumer(self):
        """Consumers sharing a subscription split the records between them."""
        await self.system.create_subscription(Subscription("sub", "bench", ack_timeout_seconds=60))
        received = {0: [], 1: []}

        def receiver_for(index):
            def receiver(record, responder):
                received[index].append(record.record_id)
                responder.ack()
            return receiver

        consumers = [self.system.new_consumer("sub", receiver_for(i)) for i in range(2)]
        for consumer in consumers:
            await consumer.start()
            self.assertTrue(consumer.is_running)

        for _ in range(50):
            self.producer.write(_record())

        await _wait_for(lambda: len(received[0]) + len(received[1]) == 50)
        all_ids = received[0] + received[1]
        self.assertEqual(len(set(all_ids)), 50)
        self.assertEqual(self.system.subscriptions["sub"].acked, 50)
        self.assertEqual(len(self.system.subscriptions["sub"].in_flight), 0)

        for consumer in consumers:
            await consumer.stop()
            self.assertFalse(consumer.is_running)

    async def test_stop_while_records_arrive(self):
        """Stopping a consumer returns even while batches keep flushing into its queue."""
        await self.system.create_subscription(Subscription("sub", "bench"))
        producer = self.system.new_producer("bench", BatchSetting(bytes_limit=1024 * 1024, age_limit_ms=1))
        stop_writing = asyncio.Event()

        async def write_continuously():
            while not stop_writing.is_set():
                producer.write(_record())
                await asyncio.sleep(0)

        writer = asyncio.create_task(write_continuously())
        try:
            for _ in range(30):
                consumer = self.system.new_consumer("sub", lambda record, responder: responder.ack())
                await consumer.start()
                await asyncio.sleep(0.005)

                await asyncio.wait_for(consumer.stop(), timeout=1)
                self.assertFalse(consumer.is_running)
        finally:
            stop_writing.set()
            await writer
            await producer.close()

        self.assertGreater(self.system.subscriptions["sub"].acked, 0)

    async def test_subscription_sees_existing_records(self):
        """A subscription created after writes still delivers retained records."""
        for _ in range(3):
            self.producer.write(_record())
        await self.system.create_subscription(Subscription("sub", "bench"))

        self.assertEqual(self.system.subscriptions["sub"].queue.qsize(), 3)

    async def test_unacked_records_are_redelivered(self):
        """A record not acknowledged within the ack timeout is delivered again."""
        await self.system.create_subscription(Subscription("sub", "bench", ack_timeout_seconds=1))
        deliveries = []

        def receiver(record, responder):
            deliveries.append(record.record_id)
            if len(deliveries) > 1:
                responder.ack()

        consumer = self.system.new_consumer("sub", receiver)
        await consumer.start()
        self.producer.write(_record())

        await _wait_for(lambda: len(deliveries) == 1)
        self.clock.now += 2
        await _wait_for(lambda: len(deliveries) == 2)

        self.assertEqual(deliveries[0], deliveries[1])
        self.assertEqual(self.system.subscriptions["sub"].redelivered, 1)
        self.assertEqual(self.system.subscriptions["sub"].acked, 1)
        await consumer.stop()

    async def test_duplicate_ack_is_noop(self):
        await self.system.create_subscription(Subscription("sub", "bench"))
        responders = []

        def receiver(record, responder):
            responders.append(responder)

        consumer = self.system.new_consumer("sub", receiver)
        await consumer.start()
        self.producer.write(_record())
        await _wait_for(lambda: len(responders) == 1)

        responders[0].ack()
        responders[0].ack()
        self.assertEqual(self.system.subscriptions["sub"].acked, 1)
        await consumer.stop()

    async def test_async_receiver(self):
        """Coroutine receivers are awaited."""
        await self.system.create_subscription(Subscription("sub", "bench"))
        received = []

        async def receiver(record, responder):
            await asyncio.sleep(0)
            received.append(record)
            responder.ack()

        consumer = self.system.new_consumer("sub", receiver)
        await consumer.start()
        self.producer.write(Record(payload={"int": 10}, ordering_key="test_1"))

        await _wait_for(lambda: len(received) == 1)
        self.assertEqual(received[0].payload, {"int": 10})
        self.assertEqual(received[0].ordering_key, "test_1")
        self.assertFalse(received[0].is_raw)
        await consumer.stop()

    async def test_delete_subscription(self):
        await self.system.create_subscription(Subscription("sub", "bench"))
        with self.assertRaises(StreamExistsError):
            await self.system.create_subscription(Subscription("sub", "bench"))

        await self.system.delete_subscription("sub")
        self.assertEqual(self.system.streams["bench"].subscriptions, [])
        with self.assertRaises(StreamNotFoundError):
            await self.system.delete_subscription("sub")


if __name__ == '__main__':
    unittest.main()
