"""
In-process stream service.

Used for dry runs (``--service-url memory://``) and by the test suite.
It keeps the parts of a real stream service the benchmark exercises:
per-ordering-key batching flushed on size or age, an in-flight byte cap
that rejects writes, work-queue delivery of each record to one consumer
of a subscription, and redelivery of records not acknowledged within
the ack timeout. Retention is bounded by the backlog duration and by
``MEMORY_STREAM_MAX_RECORDS``, so long dry runs stay in constant memory.
"""

import asyncio
import itertools
import logging
import time
from collections import OrderedDict, deque
from dataclasses import dataclass, field
from typing import Callable, Deque, Dict, List, Optional

from common.record_factory import Payload, Record, payload_size
from configuration import MEMORY_STREAM_MAX_RECORDS
from systems.base import (
    BatchSetting,
    BufferedProducer,
    Consumer,
    FlowControlSetting,
    ReceivedRecord,
    Receiver,
    Responder,
    StreamExistsError,
    StreamNotFoundError,
    StreamSystem,
    Subscription,
    WriteRejectedError,
    invoke_receiver,
)

logger = logging.getLogger(__name__)

REDELIVERY_CHECK_SECONDS: float = 0.05


@dataclass
class _StoredRecord:
    record_id: str
    payload: Payload
    ordering_key: str
    appended_at: float


@dataclass
class _Batch:
    records: List[Record] = field(default_factory=list)
    futures: List[asyncio.Future] = field(default_factory=list)
    sizes: List[int] = field(default_factory=list)
    bytes: int = 0
    timer: Optional[asyncio.TimerHandle] = None


class _MemoryStream:
    def __init__(self, name: str, replication_factor: int, backlog_seconds: int,
                 partitions: int, clock: Callable[[], float],
                 max_records: int = MEMORY_STREAM_MAX_RECORDS):
        self.name = name
        self.replication_factor = replication_factor
        self.backlog_seconds = backlog_seconds
        self.partitions = partitions
        self.max_records = max_records
        self.records: Deque[_StoredRecord] = deque(maxlen=max_records)
        self.subscriptions: List["_MemorySubscription"] = []
        self._clock = clock
        self._sequence = itertools.count()

    def append(self, records: List[Record]) -> List[str]:
        now = self._clock()
        record_ids = []
        for record in records:
            stored = _StoredRecord(
                record_id=f"{self.name}-{next(self._sequence)}",
                payload=record.payload,
                ordering_key=record.ordering_key,
                appended_at=now,
            )
            self.records.append(stored)
            for subscription in self.subscriptions:
                subscription.enqueue(stored)
            record_ids.append(stored.record_id)
        self._expire(now)
        return record_ids

    def _expire(self, now: float) -> None:
        """Drop records older than the backlog duration."""
        horizon = now - self.backlog_seconds
        while self.records and self.records[0].appended_at < horizon:
            self.records.popleft()


class _MemorySubscription:
    def __init__(self, subscription: Subscription, clock: Callable[[], float],
                 max_records: int = MEMORY_STREAM_MAX_RECORDS):
        self.subscription = subscription
        self.max_records = max_records
        self.queue: asyncio.Queue = asyncio.Queue()
        # record_id -> (record, deadline); deadlines are appended in order
        self.in_flight: "OrderedDict[str, tuple]" = OrderedDict()
        self.acked = 0
        self.redelivered = 0
        self.dropped = 0
        self._clock = clock

    @property
    def subscription_id(self) -> str:
        return self.subscription.subscription_id

    def enqueue(self, stored: _StoredRecord) -> None:
        if self.queue.qsize() >= self.max_records:
            # Drop the oldest undelivered record
            self.queue.get_nowait()
            self.dropped += 1
        self.queue.put_nowait(stored)

    def mark_in_flight(self, stored: _StoredRecord) -> None:
        deadline = self._clock() + self.subscription.ack_timeout_seconds
        self.in_flight.pop(stored.record_id, None)
        self.in_flight[stored.record_id] = (stored, deadline)

    def ack(self, record_id: str) -> bool:
        if self.in_flight.pop(record_id, None) is None:
            return False
        self.acked += 1
        return True

    def requeue_expired(self) -> int:
        """Move records whose ack deadline passed back to the delivery queue."""
        now = self._clock()
        requeued = 0
        while self.in_flight:
            record_id, (stored, deadline) = next(iter(self.in_flight.items()))
            if deadline > now:
                break
            del self.in_flight[record_id]
            self.enqueue(stored)
            requeued += 1
        if requeued:
            self.redelivered += requeued
            logger.debug(f"Subscription {self.subscription_id}: redelivering {requeued} unacked records")
        return requeued


class MemoryResponder(Responder):
    def __init__(self, subscription: _MemorySubscription, record_id: str):
        self._subscription = subscription
        self._record_id = record_id

    def ack(self) -> None:
        self._subscription.ack(self._record_id)


class MemoryBufferedProducer(BufferedProducer):
    """Buffered producer writing to an in-memory stream."""

    def __init__(self, stream: _MemoryStream, batch_setting: BatchSetting,
                 flow_control_setting: FlowControlSetting, fail_every: int = 0):
        self.stream = stream
        self.batch_setting = batch_setting
        self.flow_control_setting = flow_control_setting
        self.fail_every = fail_every
        self.attempts = 0
        self.in_flight_bytes = 0
        self.closed = False
        self._batches: Dict[str, _Batch] = {}

    def write(self, record: Record) -> "asyncio.Future[str]":
        loop = asyncio.get_running_loop()
        future = loop.create_future()
        self.attempts += 1

        if self.closed:
            future.set_exception(WriteRejectedError("producer is closed"))
            return future
        if self.fail_every and self.attempts % self.fail_every == 0:
            future.set_exception(WriteRejectedError(f"injected failure on write #{self.attempts}"))
            return future

        size = payload_size(record.payload)
        flow_control = self.flow_control_setting
        if not flow_control.unlimited and self.in_flight_bytes + size > flow_control.bytes_limit:
            future.set_exception(
                WriteRejectedError(
                    f"flow control limit reached ({self.in_flight_bytes} of "
                    f"{flow_control.bytes_limit} bytes in flight)"
                )
            )
            return future

        self.in_flight_bytes += size
        key = record.ordering_key
        batch = self._batches.get(key)
        if batch is None:
            batch = self._batches[key] = _Batch()
        batch.records.append(record)
        batch.futures.append(future)
        batch.sizes.append(size)
        batch.bytes += size

        count_limit = self.batch_setting.record_count_limit
        if batch.bytes >= self.batch_setting.bytes_limit or (
            count_limit > 0 and len(batch.records) >= count_limit
        ):
            self._flush_key(key)
        elif batch.timer is None:
            batch.timer = loop.call_later(
                self.batch_setting.age_limit_ms / 1000, self._flush_key, key
            )
        return future

    def _flush_key(self, key: str) -> None:
        batch = self._batches.pop(key, None)
        if batch is None:
            return
        if batch.timer is not None:
            batch.timer.cancel()

        record_ids = self.stream.append(batch.records)
        self.in_flight_bytes -= batch.bytes
        for future, record_id in zip(batch.futures, record_ids):
            if not future.done():
                future.set_result(record_id)

    async def flush(self) -> None:
        for key in list(self._batches):
            self._flush_key(key)

    async def close(self) -> None:
        await self.flush()
        self.closed = True


class MemoryConsumer(Consumer):
    """Consumer pulling records from an in-memory subscription.

    Expired ack deadlines are checked on a timer, separate from the
    delivery task, so the task only ever waits on the queue.
    """

    def __init__(self, subscription: _MemorySubscription, receiver: Receiver):
        super().__init__(subscription.subscription_id, receiver)
        self._subscription = subscription
        self._task: Optional[asyncio.Task] = None
        self._redelivery_handle: Optional[asyncio.TimerHandle] = None
        self._stopping = False

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        if self.is_running:
            return
        self._stopping = False
        self._task = asyncio.create_task(self._consume())
        self._check_redelivery()
        await asyncio.sleep(0)

    async def stop(self) -> None:
        self._stopping = True
        if self._redelivery_handle is not None:
            self._redelivery_handle.cancel()
            self._redelivery_handle = None

        task = self._task
        if task is None:
            return
        # Cancel again until the task is really gone
        while not task.done():
            task.cancel()
            await asyncio.wait({task}, timeout=REDELIVERY_CHECK_SECONDS)

        if not task.cancelled() and task.exception() is not None:
            logger.warning(f"Consumer on {self.subscription_id} failed: {task.exception()}")
        self._task = None

    def _check_redelivery(self) -> None:
        if self._stopping:
            return
        self._subscription.requeue_expired()
        self._redelivery_handle = asyncio.get_running_loop().call_later(
            REDELIVERY_CHECK_SECONDS, self._check_redelivery
        )

    async def _consume(self) -> None:
        subscription = self._subscription
        queue = subscription.queue
        while not self._stopping:
            stored = await queue.get()
            if self._stopping:
                # Not delivered; hand it back for the next consumer
                subscription.enqueue(stored)
                break

            subscription.mark_in_flight(stored)
            received = ReceivedRecord(
                record_id=stored.record_id,
                payload=stored.payload,
                ordering_key=stored.ordering_key,
            )
            try:
                await invoke_receiver(self.receiver, received, MemoryResponder(subscription, stored.record_id))
            except Exception as e:
                # Left unacked, the record is redelivered after the ack timeout
                logger.warning(f"Receiver error on {stored.record_id}: {e}")


class MemoryStreamSystem(StreamSystem):
    """Stream service living in the benchmark process."""

    def __init__(self, service_url: str = "memory://", fail_every: int = 0,
                 clock: Optional[Callable[[], float]] = None,
                 max_records: int = MEMORY_STREAM_MAX_RECORDS):
        """Initialize the in-memory service.

        Args:
            service_url: Service URL, kept for logging
            fail_every: Reject every Nth write of each producer (0 = never)
            clock: Monotonic clock in seconds (default: time.monotonic)
            max_records: Records retained per stream and queued per subscription;
                the oldest are dropped first
        """
        super().__init__(service_url)
        self.fail_every = fail_every
        self._clock = clock or time.monotonic
        self.max_records = max_records
        self.streams: Dict[str, _MemoryStream] = {}
        self.subscriptions: Dict[str, _MemorySubscription] = {}
        logger.info(f"Initialized in-memory stream service (fail_every={fail_every})")

    async def create_stream(self, name: str, replication_factor: int, backlog_seconds: int,
                            partitions: int = 1) -> None:
        if name in self.streams:
            raise StreamExistsError(f"Stream already exists: {name}")
        self.streams[name] = _MemoryStream(
            name, replication_factor, backlog_seconds, partitions, self._clock, self.max_records
        )
        logger.info(f"Created stream {name} (replication={replication_factor}, backlog={backlog_seconds}s)")

    async def delete_stream(self, name: str) -> None:
        stream = self.streams.pop(name, None)
        if stream is None:
            raise StreamNotFoundError(f"Stream not found: {name}")
        for subscription in stream.subscriptions:
            self.subscriptions.pop(subscription.subscription_id, None)
        logger.info(f"Deleted stream {name}")

    async def list_streams(self) -> List[str]:
        return sorted(self.streams)

    def _stream(self, name: str) -> _MemoryStream:
        try:
            return self.streams[name]
        except KeyError:
            raise StreamNotFoundError(f"Stream not found: {name}") from None

    def _subscription(self, subscription_id: str) -> _MemorySubscription:
        try:
            return self.subscriptions[subscription_id]
        except KeyError:
            raise StreamNotFoundError(f"Subscription not found: {subscription_id}") from None

    def new_producer(self, stream_name: str, batch_setting: BatchSetting,
                     flow_control_setting: Optional[FlowControlSetting] = None) -> MemoryBufferedProducer:
        return MemoryBufferedProducer(
            self._stream(stream_name),
            batch_setting,
            flow_control_setting or FlowControlSetting(),
            fail_every=self.fail_every,
        )

    async def create_subscription(self, subscription: Subscription) -> None:
        if subscription.subscription_id in self.subscriptions:
            raise StreamExistsError(f"Subscription already exists: {subscription.subscription_id}")
        stream = self._stream(subscription.stream_name)

        memory_subscription = _MemorySubscription(subscription, self._clock, self.max_records)
        for stored in stream.records:
            memory_subscription.enqueue(stored)
        stream.subscriptions.append(memory_subscription)
        self.subscriptions[subscription.subscription_id] = memory_subscription
        logger.info(
            f"Created subscription {subscription.subscription_id} on {subscription.stream_name} "
            f"(ack timeout {subscription.ack_timeout_seconds}s)"
        )

    async def delete_subscription(self, subscription_id: str) -> None:
        memory_subscription = self.subscriptions.pop(subscription_id, None)
        if memory_subscription is None:
            raise StreamNotFoundError(f"Subscription not found: {subscription_id}")
        stream = self.streams.get(memory_subscription.subscription.stream_name)
        if stream is not None and memory_subscription in stream.subscriptions:
            stream.subscriptions.remove(memory_subscription)
        logger.info(f"Deleted subscription {subscription_id}")

    def new_consumer(self, subscription_id: str, receiver: Receiver) -> MemoryConsumer:
        return MemoryConsumer(self._subscription(subscription_id), receiver)
