"""
Kafka-compatible stream service implementation on top of aiokafka.

Streams map to topics, subscriptions to consumer groups and ordering
keys to message keys. Batching is delegated to the producer's
``linger_ms``/``max_batch_size``; the in-flight byte cap is enforced
here. Consumers commit offsets manually: a record counts as
acknowledged once its responder acked it, and after each fetch the
contiguous acked run of every partition is committed. An unacked
record holds back its partition's committed offset across fetches, so
it is delivered again once the partition is reassigned (a restart, or a
rebalance such as the one triggered when the consumer exceeds
``max_poll_interval_ms``, set from the subscription ack timeout).
Until then the consumer keeps receiving the records after it.
"""

import asyncio
import logging
from collections import OrderedDict
from typing import Dict, List, Optional, Set
from urllib.parse import urlparse

from aiokafka import AIOKafkaConsumer, AIOKafkaProducer
from aiokafka.admin import AIOKafkaAdminClient, NewTopic
from aiokafka.errors import KafkaError, TopicAlreadyExistsError
from aiokafka.structs import TopicPartition

from common.record_factory import Record, decode_payload, encode_payload, payload_size
from configuration import (
    CONSUMER_FETCH_MAX_RECORDS,
    CONSUMER_FETCH_TIMEOUT_MS,
    MILLIS_PER_SECOND,
    PAYLOAD_HRECORD,
    PAYLOAD_RAW,
)
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
    StreamSystemError,
    Subscription,
    WriteRejectedError,
    invoke_receiver,
)

logger = logging.getLogger(__name__)

PAYLOAD_TYPE_HEADER = "payload-type"


def bootstrap_servers_from_url(service_url: str) -> str:
    """Extract ``host:port[,host:port]`` from a ``kafka://`` URL."""
    parsed = urlparse(service_url)
    if parsed.scheme != "kafka" or not parsed.netloc:
        raise ValueError(f"Invalid Kafka service URL: {service_url}")
    return parsed.netloc


class KafkaBufferedProducer(BufferedProducer):
    """Producer wrapper turning aiokafka sends into write futures."""

    def __init__(self, producer: AIOKafkaProducer, stream_name: str,
                 flow_control_setting: FlowControlSetting):
        self.producer = producer
        self.stream_name = stream_name
        self.flow_control_setting = flow_control_setting
        self.in_flight_bytes = 0
        self.closed = False
        self._send_tasks: Set[asyncio.Task] = set()

    async def start(self) -> None:
        try:
            await self.producer.start()
        except KafkaError as e:
            raise StreamSystemError(f"Failed to start producer for {self.stream_name}: {e}") from e

    def write(self, record: Record) -> "asyncio.Future[str]":
        loop = asyncio.get_running_loop()
        future = loop.create_future()

        if self.closed:
            future.set_exception(WriteRejectedError("producer is closed"))
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
        task = asyncio.create_task(self._send(record, future, size))
        self._send_tasks.add(task)
        task.add_done_callback(self._send_tasks.discard)
        return future

    async def _send(self, record: Record, future: asyncio.Future, size: int) -> None:
        payload_type = PAYLOAD_RAW if record.is_raw else PAYLOAD_HRECORD
        try:
            delivery = await self.producer.send(
                self.stream_name,
                value=encode_payload(record.payload),
                key=record.ordering_key.encode("utf-8") if record.ordering_key else None,
                headers=[(PAYLOAD_TYPE_HEADER, payload_type.encode("utf-8"))],
            )
            metadata = await delivery
        except Exception as e:
            self.in_flight_bytes -= size
            if not future.done():
                future.set_exception(e)
            return

        self.in_flight_bytes -= size
        if not future.done():
            future.set_result(f"{metadata.topic}-{metadata.partition}-{metadata.offset}")

    async def flush(self) -> None:
        await self.producer.flush()

    async def close(self) -> None:
        self.closed = True
        if self._send_tasks:
            await asyncio.gather(*self._send_tasks, return_exceptions=True)
        await self.producer.stop()


class KafkaResponder(Responder):
    def __init__(self, pending: "OrderedDict[int, bool]", offset: int):
        self._pending = pending
        self._offset = offset

    def ack(self) -> None:
        if self._offset in self._pending:
            self._pending[self._offset] = True


class KafkaConsumer(Consumer):
    """One member of the consumer group backing a subscription."""

    def __init__(self, bootstrap_servers: str, subscription: Subscription, receiver: Receiver):
        super().__init__(subscription.subscription_id, receiver)
        self.subscription = subscription
        self.consumer = AIOKafkaConsumer(
            subscription.stream_name,
            bootstrap_servers=bootstrap_servers,
            group_id=subscription.subscription_id,
            enable_auto_commit=False,
            auto_offset_reset="earliest",
            max_poll_interval_ms=subscription.ack_timeout_seconds * MILLIS_PER_SECOND,
        )
        # Per partition: delivered offsets in order -> acked flag
        self._pending: Dict[TopicPartition, "OrderedDict[int, bool]"] = {}
        self._to_commit: Dict[TopicPartition, int] = {}
        self._task: Optional[asyncio.Task] = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        if self.is_running:
            return
        try:
            await self.consumer.start()
        except KafkaError as e:
            raise StreamSystemError(f"Failed to start consumer for {self.subscription_id}: {e}") from e
        self._task = asyncio.create_task(self._consume())

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        await self.consumer.stop()

    async def _consume(self) -> None:
        while True:
            batches = await self.consumer.getmany(
                timeout_ms=CONSUMER_FETCH_TIMEOUT_MS, max_records=CONSUMER_FETCH_MAX_RECORDS
            )
            await self.deliver(batches)
            await self.commit_acked()

    async def deliver(self, batches: Dict[TopicPartition, list]) -> None:
        """Pass fetched messages to the receiver, tracking each offset until acked."""
        for tp, messages in batches.items():
            pending = self._pending.setdefault(tp, OrderedDict())
            for message in messages:
                pending[message.offset] = False
                received = ReceivedRecord(
                    record_id=f"{tp.topic}-{tp.partition}-{message.offset}",
                    payload=self._decode(message),
                    ordering_key=message.key.decode("utf-8") if message.key else "",
                )
                try:
                    await invoke_receiver(self.receiver, received, KafkaResponder(pending, message.offset))
                except Exception as e:
                    logger.warning(f"Receiver error on {received.record_id}: {e}")

    def acked_offsets(self) -> Dict[TopicPartition, int]:
        """Release the acked prefix of every partition.

        Returns:
            Offset to commit per partition: one past the last offset of
            the contiguous acked run. The first unacked offset blocks
            everything after it, across fetches.
        """
        offsets = {}
        for tp, pending in self._pending.items():
            last_acked = None
            while pending:
                offset, acked = next(iter(pending.items()))
                if not acked:
                    break
                pending.popitem(last=False)
                last_acked = offset
            if last_acked is not None:
                offsets[tp] = last_acked + 1
        return offsets

    async def commit_acked(self) -> None:
        """Commit acked offsets; a failed commit is retried on the next call."""
        self._to_commit.update(self.acked_offsets())
        if not self._to_commit:
            return
        try:
            await self.consumer.commit(dict(self._to_commit))
        except KafkaError as e:
            logger.warning(f"Offset commit failed for {self.subscription_id}: {e}")
            return
        self._to_commit.clear()

    @staticmethod
    def _decode(message):
        headers = dict(message.headers or ())
        structured = headers.get(PAYLOAD_TYPE_HEADER) == PAYLOAD_HRECORD.encode("utf-8")
        return decode_payload(message.value, structured)


class KafkaStreamSystem(StreamSystem):
    """Stream service backed by a Kafka-compatible cluster."""

    def __init__(self, service_url: str):
        super().__init__(service_url)
        self.bootstrap_servers = bootstrap_servers_from_url(service_url)
        self.admin: Optional[AIOKafkaAdminClient] = None
        self.subscriptions: Dict[str, Subscription] = {}
        logger.info(f"Initialized Kafka stream service for {self.bootstrap_servers}")

    async def connect(self) -> None:
        self.admin = AIOKafkaAdminClient(bootstrap_servers=self.bootstrap_servers)
        try:
            await self.admin.start()
        except KafkaError as e:
            self.admin = None
            raise StreamSystemError(f"Failed to connect to {self.bootstrap_servers}: {e}") from e

    async def close(self) -> None:
        if self.admin is not None:
            await self.admin.close()
            self.admin = None

    def _require_admin(self) -> AIOKafkaAdminClient:
        if self.admin is None:
            raise RuntimeError("Kafka admin client not initialized. Use async context manager.")
        return self.admin

    async def create_stream(self, name: str, replication_factor: int, backlog_seconds: int,
                            partitions: int = 1) -> None:
        new_topic = NewTopic(
            name=name,
            num_partitions=partitions,
            replication_factor=replication_factor,
            topic_configs={"retention.ms": str(backlog_seconds * MILLIS_PER_SECOND)},
        )
        try:
            await self._require_admin().create_topics([new_topic])
        except TopicAlreadyExistsError as e:
            raise StreamExistsError(f"Stream already exists: {name}") from e
        except KafkaError as e:
            raise StreamSystemError(f"Failed to create stream {name}: {e}") from e
        logger.info(f"Created stream {name} (replication={replication_factor}, "
                    f"backlog={backlog_seconds}s, partitions={partitions})")

    async def delete_stream(self, name: str) -> None:
        try:
            await self._require_admin().delete_topics([name])
        except KafkaError as e:
            raise StreamSystemError(f"Failed to delete stream {name}: {e}") from e
        logger.info(f"Deleted stream {name}")

    async def list_streams(self) -> List[str]:
        try:
            topics = await self._require_admin().list_topics()
        except KafkaError as e:
            raise StreamSystemError(f"Failed to list streams: {e}") from e
        return sorted(topic for topic in topics if not topic.startswith("__"))

    def new_producer(self, stream_name: str, batch_setting: BatchSetting,
                     flow_control_setting: Optional[FlowControlSetting] = None) -> KafkaBufferedProducer:
        producer = AIOKafkaProducer(
            bootstrap_servers=self.bootstrap_servers,
            linger_ms=batch_setting.age_limit_ms,
            max_batch_size=batch_setting.bytes_limit,
        )
        return KafkaBufferedProducer(producer, stream_name, flow_control_setting or FlowControlSetting())

    async def create_subscription(self, subscription: Subscription) -> None:
        if subscription.subscription_id in self.subscriptions:
            raise StreamExistsError(f"Subscription already exists: {subscription.subscription_id}")
        if subscription.stream_name not in await self.list_streams():
            raise StreamNotFoundError(f"Stream not found: {subscription.stream_name}")
        self.subscriptions[subscription.subscription_id] = subscription
        logger.info(
            f"Created subscription {subscription.subscription_id} on {subscription.stream_name} "
            f"(ack timeout {subscription.ack_timeout_seconds}s)"
        )

    async def delete_subscription(self, subscription_id: str) -> None:
        if self.subscriptions.pop(subscription_id, None) is None:
            raise StreamNotFoundError(f"Subscription not found: {subscription_id}")
        # Committed group offsets expire through the broker's offsets retention
        logger.info(f"Deleted subscription {subscription_id}")

    def new_consumer(self, subscription_id: str, receiver: Receiver) -> KafkaConsumer:
        try:
            subscription = self.subscriptions[subscription_id]
        except KeyError:
            raise StreamNotFoundError(f"Subscription not found: {subscription_id}") from None
        return KafkaConsumer(self.bootstrap_servers, subscription, receiver)
