"""
Async base classes for stream services used by the benchmark.

The benchmark only talks to a stream service through these classes:
stream and subscription administration, a buffered producer whose
writes resolve asynchronously, and consumers that push delivered
records to a receiver together with a responder used to acknowledge
them.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, List, Optional

from common.record_factory import Payload, Record
from configuration import BATCH_RECORD_COUNT_LIMIT, ACK_TIMEOUT_SECONDS

logger = logging.getLogger(__name__)


class StreamSystemError(Exception):
    """Base error raised by stream service adapters."""


class StreamExistsError(StreamSystemError):
    """Raised when creating a stream or subscription that already exists."""


class StreamNotFoundError(StreamSystemError):
    """Raised when a stream or subscription does not exist."""


class WriteRejectedError(StreamSystemError):
    """Raised (through the write future) when the transport refuses a record."""


@dataclass(frozen=True)
class BatchSetting:
    """Producer batching policy.

    A batch is flushed once it holds ``bytes_limit`` bytes, is
    ``age_limit_ms`` old, or holds ``record_count_limit`` records
    (negative disables the count trigger).
    """

    bytes_limit: int
    age_limit_ms: int
    record_count_limit: int = BATCH_RECORD_COUNT_LIMIT


@dataclass(frozen=True)
class FlowControlSetting:
    """Cap on bytes written but not yet acknowledged (negative = unlimited)."""

    bytes_limit: int = -1

    @property
    def unlimited(self) -> bool:
        return self.bytes_limit < 0


@dataclass(frozen=True)
class Subscription:
    subscription_id: str
    stream_name: str
    ack_timeout_seconds: int = ACK_TIMEOUT_SECONDS


@dataclass(frozen=True)
class ReceivedRecord:
    record_id: str
    payload: Payload
    ordering_key: str = ""

    @property
    def is_raw(self) -> bool:
        return isinstance(self.payload, bytes)


class Responder(ABC):
    """Acknowledges one delivered record."""

    @abstractmethod
    def ack(self) -> None:
        """Acknowledge the record. Repeated calls must be no-ops."""


Receiver = Callable[[ReceivedRecord, Responder], Any]


class BufferedProducer(ABC):
    """Producer that batches writes and resolves them asynchronously."""

    async def start(self) -> None:
        """Open connections needed before the first write."""

    @abstractmethod
    def write(self, record: Record) -> "asyncio.Future[str]":
        """Queue a record for writing.

        Returns immediately. The returned future resolves to the record
        id once the record is stored, or to an exception if the
        transport rejected it.
        """

    @abstractmethod
    async def flush(self) -> None:
        """Send all buffered records now."""

    @abstractmethod
    async def close(self) -> None:
        """Flush outstanding records and release resources."""


class Consumer(ABC):
    """Pull-based consumer attached to one subscription."""

    def __init__(self, subscription_id: str, receiver: Receiver):
        self.subscription_id = subscription_id
        self.receiver = receiver

    @abstractmethod
    async def start(self) -> None:
        """Start delivering records; returns once the consumer is running."""

    @abstractmethod
    async def stop(self) -> None:
        """Stop delivering records."""

    @property
    @abstractmethod
    def is_running(self) -> bool:
        pass


class StreamSystem(ABC):
    """Async base class for stream services."""

    def __init__(self, service_url: str):
        self.service_url = service_url

    async def __aenter__(self):
        """Async context manager entry."""
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Async context manager exit."""
        await self.close()

    async def connect(self) -> None:
        """Open connections to the service."""

    async def close(self) -> None:
        """Close connections to the service."""

    @abstractmethod
    async def create_stream(
        self,
        name: str,
        replication_factor: int,
        backlog_seconds: int,
        partitions: int = 1,
    ) -> None:
        pass

    @abstractmethod
    async def delete_stream(self, name: str) -> None:
        pass

    @abstractmethod
    async def list_streams(self) -> List[str]:
        pass

    @abstractmethod
    def new_producer(
        self,
        stream_name: str,
        batch_setting: BatchSetting,
        flow_control_setting: Optional[FlowControlSetting] = None,
    ) -> BufferedProducer:
        pass

    @abstractmethod
    async def create_subscription(self, subscription: Subscription) -> None:
        pass

    @abstractmethod
    async def delete_subscription(self, subscription_id: str) -> None:
        pass

    @abstractmethod
    def new_consumer(self, subscription_id: str, receiver: Receiver) -> Consumer:
        pass


async def invoke_receiver(receiver: Receiver, received: ReceivedRecord, responder: Responder) -> None:
    """Call a receiver that may be a plain function or a coroutine function."""
    result = receiver(received, responder)
    if asyncio.iscoroutine(result):
        await result
