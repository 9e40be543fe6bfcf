"""
Record factory for the write benchmark.

A single record template is built once per run and reused for every
write. Records are immutable; per-send metadata (the ordering key) is
attached to a copy, never to the shared template.
"""

import json
import os
import logging
from dataclasses import dataclass, replace
from typing import Any, Dict, Union

from configuration import (
    PAYLOAD_RAW,
    PAYLOAD_HRECORD,
    HRECORD_BASE_SIZE_BYTES,
    HRECORD_PADDING_CHAR,
)

logger = logging.getLogger(__name__)

Payload = Union[bytes, Dict[str, Any]]


@dataclass(frozen=True)
class Record:
    """A record to append to a stream."""

    payload: Payload
    ordering_key: str = ""

    @property
    def is_raw(self) -> bool:
        return isinstance(self.payload, bytes)

    def with_ordering_key(self, ordering_key: str) -> "Record":
        """Return a copy of this record carrying the given ordering key."""
        return replace(self, ordering_key=ordering_key)


def padding_size(record_size: int) -> int:
    """Length of the padding string for a structured record of the given size."""
    return record_size - HRECORD_BASE_SIZE_BYTES if record_size > HRECORD_BASE_SIZE_BYTES else 0


def make_raw_record(record_size: int) -> Record:
    return Record(payload=os.urandom(record_size))


def make_hrecord(record_size: int) -> Record:
    # Shared by every send; adapters serialize it and must not mutate it.
    payload = {
        "int": 10,
        "boolean": True,
        "array": [1, 2, 3],
        "string": HRECORD_PADDING_CHAR * padding_size(record_size),
    }
    return Record(payload=payload)


def make_record(config) -> Record:
    """Build the record template for a benchmark run.

    Args:
        config: BenchConfig providing record_size and payload_type

    Returns:
        Record template without an ordering key

    Raises:
        ValueError: If the payload type is not supported
    """
    if config.payload_type == PAYLOAD_RAW:
        record = make_raw_record(config.record_size)
    elif config.payload_type == PAYLOAD_HRECORD:
        record = make_hrecord(config.record_size)
    else:
        raise ValueError(f"Unsupported record type: {config.payload_type}")

    logger.info(
        f"Built {config.payload_type} record template "
        f"({payload_size(record.payload)} bytes serialized, {config.record_size} configured)"
    )
    return record


def encode_payload(payload: Payload) -> bytes:
    """Serialize a payload to bytes for the wire."""
    if isinstance(payload, bytes):
        return payload
    return json.dumps(payload, separators=(",", ":")).encode("utf-8")


def decode_payload(data: bytes, structured: bool) -> Payload:
    if not structured:
        return data
    return json.loads(data.decode("utf-8"))


def payload_size(payload: Payload) -> int:
    """Size in bytes of a payload once serialized."""
    if isinstance(payload, bytes):
        return len(payload)
    return len(encode_payload(payload))
