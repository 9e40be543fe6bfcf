"""
Immutable benchmark configuration snapshot.
"""

import logging
from dataclasses import dataclass, fields

from configuration import (
    SERVICE_URL,
    STREAM_NAME_PREFIX,
    STREAM_REPLICATION_FACTOR,
    STREAM_BACKLOG_DURATION_SECONDS,
    STREAM_PARTITIONS,
    RECORD_SIZE_BYTES,
    BATCH_AGE_LIMIT_MS,
    BATCH_BYTES_LIMIT,
    REPORT_INTERVAL_SECONDS,
    RATE_LIMIT,
    ORDERING_KEYS,
    TOTAL_BYTES_LIMIT,
    DEFAULT_PAYLOAD_TYPE,
    PAYLOAD_TYPES,
    CONSUMER_COUNT,
    ACK_TIMEOUT_SECONDS,
    RUN_DURATION_SECONDS,
    PROMETHEUS_PORT,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BenchConfig:
    """Configuration for one benchmark run, read-only after construction."""

    service_url: str = SERVICE_URL
    stream_name_prefix: str = STREAM_NAME_PREFIX
    stream_replication_factor: int = STREAM_REPLICATION_FACTOR
    stream_backlog_duration: int = STREAM_BACKLOG_DURATION_SECONDS
    stream_partitions: int = STREAM_PARTITIONS
    record_size: int = RECORD_SIZE_BYTES
    batch_age_limit: int = BATCH_AGE_LIMIT_MS
    batch_bytes_limit: int = BATCH_BYTES_LIMIT
    report_interval_seconds: int = REPORT_INTERVAL_SECONDS
    rate_limit: int = RATE_LIMIT
    ordering_keys: int = ORDERING_KEYS
    total_bytes_limit: int = TOTAL_BYTES_LIMIT
    payload_type: str = DEFAULT_PAYLOAD_TYPE
    consumer_count: int = CONSUMER_COUNT
    ack_timeout_seconds: int = ACK_TIMEOUT_SECONDS
    duration_seconds: int = RUN_DURATION_SECONDS
    prometheus_port: int = PROMETHEUS_PORT
    delete_stream: bool = False

    def __post_init__(self):
        positive = (
            "stream_replication_factor",
            "stream_partitions",
            "record_size",
            "batch_bytes_limit",
            "report_interval_seconds",
            "rate_limit",
            "ordering_keys",
            "ack_timeout_seconds",
        )
        for name in positive:
            value = getattr(self, name)
            if value <= 0:
                raise ValueError(f"{name} must be > 0, got {value}")

        if self.batch_age_limit < 0:
            raise ValueError(f"batch_age_limit must be >= 0, got {self.batch_age_limit}")
        if self.consumer_count < 0:
            raise ValueError(f"consumer_count must be >= 0, got {self.consumer_count}")
        if self.duration_seconds < 0:
            raise ValueError(f"duration_seconds must be >= 0, got {self.duration_seconds}")
        # -1 (or any negative value) disables the in-flight byte cap
        if self.total_bytes_limit == 0:
            raise ValueError("total_bytes_limit must be positive or -1 for unlimited")
        if self.payload_type not in PAYLOAD_TYPES:
            raise ValueError(
                f"Unsupported record type: {self.payload_type}. "
                f"Must be one of {', '.join(PAYLOAD_TYPES)}."
            )

    @classmethod
    def from_args(cls, args) -> "BenchConfig":
        """Build a config from parsed CLI options.

        Attributes missing on ``args`` fall back to the defaults from
        the configuration module.

        Args:
            args: argparse namespace (or any object with matching attributes)

        Returns:
            Validated BenchConfig
        """
        values = {}
        for field in fields(cls):
            value = getattr(args, field.name, None)
            if value is not None:
                values[field.name] = value
        return cls(**values)

    def __str__(self) -> str:
        body = ", ".join(f"{field.name}={getattr(self, field.name)!r}" for field in fields(self))
        return f"BenchConfig({body})"
