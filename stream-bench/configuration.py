"""
Configuration constants for the stream write/read benchmark.

This module contains all configuration parameters including:
- Stream service endpoint and naming
- Stream and subscription settings
- Producer batching and flow control defaults
- Load and reporting parameters
- Size constants and conversion factors
"""

import os

# =============================================================================
# STREAM SERVICE CONFIGURATION
# =============================================================================

# Stream service endpoint ("memory://" for the in-process service,
# "kafka://host:port[,host:port]" for a Kafka compatible cluster)
SERVICE_URL: str = os.getenv("STREAM_BENCH_SERVICE_URL", "memory://")

# Name prefixes for the ephemeral stream and subscription
STREAM_NAME_PREFIX: str = os.getenv("STREAM_BENCH_STREAM_PREFIX", "write_bench_stream_")
SUBSCRIPTION_NAME_PREFIX: str = "bench_WriteRead_sub_"

# =============================================================================
# STREAM CONFIGURATION
# =============================================================================

STREAM_REPLICATION_FACTOR: int = 1
STREAM_BACKLOG_DURATION_SECONDS: int = 60 * 30
STREAM_PARTITIONS: int = 1

# Records not acknowledged within this window become eligible for redelivery
ACK_TIMEOUT_SECONDS: int = 60

# =============================================================================
# PRODUCER CONFIGURATION
# =============================================================================

RECORD_SIZE_BYTES: int = 1024
BATCH_AGE_LIMIT_MS: int = 10
BATCH_BYTES_LIMIT: int = 1024 * 1024
BATCH_RECORD_COUNT_LIMIT: int = -1  # Unlimited, batches flush on bytes or age
TOTAL_BYTES_LIMIT: int = -1  # Unlimited in-flight bytes

RATE_LIMIT: int = 100000  # Records per second
RATE_LIMIT_BURST_SECONDS: float = 1.0  # Permits stored while idle
ORDERING_KEYS: int = 10
ORDERING_KEY_PREFIX: str = "test_"

# =============================================================================
# PAYLOAD CONFIGURATION
# =============================================================================

PAYLOAD_RAW: str = "raw"
PAYLOAD_HRECORD: str = "hrecord"
PAYLOAD_TYPES = (PAYLOAD_RAW, PAYLOAD_HRECORD)
DEFAULT_PAYLOAD_TYPE: str = PAYLOAD_RAW

# Serialized size of the structured record without padding
HRECORD_BASE_SIZE_BYTES: int = 96
HRECORD_PADDING_CHAR: str = "h"

# =============================================================================
# CONSUMER CONFIGURATION
# =============================================================================

CONSUMER_COUNT: int = 1
CONSUMER_FETCH_MAX_RECORDS: int = 500
CONSUMER_FETCH_TIMEOUT_MS: int = 100

# Records retained per in-memory stream and queued per in-memory subscription;
# the oldest are dropped beyond this
MEMORY_STREAM_MAX_RECORDS: int = 100_000

# =============================================================================
# REPORTING CONFIGURATION
# =============================================================================

REPORT_INTERVAL_SECONDS: int = 3
RUN_DURATION_SECONDS: int = 0  # 0 = run until interrupted
PROMETHEUS_PORT: int = int(os.getenv("STREAM_BENCH_PROMETHEUS_PORT", "0"))  # 0 = disabled

# =============================================================================
# SIZE CONSTANTS
# =============================================================================

BYTES_PER_KB: int = 1024
MILLIS_PER_SECOND: int = 1000
