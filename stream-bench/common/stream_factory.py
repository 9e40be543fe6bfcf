"""
Factory module for creating stream service instances.
"""

import logging
from urllib.parse import urlparse

# Suppress Kafka client logging BEFORE importing any Kafka-related modules
logging.getLogger('aiokafka').setLevel(logging.WARNING)
logging.getLogger('kafka').setLevel(logging.WARNING)

from systems.base import StreamSystem
from systems.memory import MemoryStreamSystem

logger = logging.getLogger(__name__)

SUPPORTED_SCHEMES = ("memory", "kafka")


def create_stream_system(service_url: str) -> StreamSystem:
    """Create and return the stream service matching the URL scheme.

    Args:
        service_url: ``memory://`` or ``kafka://host:port[,host:port]``

    Returns:
        Stream system instance (MemoryStreamSystem or KafkaStreamSystem)

    Raises:
        ValueError: If the URL scheme is not supported
    """
    scheme = urlparse(service_url).scheme.lower()

    if scheme == "memory":
        return MemoryStreamSystem(service_url)

    elif scheme == "kafka":
        from systems.kafka import KafkaStreamSystem
        return KafkaStreamSystem(service_url)

    else:
        raise ValueError(
            f"Unsupported service URL: {service_url}. "
            f"Scheme must be one of {', '.join(SUPPORTED_SCHEMES)}."
        )
