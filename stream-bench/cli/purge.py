"""
Delete streams left behind by earlier benchmark runs.
"""

import logging
from typing import List

from systems.base import StreamSystem

logger = logging.getLogger(__name__)


class StreamPurger:
    """Deletes every stream whose name starts with the benchmark prefix."""

    def __init__(self, system: StreamSystem, prefix: str):
        if not prefix:
            raise ValueError("A stream name prefix is required to purge streams")
        self.system = system
        self.prefix = prefix

    async def purge(self) -> List[str]:
        """Delete matching streams.

        Returns:
            Names of the deleted streams
        """
        deleted = []
        async with self.system:
            streams = await self.system.list_streams()
            targets = [name for name in streams if name.startswith(self.prefix)]
            logger.info(f"Found {len(targets)} of {len(streams)} streams with prefix {self.prefix!r}")

            for name in targets:
                try:
                    await self.system.delete_stream(name)
                    deleted.append(name)
                except Exception as e:
                    logger.error(f"Failed to delete stream {name}: {e}")

        logger.info(f"Deleted {len(deleted)} streams")
        return deleted
