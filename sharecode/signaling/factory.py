"""Create record stores from configuration."""
from __future__ import annotations

import logging

from sharecode.config import StoreConfig
from sharecode.signaling.memory import MemoryRecordStore
from sharecode.signaling.protocols import RecordStore
from sharecode.signaling.redis import RedisRecordStore

logger = logging.getLogger(__name__)


async def create_store(config: StoreConfig) -> RecordStore:
    """Create and connect the record store described by a configuration.

    Raises:
        StoreAuthenticationError: If Redis rejects the credentials.
        StoreUnavailableError: If Redis cannot be reached.
    """
    if config.backend == 'memory':
        logger.info('Using in-process record store')
        return MemoryRecordStore(record_ttl=config.record_ttl)

    store = RedisRecordStore(
        config.hostname,
        config.port,
        username=config.username,
        password=config.password,
        prefix=config.prefix,
        record_ttl=config.record_ttl,
    )
    try:
        await store.connect()
    except Exception:
        await store.close()
        raise
    return store
