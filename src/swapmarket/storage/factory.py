"""Build the configured record store backend."""

from __future__ import annotations

import logging

from swapmarket.core.config import StoreConfig
from swapmarket.core.enums import StoreBackend
from swapmarket.core.interfaces import IRecordStore

from .memory import InMemoryRecordStore

logger = logging.getLogger(__name__)


async def create_record_store(config: StoreConfig) -> IRecordStore:
    """Instantiate and connect the backend named by ``config.backend``."""
    if config.backend == StoreBackend.MEMORY:
        logger.info("Using in-memory record store")
        return InMemoryRecordStore()

    if config.backend == StoreBackend.SQL:
        from .postgres.store import SqlRecordStore

        return await SqlRecordStore.connect(
            config.url,
            pool_size=config.pool_size,
            max_overflow=config.max_overflow,
            echo=config.echo_sql,
            timeout_seconds=config.timeout_seconds,
            create_tables=config.create_tables,
        )

    if config.backend == StoreBackend.REDIS:
        from .redis_store import RedisRecordStore

        store = RedisRecordStore(
            config.redis_url,
            prefix=config.redis_prefix,
            timeout_seconds=config.timeout_seconds,
        )
        await store.connect()
        return store

    raise ValueError(f"Unsupported store backend: {config.backend}")
