"""
Key-Value Store Factory

Usage:
    from ordersync.services.storage import get_key_value_store

    store = get_key_value_store()
    await store.set("orders-cache-v1", state)

Backend Switching (STORAGE_BACKEND):
    - memory → MemoryKeyValueStore (nothing survives a restart)
    - file → FileKeyValueStore under DATA_DIRECTORY (filelock-guarded)
    - redis → RedisKeyValueStore at REDIS_URL

Persistent backends are wrapped in ResilientStore, which degrades to
memory instead of failing.

Author: Khalil Bannouri
Version: 1.0.0
"""

import logging
from functools import lru_cache

from ordersync.core.config import StorageBackend, get_settings
from ordersync.services.storage.base import BaseKeyValueStore, StorageError
from ordersync.services.storage.file_store import FileKeyValueStore
from ordersync.services.storage.memory import MemoryKeyValueStore
from ordersync.services.storage.redis_store import RedisKeyValueStore
from ordersync.services.storage.resilient import ResilientStore

logger = logging.getLogger(__name__)


@lru_cache()
def get_key_value_store() -> BaseKeyValueStore:
    """
    Get the configured key-value store.

    Returns:
        BaseKeyValueStore: MemoryKeyValueStore, or a ResilientStore around
        the file / redis backend
    """
    settings = get_settings()

    if settings.storage_backend == StorageBackend.FILE:
        logger.info(f"Storage: Using FileKeyValueStore ({settings.data_directory})")
        return ResilientStore(
            FileKeyValueStore(settings.data_directory, settings.storage_lock_timeout)
        )

    if settings.storage_backend == StorageBackend.REDIS:
        logger.info("Storage: Using RedisKeyValueStore")
        return ResilientStore(
            RedisKeyValueStore(settings.redis_url, settings.redis_key_prefix)
        )

    logger.info("Storage: Using MemoryKeyValueStore")
    return MemoryKeyValueStore()


def reset_key_value_store() -> None:
    """Clear the cached store instance."""
    get_key_value_store.cache_clear()
    logger.debug("Key-value store cache cleared")


__all__ = [
    "get_key_value_store",
    "reset_key_value_store",
    "BaseKeyValueStore",
    "StorageError",
    "MemoryKeyValueStore",
    "FileKeyValueStore",
    "RedisKeyValueStore",
    "ResilientStore",
]
