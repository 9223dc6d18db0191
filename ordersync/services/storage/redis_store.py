"""
Redis-backed key-value store.

Values are stored as JSON strings under ``{prefix}{key}``.

Author: Khalil Bannouri
Version: 1.0.0
"""

import json
import logging
from typing import Any, Optional

import redis.asyncio as redis
from redis.exceptions import RedisError

from ordersync.services.storage.base import BaseKeyValueStore, StorageError

logger = logging.getLogger(__name__)


class RedisKeyValueStore(BaseKeyValueStore):
    """
    Args:
        url: Redis connection string
        prefix: Namespace prepended to every key
        client: Pre-built client (tests pass a fake)
    """

    def __init__(
        self,
        url: str = "redis://localhost:6379/0",
        prefix: str = "ordersync:",
        client: Optional[redis.Redis] = None,
    ):
        self.prefix = prefix
        self._client = client or redis.from_url(
            url,
            decode_responses=True,
            socket_timeout=2,
            socket_connect_timeout=2,
        )

    @property
    def provider_name(self) -> str:
        return "redis"

    def _key(self, key: str) -> str:
        return f"{self.prefix}{key}"

    async def get(self, key: str) -> Optional[Any]:
        try:
            raw = await self._client.get(self._key(key))
        except RedisError as e:
            raise StorageError(f"Redis GET {key!r} failed: {e}") from e
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except ValueError as e:
            raise StorageError(f"Corrupt value under {key!r}: {e}") from e

    async def set(self, key: str, value: Any) -> None:
        try:
            encoded = json.dumps(value, separators=(",", ":"))
        except (TypeError, ValueError) as e:
            raise StorageError(f"Value for {key!r} is not JSON serializable: {e}") from e
        try:
            await self._client.set(self._key(key), encoded)
        except RedisError as e:
            raise StorageError(f"Redis SET {key!r} failed: {e}") from e

    async def delete(self, key: str) -> None:
        try:
            await self._client.delete(self._key(key))
        except RedisError as e:
            raise StorageError(f"Redis DEL {key!r} failed: {e}") from e

    async def health_check(self) -> bool:
        try:
            return bool(await self._client.ping())
        except RedisError as e:
            logger.error(f"Redis health check failed: {e}")
            return False

    async def aclose(self) -> None:
        await self._client.aclose()
