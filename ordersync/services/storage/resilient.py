"""
Resilient store wrapper.

Wraps a persistent backend and mirrors every successful write into
memory. When the backend raises StorageError the call degrades to the
in-memory mirror instead of failing, so the sync engine keeps working
with storage unavailable; the backend is retried on every call.

Author: Khalil Bannouri
Version: 1.0.0
"""

import logging
from typing import Any, Callable, Optional

from ordersync.services.storage.base import BaseKeyValueStore, StorageError
from ordersync.services.storage.memory import MemoryKeyValueStore

logger = logging.getLogger(__name__)

UnavailableCallback = Callable[[str, str, StorageError], None]


class ResilientStore(BaseKeyValueStore):
    """
    Args:
        primary: The persistent backend
        on_unavailable: Called with (operation, key, error) on each failure
    """

    def __init__(
        self,
        primary: BaseKeyValueStore,
        on_unavailable: Optional[UnavailableCallback] = None,
    ):
        self.primary = primary
        self.on_unavailable = on_unavailable
        self.degraded = False
        self.last_error: Optional[str] = None
        self._mirror = MemoryKeyValueStore()

    @property
    def provider_name(self) -> str:
        return self.primary.provider_name

    def _fail(self, operation: str, key: str, error: StorageError) -> None:
        if not self.degraded:
            logger.warning(
                f"Storage backend '{self.primary.provider_name}' unavailable "
                f"({operation} {key!r}): {error}; using in-memory fallback"
            )
        self.degraded = True
        self.last_error = str(error)
        if self.on_unavailable is not None:
            self.on_unavailable(operation, key, error)

    def _recovered(self) -> None:
        if self.degraded:
            logger.info(f"Storage backend '{self.primary.provider_name}' recovered")
        self.degraded = False
        self.last_error = None

    async def get(self, key: str) -> Optional[Any]:
        try:
            value = await self.primary.get(key)
        except StorageError as e:
            self._fail("get", key, e)
            return await self._mirror.get(key)
        self._recovered()
        return value

    async def set(self, key: str, value: Any) -> None:
        await self._mirror.set(key, value)
        try:
            await self.primary.set(key, value)
        except StorageError as e:
            self._fail("set", key, e)
            return
        self._recovered()

    async def delete(self, key: str) -> None:
        await self._mirror.delete(key)
        try:
            await self.primary.delete(key)
        except StorageError as e:
            self._fail("delete", key, e)
            return
        self._recovered()

    async def health_check(self) -> bool:
        return await self.primary.health_check()

    async def aclose(self) -> None:
        await self.primary.aclose()
