"""
In-memory key-value store.

Default backend in development and the fallback used when a persistent
backend is unavailable. Values are deep-copied in and out so callers
never share mutable state with the store.

Author: Khalil Bannouri
Version: 1.0.0
"""

import copy
from typing import Any, Optional

from ordersync.services.storage.base import BaseKeyValueStore


class MemoryKeyValueStore(BaseKeyValueStore):
    def __init__(self) -> None:
        self._data: dict[str, Any] = {}

    @property
    def provider_name(self) -> str:
        return "memory"

    async def get(self, key: str) -> Optional[Any]:
        return copy.deepcopy(self._data.get(key))

    async def set(self, key: str, value: Any) -> None:
        self._data[key] = copy.deepcopy(value)

    async def delete(self, key: str) -> None:
        self._data.pop(key, None)

    def keys(self) -> list[str]:
        return list(self._data)
