"""
Key-Value Store Abstract Base Class

Persistence contract used by the sync engine for order, menu and config
snapshots. Values are JSON-compatible trees; implementations decide how
they are encoded.

Author: Khalil Bannouri
Version: 1.0.0
"""

from abc import ABC, abstractmethod
from typing import Any, Optional


class StorageError(Exception):
    """The backing store could not complete an operation."""


class BaseKeyValueStore(ABC):
    """
    Abstract async key-value store.

    Example:
        >>> store = MemoryKeyValueStore()
        >>> await store.set("orders-cache-v1", {"entries": []})
        >>> await store.get("orders-cache-v1")
        {'entries': []}
    """

    @property
    @abstractmethod
    def provider_name(self) -> str:
        """
        Return the name of the storage backend.

        Returns:
            str: Backend name (e.g., "memory", "file", "redis")
        """
        pass

    @abstractmethod
    async def get(self, key: str) -> Optional[Any]:
        """
        Read a value.

        Returns:
            The stored value, or None when the key is absent

        Raises:
            StorageError: Backend unavailable or value unreadable
        """
        pass

    @abstractmethod
    async def set(self, key: str, value: Any) -> None:
        """
        Store a value, replacing any previous one.

        Raises:
            StorageError: Backend unavailable or value not serializable
        """
        pass

    @abstractmethod
    async def delete(self, key: str) -> None:
        """Remove a key; absent keys are ignored."""
        pass

    async def health_check(self) -> bool:
        """
        Verify the backend is usable.

        Returns:
            bool: True if a read round-trip succeeds
        """
        try:
            await self.get("__health__")
        except StorageError:
            return False
        return True

    async def aclose(self) -> None:
        """Release connections."""
        return None
