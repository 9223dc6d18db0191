"""
File-backed key-value store.

Each key is one JSON file under the data directory. Reads and writes are
guarded by a per-key FileLock so several processes (service + scripts)
can share the directory, and writes go through a temp file + rename so
a crash never leaves a half-written snapshot.

Blocking file I/O runs in a worker thread.

Author: Khalil Bannouri
Version: 1.0.0
"""

import asyncio
import json
import logging
import os
import re
from pathlib import Path
from typing import Any, Optional

from filelock import FileLock, Timeout

from ordersync.services.storage.base import BaseKeyValueStore, StorageError

logger = logging.getLogger(__name__)

_UNSAFE_KEY_CHARS = re.compile(r"[^A-Za-z0-9_.-]")


class FileKeyValueStore(BaseKeyValueStore):
    """
    JSON files on disk, one per key.

    Args:
        directory: Where snapshot files live (created on demand)
        lock_timeout: Seconds to wait for a key's lock before giving up

    Example:
        >>> store = FileKeyValueStore("data")
        >>> await store.set("menu-cache-v1", snapshot.to_dict())
        # writes data/menu-cache-v1.json
    """

    def __init__(self, directory: str | Path = "data", lock_timeout: float = 10):
        self.directory = Path(directory)
        self.lock_timeout = lock_timeout

    @property
    def provider_name(self) -> str:
        return "file"

    def _path(self, key: str) -> Path:
        safe_name = _UNSAFE_KEY_CHARS.sub("_", key) or "_"
        return self.directory / f"{safe_name}.json"

    def _lock(self, path: Path) -> FileLock:
        return FileLock(str(path.with_name(path.name + ".lock")), timeout=self.lock_timeout)

    # =========================================================================
    # BLOCKING OPERATIONS
    # =========================================================================

    def _read(self, key: str) -> Optional[Any]:
        path = self._path(key)
        if not path.exists():
            return None
        try:
            with self._lock(path):
                with path.open("r", encoding="utf-8") as handle:
                    return json.load(handle)
        except Timeout as e:
            raise StorageError(f"Timed out waiting for lock on {path.name}") from e
        except ValueError as e:
            raise StorageError(f"Corrupt snapshot file {path.name}: {e}") from e
        except OSError as e:
            raise StorageError(f"Could not read {path.name}: {e}") from e

    def _write(self, key: str, value: Any) -> None:
        path = self._path(key)
        try:
            encoded = json.dumps(value, separators=(",", ":"))
        except (TypeError, ValueError) as e:
            raise StorageError(f"Value for {key!r} is not JSON serializable: {e}") from e

        try:
            self.directory.mkdir(parents=True, exist_ok=True)
            with self._lock(path):
                temp_path = path.with_name(path.name + ".tmp")
                with temp_path.open("w", encoding="utf-8") as handle:
                    handle.write(encoded)
                os.replace(temp_path, path)
        except Timeout as e:
            raise StorageError(f"Timed out waiting for lock on {path.name}") from e
        except OSError as e:
            raise StorageError(f"Could not write {path.name}: {e}") from e

        logger.debug(f"Wrote {path.name} ({len(encoded)} bytes)")

    def _remove(self, key: str) -> None:
        path = self._path(key)
        try:
            with self._lock(path):
                path.unlink(missing_ok=True)
        except Timeout as e:
            raise StorageError(f"Timed out waiting for lock on {path.name}") from e
        except OSError as e:
            raise StorageError(f"Could not delete {path.name}: {e}") from e

    # =========================================================================
    # ASYNC INTERFACE
    # =========================================================================

    async def get(self, key: str) -> Optional[Any]:
        return await asyncio.to_thread(self._read, key)

    async def set(self, key: str, value: Any) -> None:
        await asyncio.to_thread(self._write, key, value)

    async def delete(self, key: str) -> None:
        await asyncio.to_thread(self._remove, key)
