"""Tests for the key-value store backends."""

import json

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from conftest import FailingStore
from ordersync.services.storage.base import StorageError
from ordersync.services.storage.file_store import FileKeyValueStore
from ordersync.services.storage.memory import MemoryKeyValueStore
from ordersync.services.storage.redis_store import RedisKeyValueStore
from ordersync.services.storage.resilient import ResilientStore


class FakeRedis:
    """Just enough of redis.asyncio.Redis for the store."""

    def __init__(self):
        self.data: dict[str, str] = {}
        self.down = False

    def _check(self):
        if self.down:
            raise RedisConnectionError("connection refused")

    async def get(self, key):
        self._check()
        return self.data.get(key)

    async def set(self, key, value):
        self._check()
        self.data[key] = value

    async def delete(self, key):
        self._check()
        self.data.pop(key, None)

    async def ping(self):
        self._check()
        return True

    async def aclose(self):
        return None


@pytest.mark.asyncio
async def test_memory_store_copies_values():
    store = MemoryKeyValueStore()
    value = {"entries": [1]}

    await store.set("k", value)
    value["entries"].append(2)
    loaded = await store.get("k")
    loaded["entries"].append(3)

    assert await store.get("k") == {"entries": [1]}
    await store.delete("k")
    assert await store.get("k") is None


class TestFileStore:
    @pytest.mark.asyncio
    async def test_round_trip_and_delete(self, tmp_path):
        store = FileKeyValueStore(tmp_path / "snapshots")

        await store.set("orders-cache-v1", {"entries": [], "last_cursor": None})

        assert (tmp_path / "snapshots" / "orders-cache-v1.json").exists()
        assert await store.get("orders-cache-v1") == {"entries": [], "last_cursor": None}
        await store.delete("orders-cache-v1")
        assert await store.get("orders-cache-v1") is None

    @pytest.mark.asyncio
    async def test_unsafe_key_characters_are_replaced(self, tmp_path):
        store = FileKeyValueStore(tmp_path)
        await store.set("../escape/key", [1])

        assert (tmp_path / ".._escape_key.json").exists()
        assert await store.get("../escape/key") == [1]

    @pytest.mark.asyncio
    async def test_corrupt_file(self, tmp_path):
        (tmp_path / "broken.json").write_text("{not json", encoding="utf-8")

        with pytest.raises(StorageError):
            await FileKeyValueStore(tmp_path).get("broken")

    @pytest.mark.asyncio
    async def test_unserializable_value(self, tmp_path):
        with pytest.raises(StorageError):
            await FileKeyValueStore(tmp_path).set("bad", {"value": object()})

    @pytest.mark.asyncio
    async def test_health_check(self, tmp_path):
        assert await FileKeyValueStore(tmp_path).health_check() is True


class TestRedisStore:
    @pytest.mark.asyncio
    async def test_values_are_prefixed_json(self):
        fake = FakeRedis()
        store = RedisKeyValueStore(prefix="test:", client=fake)

        await store.set("menu-cache-v1", {"payload": {"a": 1}})

        assert json.loads(fake.data["test:menu-cache-v1"]) == {"payload": {"a": 1}}
        assert await store.get("menu-cache-v1") == {"payload": {"a": 1}}
        assert await store.health_check() is True

    @pytest.mark.asyncio
    async def test_connection_errors_become_storage_errors(self):
        fake = FakeRedis()
        fake.down = True
        store = RedisKeyValueStore(client=fake)

        with pytest.raises(StorageError):
            await store.get("k")
        with pytest.raises(StorageError):
            await store.set("k", 1)
        assert await store.health_check() is False

    @pytest.mark.asyncio
    async def test_corrupt_value(self):
        fake = FakeRedis()
        fake.data["ordersync:k"] = "{oops"

        with pytest.raises(StorageError):
            await RedisKeyValueStore(client=fake).get("k")


class TestResilientStore:
    @pytest.mark.asyncio
    async def test_degrades_to_memory_mirror(self):
        failures = []
        primary = FailingStore()
        store = ResilientStore(primary, on_unavailable=lambda op, key, e: failures.append((op, key)))

        await store.set("k", {"v": 1})

        assert store.degraded is True
        assert store.last_error == "backend offline"
        assert await store.get("k") == {"v": 1}
        assert failures == [("set", "k"), ("get", "k")]

    @pytest.mark.asyncio
    async def test_recovers_when_backend_returns(self):
        primary = FailingStore()
        store = ResilientStore(primary)
        await store.set("k", 1)

        primary.available = True
        await store.set("k", 2)

        assert store.degraded is False
        assert store.last_error is None
        assert await primary.get("k") == 2

    @pytest.mark.asyncio
    async def test_healthy_backend_passes_through(self):
        primary = MemoryKeyValueStore()
        store = ResilientStore(primary)

        await store.set("k", [1])

        assert await primary.get("k") == [1]
        assert store.provider_name == "memory"
        assert store.degraded is False
