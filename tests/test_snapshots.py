"""Tests for menu/config snapshots and the freshness-checked snapshot source."""

from datetime import timedelta

import pytest

from conftest import BASE_TIME
from ordersync.domain.snapshots import (
    CacheSnapshot,
    parse_cache_control_max_age,
    prepare_snapshot,
    resolve_ttl_ms,
)
from ordersync.services.diagnostics import LOOKUPS_STALE
from ordersync.services.orders_api.mock import SAMPLE_MENU, MockOrdersApi
from ordersync.sync.cancellation import CancellationToken
from ordersync.sync.snapshot_source import SnapshotSource


class TestCacheControl:
    def test_reads_max_age(self):
        assert parse_cache_control_max_age("public, max-age=300") == 300
        assert parse_cache_control_max_age('max-age="60"') == 60

    def test_ignores_other_directives(self):
        assert parse_cache_control_max_age("no-store") is None
        assert parse_cache_control_max_age("s-maxage=10, max-age=") is None
        assert parse_cache_control_max_age(None) is None


class TestResolveTtl:
    def test_header_wins(self):
        assert resolve_ttl_ms({"ttlSeconds": 10}, "max-age=60") == 60_000

    def test_payload_field(self):
        assert resolve_ttl_ms({"ttlSeconds": 10}) == 10_000

    def test_zero_max_age_falls_through_to_payload(self):
        assert resolve_ttl_ms({"ttlSeconds": 10}, "max-age=0") == 10_000

    def test_no_expiry(self):
        assert resolve_ttl_ms({}) is None
        assert resolve_ttl_ms({"ttlSeconds": True}) is None
        assert resolve_ttl_ms([1, 2]) is None


class TestCacheSnapshot:
    def test_freshness(self):
        snapshot = prepare_snapshot({"a": 1}, ttl_ms=1_000, now=BASE_TIME)

        assert snapshot.is_fresh(BASE_TIME + timedelta(milliseconds=999))
        assert not snapshot.is_fresh(BASE_TIME + timedelta(seconds=1))

    def test_without_ttl_is_always_fresh(self):
        snapshot = prepare_snapshot({"a": 1}, now=BASE_TIME)
        assert snapshot.expires_at is None
        assert snapshot.is_fresh(BASE_TIME + timedelta(days=365))

    def test_persisted_form(self):
        snapshot = prepare_snapshot({"a": 1}, ttl_ms=1_000, now=BASE_TIME)
        restored = CacheSnapshot.from_dict(snapshot.to_dict())

        assert restored == snapshot

    def test_unusable_records(self):
        assert CacheSnapshot.from_dict(None) is None
        assert CacheSnapshot.from_dict({"fetched_at": "2024-05-01T10:00:00Z"}) is None
        assert CacheSnapshot.from_dict({"payload": {}, "fetched_at": "yesterday"}) is None


@pytest.fixture
def menu_api():
    return MockOrdersApi(menu=SAMPLE_MENU, menu_cache_control="max-age=60")


@pytest.fixture
def source(menu_api, store, diagnostics):
    return SnapshotSource("menu", menu_api.fetch_menus, store, "menu-snapshot", diagnostics)


class TestSnapshotSource:
    @pytest.mark.asyncio
    async def test_fetches_and_persists(self, source, menu_api, store):
        payload = await source.load(CancellationToken(), now=BASE_TIME)

        assert payload == SAMPLE_MENU
        assert source.snapshot.expires_at == BASE_TIME + timedelta(seconds=60)
        persisted = await store.get("menu-snapshot")
        assert CacheSnapshot.from_dict(persisted).payload == SAMPLE_MENU

    @pytest.mark.asyncio
    async def test_fresh_snapshot_skips_upstream(self, source, menu_api):
        await source.load(CancellationToken(), now=BASE_TIME)
        await source.load(CancellationToken(), now=BASE_TIME + timedelta(seconds=30))

        assert len(menu_api.calls_to("fetch_menus")) == 1

    @pytest.mark.asyncio
    async def test_stale_snapshot_served_on_failure(self, source, menu_api, diagnostics):
        await source.load(CancellationToken(), now=BASE_TIME)
        menu_api.queue_failure("fetch_menus")

        payload = await source.load(CancellationToken(), now=BASE_TIME + timedelta(minutes=5))

        assert payload == SAMPLE_MENU
        [event] = diagnostics.events(LOOKUPS_STALE)
        assert event.payload["source"] == "menu"
        assert event.payload["has_snapshot"] is True

    @pytest.mark.asyncio
    async def test_failure_without_snapshot(self, source, menu_api, diagnostics):
        menu_api.queue_failure("fetch_menus", status_code=500)

        assert await source.load(CancellationToken(), now=BASE_TIME) is None
        assert diagnostics.events(LOOKUPS_STALE)[0].payload["has_snapshot"] is False

    @pytest.mark.asyncio
    async def test_restore(self, source, menu_api, store, diagnostics):
        await source.load(CancellationToken(), now=BASE_TIME)

        fresh = SnapshotSource("menu", menu_api.fetch_menus, store, "menu-snapshot", diagnostics)
        snapshot = await fresh.restore()

        assert snapshot.payload == SAMPLE_MENU
        assert fresh.snapshot is snapshot
