"""Tests for the GUID-keyed order cache."""

from datetime import timedelta

import pytest

from conftest import BASE_TIME, GUID_A, GUID_B, GUID_C, make_order
from ordersync.domain.lookups import LookupRegistry
from ordersync.domain.order_cache import ApplyOutcome, OrderCache
from ordersync.services.orders_api.mock import SAMPLE_MENU


@pytest.fixture
def registry():
    return LookupRegistry()


@pytest.fixture
def cache(registry):
    return OrderCache(registry, ready_ttl_ms=1_000, active_ttl_ms=5_000)


def test_ready_ttl_must_be_shorter(registry):
    with pytest.raises(ValueError):
        OrderCache(registry, ready_ttl_ms=5_000, active_ttl_ms=5_000)


class TestApplyRaw:
    def test_create_then_unchanged(self, cache):
        order = make_order(GUID_A)

        assert cache.apply_raw(order, now_ms=0) == ApplyOutcome.CREATED
        first = cache.get(GUID_A).normalized
        assert cache.apply_raw(make_order(GUID_A), now_ms=10) == ApplyOutcome.UNCHANGED

        entry = cache.get(GUID_A)
        assert entry.normalized is first
        assert entry.last_seen_at_ms == 10

    def test_changed_record_updates(self, cache):
        cache.apply_raw(make_order(GUID_A, status="SENT"), now_ms=0)

        assert cache.apply_raw(make_order(GUID_A, status="READY"), now_ms=5) == ApplyOutcome.UPDATED
        entry = cache.get(GUID_A)
        assert entry.is_ready is True
        assert entry.normalized.items[0].fulfillment_status == "READY"

    def test_record_without_guid_is_skipped(self, cache):
        assert cache.apply_raw({"id": "12345", "status": "OPEN"}, now_ms=0) == ApplyOutcome.SKIPPED
        assert cache.apply_raw("garbage", now_ms=0) == ApplyOutcome.SKIPPED
        assert len(cache) == 0

    def test_self_referential_record_is_cached(self, cache):
        order = make_order(GUID_A)
        loop: list = []
        loop.append(loop)
        order["status"] = loop

        assert cache.apply_raw(order, now_ms=0) == ApplyOutcome.CREATED
        assert GUID_A in cache
        assert cache.apply_raw(order, now_ms=1) == ApplyOutcome.UNCHANGED

    def test_ready_variant_marks_entry_ready(self, cache):
        cache.apply_raw(make_order(GUID_A, status="Ready for pickup"), now_ms=0)

        entry = cache.get(GUID_A)
        assert entry.normalized.items[0].fulfillment_status == "READY"
        assert entry.is_ready is True

    def test_voided_record_deletes(self, cache):
        cache.apply_raw(make_order(GUID_A), now_ms=0)
        voided = {**make_order(GUID_A), "voided": True}

        assert cache.apply_raw(voided, now_ms=1) == ApplyOutcome.DELETED
        assert GUID_A not in cache
        assert cache.apply_raw(voided, now_ms=2) == ApplyOutcome.SKIPPED

    def test_apply_batch_reports_seen(self, cache):
        seen = cache.apply_batch(
            [make_order(GUID_A), {"no": "guid"}, {**make_order(GUID_B), "voided": True}],
            now_ms=0,
        )
        assert seen == {GUID_A}


def test_active_guids(cache):
    cache.apply_batch(
        [make_order(GUID_A), make_order(GUID_B, status="READY"), make_order(GUID_C)],
        now_ms=0,
    )
    assert cache.active_guids() == [GUID_A, GUID_C]
    assert cache.active_guids(exclude=[GUID_C]) == [GUID_A]


class TestEviction:
    def test_ready_orders_expire_first(self, cache):
        cache.apply_batch([make_order(GUID_A), make_order(GUID_B, status="READY")], now_ms=0)

        assert cache.evict_stale(now_ms=2_000) == [GUID_B]
        assert cache.evict_stale(now_ms=5_000) == []
        assert cache.evict_stale(now_ms=5_001) == [GUID_A]

    def test_seen_orders_are_protected(self, cache):
        cache.apply_raw(make_order(GUID_A), now_ms=0)

        assert cache.evict_stale(now_ms=60_000, seen_guids=[GUID_A]) == []
        assert GUID_A in cache

    def test_touch_extends_retention(self, cache):
        cache.apply_raw(make_order(GUID_A), now_ms=0)

        assert cache.touch(GUID_A, now_ms=4_000) is True
        assert cache.touch(GUID_B, now_ms=4_000) is False
        assert cache.evict_stale(now_ms=6_000) == []


def test_reconcile_lookup_version(cache, registry):
    order = make_order(GUID_A, item_name="Raw Name")
    order["checks"][0]["selections"][0]["item"] = {"guid": "item-brekky"}
    cache.apply_raw(order, now_ms=0)
    assert cache.get(GUID_A).normalized.items[0].name == "Raw Name"

    registry.update(menu_payload=SAMPLE_MENU)

    assert cache.reconcile_lookup_version() == 1
    entry = cache.get(GUID_A)
    assert entry.normalized.items[0].name == "Big Brekky"
    assert entry.normalized_version == registry.version
    assert cache.reconcile_lookup_version() == 0


def test_publish_sorted_by_created_at(cache):
    cache.apply_batch(
        [
            make_order(GUID_C, opened=BASE_TIME + timedelta(minutes=5)),
            {"guid": GUID_B, "status": "OPEN"},
            make_order(GUID_A, opened=BASE_TIME),
        ],
        now_ms=0,
    )
    assert [order.guid for order in cache.publish()] == [GUID_A, GUID_C, GUID_B]


def test_export_and_restore(cache, registry):
    cache.apply_raw(make_order(GUID_A), now_ms=100)
    cache.apply_raw(make_order(GUID_B, status="READY"), now_ms=200)
    exported = cache.export_state()

    restored = OrderCache(registry, ready_ttl_ms=1_000, active_ttl_ms=5_000)
    assert restored.restore_state(exported + [{"raw": "bad"}, {"raw": {}, "last_seen_at_ms": True}]) == 2

    assert restored.get(GUID_A).last_seen_at_ms == 100
    assert restored.get(GUID_B).is_ready is True
    assert restored.raw_orders() == cache.raw_orders()
