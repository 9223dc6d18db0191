"""Tests for the refresh cycle of the sync engine."""

import asyncio
from datetime import timedelta

import pytest

from conftest import (
    BASE_TIME,
    GUID_A,
    GUID_B,
    GUID_C,
    FailingStore,
    FixedClock,
    StubOrdersApi,
    iso,
    make_order,
)
from ordersync.schemas import OrdersLatestResponse
from ordersync.services.diagnostics import (
    LIMIT_SATURATED,
    OMISSION_DETECTED,
    REFRESH_ERROR,
    REFRESH_FALLBACK,
)
from ordersync.services.orders_api.mock import SAMPLE_CONFIG, SAMPLE_MENU, MockOrdersApi
from ordersync.sync.engine import (
    CONFIG_CACHE_KEY,
    MENU_CACHE_KEY,
    ORDERS_CACHE_KEY,
    SyncEngine,
    collect_order_timestamps,
    is_listing_saturated,
    listing_guids,
)


@pytest.fixture
def engine(api, store, diagnostics, settings):
    return SyncEngine(api, store, diagnostics, settings=settings)


def guids_of(engine):
    return {order.guid for order in engine.orders}


# =============================================================================
# HELPERS
# =============================================================================

def test_listing_guids_merges_ids_and_orders():
    listing = OrdersLatestResponse(ids=[GUID_A, " "], orders=[GUID_B, {"guid": GUID_A}, 7])
    assert listing_guids(listing) == [GUID_A, GUID_B]


def test_saturation_signals():
    assert is_listing_saturated(OrdersLatestResponse(), limit=2, count=2)
    assert not is_listing_saturated(OrdersLatestResponse(), limit=3, count=2)
    assert is_listing_saturated(OrdersLatestResponse(debug={"hasMore": True}), limit=3, count=0)
    assert is_listing_saturated(OrdersLatestResponse(debug={"nextCursor": "abc"}), limit=3, count=0)
    assert is_listing_saturated(
        OrdersLatestResponse(debug={"pagination": {"hasMore": True}}), limit=3, count=0
    )


def test_collect_order_timestamps():
    order = make_order(GUID_A, modified=BASE_TIME + timedelta(minutes=3))
    order["checks"][0]["modifiedDate"] = iso(BASE_TIME + timedelta(minutes=4))
    stamps = collect_order_timestamps([order, "junk"])
    assert max(stamps) == BASE_TIME + timedelta(minutes=4)


def test_build_query(engine, settings):
    now = BASE_TIME + timedelta(hours=1)

    first = engine.build_query(now)
    assert first.since is None
    assert first.minutes == settings.order_polling_window_minutes
    assert first.limit == settings.poll_limit

    engine._cursor = BASE_TIME
    assert engine.build_query(now).since == BASE_TIME - timedelta(seconds=5)

    # the lookback window clamps an old cursor
    much_later = BASE_TIME + timedelta(days=3)
    assert engine.build_query(much_later).since == much_later - timedelta(
        minutes=settings.order_polling_window_minutes
    )


# =============================================================================
# CYCLES
# =============================================================================

@pytest.mark.asyncio
async def test_initial_refresh_hydrates_listing(engine, store):
    report = await engine.refresh(silent=False)

    assert report.success is True
    assert report.hydrated == 3
    assert report.lookup_version == 1
    assert report.orders_count == 3
    assert [order.guid for order in engine.orders] == [GUID_A, GUID_B, GUID_C]
    assert engine.cursor == BASE_TIME + timedelta(minutes=2)
    assert engine.state.is_loading is False
    assert engine.state.last_success_at is not None

    for key in (ORDERS_CACHE_KEY, MENU_CACHE_KEY, CONFIG_CACHE_KEY):
        assert await store.get(key) is not None


@pytest.mark.asyncio
async def test_cached_orders_are_not_refetched(engine, api):
    for guid in (GUID_A, GUID_B, GUID_C):
        order = make_order(guid, status="READY")
        api.upsert_order(order)
    await engine.refresh()
    fetches = len(api.calls_to("fetch_order"))

    report = await engine.refresh()

    assert report.hydrated == 0
    assert report.repolled == 0
    assert len(api.calls_to("fetch_order")) == fetches
    assert len(api.calls_to("fetch_menus")) == 1


@pytest.mark.asyncio
async def test_omitted_order_removed_on_404(engine, api, diagnostics):
    await engine.refresh()
    api.remove_order(GUID_C)

    report = await engine.refresh()

    assert report.omitted == 1
    assert report.removed == [GUID_C]
    assert guids_of(engine) == {GUID_A, GUID_B}
    assert diagnostics.events(OMISSION_DETECTED)[0].payload["guids"] == [GUID_C]


@pytest.mark.asyncio
async def test_omitted_order_removed_when_voided(engine, api):
    await engine.refresh()
    api.void_order(GUID_B)

    report = await engine.refresh()

    assert report.removed == [GUID_B]
    assert guids_of(engine) == {GUID_A, GUID_C}


@pytest.mark.asyncio
async def test_truncated_listing_keeps_omitted_orders(engine, settings, diagnostics):
    await engine.refresh()
    engine.settings = settings.model_copy(update={"poll_limit": 2})

    report = await engine.refresh()

    assert report.saturated is True
    assert report.omitted == 1
    assert report.removed == []
    assert guids_of(engine) == {GUID_A, GUID_B, GUID_C}
    assert diagnostics.events(LIMIT_SATURATED)[0].payload == {"limit": 2, "count": 2}


@pytest.mark.asyncio
async def test_unresolved_omission_leaves_cache_untouched(engine, api):
    await engine.refresh()
    api.remove_order(GUID_C)
    api.queue_failure("fetch_order", 503, count=3)

    report = await engine.refresh()

    assert report.unresolved == [GUID_C]
    assert GUID_C in guids_of(engine)


@pytest.mark.asyncio
async def test_ready_orders_evicted_before_active(api, store, diagnostics, settings):
    clock = FixedClock(BASE_TIME)
    api.upsert_order(make_order(GUID_B, status="READY", opened=BASE_TIME + timedelta(minutes=1)))
    engine = SyncEngine(api, store, diagnostics, settings=settings, clock=clock)
    await engine.refresh()

    api.remove_order(GUID_A)
    api.remove_order(GUID_B)
    api.remove_order(GUID_C)
    api.upsert_order(make_order(GUID_A))
    api.queue_failure("fetch_order", 503, count=100)
    clock.advance(seconds=90)

    report = await engine.refresh()

    assert GUID_B in report.evicted
    assert guids_of(engine) == {GUID_A, GUID_C}


# =============================================================================
# CURSOR
# =============================================================================

def full_listing(*orders, window_end=None, debug=None):
    listing = {"ok": True, "detail": "full", "orders": list(orders)}
    if window_end is not None:
        listing["window"] = {"end": iso(window_end)}
    if debug is not None:
        listing["debug"] = debug
    return listing


@pytest.mark.asyncio
async def test_cursor_never_regresses(store, diagnostics, settings):
    t100 = BASE_TIME + timedelta(seconds=100)
    t150 = BASE_TIME + timedelta(seconds=150)
    t180 = BASE_TIME + timedelta(seconds=180)
    t200 = BASE_TIME + timedelta(seconds=200)
    t250 = BASE_TIME + timedelta(seconds=250)

    stub = StubOrdersApi([
        full_listing(
            make_order(GUID_A, status="READY", opened=t100, modified=t100),
            make_order(GUID_B, status="READY", opened=t100, modified=t250),
            window_end=t200,
        ),
        full_listing(
            make_order(GUID_C, status="READY", opened=t150, modified=t150),
            make_order(GUID_A, status="READY", opened=t100, modified=t180),
        ),
    ])
    clock = FixedClock(BASE_TIME + timedelta(minutes=10))
    engine = SyncEngine(stub, store, diagnostics, settings=settings, clock=clock)

    await engine.refresh()
    assert engine.cursor == t250
    assert stub.queries[0].since is None

    await engine.refresh()
    assert engine.cursor == t250
    assert stub.queries[1].since == t250 - timedelta(seconds=5)
    assert guids_of(engine) == {GUID_A, GUID_B, GUID_C}


@pytest.mark.asyncio
async def test_cursor_after_advances_cursor(store, diagnostics, settings):
    t300 = BASE_TIME + timedelta(seconds=300)
    stub = StubOrdersApi([full_listing(debug={"cursorAfter": {"ts": iso(t300)}})])
    engine = SyncEngine(stub, store, diagnostics, settings=settings, clock=FixedClock())

    report = await engine.refresh()

    assert engine.cursor == t300
    assert report.cursor == t300


# =============================================================================
# FAILURES
# =============================================================================

@pytest.mark.asyncio
async def test_listing_failure_falls_back_to_cache(api, store, diagnostics, settings):
    for guid in (GUID_A, GUID_B, GUID_C):
        api.upsert_order(make_order(guid, status="READY"))
    clock = FixedClock(BASE_TIME)
    engine = SyncEngine(api, store, diagnostics, settings=settings, clock=clock)
    await engine.refresh()

    clock.advance(minutes=10)
    api.queue_failure("fetch_latest")
    report = await engine.refresh()

    assert report.success is True
    assert report.fallback is True
    assert report.evicted == []
    assert len(engine.orders) == 3
    assert len(diagnostics.events(REFRESH_FALLBACK)) == 1
    assert diagnostics.last_error is None


@pytest.mark.asyncio
async def test_listing_failure_without_data_is_an_error(engine, api, diagnostics):
    api.queue_failure("fetch_latest")

    report = await engine.refresh(silent=True)

    assert report.success is False
    assert report.error
    assert engine.state.error is None
    assert engine.orders == []
    assert diagnostics.last_error.type == REFRESH_ERROR


@pytest.mark.asyncio
async def test_foreground_error_surfaces_until_next_success(engine, api, diagnostics):
    api.queue_failure("fetch_latest", status_code=500)

    failed = await engine.refresh(silent=False)
    assert engine.state.error == failed.error

    recovered = await engine.refresh(silent=True)
    assert recovered.success is True
    assert engine.state.error is None
    assert diagnostics.last_error is None


@pytest.mark.asyncio
async def test_new_cycle_supersedes_running_one(store, diagnostics, settings, orders):
    slow_api = MockOrdersApi(
        orders=orders, menu=SAMPLE_MENU, config=SAMPLE_CONFIG, min_latency=0.05, max_latency=0.05
    )
    engine = SyncEngine(slow_api, store, diagnostics, settings=settings)

    first = asyncio.create_task(engine.refresh())
    await asyncio.sleep(0.01)
    second = await engine.refresh()
    first_report = await first

    assert first_report.cancelled is True
    assert first_report.message == "Refresh cancelled"
    assert second.success is True
    assert engine.last_report is second
    assert engine.state.is_refreshing is False
    assert len(engine.orders) == 3


# =============================================================================
# LIFECYCLE
# =============================================================================

@pytest.mark.asyncio
async def test_bootstrap_restores_previous_run(engine, api, store, settings):
    await engine.refresh()

    restarted = SyncEngine(api, store, settings=settings)
    restored = await restarted.bootstrap()

    assert restored == 3
    assert guids_of(restarted) == {GUID_A, GUID_B, GUID_C}
    assert restarted.registry.version == 1
    assert restarted.cursor == engine.cursor
    assert restarted.orders[0].items[0].name == "Toast"
    assert restarted.state.is_loading is False


@pytest.mark.asyncio
async def test_unavailable_store_is_a_cold_start(api, diagnostics, settings):
    engine = SyncEngine(api, FailingStore(), diagnostics, settings=settings)

    assert await engine.bootstrap() == 0
    report = await engine.refresh()

    assert report.success is True
    assert len(engine.orders) == 3


@pytest.mark.asyncio
async def test_start_and_stop(engine):
    engine.start()
    assert engine.is_polling is True

    for _ in range(100):
        if engine.last_report is not None:
            break
        await asyncio.sleep(0.01)

    assert engine.last_report.success is True
    await engine.stop()
    assert engine.is_polling is False
