"""
Sync Engine

Owns the refresh cycle that keeps the order cache converged with the
upstream order-management API.

One cycle:
    1. Build the listing query (cursor minus drift, clamped to the window)
    2. Bulk fetch
    3. Reconcile: ids → touch cached, hydrate unseen; full → apply batch
    4. Omission check (ids only): re-verify cached GUIDs the listing left out
    5. Re-poll cached orders that are not ready yet
    6. Refresh lookups through freshness-checked snapshots
    7. Advance the cursor (never backwards)
    8. Evict stale entries, persist, publish

A new cycle cancels the previous one's token first; whatever the old
cycle was awaiting raises OperationCancelled and its results are dropped.

Usage:
    engine = SyncEngine(api, store, diagnostics)
    await engine.bootstrap()
    engine.start()
    ...
    report = await engine.refresh(silent=False)
    await engine.stop()

Author: Khalil Bannouri
Version: 1.0.0
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Iterable, Optional

from ordersync.core.config import Settings, get_settings
from ordersync.domain.canonical import ensure_list, parse_date_like, to_epoch_ms
from ordersync.domain.lookups import LookupRegistry
from ordersync.domain.normalize import extract_order_guid, extract_orders_from_payload
from ordersync.domain.order_cache import ApplyOutcome, OrderCache
from ordersync.schemas import (
    DiagnosticLevelEnum,
    NormalizedOrder,
    OrdersDetailEnum,
    OrdersLatestResponse,
    OrdersListResponse,
    OrdersQuery,
)
from ordersync.services.diagnostics import (
    LIMIT_SATURATED,
    OMISSION_DETECTED,
    REFRESH_ERROR,
    REFRESH_FALLBACK,
    REFRESH_STARTED,
    REFRESH_SUCCESS,
    DiagnosticsRecorder,
)
from ordersync.services.orders_api.base import BaseOrdersApi, OrdersApiError
from ordersync.services.storage.base import BaseKeyValueStore, StorageError
from ordersync.sync.cancellation import CancellationToken
from ordersync.sync.errors import OperationCancelled
from ordersync.sync.fetcher import TargetedFetcher, TargetedFetchResult
from ordersync.sync.snapshot_source import SnapshotSource

logger = logging.getLogger(__name__)

ORDERS_CACHE_KEY = "orders-cache-v1"
MENU_CACHE_KEY = "menu-cache-v1"
CONFIG_CACHE_KEY = "config-cache-v1"

SATURATION_DEBUG_FLAGS = ("hasMore", "has_more", "truncated", "limitReached", "limit_reached")
SATURATION_DEBUG_CURSORS = ("nextCursor", "next_cursor", "nextPage", "next_page")


# =============================================================================
# STATE & REPORTS
# =============================================================================

@dataclass
class SyncState:
    """Consumer-facing view of the engine."""
    is_loading: bool = True
    is_refreshing: bool = False
    error: Optional[str] = None
    last_success_at: Optional[datetime] = None

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "is_loading": self.is_loading,
            "is_refreshing": self.is_refreshing,
            "error": self.error,
            "last_success_at": self.last_success_at.isoformat() if self.last_success_at else None,
        }


@dataclass
class SyncCycleReport:
    """
    Summary of one refresh cycle.

    Attributes:
        success: Cycle ran to completion (possibly on fallback)
        cancelled: Cycle was superseded or the engine stopped
        fallback: Bulk listing failed and the cycle continued on cached data
        saturated: Listing hit the result limit
    """
    silent: bool
    started_at: datetime
    success: bool = False
    cancelled: bool = False
    error: Optional[str] = None
    fallback: bool = False
    saturated: bool = False
    listed: int = 0
    hydrated: int = 0
    omitted: int = 0
    repolled: int = 0
    removed: list[str] = field(default_factory=list)
    unresolved: list[str] = field(default_factory=list)
    evicted: list[str] = field(default_factory=list)
    lookups_changed: bool = False
    lookup_version: int = 0
    cursor: Optional[datetime] = None
    orders_count: int = 0
    duration_ms: float = 0.0

    @property
    def message(self) -> str:
        if self.cancelled:
            return "Refresh cancelled"
        if not self.success:
            return f"Refresh failed: {self.error}"
        if self.fallback:
            return "Refresh completed on cached data (listing unavailable)"
        return "Refresh completed"

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "silent": self.silent,
            "success": self.success,
            "cancelled": self.cancelled,
            "error": self.error,
            "fallback": self.fallback,
            "saturated": self.saturated,
            "listed": self.listed,
            "hydrated": self.hydrated,
            "omitted": self.omitted,
            "repolled": self.repolled,
            "removed": self.removed,
            "unresolved": self.unresolved,
            "evicted": self.evicted,
            "lookups_changed": self.lookups_changed,
            "lookup_version": self.lookup_version,
            "cursor": self.cursor.isoformat() if self.cursor else None,
            "orders_count": self.orders_count,
            "duration_ms": self.duration_ms,
        }


@dataclass
class _CycleContext:
    now: datetime
    now_ms: int
    seen: set[str] = field(default_factory=set)
    fetched: set[str] = field(default_factory=set)
    timestamps: list[datetime] = field(default_factory=list)


# =============================================================================
# HELPERS
# =============================================================================

def collect_order_timestamps(orders: Iterable[Any]) -> list[datetime]:
    """Modification / creation stamps of orders, their checks and selections."""
    timestamps: list[datetime] = []

    def add(value: Any) -> None:
        moment = parse_date_like(value)
        if moment is not None:
            timestamps.append(moment)

    for order in orders:
        if not isinstance(order, dict):
            continue
        add(order.get("modifiedDate"))
        add(order.get("createdDate"))
        for check in ensure_list(order.get("checks")):
            if not isinstance(check, dict):
                continue
            add(check.get("modifiedDate"))
            add(check.get("createdDate"))
            for selection in ensure_list(check.get("selections")):
                if isinstance(selection, dict):
                    add(selection.get("modifiedDate"))

    return timestamps


def listing_guids(listing: OrdersLatestResponse) -> list[str]:
    """GUIDs of an ids-detail listing (``ids`` and ``orders`` merged)."""
    guids: list[str] = []
    for value in [*(listing.ids or []), *listing.orders]:
        guid = value if isinstance(value, str) else extract_order_guid(value)
        if guid and guid.strip() and guid.strip() not in guids:
            guids.append(guid.strip())
    return guids


def listing_records(listing: OrdersLatestResponse) -> list[dict]:
    """Full records of a full-detail listing (``data`` preferred)."""
    if isinstance(listing.data, list) and listing.data:
        source: Any = listing.data
    elif listing.data and not listing.orders:
        source = extract_orders_from_payload(listing.data)
    else:
        source = listing.orders
    return [record for record in ensure_list(source) if isinstance(record, dict)]


def is_listing_saturated(listing: OrdersLatestResponse, limit: int, count: int) -> bool:
    if count >= limit:
        return True
    debug = listing.debug or {}
    if any(debug.get(flag) is True for flag in SATURATION_DEBUG_FLAGS):
        return True
    if any(debug.get(key) for key in SATURATION_DEBUG_CURSORS):
        return True
    pagination = debug.get("pagination")
    return isinstance(pagination, dict) and pagination.get("hasMore") is True


def listing_cursor_timestamps(listing: OrdersLatestResponse) -> list[datetime]:
    timestamps: list[datetime] = []
    if listing.window is not None:
        end = parse_date_like(listing.window.end)
        if end is not None:
            timestamps.append(end)
    cursor_after = (listing.debug or {}).get("cursorAfter")
    if isinstance(cursor_after, dict):
        moment = parse_date_like(cursor_after.get("ts"))
        if moment is not None:
            timestamps.append(moment)
    return timestamps


# =============================================================================
# ENGINE
# =============================================================================

class SyncEngine:
    """
    Refresh-cycle owner.

    Args:
        api: Upstream orders client
        store: Persistent key-value store for snapshots
        diagnostics: Event recorder
        settings: Tunables (defaults to get_settings())
        registry: Lookup registry (a fresh one by default)
        clock: Returns the current UTC datetime (tests pin it)
    """

    def __init__(
        self,
        api: BaseOrdersApi,
        store: BaseKeyValueStore,
        diagnostics: Optional[DiagnosticsRecorder] = None,
        settings: Optional[Settings] = None,
        registry: Optional[LookupRegistry] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.settings = settings or get_settings()
        self.api = api
        self.store = store
        self.diagnostics = diagnostics or DiagnosticsRecorder(self.settings.diagnostics_max_events)
        self.registry = registry or LookupRegistry()
        self.cache = OrderCache(
            self.registry,
            ready_ttl_ms=self.settings.stale_ready_retention_ms,
            active_ttl_ms=self.settings.stale_active_retention_ms,
        )
        self.fetcher = TargetedFetcher(
            api,
            concurrency_limit=self.settings.targeted_fetch_concurrency,
            max_retries=self.settings.targeted_fetch_max_retries,
            backoff_ms=self.settings.targeted_fetch_backoff_ms,
        )
        self.menu_source = SnapshotSource(
            "menu", api.fetch_menus, store, MENU_CACHE_KEY, self.diagnostics
        )
        self.config_source = SnapshotSource(
            "config", api.fetch_config, store, CONFIG_CACHE_KEY, self.diagnostics
        )

        self.state = SyncState()
        self.last_report: Optional[SyncCycleReport] = None
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._cursor: Optional[datetime] = None
        self._last_fetched_at_ms: Optional[int] = None
        self._has_succeeded = False
        self._published: list[NormalizedOrder] = []
        self._current_token: Optional[CancellationToken] = None
        self._poll_task: Optional[asyncio.Task] = None
        self._cycle_tasks: set[asyncio.Task] = set()

    # =========================================================================
    # READ PATH
    # =========================================================================

    @property
    def cursor(self) -> Optional[datetime]:
        return self._cursor

    @property
    def orders(self) -> list[NormalizedOrder]:
        return list(self._published)

    @property
    def is_polling(self) -> bool:
        return self._poll_task is not None and not self._poll_task.done()

    def snapshot(self) -> OrdersListResponse:
        return OrdersListResponse(
            orders=self.orders,
            count=len(self._published),
            lookup_version=self.registry.version,
            last_success_at=self.state.last_success_at,
            is_refreshing=self.state.is_refreshing,
            error=self.state.error,
        )

    def _publish(self) -> None:
        self._published = self.cache.publish()

    # =========================================================================
    # QUERY
    # =========================================================================

    def build_query(self, now: datetime) -> OrdersQuery:
        """
        Listing query for a cycle starting at ``now``.

        With a cursor: since = max(cursor - drift, now - window).
        Without one: the last ``order_polling_window_minutes`` minutes.
        """
        settings = self.settings
        if self._cursor is not None:
            earliest = now - timedelta(milliseconds=settings.polling_window_ms)
            buffered = self._cursor - timedelta(milliseconds=settings.drift_buffer_ms)
            return OrdersQuery(
                limit=settings.poll_limit,
                detail=OrdersDetailEnum.IDS,
                since=max(earliest, buffered),
            )
        return OrdersQuery(
            limit=settings.poll_limit,
            detail=OrdersDetailEnum.IDS,
            minutes=settings.order_polling_window_minutes,
        )

    # =========================================================================
    # REFRESH CYCLE
    # =========================================================================

    async def refresh(self, silent: bool = True) -> SyncCycleReport:
        """
        Run one refresh cycle, superseding any cycle still in flight.

        Args:
            silent: Background refresh; failures never surface in
                ``state.error``

        Returns:
            SyncCycleReport: Outcome (cancelled cycles report cancelled=True)
        """
        if self._current_token is not None:
            self._current_token.cancel("superseded")
        token = CancellationToken()
        self._current_token = token

        report = SyncCycleReport(silent=silent, started_at=self._clock())
        started = time.perf_counter()

        self.state.is_refreshing = True
        if not silent and not self._published:
            self.state.is_loading = True

        self.diagnostics.record(REFRESH_STARTED, DiagnosticLevelEnum.DEBUG, payload={"silent": silent})

        try:
            await self._run_cycle(token, report)
            report.success = True
        except OperationCancelled as e:
            report.cancelled = True
            logger.debug(f"Refresh cycle cancelled ({e.reason})")
        except OrdersApiError as e:
            report.error = str(e)
            self._record_failure(report, e)
        except Exception as e:
            report.error = str(e) or e.__class__.__name__
            logger.exception("Unexpected error during refresh cycle")
            self._record_failure(report, e)
        finally:
            report.duration_ms = round((time.perf_counter() - started) * 1000, 2)
            if self._current_token is token:
                self._current_token = None
                self.state.is_refreshing = False
                self.state.is_loading = False

        if not report.cancelled:
            self.last_report = report
        return report

    def _record_failure(self, report: SyncCycleReport, error: Exception) -> None:
        self.diagnostics.record(
            REFRESH_ERROR,
            DiagnosticLevelEnum.ERROR,
            payload={"silent": report.silent},
            error=error,
        )
        if not report.silent:
            self.state.error = report.error

    def _has_usable_data(self) -> bool:
        return self._has_succeeded or len(self.cache) > 0

    async def _run_cycle(self, token: CancellationToken, report: SyncCycleReport) -> None:
        now = self._clock()
        context = _CycleContext(now=now, now_ms=to_epoch_ms(now))
        query = self.build_query(now)

        listing: Optional[OrdersLatestResponse] = None
        try:
            listing = await self.api.fetch_latest(query, token)
        except OrdersApiError as e:
            if not self._has_usable_data():
                raise
            report.fallback = True
            self.diagnostics.record(
                REFRESH_FALLBACK,
                DiagnosticLevelEnum.WARN,
                payload={"silent": report.silent, "cached_orders": len(self.cache)},
                error=e,
            )

        if listing is not None:
            await self._reconcile_listing(listing, query, token, context, report)

        # Re-poll whatever is still cooking
        pending = self.cache.active_guids(exclude=context.fetched)
        if pending:
            result = await self.fetcher.fetch_by_guids(pending, token)
            report.repolled = len(pending)
            self._apply_targeted(result, context, report)

        report.lookups_changed = await self._refresh_lookups(token, now)

        if context.timestamps:
            latest = max(context.timestamps)
            if self._cursor is None or latest > self._cursor:
                self._cursor = latest
        self._last_fetched_at_ms = context.now_ms

        if not report.fallback:
            report.evicted = self.cache.evict_stale(context.now_ms, context.seen)

        await self._persist(token)

        self._publish()
        self._has_succeeded = True
        self.state.last_success_at = now
        self.state.error = None

        report.cursor = self._cursor
        report.lookup_version = self.registry.version
        report.orders_count = len(self._published)

        self.diagnostics.record(
            REFRESH_SUCCESS,
            DiagnosticLevelEnum.INFO,
            payload={
                "silent": report.silent,
                "orders": report.orders_count,
                "hydrated": report.hydrated,
                "omitted": report.omitted,
                "repolled": report.repolled,
                "evicted": len(report.evicted),
                "fallback": report.fallback,
            },
            clear_last_error=True,
        )

    async def _reconcile_listing(
        self,
        listing: OrdersLatestResponse,
        query: OrdersQuery,
        token: CancellationToken,
        context: _CycleContext,
        report: SyncCycleReport,
    ) -> None:
        detail = (listing.detail or query.detail.value).lower()

        if detail == OrdersDetailEnum.IDS.value:
            guids = listing_guids(listing)
            report.listed = len(guids)
            listed = set(guids)

            unseen: list[str] = []
            for guid in guids:
                context.seen.add(guid)
                if not self.cache.touch(guid, context.now_ms):
                    unseen.append(guid)

            if unseen:
                result = await self.fetcher.fetch_by_guids(unseen, token)
                report.hydrated = len(result.seen)
                self._apply_targeted(result, context, report)

            # Cached orders the listing left out: only a 404 or a void removes them
            omitted = [guid for guid in self.cache.guids() if guid not in listed]
            if omitted:
                report.omitted = len(omitted)
                self.diagnostics.record(
                    OMISSION_DETECTED,
                    DiagnosticLevelEnum.WARN,
                    payload={"guids": omitted, "count": len(omitted)},
                )
                result = await self.fetcher.fetch_by_guids(omitted, token)
                self._apply_targeted(result, context, report)
        else:
            records = listing_records(listing)
            report.listed = len(records)
            context.seen |= self.cache.apply_batch(records, context.now_ms)
            context.timestamps.extend(collect_order_timestamps(records))

        if is_listing_saturated(listing, query.limit, report.listed):
            report.saturated = True
            self.diagnostics.record(
                LIMIT_SATURATED,
                DiagnosticLevelEnum.WARN,
                payload={"limit": query.limit, "count": report.listed},
            )

        context.timestamps.extend(listing_cursor_timestamps(listing))

    def _apply_targeted(
        self,
        result: TargetedFetchResult,
        context: _CycleContext,
        report: SyncCycleReport,
    ) -> None:
        for order in result.orders:
            outcome = self.cache.apply_raw(order, context.now_ms)
            if outcome in (ApplyOutcome.CREATED, ApplyOutcome.UPDATED, ApplyOutcome.UNCHANGED):
                context.seen.add(extract_order_guid(order))

        for guid in result.removed:
            if self.cache.delete(guid):
                report.removed.append(guid)
            context.seen.discard(guid)

        report.unresolved.extend(sorted(result.unresolved))
        context.fetched |= result.attempted
        context.timestamps.extend(collect_order_timestamps(result.orders))

    async def _refresh_lookups(self, token: CancellationToken, now: datetime) -> bool:
        menu_payload = await self.menu_source.load(token, now)
        config_payload = await self.config_source.load(token, now)

        changed = self.registry.update(menu_payload=menu_payload, config_payload=config_payload)
        if changed:
            self.cache.reconcile_lookup_version()
        return changed

    # =========================================================================
    # PERSISTENCE
    # =========================================================================

    async def _persist(self, token: Optional[CancellationToken] = None) -> None:
        state = {
            "entries": self.cache.export_state(),
            "last_cursor": self._cursor.isoformat() if self._cursor else None,
            "last_fetched_at": self._last_fetched_at_ms,
        }
        try:
            write = self.store.set(ORDERS_CACHE_KEY, state)
            if token is not None:
                await token.run(write)
            else:
                await write
        except StorageError as e:
            logger.warning(f"Could not persist orders cache: {e}")

    async def bootstrap(self) -> int:
        """
        Restore menu, config and order snapshots from the store.

        A missing or unreadable store is a cold start, not an error.

        Returns:
            int: Number of cached orders restored
        """
        menu_snapshot = await self.menu_source.restore()
        config_snapshot = await self.config_source.restore()
        self.registry.update(
            menu_payload=menu_snapshot.payload if menu_snapshot else None,
            config_payload=config_snapshot.payload if config_snapshot else None,
        )

        try:
            state = await self.store.get(ORDERS_CACHE_KEY)
        except StorageError as e:
            logger.warning(f"Could not restore orders cache, starting cold: {e}")
            state = None

        restored = 0
        if isinstance(state, dict):
            restored = self.cache.restore_state(state.get("entries"))
            self._cursor = parse_date_like(state.get("last_cursor"))
            last_fetched = state.get("last_fetched_at")
            if isinstance(last_fetched, int) and not isinstance(last_fetched, bool):
                self._last_fetched_at_ms = last_fetched

        self._publish()
        if restored:
            self.state.is_loading = False
        logger.info(
            f"Bootstrap complete (orders={restored}, lookup_version={self.registry.version}, "
            f"cursor={self._cursor.isoformat() if self._cursor else None})"
        )
        return restored

    # =========================================================================
    # POLLING
    # =========================================================================

    def trigger_refresh(self, silent: bool = True) -> asyncio.Task:
        """Start a cycle in the background (supersedes any running one)."""
        task = asyncio.create_task(self.refresh(silent=silent))
        self._cycle_tasks.add(task)
        task.add_done_callback(self._cycle_tasks.discard)
        return task

    async def _poll_loop(self) -> None:
        interval = self.settings.poll_interval_seconds
        logger.info(f"Polling every {interval:.1f}s")
        while True:
            await asyncio.sleep(interval)
            self.trigger_refresh(silent=True)

    def start(self) -> None:
        """Run an initial cycle now, then poll at the configured interval."""
        if self.is_polling:
            return
        self.trigger_refresh(silent=False)
        self._poll_task = asyncio.create_task(self._poll_loop())

    async def stop(self) -> None:
        """Stop polling, cancel the in-flight cycle and wait for it to unwind."""
        if self._poll_task is not None:
            self._poll_task.cancel()
            await asyncio.gather(self._poll_task, return_exceptions=True)
            self._poll_task = None

        if self._current_token is not None:
            self._current_token.cancel("engine stopped")

        if self._cycle_tasks:
            await asyncio.gather(*list(self._cycle_tasks), return_exceptions=True)
        logger.info("Sync engine stopped")
