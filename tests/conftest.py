"""Shared fixtures and upstream doubles for the test suite."""

import copy
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

import pytest

from ordersync.core.config import Settings
from ordersync.schemas import OrdersLatestResponse, OrdersQuery
from ordersync.services.diagnostics import DiagnosticsRecorder
from ordersync.services.orders_api.base import BaseOrdersApi, FetchedDocument
from ordersync.services.orders_api.mock import SAMPLE_CONFIG, SAMPLE_MENU, MockOrdersApi
from ordersync.services.storage.base import BaseKeyValueStore, StorageError
from ordersync.services.storage.memory import MemoryKeyValueStore
from ordersync.sync.cancellation import CancellationToken

BASE_TIME = datetime(2024, 5, 1, 10, 0, 0, tzinfo=timezone.utc)

GUID_A = "aaaaaaaa-0000-4000-8000-000000000001"
GUID_B = "bbbbbbbb-0000-4000-8000-000000000002"
GUID_C = "cccccccc-0000-4000-8000-000000000003"


def iso(moment: datetime) -> str:
    return moment.isoformat().replace("+00:00", "Z")


def make_order(
    guid: str,
    status: str = "SENT",
    opened: Optional[datetime] = None,
    modified: Optional[datetime] = None,
    item_name: str = "Toast",
) -> dict:
    """A minimal Toast-shaped order with one check and one selection."""
    opened = opened or BASE_TIME
    modified = modified or opened
    return {
        "guid": guid,
        "openedDate": iso(opened),
        "modifiedDate": iso(modified),
        "checks": [
            {
                "guid": f"{guid}-check",
                "selections": [
                    {
                        "guid": f"{guid}-sel",
                        "displayName": item_name,
                        "quantity": 1,
                        "fulfillmentStatus": status,
                    }
                ],
            }
        ],
    }


class StubOrdersApi(BaseOrdersApi):
    """
    Upstream double that replays scripted listings.

    Each fetch_latest call pops the next listing (or raises it when it is
    an exception). Full-detail records are remembered so targeted fetches
    can find them.
    """

    def __init__(self, listings: list[Any], orders: Optional[dict[str, dict]] = None):
        self.listings = list(listings)
        self.orders = dict(orders or {})
        self.queries: list[OrdersQuery] = []

    @property
    def provider_name(self) -> str:
        return "stub"

    async def fetch_latest(self, query: OrdersQuery, token: Optional[CancellationToken] = None):
        self.queries.append(query)
        listing = self.listings.pop(0)
        if isinstance(listing, Exception):
            raise listing
        if isinstance(listing, dict):
            listing = OrdersLatestResponse.model_validate(listing)
        for record in listing.orders:
            if isinstance(record, dict) and "guid" in record:
                self.orders[record["guid"]] = record
        return listing

    async def fetch_order(self, guid: str, token: Optional[CancellationToken] = None):
        record = self.orders.get(guid)
        return copy.deepcopy(record) if record is not None else None

    async def fetch_menus(self, token: Optional[CancellationToken] = None) -> FetchedDocument:
        return FetchedDocument(payload=SAMPLE_MENU)

    async def fetch_config(self, token: Optional[CancellationToken] = None) -> FetchedDocument:
        return FetchedDocument(payload=SAMPLE_CONFIG)

    async def health_check(self) -> bool:
        return True


class FailingStore(BaseKeyValueStore):
    """Store whose backend is down until ``available`` is set."""

    def __init__(self) -> None:
        self.available = False
        self._data: dict[str, Any] = {}

    @property
    def provider_name(self) -> str:
        return "failing"

    def _check(self) -> None:
        if not self.available:
            raise StorageError("backend offline")

    async def get(self, key: str) -> Optional[Any]:
        self._check()
        return copy.deepcopy(self._data.get(key))

    async def set(self, key: str, value: Any) -> None:
        self._check()
        self._data[key] = copy.deepcopy(value)

    async def delete(self, key: str) -> None:
        self._check()
        self._data.pop(key, None)


class FixedClock:
    def __init__(self, now: datetime = BASE_TIME):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture
def settings() -> Settings:
    return Settings(
        env_mode="development",
        storage_backend="memory",
        targeted_fetch_backoff_ms=0,
        targeted_fetch_max_retries=2,
        stale_ready_retention_ms=60_000,
        stale_active_retention_ms=120_000,
        drift_buffer_ms=5_000,
        poll_limit=200,
    )


@pytest.fixture
def store() -> MemoryKeyValueStore:
    return MemoryKeyValueStore()


@pytest.fixture
def diagnostics() -> DiagnosticsRecorder:
    return DiagnosticsRecorder(max_events=100)


@pytest.fixture
def orders() -> list[dict]:
    return [
        make_order(GUID_A, opened=BASE_TIME),
        make_order(GUID_B, opened=BASE_TIME + timedelta(minutes=1)),
        make_order(GUID_C, opened=BASE_TIME + timedelta(minutes=2)),
    ]


@pytest.fixture
def api(orders: list[dict]) -> MockOrdersApi:
    return MockOrdersApi(orders=orders, menu=SAMPLE_MENU, config=SAMPLE_CONFIG)
