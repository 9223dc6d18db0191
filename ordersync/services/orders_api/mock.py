"""
Mock Orders API Implementation

In-memory stand-in for the upstream order-management API.
Used in development mode (ENV_MODE=development) and by the test suite to:
    - Run the sync engine without a live restaurant feed
    - Mutate orders between cycles (update, void, remove)
    - Inject upstream failures deterministically

Behavior:
    - Simulates response times between min_latency and max_latency
    - Randomly fails requests at failure_rate with a 503
    - Queued failures (queue_failure) fire before random ones
    - Records every call in ``calls`` for assertions

Author: Khalil Bannouri
Version: 1.0.0
"""

import asyncio
import copy
import logging
import random
from collections import defaultdict
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from ordersync.schemas import OrdersDetailEnum, OrdersLatestResponse, OrdersQuery
from ordersync.services.orders_api.base import (
    BaseOrdersApi,
    FetchedDocument,
    OrdersApiError,
)
from ordersync.sync.cancellation import CancellationToken, guarded

logger = logging.getLogger(__name__)


class MockOrdersApi(BaseOrdersApi):
    """
    Mock implementation of the upstream orders API.

    Attributes:
        failure_rate: Probability of a simulated 503 (0.0-1.0)
        min_latency: Minimum simulated response time in seconds
        max_latency: Maximum simulated response time in seconds
        window_end: Value echoed as ``window.end`` in listings (None omits it)
        debug: Value echoed as ``debug`` in listings
        calls: (method, argument) log of every request

    Example:
        >>> api = MockOrdersApi(orders=[{"guid": "A", "checks": []}])
        >>> listing = await api.fetch_latest(OrdersQuery(limit=10, minutes=60))
        >>> listing.orders
        ['A']
    """

    def __init__(
        self,
        orders: Optional[list[dict]] = None,
        menu: Any = None,
        config: Any = None,
        failure_rate: float = 0.0,
        min_latency: float = 0.0,
        max_latency: float = 0.0,
        menu_cache_control: Optional[str] = None,
    ):
        self.failure_rate = failure_rate
        self.min_latency = min_latency
        self.max_latency = max_latency
        self.menu = menu if menu is not None else {}
        self.config = config if config is not None else {}
        self.menu_cache_control = menu_cache_control
        self.window_end: Optional[str] = None
        self.debug: Optional[dict] = None
        self.calls: list[tuple[str, Any]] = []

        self._orders: dict[str, dict] = {}
        self._queued_failures: dict[str, list[int]] = defaultdict(list)

        for order in orders or []:
            self.upsert_order(order)

        logger.info(
            f"MockOrdersApi initialized "
            f"(orders={len(self._orders)}, failure_rate={failure_rate:.0%}, "
            f"latency={min_latency}-{max_latency}s)"
        )

    @property
    def provider_name(self) -> str:
        """Return the provider name."""
        return "mock"

    # =========================================================================
    # UPSTREAM STATE
    # =========================================================================

    def upsert_order(self, order: dict) -> None:
        self._orders[order["guid"]] = copy.deepcopy(order)

    def remove_order(self, guid: str) -> None:
        """Forget an order; targeted fetches for it answer 404."""
        self._orders.pop(guid, None)

    def void_order(self, guid: str) -> None:
        if guid in self._orders:
            self._orders[guid]["voided"] = True

    def queue_failure(self, method: str, status_code: int = 503, count: int = 1) -> None:
        """Make the next ``count`` calls of ``method`` fail with ``status_code``."""
        self._queued_failures[method].extend([status_code] * count)

    def calls_to(self, method: str) -> list[Any]:
        return [argument for name, argument in self.calls if name == method]

    # =========================================================================
    # SIMULATION
    # =========================================================================

    async def _simulate_latency(self, token: Optional[CancellationToken]) -> float:
        """
        Simulate network latency.

        Returns:
            float: Actual latency in milliseconds
        """
        latency = random.uniform(self.min_latency, self.max_latency)
        await guarded(asyncio.sleep(latency), token)
        return latency * 1000

    def _should_fail(self) -> bool:
        """Determine if this request should simulate a failure."""
        return random.random() < self.failure_rate

    async def _begin(self, method: str, argument: Any, token: Optional[CancellationToken]) -> None:
        self.calls.append((method, argument))
        await self._simulate_latency(token)

        queued = self._queued_failures.get(method)
        if queued:
            status_code = queued.pop(0)
            logger.debug(f"Mock: {method} failing with queued {status_code}")
            raise OrdersApiError(f"Mock {method} failed", status_code=status_code)

        if self._should_fail():
            logger.debug(f"Mock: {method} failing at random")
            raise OrdersApiError(f"Mock {method} unavailable", status_code=503)

    # =========================================================================
    # ENDPOINTS
    # =========================================================================

    async def fetch_latest(
        self,
        query: OrdersQuery,
        token: Optional[CancellationToken] = None,
    ) -> OrdersLatestResponse:
        await self._begin("fetch_latest", query, token)

        records = list(self._orders.values())
        if query.detail == OrdersDetailEnum.IDS:
            # voided orders drop out of the id listing
            records = [record for record in records if record.get("voided") is not True]
        records = records[: query.limit]

        if query.detail == OrdersDetailEnum.IDS:
            orders: list[Any] = [record["guid"] for record in records]
        else:
            orders = copy.deepcopy(records)

        return OrdersLatestResponse(
            ok=True,
            detail=query.detail.value,
            orders=orders,
            window={"end": self.window_end} if self.window_end else None,
            debug=copy.deepcopy(self.debug),
        )

    async def fetch_order(
        self,
        guid: str,
        token: Optional[CancellationToken] = None,
    ) -> Optional[dict]:
        await self._begin("fetch_order", guid, token)
        record = self._orders.get(guid)
        return copy.deepcopy(record) if record is not None else None

    async def fetch_menus(self, token: Optional[CancellationToken] = None) -> FetchedDocument:
        await self._begin("fetch_menus", None, token)
        return FetchedDocument(payload=copy.deepcopy(self.menu), cache_control=self.menu_cache_control)

    async def fetch_config(self, token: Optional[CancellationToken] = None) -> FetchedDocument:
        await self._begin("fetch_config", None, token)
        return FetchedDocument(payload=copy.deepcopy(self.config))

    async def health_check(self) -> bool:
        """Mock upstream is always healthy."""
        return True


# =============================================================================
# SAMPLE DATA
# =============================================================================

SAMPLE_MENU = {
    "menus": [
        {
            "name": "Breakfast",
            "menuGroups": [
                {
                    "name": "Mains",
                    "menuItems": [
                        {
                            "guid": "item-brekky",
                            "name": "Big Breakfast",
                            "kitchenName": "Big Brekky",
                            "prepStations": ["station-grill"],
                            "modifierGroupReferences": [1, 2],
                        },
                        {
                            "guid": "item-toast",
                            "name": "Sourdough Toast",
                            "modifierGroupReferences": [2],
                        },
                    ],
                },
                {
                    "name": "Drinks",
                    "menuItems": [
                        {
                            "guid": "item-flat-white",
                            "name": "Flat White",
                            "prepStations": ["station-bar"],
                            "modifierGroupReferences": [3],
                        },
                    ],
                },
            ],
        }
    ],
    "modifierGroupReferences": {
        "1": {"referenceId": 1, "guid": "group-eggs", "name": "Eggs", "modifierOptionReferences": [11, 12]},
        "2": {"referenceId": 2, "guid": "group-extras", "name": "Extras", "modifierOptionReferences": [21, 22]},
        "3": {"referenceId": 3, "guid": "group-milk", "name": "Milk", "modifierOptionReferences": [31, 32]},
    },
    "modifierOptionReferences": {
        "11": {"referenceId": 11, "guid": "opt-poached", "name": "Poached"},
        "12": {"referenceId": 12, "guid": "opt-scrambled", "name": "Scrambled"},
        "21": {"referenceId": 21, "guid": "opt-bacon", "name": "Bacon"},
        "22": {"referenceId": 22, "guid": "opt-avocado", "name": "Avocado", "kitchenName": "Avo"},
        "31": {"referenceId": 31, "guid": "opt-oat", "name": "Oat Milk"},
        "32": {"referenceId": 32, "guid": "opt-soy", "name": "Soy Milk"},
    },
}

SAMPLE_CONFIG = {
    "ttlSeconds": 300,
    "diningOptions": [
        {"guid": "dining-dine-in", "name": "Dine In", "behavior": "DINE_IN"},
        {"guid": "dining-takeout", "name": "Takeout", "behavior": "TAKE_OUT"},
    ],
}


def build_sample_order(guid: str, minutes_ago: int, status: str = "SENT") -> dict:
    """A Toast-shaped order with one check and two selections."""
    opened = datetime.now(timezone.utc) - timedelta(minutes=minutes_ago)
    stamp = opened.isoformat().replace("+00:00", "Z")
    return {
        "guid": guid,
        "displayNumber": guid[-3:],
        "openedDate": stamp,
        "modifiedDate": stamp,
        "approvalStatus": "APPROVED",
        "diningOption": {"guid": random.choice(["dining-dine-in", "dining-takeout"])},
        "checks": [
            {
                "guid": f"{guid}-check",
                "tabName": f"Guest {guid[-3:]}",
                "totalAmount": 24.5,
                "selections": [
                    {
                        "guid": f"{guid}-sel-1",
                        "item": {"guid": "item-brekky"},
                        "quantity": 1,
                        "price": 18.5,
                        "fulfillmentStatus": status,
                        "modifiers": [
                            {"guid": f"{guid}-mod-1", "item": {"guid": "opt-poached"}, "quantity": 1},
                            {"guid": f"{guid}-mod-2", "item": {"guid": "opt-bacon"}, "quantity": 1},
                        ],
                    },
                    {
                        "guid": f"{guid}-sel-2",
                        "item": {"guid": "item-flat-white"},
                        "quantity": 1,
                        "price": 6.0,
                        "fulfillmentStatus": status,
                        "modifiers": [
                            {"guid": f"{guid}-mod-3", "item": {"guid": "opt-oat"}, "quantity": 1},
                        ],
                    },
                ],
            }
        ],
    }


def build_sample_orders(count: int = 5) -> list[dict]:
    return [
        build_sample_order(f"a1b2c3d4-0000-4000-8000-{index:012d}", minutes_ago=5 * (count - index))
        for index in range(count)
    ]
