"""
Orders API Abstract Base Class

Defines the interface contract for upstream order-management clients.
Both MockOrdersApi and HttpOrdersApi implement these methods, so the sync
engine behaves identically whichever one is active.

Every call accepts an optional CancellationToken; when given, the request
is awaited through it and a cancelled token raises OperationCancelled.

Author: Khalil Bannouri
Version: 1.0.0
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Optional

from ordersync.schemas import OrdersLatestResponse, OrdersQuery
from ordersync.sync.cancellation import CancellationToken

TRANSIENT_STATUS_CODES = frozenset({408, 425, 429})


class OrdersApiError(Exception):
    """
    Upstream request failed.

    Attributes:
        message: Human-readable description
        status_code: HTTP status, or None for transport failures
    """

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.message = message
        self.status_code = status_code
        super().__init__(message)

    @property
    def is_transient(self) -> bool:
        """Transport errors, timeouts, throttling and 5xx are worth retrying."""
        if self.status_code is None:
            return True
        return self.status_code in TRANSIENT_STATUS_CODES or self.status_code >= 500


class OrdersPayloadError(OrdersApiError):
    """Upstream answered, but with a body that is not usable."""

    @property
    def is_transient(self) -> bool:
        return False


@dataclass
class FetchedDocument:
    """
    A menu or config document as returned by the upstream.

    Attributes:
        payload: Parsed JSON body
        cache_control: Cache-Control response header, if any
    """
    payload: Any
    cache_control: Optional[str] = None

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {"payload": self.payload, "cache_control": self.cache_control}


def unwrap_order_payload(payload: Any) -> dict:
    """Single-order responses may come bare or wrapped in ``{"order": ...}``."""
    if isinstance(payload, dict) and isinstance(payload.get("order"), dict):
        return payload["order"]
    if isinstance(payload, dict):
        return payload
    raise OrdersPayloadError("Order response was not a JSON object")


class BaseOrdersApi(ABC):
    """
    Abstract base class for upstream order-management clients.

    Example:
        >>> api = get_orders_api()  # Mock or HTTP
        >>> listing = await api.fetch_latest(OrdersQuery(limit=200, minutes=720))
        >>> order = await api.fetch_order(listing.orders[0])
    """

    @property
    @abstractmethod
    def provider_name(self) -> str:
        """
        Return the name of the upstream provider.

        Returns:
            str: Provider name (e.g., "mock", "http")
        """
        pass

    @abstractmethod
    async def fetch_latest(
        self,
        query: OrdersQuery,
        token: Optional[CancellationToken] = None,
    ) -> OrdersLatestResponse:
        """
        Bulk listing of recent orders.

        Args:
            query: Window, limit and detail level
            token: Cancellation token of the calling cycle

        Returns:
            OrdersLatestResponse: GUIDs (detail=ids) or full records

        Raises:
            OrdersApiError: Request failed or the envelope is unusable
        """
        pass

    @abstractmethod
    async def fetch_order(
        self,
        guid: str,
        token: Optional[CancellationToken] = None,
    ) -> Optional[dict]:
        """
        Fetch one order by GUID.

        Returns:
            dict: Raw order record, or None when the upstream reports 404

        Raises:
            OrdersApiError: Any other failure
        """
        pass

    @abstractmethod
    async def fetch_menus(self, token: Optional[CancellationToken] = None) -> FetchedDocument:
        """Fetch the menu document."""
        pass

    @abstractmethod
    async def fetch_config(self, token: Optional[CancellationToken] = None) -> FetchedDocument:
        """Fetch the restaurant configuration snapshot (dining options)."""
        pass

    @abstractmethod
    async def health_check(self) -> bool:
        """
        Verify connectivity to the upstream.

        Returns:
            bool: True if the upstream is reachable
        """
        pass

    async def aclose(self) -> None:
        """Release network resources."""
        return None
