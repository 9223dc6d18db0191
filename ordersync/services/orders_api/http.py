"""
HTTP Orders API Implementation

Production client for the upstream order-management API.
Used when ENV_MODE=production or ENV_MODE=staging.

Endpoints:
    GET {base}/api/orders?limit=&detail=&timeZone=&since=|minutes=
    GET {base}/api/orders/{guid}
    GET {base}/api/menus
    GET {base}/api/config/snapshot

Requirements:
    - ORDERS_API_BASE_URL must be set in environment
    - ORDERS_API_TOKEN is sent as a bearer token when present

Author: Khalil Bannouri
Version: 1.0.0
"""

import logging
from typing import Any, Optional
from urllib.parse import quote

import httpx
from pydantic import ValidationError

from ordersync.core.config import get_settings
from ordersync.schemas import OrdersLatestResponse, OrdersQuery
from ordersync.services.orders_api.base import (
    BaseOrdersApi,
    FetchedDocument,
    OrdersApiError,
    OrdersPayloadError,
    unwrap_order_payload,
)
from ordersync.sync.cancellation import CancellationToken, guarded

logger = logging.getLogger(__name__)


class HttpOrdersApi(BaseOrdersApi):
    """
    httpx-based upstream client.

    Args:
        base_url: Upstream root URL
        api_token: Optional bearer token
        timeout: Per-request timeout in seconds
        orders_path: Bulk listing path (single orders live below it)
        menus_path: Menu document path
        config_path: Config snapshot path
        client: Pre-built AsyncClient (tests inject one with a MockTransport)

    Example:
        >>> api = HttpOrdersApi("https://orders.example.com")
        >>> listing = await api.fetch_latest(OrdersQuery(limit=200, minutes=720))
        >>> print(listing.detail, len(listing.orders))
        'ids' 42
    """

    def __init__(
        self,
        base_url: str,
        api_token: Optional[str] = None,
        timeout: float = 15.0,
        orders_path: str = "/api/orders",
        menus_path: str = "/api/menus",
        config_path: str = "/api/config/snapshot",
        client: Optional[httpx.AsyncClient] = None,
    ):
        if not base_url:
            raise ValueError("ORDERS_API_BASE_URL is required for HttpOrdersApi")

        self.base_url = base_url.rstrip("/")
        self.orders_path = orders_path
        self.menus_path = menus_path
        self.config_path = config_path

        headers = {"Accept": "application/json"}
        if api_token:
            headers["Authorization"] = f"Bearer {api_token}"

        self._client = client or httpx.AsyncClient(
            base_url=self.base_url,
            headers=headers,
            timeout=timeout,
        )
        logger.info(f"HttpOrdersApi initialized ({self.base_url})")

    @classmethod
    def from_settings(cls) -> "HttpOrdersApi":
        settings = get_settings()
        return cls(
            base_url=settings.orders_api_base_url or "",
            api_token=settings.orders_api_token,
            timeout=settings.http_timeout_seconds,
            orders_path=settings.orders_endpoint_path,
            menus_path=settings.menus_endpoint_path,
            config_path=settings.config_snapshot_endpoint_path,
        )

    @property
    def provider_name(self) -> str:
        """Return the provider name."""
        return "http"

    # =========================================================================
    # TRANSPORT
    # =========================================================================

    async def _get(
        self,
        path: str,
        params: Optional[dict[str, Any]] = None,
        token: Optional[CancellationToken] = None,
    ) -> httpx.Response:
        try:
            return await guarded(self._client.get(path, params=params), token)
        except httpx.TimeoutException as e:
            raise OrdersApiError(f"GET {path} timed out: {e}") from e
        except httpx.HTTPError as e:
            raise OrdersApiError(f"GET {path} failed: {e}") from e

    @staticmethod
    def _raise_for_status(response: httpx.Response, path: str) -> None:
        if response.is_success:
            return
        raise OrdersApiError(
            f"GET {path} returned {response.status_code}",
            status_code=response.status_code,
        )

    @staticmethod
    def _json(response: httpx.Response, path: str) -> Any:
        try:
            return response.json()
        except ValueError as e:
            raise OrdersPayloadError(
                f"GET {path} returned invalid JSON", status_code=response.status_code
            ) from e

    # =========================================================================
    # ENDPOINTS
    # =========================================================================

    async def fetch_latest(
        self,
        query: OrdersQuery,
        token: Optional[CancellationToken] = None,
    ) -> OrdersLatestResponse:
        response = await self._get(self.orders_path, query.to_params(), token)
        self._raise_for_status(response, self.orders_path)
        payload = self._json(response, self.orders_path)

        if isinstance(payload, list):
            payload = {"orders": payload, "detail": query.detail.value}
        try:
            listing = OrdersLatestResponse.model_validate(payload)
        except ValidationError as e:
            raise OrdersPayloadError(f"Unexpected orders envelope: {e.error_count()} errors") from e

        if not listing.ok:
            raise OrdersApiError("Orders listing reported ok=false", status_code=response.status_code)

        logger.debug(f"Fetched orders listing ({len(listing.orders)} entries, detail={listing.detail})")
        return listing

    async def fetch_order(
        self,
        guid: str,
        token: Optional[CancellationToken] = None,
    ) -> Optional[dict]:
        path = f"{self.orders_path.rstrip('/')}/{quote(guid, safe='')}"
        response = await self._get(path, token=token)
        if response.status_code == 404:
            logger.debug(f"Order {guid} not found upstream")
            return None
        self._raise_for_status(response, path)
        return unwrap_order_payload(self._json(response, path))

    async def _fetch_document(
        self,
        path: str,
        token: Optional[CancellationToken],
    ) -> FetchedDocument:
        response = await self._get(path, token=token)
        self._raise_for_status(response, path)
        return FetchedDocument(
            payload=self._json(response, path),
            cache_control=response.headers.get("cache-control"),
        )

    async def fetch_menus(self, token: Optional[CancellationToken] = None) -> FetchedDocument:
        return await self._fetch_document(self.menus_path, token)

    async def fetch_config(self, token: Optional[CancellationToken] = None) -> FetchedDocument:
        return await self._fetch_document(self.config_path, token)

    async def health_check(self) -> bool:
        """Probe the listing endpoint with the smallest possible request."""
        try:
            response = await self._client.get(
                self.orders_path, params={"limit": 1, "detail": "ids", "minutes": 1}
            )
            return response.is_success
        except httpx.HTTPError as e:
            logger.error(f"Orders API health check failed: {e}")
            return False

    async def aclose(self) -> None:
        await self._client.aclose()
