"""
Orders API Factory

Provides a single entry point for obtaining the upstream orders client.
The rest of the application stays agnostic about which implementation is
active.

Usage:
    from ordersync.services.orders_api import get_orders_api

    # Returns MockOrdersApi or HttpOrdersApi based on ENV_MODE
    api = get_orders_api()

    listing = await api.fetch_latest(query)

Environment Switching:
    - ENV_MODE=development → MockOrdersApi (seeded sample data, no network)
    - ENV_MODE=staging → HttpOrdersApi (staging upstream)
    - ENV_MODE=production → HttpOrdersApi (live upstream)

Author: Khalil Bannouri
Version: 1.0.0
"""

import logging
from functools import lru_cache

from ordersync.core.config import get_settings
from ordersync.services.orders_api.base import (
    BaseOrdersApi,
    FetchedDocument,
    OrdersApiError,
    OrdersPayloadError,
)
from ordersync.services.orders_api.http import HttpOrdersApi
from ordersync.services.orders_api.mock import (
    SAMPLE_CONFIG,
    SAMPLE_MENU,
    MockOrdersApi,
    build_sample_orders,
)

logger = logging.getLogger(__name__)


@lru_cache()
def get_orders_api() -> BaseOrdersApi:
    """
    Get the configured upstream orders client.

    The instance is cached so the HTTP connection pool is shared.

    Returns:
        BaseOrdersApi: Configured client instance

    Raises:
        ValueError: If not in development mode and ORDERS_API_BASE_URL is unset
    """
    settings = get_settings()

    if settings.is_development:
        logger.info("Orders API: Using MockOrdersApi (development mode)")
        return MockOrdersApi(
            orders=build_sample_orders(),
            menu=SAMPLE_MENU,
            config=SAMPLE_CONFIG,
            failure_rate=0.05,
            min_latency=0.05,
            max_latency=0.3,
            menu_cache_control="max-age=300",
        )

    logger.info(f"Orders API: Using HttpOrdersApi ({settings.env_mode.value} mode)")
    return HttpOrdersApi.from_settings()


def reset_orders_api() -> None:
    """
    Clear the cached client instance.

    The next call to get_orders_api() builds a new one.
    """
    get_orders_api.cache_clear()
    logger.debug("Orders API cache cleared")


__all__ = [
    "get_orders_api",
    "reset_orders_api",
    "BaseOrdersApi",
    "FetchedDocument",
    "OrdersApiError",
    "OrdersPayloadError",
    "HttpOrdersApi",
    "MockOrdersApi",
]
