"""
Targeted Fetcher

Fetches individual orders by GUID with bounded concurrency and retries.
Used to hydrate GUIDs the bulk listing returned without records, to
re-verify cached orders the listing omitted, and to re-poll orders that
are not ready yet.

Per GUID outcome:
    - found     → raw record returned in ``orders``
    - not found → GUID in ``removed`` (upstream 404)
    - voided    → GUID in ``removed``
    - failing   → retried with linear backoff, then ``unresolved``

Author: Khalil Bannouri
Version: 1.0.0
"""

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Iterable, Optional

from ordersync.domain.normalize import is_voided_order
from ordersync.services.orders_api.base import BaseOrdersApi, OrdersApiError
from ordersync.sync.cancellation import CancellationToken

logger = logging.getLogger(__name__)


class FetchOutcome(str, Enum):
    FOUND = "found"
    NOT_FOUND = "not_found"
    VOIDED = "voided"
    UNRESOLVED = "unresolved"


@dataclass
class TargetedFetchResult:
    """
    Attributes:
        seen: GUIDs fetched successfully (not voided)
        orders: Raw records of ``seen``, in request order
        removed: GUIDs the upstream no longer has, or reports voided
        unresolved: GUIDs that kept failing; callers leave them untouched
    """
    seen: set[str] = field(default_factory=set)
    orders: list[dict] = field(default_factory=list)
    removed: set[str] = field(default_factory=set)
    unresolved: set[str] = field(default_factory=set)

    @property
    def attempted(self) -> set[str]:
        return self.seen | self.removed | self.unresolved

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "seen": sorted(self.seen),
            "removed": sorted(self.removed),
            "unresolved": sorted(self.unresolved),
            "orders": len(self.orders),
        }


class TargetedFetcher:
    """
    Bounded-concurrency single-order fetcher.

    Args:
        api: Upstream client
        concurrency_limit: Maximum requests in flight
        max_retries: Extra attempts after a transient failure
        backoff_ms: Base delay; attempt ``n`` waits ``backoff_ms * n``

    Example:
        >>> fetcher = TargetedFetcher(api, concurrency_limit=4)
        >>> result = await fetcher.fetch_by_guids(["A", "B"], token)
        >>> result.removed
        {'B'}
    """

    def __init__(
        self,
        api: BaseOrdersApi,
        concurrency_limit: int = 4,
        max_retries: int = 2,
        backoff_ms: int = 250,
    ):
        self.api = api
        self.concurrency_limit = concurrency_limit
        self.max_retries = max_retries
        self.backoff_ms = backoff_ms

    async def _fetch_one(
        self,
        guid: str,
        token: CancellationToken,
        max_retries: int,
        backoff_ms: int,
    ) -> tuple[FetchOutcome, Optional[dict]]:
        attempt = 0
        while True:
            attempt += 1
            try:
                order = await self.api.fetch_order(guid, token)
            except OrdersApiError as e:
                if not e.is_transient:
                    logger.warning(f"Targeted fetch of {guid} failed permanently: {e}")
                    return FetchOutcome.UNRESOLVED, None
                if attempt > max_retries:
                    logger.warning(
                        f"Targeted fetch of {guid} failed after {attempt} attempts: {e}"
                    )
                    return FetchOutcome.UNRESOLVED, None
                delay_ms = backoff_ms * attempt
                logger.debug(f"Retrying {guid} in {delay_ms}ms (attempt {attempt}): {e}")
                await token.sleep(delay_ms / 1000)
                continue

            if order is None:
                return FetchOutcome.NOT_FOUND, None
            if is_voided_order(order):
                return FetchOutcome.VOIDED, None
            return FetchOutcome.FOUND, order

    async def fetch_by_guids(
        self,
        guids: Iterable[str],
        token: CancellationToken,
        concurrency_limit: Optional[int] = None,
        max_retries: Optional[int] = None,
        backoff_ms: Optional[int] = None,
    ) -> TargetedFetchResult:
        """
        Fetch every GUID, ``concurrency_limit`` at a time.

        Raises:
            OperationCancelled: The token was cancelled; partial results
                are discarded
        """
        limit = max(1, concurrency_limit or self.concurrency_limit)
        retries = self.max_retries if max_retries is None else max(0, max_retries)
        backoff = self.backoff_ms if backoff_ms is None else max(0, backoff_ms)

        unique = [guid for guid in dict.fromkeys(guids) if isinstance(guid, str) and guid.strip()]
        result = TargetedFetchResult()
        if not unique:
            return result

        for start in range(0, len(unique), limit):
            token.raise_if_cancelled()
            batch = unique[start:start + limit]
            outcomes = await asyncio.gather(
                *(self._fetch_one(guid, token, retries, backoff) for guid in batch),
                return_exceptions=True,
            )

            for guid, outcome in zip(batch, outcomes):
                if isinstance(outcome, BaseException):
                    # OperationCancelled included: the whole batch is void
                    raise outcome

                status, order = outcome
                if status == FetchOutcome.FOUND:
                    result.seen.add(guid)
                    result.orders.append(order)
                elif status in (FetchOutcome.NOT_FOUND, FetchOutcome.VOIDED):
                    result.removed.add(guid)
                else:
                    result.unresolved.add(guid)

        logger.debug(
            f"Targeted fetch: {len(result.seen)} found, {len(result.removed)} removed, "
            f"{len(result.unresolved)} unresolved"
        )
        return result
