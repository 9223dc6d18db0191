"""
Freshness-checked source of menu / config payloads.

A fresh snapshot is served without touching the network. Otherwise the
upstream is asked; on failure the last snapshot, fresh or not, is served
instead and a ``lookups.refresh.stale`` warning is recorded.

Author: Khalil Bannouri
Version: 1.0.0
"""

import logging
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional

from ordersync.domain.snapshots import CacheSnapshot, prepare_snapshot, resolve_ttl_ms
from ordersync.schemas import DiagnosticLevelEnum
from ordersync.services.diagnostics import LOOKUPS_STALE, DiagnosticsRecorder
from ordersync.services.orders_api.base import FetchedDocument, OrdersApiError
from ordersync.services.storage.base import BaseKeyValueStore, StorageError
from ordersync.sync.cancellation import CancellationToken

logger = logging.getLogger(__name__)

DocumentLoader = Callable[[Optional[CancellationToken]], Awaitable[FetchedDocument]]


class SnapshotSource:
    """
    Args:
        name: "menu" or "config" (used in logs and diagnostics)
        loader: Upstream fetch, e.g. ``api.fetch_menus``
        store: Where the snapshot is persisted
        storage_key: Key under which it is persisted
        diagnostics: Recorder for stale / storage warnings
    """

    def __init__(
        self,
        name: str,
        loader: DocumentLoader,
        store: BaseKeyValueStore,
        storage_key: str,
        diagnostics: DiagnosticsRecorder,
    ):
        self.name = name
        self.loader = loader
        self.store = store
        self.storage_key = storage_key
        self.diagnostics = diagnostics
        self.snapshot: Optional[CacheSnapshot] = None

    async def restore(self) -> Optional[CacheSnapshot]:
        """Load the persisted snapshot, if any."""
        try:
            data = await self.store.get(self.storage_key)
        except StorageError as e:
            logger.warning(f"Could not restore {self.name} snapshot: {e}")
            return None
        snapshot = CacheSnapshot.from_dict(data)
        if snapshot is not None:
            self.snapshot = snapshot
            logger.info(f"Restored {self.name} snapshot fetched at {snapshot.fetched_at.isoformat()}")
        return snapshot

    async def load(
        self,
        token: CancellationToken,
        now: Optional[datetime] = None,
    ) -> Optional[Any]:
        """
        Current payload: fresh snapshot, upstream, or stale fallback.

        Returns:
            The payload, or None when the upstream failed and no snapshot
            exists

        Raises:
            OperationCancelled: The token was cancelled
        """
        moment = now or datetime.now(timezone.utc)
        cached = self.snapshot
        if cached is not None and cached.is_fresh(moment):
            return cached.payload

        try:
            document = await self.loader(token)
        except OrdersApiError as e:
            self.diagnostics.record(
                LOOKUPS_STALE,
                DiagnosticLevelEnum.WARN,
                payload={"source": self.name, "has_snapshot": cached is not None},
                error=e,
            )
            return cached.payload if cached is not None else None

        snapshot = prepare_snapshot(
            document.payload,
            resolve_ttl_ms(document.payload, document.cache_control),
            moment,
        )
        self.snapshot = snapshot

        try:
            await token.run(self.store.set(self.storage_key, snapshot.to_dict()))
        except StorageError as e:
            logger.warning(f"Could not persist {self.name} snapshot: {e}")

        return snapshot.payload
