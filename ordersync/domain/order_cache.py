"""
Order Cache

GUID-keyed store of raw + normalized orders. It is the single source of
truth for the published snapshot.

- Fingerprinted upserts: an unchanged raw record is never re-normalized
- Lookup-version reconciliation: entries built against old lookup tables
  are re-normalized when the tables change
- Readiness-dependent eviction: ready orders expire sooner than active ones

Author: Khalil Bannouri
Version: 1.0.0
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Iterable, Optional

from ordersync.domain.canonical import ensure_list, stable_stringify
from ordersync.domain.lookups import LookupRegistry
from ordersync.domain.normalize import (
    extract_order_guid,
    is_voided_order,
    normalize_orders,
    order_sort_key,
)
from ordersync.schemas import READY_STATUS, NormalizedOrder

logger = logging.getLogger(__name__)


class ApplyOutcome(str, Enum):
    CREATED = "created"
    UPDATED = "updated"
    UNCHANGED = "unchanged"
    DELETED = "deleted"
    SKIPPED = "skipped"


@dataclass
class CacheEntry:
    guid: str
    raw: dict
    normalized: NormalizedOrder
    fingerprint: str
    last_seen_at_ms: int
    is_ready: bool
    normalized_version: int


def compute_is_order_ready(order: NormalizedOrder) -> bool:
    """
    An order with items is ready only when every item is READY; an order
    without items falls back to its own fulfillment status.
    """
    if order.items:
        return all(item.fulfillment_status == READY_STATUS for item in order.items)
    return order.fulfillment_status == READY_STATUS


class OrderCache:
    """
    In-memory order cache.

    Args:
        registry: Source of the current lookup tables
        ready_ttl_ms: Retention of unseen ready orders
        active_ttl_ms: Retention of unseen active orders (must be longer)
    """

    def __init__(self, registry: LookupRegistry, ready_ttl_ms: int, active_ttl_ms: int):
        if ready_ttl_ms >= active_ttl_ms:
            raise ValueError("ready_ttl_ms must be shorter than active_ttl_ms")
        self._registry = registry
        self.ready_ttl_ms = ready_ttl_ms
        self.active_ttl_ms = active_ttl_ms
        self._entries: dict[str, CacheEntry] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, guid: object) -> bool:
        return guid in self._entries

    def get(self, guid: str) -> Optional[CacheEntry]:
        return self._entries.get(guid)

    def guids(self) -> list[str]:
        return list(self._entries)

    # =========================================================================
    # WRITES
    # =========================================================================

    def _normalize(self, raw: dict) -> Optional[NormalizedOrder]:
        orders = normalize_orders([raw], self._registry.tables)
        return orders[0] if orders else None

    def apply_raw(self, order: Any, now_ms: int) -> ApplyOutcome:
        """
        Idempotent upsert of one raw record.

        Voided records delete the cached entry. Records without a GUID, or
        that fail to normalize, are skipped.
        """
        guid = extract_order_guid(order)
        if guid is None:
            logger.debug("Skipping order record without a GUID")
            return ApplyOutcome.SKIPPED

        if is_voided_order(order):
            return ApplyOutcome.DELETED if self.delete(guid) else ApplyOutcome.SKIPPED

        fingerprint = stable_stringify(order)
        version = self._registry.version
        existing = self._entries.get(guid)

        if (
            existing is not None
            and existing.fingerprint == fingerprint
            and existing.normalized_version == version
        ):
            existing.last_seen_at_ms = now_ms
            return ApplyOutcome.UNCHANGED

        normalized = self._normalize(order)
        if normalized is None:
            logger.warning(f"Order {guid} did not normalize; leaving cache untouched")
            if existing is not None:
                existing.last_seen_at_ms = now_ms
            return ApplyOutcome.SKIPPED

        if existing is not None:
            existing.raw = order
            existing.normalized = normalized
            existing.fingerprint = fingerprint
            existing.last_seen_at_ms = now_ms
            existing.is_ready = compute_is_order_ready(normalized)
            existing.normalized_version = version
            return ApplyOutcome.UPDATED

        self._entries[guid] = CacheEntry(
            guid=guid,
            raw=order,
            normalized=normalized,
            fingerprint=fingerprint,
            last_seen_at_ms=now_ms,
            is_ready=compute_is_order_ready(normalized),
            normalized_version=version,
        )
        return ApplyOutcome.CREATED

    def apply_batch(self, orders: Iterable[Any], now_ms: int) -> set[str]:
        """
        Apply several raw records.

        Returns:
            GUIDs seen in the batch (voided records excluded)
        """
        seen: set[str] = set()
        for order in orders:
            outcome = self.apply_raw(order, now_ms)
            if outcome in (ApplyOutcome.CREATED, ApplyOutcome.UPDATED, ApplyOutcome.UNCHANGED):
                seen.add(extract_order_guid(order))
        return seen

    def touch(self, guid: str, now_ms: int) -> bool:
        entry = self._entries.get(guid)
        if entry is None:
            return False
        entry.last_seen_at_ms = now_ms
        return True

    def delete(self, guid: str) -> bool:
        return self._entries.pop(guid, None) is not None

    def active_guids(self, exclude: Iterable[str] = ()) -> list[str]:
        """Cached GUIDs of orders that are not ready yet."""
        excluded = set(exclude)
        return [
            guid
            for guid, entry in self._entries.items()
            if not entry.is_ready and guid not in excluded
        ]

    def reconcile_lookup_version(self) -> int:
        """
        Re-normalize every entry built against an older lookup version.

        Returns:
            int: Number of entries re-normalized or dropped
        """
        version = self._registry.version
        changed = 0

        for guid, entry in list(self._entries.items()):
            if entry.normalized_version == version:
                continue
            changed += 1
            normalized = self._normalize(entry.raw)
            if normalized is None:
                logger.warning(f"Order {guid} no longer normalizes; dropping it")
                del self._entries[guid]
                continue
            entry.normalized = normalized
            entry.is_ready = compute_is_order_ready(normalized)
            entry.normalized_version = version

        if changed:
            logger.info(f"Re-normalized {changed} cached orders for lookup version {version}")
        return changed

    def evict_stale(self, now_ms: int, seen_guids: Iterable[str] = ()) -> list[str]:
        """
        Remove entries unseen for longer than their retention window.

        Returns:
            Evicted GUIDs
        """
        seen = set(seen_guids)
        evicted: list[str] = []

        for guid, entry in list(self._entries.items()):
            if guid in seen:
                continue
            ttl = self.ready_ttl_ms if entry.is_ready else self.active_ttl_ms
            if now_ms - entry.last_seen_at_ms > ttl:
                del self._entries[guid]
                evicted.append(guid)

        if evicted:
            logger.info(f"Evicted {len(evicted)} stale orders")
        return evicted

    # =========================================================================
    # READS
    # =========================================================================

    def publish(self) -> list[NormalizedOrder]:
        """Normalized orders by created_at (unresolved last), then insertion order."""
        ranked = [
            (order_sort_key(entry.normalized, position), entry.normalized)
            for position, entry in enumerate(self._entries.values())
        ]
        ranked.sort(key=lambda pair: pair[0])
        return [order for _, order in ranked]

    def raw_orders(self) -> list[dict]:
        return [entry.raw for entry in self._entries.values()]

    # =========================================================================
    # PERSISTENCE
    # =========================================================================

    def export_state(self) -> list[dict[str, Any]]:
        """Serializable entries; normalized forms are rebuilt on restore."""
        return [
            {"guid": entry.guid, "raw": entry.raw, "last_seen_at_ms": entry.last_seen_at_ms}
            for entry in self._entries.values()
        ]

    def restore_state(self, entries: Any) -> int:
        """
        Load entries previously produced by export_state.

        Returns:
            int: Number of entries restored
        """
        restored = 0
        for item in ensure_list(entries):
            if not isinstance(item, dict) or not isinstance(item.get("raw"), dict):
                continue
            last_seen = item.get("last_seen_at_ms")
            if isinstance(last_seen, bool) or not isinstance(last_seen, (int, float)):
                continue
            outcome = self.apply_raw(item["raw"], int(last_seen))
            if outcome == ApplyOutcome.CREATED:
                restored += 1
        return restored
