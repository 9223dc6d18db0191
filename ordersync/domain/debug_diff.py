"""
Debug diff between the published normalized orders and the raw records
they came from. Used by the debug endpoint to spot normalization drift.

Author: Khalil Bannouri
Version: 1.0.0
"""

from typing import Any, Optional

from ordersync.domain.normalize import extract_order_guid
from ordersync.schemas import (
    DebugDiffEntry,
    DebugDiffMismatch,
    DebugDiffResponse,
    NormalizedOrder,
)


def _normalized_key(order: NormalizedOrder, index: int) -> str:
    if order.guid and order.guid.strip():
        return order.guid.strip()
    if order.id and order.id.strip():
        return order.id.strip()
    return f"normalized-{index}"


def _raw_status(order: dict) -> Optional[str]:
    status = order.get("status")
    if isinstance(status, str):
        return status
    if isinstance(status, dict) and isinstance(status.get("status"), str):
        return status["status"]
    return None


def _raw_fulfillment_status(order: dict) -> Optional[str]:
    value = order.get("fulfillmentStatus")
    if isinstance(value, str):
        return value
    status = order.get("status")
    if isinstance(status, dict) and isinstance(status.get("fulfillmentStatus"), str):
        return status["fulfillmentStatus"]
    return None


def _raw_selection_count(order: dict) -> int:
    checks = order.get("checks")
    if not isinstance(checks, list):
        return 0
    return sum(
        len(check["selections"])
        for check in checks
        if isinstance(check, dict) and isinstance(check.get("selections"), list)
    )


def compute_orders_debug_diff(normalized_orders: Any, raw_orders: Any) -> DebugDiffResponse:
    """
    Pair normalized and raw orders by GUID and report differences.

    Compares status, fulfillment status and item count (normalized items
    vs raw check selections). Orders present on one side only are
    flagged as such; malformed inputs are reported in ``issues``.
    """
    issues: list[str] = []

    normalized_map: dict[str, NormalizedOrder] = {}
    if not isinstance(normalized_orders, list):
        issues.append("Normalized orders payload was not a list.")
    else:
        for index, order in enumerate(normalized_orders):
            if not isinstance(order, NormalizedOrder):
                issues.append("Encountered a non-order entry in the normalized orders payload.")
                continue
            normalized_map[_normalized_key(order, index)] = order

    raw_map: dict[str, dict] = {}
    if not isinstance(raw_orders, list):
        issues.append("Raw orders payload was not a list.")
    else:
        for order in raw_orders:
            if not isinstance(order, dict):
                issues.append("Encountered a non-object entry in the raw orders payload.")
                continue
            guid = extract_order_guid(order)
            if not guid:
                issues.append("Encountered a raw order without a GUID.")
                continue
            raw_map[guid] = order

    entries: list[DebugDiffEntry] = []
    for guid in list(dict.fromkeys([*normalized_map, *raw_map])):
        normalized = normalized_map.get(guid)
        raw = raw_map.get(guid)

        if raw is None:
            entries.append(DebugDiffEntry(guid=guid, normalized_only=True))
            continue
        if normalized is None:
            entries.append(DebugDiffEntry(guid=guid, raw_only=True))
            continue

        mismatches: list[DebugDiffMismatch] = []
        comparisons = (
            ("status", normalized.status, _raw_status(raw)),
            ("fulfillment_status", normalized.fulfillment_status, _raw_fulfillment_status(raw)),
            ("item_count", len(normalized.items), _raw_selection_count(raw)),
        )
        for field, normalized_value, raw_value in comparisons:
            if normalized_value != raw_value:
                mismatches.append(
                    DebugDiffMismatch(
                        field=field,
                        normalized_value=normalized_value,
                        raw_value=raw_value,
                    )
                )

        if mismatches:
            entries.append(DebugDiffEntry(guid=guid, mismatches=mismatches))

    return DebugDiffResponse(entries=entries, issues=issues)
