"""
Modifier ordering and cross-order modifier summaries.

Author: Khalil Bannouri
Version: 1.0.0
"""

import math
from typing import Any, Iterable, Optional

from ordersync.schemas import (
    ModifierSummaryGroup,
    ModifierSummaryItem,
    NormalizedOrder,
)


DEFAULT_GROUP_NAME = "Other modifiers"


def to_menu_order_value(value: Any) -> float:
    """Non-negative finite positions sort as-is; anything else sorts last."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return math.inf
    if not math.isfinite(value) or value < 0:
        return math.inf
    return value


def _text(value: Optional[str]) -> str:
    return value.strip() if isinstance(value, str) else ""


def menu_order_key(
    group_order: Any = None,
    group_name: Optional[str] = None,
    option_order: Any = None,
    name: Optional[str] = None,
    include_name: bool = True,
) -> tuple:
    """
    Sort key reproducing the menu's own ordering.

    Group position, then group name (unnamed groups last), then option
    position, then (optionally) the modifier name.
    """
    group = _text(group_name)
    key: tuple = (
        to_menu_order_value(group_order),
        0 if group else 1,
        group.casefold(),
        to_menu_order_value(option_order),
    )
    if include_name:
        label = _text(name)
        key += (0 if label else 1, label.casefold())
    return key


def sort_modifiers_by_menu_order(modifiers: Iterable[Any], include_name: bool = True) -> list:
    """Stable sort of anything exposing group_order/group_name/option_order/name."""
    return sorted(
        modifiers,
        key=lambda modifier: menu_order_key(
            getattr(modifier, "group_order", None),
            getattr(modifier, "group_name", None),
            getattr(modifier, "option_order", None),
            getattr(modifier, "name", None),
            include_name=include_name,
        ),
    )


def _normalize_key(value: Any) -> Optional[str]:
    if isinstance(value, str):
        return value.strip().lower() or None
    return None


def derive_modifier_summary(orders: Iterable[NormalizedOrder]) -> list[ModifierSummaryGroup]:
    """
    Total up modifier quantities across orders, grouped by modifier group.

    Quantities are multiplied by the parent item quantity. Modifiers
    without a group land in "Other modifiers", which sorts after named
    groups of the same position.
    """
    groups: dict[str, dict[str, Any]] = {}

    for order in orders:
        for item in order.items:
            item_quantity = item.quantity if item.quantity > 0 else 1

            for modifier in item.modifiers:
                if not modifier.name:
                    continue

                total_quantity = modifier.quantity * item_quantity
                group_order = to_menu_order_value(modifier.group_order)
                group_name = _text(modifier.group_name) or DEFAULT_GROUP_NAME
                group_key = (
                    _normalize_key(modifier.group_id or modifier.group_name)
                    or _normalize_key(group_name)
                    or "__other__"
                )

                group = groups.get(group_key)
                if group is None:
                    group = {
                        "id": modifier.group_id or group_key,
                        "name": group_name,
                        "order": group_order,
                        "items": {},
                    }
                    groups[group_key] = group

                group["order"] = min(group["order"], group_order)
                if group["name"] == DEFAULT_GROUP_NAME and group_name != DEFAULT_GROUP_NAME:
                    group["name"] = group_name

                option_order = to_menu_order_value(modifier.option_order)
                items = group["items"]
                item_key = (
                    _normalize_key(modifier.identifier)
                    or _normalize_key(modifier.name)
                    or str(len(items))
                )

                entry = items.get(item_key)
                if entry is None:
                    items[item_key] = {
                        "id": modifier.identifier or f"{group['id']}-{len(items)}",
                        "name": modifier.name,
                        "qty": total_quantity,
                        "order": option_order,
                    }
                    continue

                entry["qty"] += total_quantity
                entry["order"] = min(entry["order"], option_order)

    summary: list[ModifierSummaryGroup] = []
    for group in groups.values():
        entries = sorted(
            (entry for entry in group["items"].values() if entry["name"] and entry["qty"] > 0),
            key=lambda entry: menu_order_key(
                option_order=entry["order"], name=entry["name"]
            ),
        )
        if not entries:
            continue
        summary.append(
            ModifierSummaryGroup(
                id=group["id"],
                name=group["name"],
                order=None if math.isinf(group["order"]) else int(group["order"]),
                items=[
                    ModifierSummaryItem(
                        id=entry["id"],
                        name=entry["name"],
                        qty=entry["qty"],
                        order=None if math.isinf(entry["order"]) else int(entry["order"]),
                    )
                    for entry in entries
                ],
            )
        )

    summary.sort(
        key=lambda group: (
            to_menu_order_value(group.order),
            group.name == DEFAULT_GROUP_NAME,
            group.name.casefold(),
        )
    )
    return summary
