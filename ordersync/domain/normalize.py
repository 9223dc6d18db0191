"""
Normalization Pipeline

Turns untrusted raw order records into NormalizedOrder entities.

Upstream order payloads come in many shapes (Toast-style checks and
selections, flat line items, GraphQL edges/nodes, wrapped envelopes), so
every field is resolved by trying a list of key paths in priority order.
The pipeline is pure: it reads the lookup tables it is given and never
performs I/O or mutates its inputs.

Resolution rules:
    - identity: explicit guid, else a GUID-like id, else display number,
      else an index-derived placeholder (unique per call)
    - created_at: highest-priority timestamp path wins, earliest value
      within a priority
    - items: menu name > embedded name > "Item N"; sorted by menu position
    - modifiers: de-duplicated by identifier (else normalized name),
      quantities summed, deselected / zero-quantity entries dropped
    - fulfillment status: most urgent classified candidate wins

Usage:
    from ordersync.domain.normalize import normalize_orders

    orders = normalize_orders(raw_orders, registry.tables)

Author: Khalil Bannouri
Version: 1.0.0
"""

import logging
import re
from collections import deque
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Iterable, Optional

from ordersync.domain.canonical import (
    collect_string_values_at_paths,
    ensure_list,
    extract_at_path,
    is_likely_guid,
    normalize_lookup_key,
    parse_date_like,
    pick_value,
    select_preferred_string_candidate,
    to_number,
    to_string_value,
)
from ordersync.domain.lookups import LookupTables, MenuLookupEntry
from ordersync.domain.modifiers import menu_order_key
from ordersync.schemas import (
    FulfillmentFilterEnum,
    NormalizedModifier,
    NormalizedOrder,
    NormalizedOrderItem,
    READY_STATUS,
)

logger = logging.getLogger(__name__)

EMPTY_LOOKUPS = LookupTables()


# =============================================================================
# ITEM & MODIFIER PATHS
# =============================================================================

ITEM_COLLECTION_PATHS = (
    "items",
    "line_items",
    "lineItems",
    "products",
    "order_items",
    "entries",
    "cartItems",
    "details.items",
    "summary.items",
    "cart.items",
    "cart.lineItems",
    "cart.selections",
    "cart.items.nodes",
    "cart.items.edges[].node",
    "items.nodes",
    "items.edges[].node",
    "items.values",
    "checks[].items",
    "checks[].items.nodes",
    "checks[].items.edges[].node",
    "checks[].selections",
    "checks[].selections.nodes",
    "checks[].selections.edges[].node",
    "checks[].entries",
    "checks[].lineItems",
    "checks[].line_items",
    "checks[].menuItems",
    "checks[].choices",
)

ITEM_OWN_ID_KEYS = (
    "guid",
    "id",
    "uuid",
    "selectionGuid",
    "selection_guid",
    "selectionId",
    "selection_id",
    "lineId",
    "line_id",
    "checkItemId",
    "check_item_id",
)

ITEM_REFERENCE_ID_KEYS = (
    "item.guid",
    "item.id",
    "item.multiLocationId",
    "menuItem.guid",
    "menuItem.id",
    "menu_item.guid",
    "menu_item.id",
    "itemGuid",
    "item_guid",
    "itemId",
    "item_id",
    "menuItemGuid",
    "menu_item_guid",
    "menuItemId",
    "menu_item_id",
    "multiLocationId",
    "externalId",
    "sku",
    "code",
)

ITEM_NAME_KEYS = (
    "kitchenName",
    "kitchen_name",
    "name",
    "title",
    "displayName",
    "display_name",
    "itemName",
    "item_name",
    "productName",
    "product_name",
    "menuItemName",
    "menu_item_name",
    "description",
    "menuItem.name",
    "menu_item.name",
    "item.name",
    "product.name",
    "selection.name",
)

ITEM_QUANTITY_KEYS = (
    "quantity.value",
    "quantity.count",
    "count.value",
    "quantity",
    "qty",
    "count",
    "quantityOrdered",
    "quantity_ordered",
    "amount",
)

ITEM_PRICE_KEYS = (
    "price.amount",
    "price.value",
    "unitPrice.amount",
    "unit_price.amount",
    "total.amount",
    "totals.total",
    "amount_total",
    "price_total",
    "priceTotal",
    "unitPrice",
    "unit_price",
    "price",
    "receiptLinePrice",
    "total",
    "cost",
    "basePrice",
    "base_price",
    "menuItem.price.amount",
    "menuItem.price",
    "item.price.amount",
    "item.price",
)

ITEM_HINT_KEYS = (
    ITEM_NAME_KEYS
    + ITEM_QUANTITY_KEYS
    + ITEM_PRICE_KEYS
    + ("currency", "currencyCode", "notes", "note", "specialInstructions", "instructions")
)

NOTES_KEYS = ("notes", "note", "specialInstructions", "special_instructions", "instructions")

STATUS_FIELDS = (
    "fulfillmentStatus",
    "fulfillment_status",
    "fulfillmentStatus.name",
    "fulfillmentStatus.displayName",
    "fulfillmentStatus.label",
    "fulfillmentState",
    "fulfillment_state",
    "fulfillment.status",
    "fulfillment.status.name",
    "fulfillment.state",
    "fulfillment.progress",
    "fulfillment.progressStatus",
    "kitchenStatus",
    "kitchen_status",
    "prepStatus",
    "prep_status",
    "deliveryStatus",
    "delivery_status",
    "serviceStatus",
    "service_status",
    "status",
    "state",
    "progressStatus",
    "progress_status",
)

MODIFIER_COLLECTION_PATHS = (
    "modifiers",
    "modifier",
    "modifierItems",
    "modifier_items",
    "modifierList",
    "modifierGroups",
    "modifierGroups[].modifiers",
    "modifierGroups[].items",
    "modifierGroups[].options",
    "modifier_groups",
    "modifier_groups[].modifiers",
    "modifier_groups[].items",
    "modifier_groups[].options",
    "options",
    "options.items",
    "options.nodes",
    "options.edges[].node",
    "selectedOptions",
    "selectedOptions.nodes",
    "selectedOptions.edges[].node",
    "selectedModifiers",
    "selectedModifiers.nodes",
    "selectedModifiers.edges[].node",
    "appliedModifiers",
    "appliedModifiers.nodes",
    "appliedModifiers.edges[].node",
    "selections",
    "selections.items",
    "selections.nodes",
    "selections.edges[].node",
    "choice",
    "choices",
    "choices.nodes",
    "choices.edges[].node",
    "choiceGroups",
    "choiceGroups[].choices",
    "customizations",
    "customizations.nodes",
    "customizations.edges[].node",
    "addOns",
    "addOns.nodes",
    "addOns.edges[].node",
    "add_ons",
    "extras",
    "extras.nodes",
    "extras.edges[].node",
    "toppings",
    "ingredients",
    "ingredients.nodes",
    "ingredients.edges[].node",
    "modifications",
    "modificationsList",
    "specialRequests",
    "specialRequest",
    "special_request",
    "special_requests",
    "requests",
)

MODIFIER_CONTAINER_KEYS = (
    "modifiers",
    "modifier",
    "modifierItems",
    "modifier_items",
    "modifierList",
    "modifierGroups",
    "modifier_groups",
    "groupModifiers",
    "group_modifiers",
    "options",
    "selectedOptions",
    "selectedModifiers",
    "appliedModifiers",
    "selections",
    "choice",
    "choices",
    "choiceGroups",
    "customizations",
    "modifications",
    "modificationsList",
    "addOns",
    "add_ons",
    "extras",
    "toppings",
    "ingredients",
    "specialRequests",
    "special_requests",
    "children",
    "childItems",
    "components",
    "items",
    "entries",
    "nodes",
    "edges",
    "node",
)

MODIFIER_OPTION_ID_KEYS = (
    "identifier",
    "item.guid",
    "item.id",
    "optionGuid",
    "option_guid",
    "optionId",
    "option_id",
    "option.guid",
    "option.id",
    "modifierOptionGuid",
    "modifierOptionId",
    "modifierGuid",
    "modifier_guid",
    "modifierId",
    "modifier_id",
    "modifierCode",
    "modifier_code",
    "choiceGuid",
    "choice_guid",
    "choiceId",
    "choice_id",
    "itemGuid",
    "item_guid",
    "itemId",
    "item_id",
    "item.multiLocationId",
    "multiLocationId",
    "referenceId",
    "sku",
    "code",
)

MODIFIER_INSTANCE_ID_KEYS = ("guid", "id", "uuid")

MODIFIER_NAME_KEYS = (
    "displayName",
    "display_name",
    "name",
    "label",
    "title",
    "optionName",
    "option_name",
    "modifierName",
    "modifier_name",
    "option.name",
    "item.name",
)

MODIFIER_QUANTITY_KEYS = (
    "quantity",
    "qty",
    "count",
    "quantity.value",
    "count.value",
    "quantity.amount",
    "quantity.count",
)

MODIFIER_SELECTION_FLAG_KEYS = (
    "selected",
    "isSelected",
    "applied",
    "isApplied",
    "chosen",
    "isChosen",
)

MODIFIER_PRICE_KEYS = ("price", "unitPrice", "price.value", "price.amount")


# =============================================================================
# ORDER-LEVEL PATHS
# =============================================================================

ORDER_GUID_KEYS = (
    "guid",
    "orderGuid",
    "order_guid",
    "orderId",
    "order_id",
    "uuid",
    "id",
    "ticketGuid",
    "ticket_guid",
)

ORDER_DISPLAY_ID_KEYS = (
    "displayId",
    "display_id",
    "displayNumber",
    "display_number",
    "orderNumber",
    "order_number",
    "ticket",
    "number",
    "id",
    "reference",
    "name",
)

ORDER_DISPLAY_ID_NESTED_KEYS = (
    "order.displayId",
    "order.display_id",
    "summary.displayId",
    "summary.display_id",
    "details.displayId",
    "details.display_id",
    "ticket.displayId",
    "ticket.display_id",
    "checks[].displayNumber",
)

ORDER_STATUS_KEYS = (
    "status",
    "status.status",
    "orderStatus",
    "state",
    "stage",
    "approvalStatus",
    "approval_status",
    "fulfillment_status",
    "checks[].paymentStatus",
)

ORDER_TOTAL_KEYS = (
    "total",
    "totalPrice",
    "total_price",
    "totalAmount",
    "amount",
    "amount_total",
    "order_total",
    "totals.total",
)

ORDER_CHECK_TOTAL_KEYS = ("checks[].totalAmount", "checks[].total", "checks[].amount")

ORDER_CURRENCY_KEYS = ("currency", "currencyCode", "totals.currency", "checks[].currency")

ORDER_CUSTOMER_PATHS = (
    "customerName",
    "customer_name",
    "customer",
    "guest",
    "client",
    "user",
    "checks[].customer",
    "checks[].customerName",
)

ORDER_TAB_NAME_PATHS = (
    "table.name",
    "tabName",
    "tab_name",
    "tab.name",
    "data.tabName",
    "data.tab.name",
    "attributes.tabName",
    "order.tabName",
    "payload.tabName",
    "checks[].tabName",
    "checks[].tab_name",
    "checks[].table.name",
)

ORDER_STATUS_PREFIXES = (
    "",
    "order.",
    "data.",
    "attributes.",
    "payload.",
    "order.data.",
    "checks[].",
)

ORDER_FULFILLMENT_STATUS_KEYS = tuple(
    f"{prefix}{field}"
    for prefix in ORDER_STATUS_PREFIXES
    for field in STATUS_FIELDS + ("approvalStatus", "approval_status")
)

DINING_OPTION_IDENTIFIER_PATHS = (
    "diningOptionGuid",
    "dining_option_guid",
    "diningOptionId",
    "dining_option_id",
    "diningOption.guid",
    "diningOption.id",
    "diningOption.externalId",
    "dining_option.guid",
    "dining_option.id",
    "dining.optionGuid",
    "dining.optionId",
    "dining.guid",
    "dining.id",
    "serviceTypeGuid",
    "serviceTypeId",
    "serviceType.guid",
    "serviceType.id",
    "orderTypeGuid",
    "orderTypeId",
    "orderType.guid",
    "orderType.id",
    "fulfillmentTypeGuid",
    "fulfillmentTypeId",
    "fulfillmentType.guid",
    "fulfillmentType.id",
    "channelGuid",
    "channelId",
    "channel.guid",
    "channel.id",
    "serviceMode.guid",
    "serviceMode.id",
    "mode.guid",
    "mode.id",
    "checks[].diningOption.guid",
    "checks[].diningOption.id",
)

DINING_OPTION_LABEL_PATHS = (
    "diningOption.name",
    "diningOption.displayName",
    "diningOption.display_name",
    "diningOption.label",
    "diningOption.description",
    "diningOption.title",
    "diningOption.names.*",
    "dining.option",
    "dining.optionName",
    "dining.name",
    "dining.displayName",
    "dining.label",
    "serviceType.name",
    "serviceType.displayName",
    "serviceType.label",
    "service.type",
    "serviceMode",
    "service_mode",
    "serviceMode.name",
    "orderType.name",
    "orderType.displayName",
    "orderType.label",
    "order.type",
    "fulfillmentType.name",
    "fulfillmentType.displayName",
    "fulfillment.type",
    "channel.name",
    "channel.displayName",
    "mode.name",
    "mode.displayName",
    "context.serviceType",
    "context.orderType",
    "context.channel",
    "context.mode",
)

DINING_OPTION_FALLBACK_PATHS = (
    "diningOption",
    "dining_option",
    "dining",
    "serviceType",
    "service_type",
    "orderType",
    "order_type",
    "mode",
    "serviceMode",
    "service_mode",
    "channel",
    "fulfillmentType",
    "fulfillment_type",
    "context.dining",
    "context.serviceType",
    "context.orderType",
)


# =============================================================================
# TIMESTAMP DESCRIPTORS
# =============================================================================

CREATED_AT_BASE_FIELDS = (
    "createdAt",
    "created_at",
    "created",
    "createdDate",
    "created_date",
    "placedAt",
    "placed_at",
    "placed",
    "placedDate",
    "submittedAt",
    "submitted_at",
    "submitted",
    "submittedTime",
    "submitted_time",
    "submittedAtUtc",
    "submitted_at_utc",
    "orderTime",
    "order_time",
    "orderDate",
    "order_date",
    "orderDateTime",
    "order_datetime",
    "startTime",
    "start_time",
    "startedAt",
    "started_at",
    "openedAt",
    "opened_at",
    "openedDate",
    "opened_date",
    "openedTime",
    "opened_time",
    "fireAt",
    "fire_at",
    "fireTime",
    "fire_time",
    "firedAt",
    "fired_at",
    "sentAt",
    "sent_at",
    "time",
    "timestamp",
)

CREATED_AT_PRIMARY_PREFIXES = (
    "",
    "data.",
    "attributes.",
    "payload.",
    "order.",
    "order.data.",
    "order.attributes.",
    "details.",
    "summary.",
    "header.",
    "ticket.",
    "info.",
    "meta.",
    "metadata.",
    "context.",
    "timing.",
    "timestamps.",
)

CREATED_AT_CHECK_PREFIXES = (
    "checks[].",
    "checks[].data.",
    "checks[].attributes.",
    "checks[].order.",
    "checks[].summary.",
    "checks[].details.",
    "checks[].meta.",
    "checks[].timing.",
    "checks[].timestamps.",
)

STATUS_TIME_KEYS = (
    "CREATED",
    "CREATED_AT",
    "PLACED",
    "PLACED_AT",
    "SUBMITTED",
    "SUBMITTED_AT",
    "ACKNOWLEDGED",
    "ACKNOWLEDGED_AT",
    "RECEIVED",
    "RECEIVED_AT",
    "NEW",
    "OPEN",
    "SENT",
    "SENT_AT",
    "ORDER_STARTED",
    "ORDER_STARTED_AT",
)


def _build_timestamp_descriptors() -> tuple[tuple[str, int], ...]:
    descriptors: list[tuple[str, int]] = []
    seen: set[str] = set()

    def register(paths: Iterable[str], priority: int) -> None:
        for path in paths:
            if path not in seen:
                seen.add(path)
                descriptors.append((path, priority))

    def combine(prefixes: Iterable[str], fields: Iterable[str]) -> list[str]:
        return [f"{prefix}{field}" for prefix in prefixes for field in fields]

    register(combine(CREATED_AT_PRIMARY_PREFIXES, CREATED_AT_BASE_FIELDS), 0)
    register(combine(CREATED_AT_CHECK_PREFIXES, CREATED_AT_BASE_FIELDS), 1)
    register(combine(("statusTimes.", "status_times."), STATUS_TIME_KEYS), 2)
    register(combine(("checks[].statusTimes.", "checks[].status_times."), STATUS_TIME_KEYS), 3)
    register(("statusTimes.*", "status_times.*"), 4)
    register(
        combine(("events[].", "history[].", "activity[].", "updates[]."), CREATED_AT_BASE_FIELDS),
        4,
    )
    register(("checks[].statusTimes.*", "checks[].status_times.*"), 5)
    return tuple(descriptors)


TIMESTAMP_DESCRIPTORS = _build_timestamp_descriptors()
TIMESTAMP_RAW_PATHS = tuple(path for path, _ in TIMESTAMP_DESCRIPTORS)


@dataclass
class TimestampCandidate:
    moment: datetime
    raw: str
    priority: int


def collect_timestamp_candidates(order: Any) -> list[TimestampCandidate]:
    """
    Every parseable timestamp on the order, best first.

    Sorted by descriptor priority, then chronologically; duplicates of
    the same instant are kept once.
    """
    candidates: list[TimestampCandidate] = []
    seen: set[datetime] = set()

    for path, priority in TIMESTAMP_DESCRIPTORS:
        for value in extract_at_path(order, path):
            moment = parse_date_like(value)
            if moment is None or moment in seen:
                continue
            seen.add(moment)
            candidates.append(
                TimestampCandidate(
                    moment=moment,
                    raw=to_string_value(value) or moment.isoformat(),
                    priority=priority,
                )
            )

    candidates.sort(key=lambda candidate: (candidate.priority, candidate.moment))
    return candidates


# =============================================================================
# FULFILLMENT STATUS
# =============================================================================

def _keyword_pattern(*keywords: str) -> re.Pattern:
    fragments = [re.escape(keyword).replace(r"\ ", r"\s*") for keyword in keywords]
    return re.compile(r"\b(?:" + "|".join(fragments) + ")")


FULFILLMENT_PATTERNS: tuple[tuple[int, re.Pattern], ...] = (
    (0, _keyword_pattern(
        "cancel", "void", "reject", "declin", "fail", "refus", "denied",
        "problem", "issue", "error",
    )),
    (1, _keyword_pattern("late", "delay", "behind", "hold", "held", "stuck")),
    (2, re.compile(
        r"\b(?:pending|queued|waiting|awaiting|pause|new\b|not\s*started|unsent)"
    )),
    (3, _keyword_pattern(
        "prepar", "cook", "prep", "in progress", "inprogress", "inprocess",
        "making", "working", "process", "sent", "fired", "fire", "started",
    )),
    (4, _keyword_pattern(
        "ready", "pickup", "pick up", "bagged", "packed", "packag",
        "for delivery", "out for delivery",
    )),
    (5, _keyword_pattern(
        "complete", "fulfilled", "done", "served", "delivered", "closed",
        "finished", "picked", "collected",
    )),
)

_STATUS_COMPARISON = re.compile(r"[^a-z0-9]+")
_STATUS_SEPARATORS = re.compile(r"[\s_-]+")


def classify_fulfillment_status(value: Any) -> Optional[int]:
    """
    Rank a status string by urgency.

    0 cancellation/void, 1 delay/hold, 2 pending/new, 3 active/preparing,
    4 ready, 5 complete. None when the string matches no category.
    """
    text = to_string_value(value)
    if not text:
        return None
    comparison = _STATUS_COMPARISON.sub(" ", text.lower()).strip()
    if not comparison:
        return None
    for rank, pattern in FULFILLMENT_PATTERNS:
        if pattern.search(comparison):
            return rank
    return None


def format_fulfillment_status_label(value: Any) -> Optional[str]:
    text = to_string_value(value)
    if not text:
        return None
    label = _STATUS_SEPARATORS.sub(" ", text).strip()
    return label.upper() or None


CANONICAL_FULFILLMENT_STATUSES = {
    0: "CANCELLED",
    1: "HOLD",
    2: "NEW",
    3: "SENT",
    4: READY_STATUS,
    5: "COMPLETED",
}


def select_fulfillment_status(candidates: Iterable[str]) -> Optional[str]:
    """
    Pick the most urgent classified candidate (ties: earliest candidate)
    and report it as its canonical status.

    Falls back to the first non-empty candidate, upper-cased, when nothing
    classifies.
    """
    best: Optional[tuple[int, int]] = None
    fallback: Optional[str] = None

    for index, candidate in enumerate(candidates):
        if not isinstance(candidate, str) or not candidate.strip():
            continue
        if fallback is None:
            fallback = candidate
        rank = classify_fulfillment_status(candidate)
        if rank is None:
            continue
        if best is None or (rank, index) < best:
            best = (rank, index)

    if best is not None:
        return CANONICAL_FULFILLMENT_STATUSES[best[0]]
    if fallback is not None:
        return format_fulfillment_status_label(fallback)
    return None


_FILTER_PATTERNS = (
    (FulfillmentFilterEnum.NEW, re.compile(r"\bNEW\b")),
    (FulfillmentFilterEnum.HOLD, re.compile(r"\bHOLD\b")),
    (FulfillmentFilterEnum.SENT, re.compile(r"\bSENT\b")),
    (FulfillmentFilterEnum.READY, re.compile(r"\bREADY\b")),
)


def resolve_fulfillment_filter_key(order: NormalizedOrder) -> Optional[FulfillmentFilterEnum]:
    """Bucket an order into the new / hold / sent / ready filters."""
    for value in (order.fulfillment_status, order.status):
        if not isinstance(value, str) or not value.strip():
            continue
        candidate = value.strip().upper()
        for key, pattern in _FILTER_PATTERNS:
            if pattern.search(candidate):
                return key
    return None


# =============================================================================
# IDENTITY
# =============================================================================

def extract_order_guid(order: Any) -> Optional[str]:
    """
    The upstream GUID of an order record.

    An explicit ``guid`` string is trusted as-is; other id fields only
    count when they look like a GUID.
    """
    if not isinstance(order, dict):
        return None

    explicit = order.get("guid")
    if isinstance(explicit, str) and explicit.strip():
        return explicit.strip()

    for key in ORDER_GUID_KEYS:
        candidate = to_string_value(pick_value(order, (key,)))
        if candidate and is_likely_guid(candidate):
            return candidate.strip()
    return None


def is_voided_order(order: Any) -> bool:
    return isinstance(order, dict) and order.get("voided") is True


# =============================================================================
# MODIFIERS
# =============================================================================

@dataclass
class _ModifierCandidate:
    name: str
    quantity: float
    priority: int
    identifier: Optional[str] = None


def _scalar_values(source: dict, keys: Iterable[str]) -> list[str]:
    values: list[str] = []
    for key in keys:
        for value in extract_at_path(source, key):
            if isinstance(value, (dict, list, bool)):
                continue
            text = to_string_value(value)
            if text and text.strip() and text.strip() not in values:
                values.append(text.strip())
    return values


def _first_scalar_text(source: dict, keys: Iterable[str]) -> Optional[str]:
    values = _scalar_values(source, keys)
    return values[0] if values else None


def _menu_entry(identifiers: Iterable[str], tables: LookupTables) -> Optional[MenuLookupEntry]:
    for identifier in identifiers:
        entry = tables.menu_lookup.get(identifier)
        if entry is not None:
            return entry
    return None


def _selection_flag(candidate: dict) -> Optional[bool]:
    raw = pick_value(candidate, MODIFIER_SELECTION_FLAG_KEYS)
    if raw is None:
        return None
    if isinstance(raw, str):
        return raw.strip().lower() == "true"
    return bool(raw)


def _parse_modifier(
    candidate: dict,
    tables: LookupTables,
    forwarded: bool,
) -> Optional[_ModifierCandidate]:
    option_ids = _scalar_values(candidate, MODIFIER_OPTION_ID_KEYS)
    instance_ids = _scalar_values(candidate, MODIFIER_INSTANCE_ID_KEYS)

    metadata_id = next(
        (
            identifier
            for identifier in option_ids + instance_ids
            if identifier in tables.modifier_metadata_lookup
        ),
        None,
    )
    identifier = metadata_id or (option_ids[0] if option_ids else None)

    menu_entry = _menu_entry(
        ([identifier] if identifier else []) + option_ids + instance_ids, tables
    )

    name: Optional[str] = None
    priority = 4
    if menu_entry is not None and menu_entry.preferred_name:
        name, priority = menu_entry.preferred_name, 0
    if name is None:
        kitchen_name = _first_scalar_text(candidate, ("kitchenName", "kitchen_name"))
        if kitchen_name:
            name, priority = kitchen_name, 1
    if name is None:
        embedded = _first_scalar_text(candidate, MODIFIER_NAME_KEYS)
        if embedded:
            name, priority = embedded, 2
    if name is None and identifier:
        name, priority = identifier, 3
    if name is None:
        return None

    quantity_raw = to_number(pick_value(candidate, MODIFIER_QUANTITY_KEYS))
    selection_flag = _selection_flag(candidate)
    price = to_number(pick_value(candidate, MODIFIER_PRICE_KEYS))

    if selection_flag is False or (quantity_raw is not None and quantity_raw <= 0):
        return None

    has_explicit_detail = (
        selection_flag is True or quantity_raw is not None or price is not None
    )
    if forwarded and not has_explicit_detail:
        # grouping node, its children carry the actual modifiers
        return None

    return _ModifierCandidate(
        name=name.strip(),
        quantity=quantity_raw if quantity_raw is not None else 1,
        priority=priority,
        identifier=identifier,
    )


def normalize_item_modifiers(
    item: Any,
    lookups: Optional[LookupTables] = None,
) -> list[NormalizedModifier]:
    """
    Collect, de-duplicate and order the modifiers of one line item.

    Args:
        item: Raw line item record
        lookups: Tables used for names and menu ordering

    Returns:
        Modifiers sorted by menu group/option position
    """
    if not isinstance(item, dict):
        return []

    tables = lookups or EMPTY_LOOKUPS
    queue: deque = deque()
    for path in MODIFIER_COLLECTION_PATHS:
        queue.extend(extract_at_path(item, path))

    seen: set[int] = set()
    collected: list[_ModifierCandidate] = []

    while queue:
        candidate = queue.popleft()

        if isinstance(candidate, list):
            if id(candidate) in seen:
                continue
            seen.add(id(candidate))
            queue.extend(element for element in candidate if element is not None)
            continue

        if isinstance(candidate, str):
            text = candidate.strip()
            if text and not text.startswith(("{", "[")):
                collected.append(_ModifierCandidate(name=text, quantity=1, priority=2))
            continue

        if not isinstance(candidate, dict) or id(candidate) in seen:
            continue
        seen.add(id(candidate))

        forwarded = False
        for key in MODIFIER_CONTAINER_KEYS:
            value = candidate.get(key)
            if isinstance(value, (list, dict)) and value:
                forwarded = True
                queue.append(value)

        parsed = _parse_modifier(candidate, tables, forwarded)
        if parsed is not None:
            collected.append(parsed)

    aggregated: dict[str, dict[str, Any]] = {}
    for candidate in collected:
        key = candidate.identifier or normalize_lookup_key(candidate.name) or candidate.name.lower()
        quantity = candidate.quantity
        metadata = (
            tables.modifier_metadata_lookup.get(candidate.identifier)
            if candidate.identifier
            else None
        )

        existing = aggregated.get(key)
        if existing is None:
            aggregated[key] = {
                "id": candidate.identifier or key,
                "identifier": candidate.identifier,
                "name": candidate.name,
                "quantity": quantity,
                "priority": candidate.priority,
                "group_name": metadata.group_name if metadata else None,
                "group_id": (metadata.group_id or metadata.group_name) if metadata else None,
                "group_order": metadata.group_order if metadata else None,
                "option_order": metadata.option_order if metadata else None,
                "option_name": metadata.option_name if metadata else None,
            }
            continue

        existing["quantity"] += quantity
        if candidate.priority < existing["priority"]:
            existing["name"] = candidate.name
            existing["priority"] = candidate.priority

    modifiers = [
        NormalizedModifier(**{k: v for k, v in entry.items() if k != "priority"})
        for entry in aggregated.values()
    ]
    return sorted(
        modifiers,
        key=lambda modifier: menu_order_key(
            modifier.group_order,
            modifier.group_name,
            modifier.option_order,
            include_name=False,
        ),
    )


# =============================================================================
# ITEMS
# =============================================================================

def _has_item_hints(value: dict) -> bool:
    for key in ITEM_HINT_KEYS:
        candidate = pick_value(value, (key,))
        if candidate is None or isinstance(candidate, dict):
            continue
        if isinstance(candidate, list):
            if candidate:
                return True
            continue
        if isinstance(candidate, str):
            if candidate.strip():
                return True
            continue
        if isinstance(candidate, (int, float)):
            return True
    return False


def _collect_item_records(order: dict) -> list[dict]:
    records: list[dict] = []
    seen: set[int] = set()

    for path in ITEM_COLLECTION_PATHS:
        stack = list(reversed(extract_at_path(order, path)))
        while stack:
            value = stack.pop()
            if not isinstance(value, (list, dict)) or id(value) in seen:
                continue
            seen.add(id(value))
            if isinstance(value, list):
                stack.extend(reversed(value))
            elif _has_item_hints(value):
                records.append(value)
            else:
                stack.extend(reversed(list(value.values())))

    return records


def _build_item(record: dict, index: int, tables: LookupTables) -> NormalizedOrderItem:
    own_ids = _scalar_values(record, ITEM_OWN_ID_KEYS)
    reference_ids = _scalar_values(record, ITEM_REFERENCE_ID_KEYS)
    menu_entry = _menu_entry(reference_ids + own_ids, tables)

    name = menu_entry.preferred_name if menu_entry else None
    if not name:
        name = _first_scalar_text(record, ITEM_NAME_KEYS)
    if not name:
        name = f"Item {index + 1}"

    quantity = to_number(pick_value(record, ITEM_QUANTITY_KEYS))
    if quantity is None or quantity <= 0:
        quantity = 1

    identifiers = own_ids + reference_ids
    status_candidates = collect_string_values_at_paths(record, STATUS_FIELDS)

    return NormalizedOrderItem(
        id=identifiers[0] if identifiers else f"item-{index}",
        name=name,
        quantity=quantity,
        price=to_number(pick_value(record, ITEM_PRICE_KEYS)),
        currency=_first_scalar_text(record, ("currency", "currencyCode")),
        notes=_first_scalar_text(record, NOTES_KEYS),
        fulfillment_status=select_fulfillment_status(status_candidates),
        menu_order_index=menu_entry.menu_order_index if menu_entry else None,
        prep_stations=list(menu_entry.prep_stations) if menu_entry and menu_entry.prep_stations else None,
        modifiers=normalize_item_modifiers(record, tables),
    )


def normalize_order_items(
    order: Any,
    lookups: Optional[LookupTables] = None,
) -> list[NormalizedOrderItem]:
    """Extract line items, stable-sorted by menu position (unknown last)."""
    if not isinstance(order, dict):
        return []
    tables = lookups or EMPTY_LOOKUPS
    items = [
        _build_item(record, index, tables)
        for index, record in enumerate(_collect_item_records(order))
    ]
    return sorted(
        items,
        key=lambda item: (
            item.menu_order_index is None,
            item.menu_order_index if item.menu_order_index is not None else 0,
        ),
    )


# =============================================================================
# ORDER FIELDS
# =============================================================================

def resolve_order_dining_option(
    order: Any,
    dining_option_lookup: Optional[dict[str, str]] = None,
) -> Optional[str]:
    """Identifier hits, then label hits, then the first plain candidate."""
    if not isinstance(order, dict):
        return None

    lookup = dining_option_lookup or {}
    for paths in (DINING_OPTION_IDENTIFIER_PATHS, DINING_OPTION_LABEL_PATHS):
        for candidate in collect_string_values_at_paths(order, paths):
            key = normalize_lookup_key(candidate)
            if key and key in lookup:
                return lookup[key]

    fallback = collect_string_values_at_paths(order, DINING_OPTION_FALLBACK_PATHS)
    return fallback[0] if fallback else None


def _customer_name_from(value: Any) -> Optional[str]:
    if isinstance(value, str):
        return value.strip() or None
    if not isinstance(value, dict):
        return None

    first = to_string_value(value.get("firstName") or value.get("first_name"))
    last = to_string_value(value.get("lastName") or value.get("last_name"))
    full = " ".join(part.strip() for part in (first, last) if part and part.strip())
    if full:
        return full
    for key in ("name", "displayName", "display_name", "fullName", "phone", "email"):
        candidate = value.get(key)
        if isinstance(candidate, str) and candidate.strip():
            return candidate.strip()
    return None


def _resolve_customer_name(order: dict) -> Optional[str]:
    for path in ORDER_CUSTOMER_PATHS:
        for value in extract_at_path(order, path):
            name = _customer_name_from(value)
            if name:
                return name
    return None


def _resolve_total(order: dict) -> Optional[float]:
    total = to_number(pick_value(order, ORDER_TOTAL_KEYS))
    if total is not None:
        return total

    check_totals = [
        number
        for path in ORDER_CHECK_TOTAL_KEYS
        for number in (to_number(value) for value in extract_at_path(order, path))
        if number is not None
    ]
    if not check_totals:
        return None
    return round(sum(check_totals), 2)


def _order_status_candidates(order: dict, items: list[dict]) -> list[str]:
    candidates = collect_string_values_at_paths(order, ORDER_FULFILLMENT_STATUS_KEYS)
    for record in items:
        candidates.extend(collect_string_values_at_paths(record, STATUS_FIELDS))
        for modifier in ensure_list(record.get("modifiers")):
            if isinstance(modifier, dict):
                candidates.extend(collect_string_values_at_paths(modifier, STATUS_FIELDS[:2]))
    return candidates


def normalize_order(
    order: Any,
    index: int,
    lookups: Optional[LookupTables] = None,
    used_ids: Optional[set[str]] = None,
) -> Optional[NormalizedOrder]:
    """
    Normalize a single raw record.

    Returns:
        NormalizedOrder, or None for degenerate records (not a mapping,
        or an empty one)
    """
    if not isinstance(order, dict) or not order:
        return None

    tables = lookups or EMPTY_LOOKUPS
    used = used_ids if used_ids is not None else set()

    guid = extract_order_guid(order)
    display_ids = collect_string_values_at_paths(order, ORDER_DISPLAY_ID_KEYS) or (
        collect_string_values_at_paths(order, ORDER_DISPLAY_ID_NESTED_KEYS)
    )
    display_id = display_ids[0] if display_ids else None

    order_id = guid
    if order_id is None or order_id in used:
        order_id = display_id if display_id and display_id not in used else f"order-{index}"
    suffix = 1
    base_id = order_id
    while order_id in used:
        suffix += 1
        order_id = f"{base_id}-{suffix}"
    used.add(order_id)

    timestamps = collect_timestamp_candidates(order)
    created_at = timestamps[0].moment if timestamps else None
    if timestamps:
        created_at_raw = timestamps[0].raw
    else:
        raw_candidates = collect_string_values_at_paths(order, TIMESTAMP_RAW_PATHS)
        created_at_raw = raw_candidates[0] if raw_candidates else None

    status_values = collect_string_values_at_paths(order, ORDER_STATUS_KEYS)
    customer_name = _resolve_customer_name(order)
    raw_tab_name = select_preferred_string_candidate(
        collect_string_values_at_paths(order, ORDER_TAB_NAME_PATHS)
    )

    item_records = _collect_item_records(order)
    items = normalize_order_items(order, tables)
    prep_stations: list[str] = []
    for item in items:
        for station in item.prep_stations or []:
            if station not in prep_stations:
                prep_stations.append(station)

    return NormalizedOrder(
        id=order_id,
        display_id=display_id,
        guid=guid,
        status=status_values[0] if status_values else None,
        created_at=created_at,
        created_at_raw=created_at_raw,
        total=_resolve_total(order),
        currency=_first_scalar_text(order, ORDER_CURRENCY_KEYS),
        customer_name=customer_name or raw_tab_name,
        tab_name=raw_tab_name or customer_name,
        dining_option=resolve_order_dining_option(order, tables.dining_option_lookup),
        fulfillment_status=select_fulfillment_status(
            _order_status_candidates(order, item_records)
        ),
        notes=_first_scalar_text(order, NOTES_KEYS),
        items=items,
        prep_station_guids=prep_stations or None,
    )


def order_sort_key(order: NormalizedOrder, position: int) -> tuple:
    """created_at ascending, unresolved last, ties by position."""
    if order.created_at is None:
        return (1, 0.0, position)
    return (0, order.created_at.timestamp(), position)


def normalize_orders(
    raw_orders: Any,
    lookups: Optional[LookupTables] = None,
) -> list[NormalizedOrder]:
    """
    Normalize a batch of raw order records.

    Degenerate records, and records whose normalization fails, are
    dropped and logged; one bad record never fails the batch.

    Args:
        raw_orders: List of raw records (a single record is accepted too)
        lookups: Current lookup tables

    Returns:
        Normalized orders sorted by created_at (unresolved last)
    """
    used_ids: set[str] = set()
    normalized: list[tuple[int, NormalizedOrder]] = []

    for index, raw in enumerate(ensure_list(raw_orders)):
        try:
            order = normalize_order(raw, index, lookups, used_ids)
        except (TypeError, ValueError, RecursionError) as e:
            logger.warning(f"Dropping order record #{index}: normalization failed ({e})")
            continue
        if order is None:
            logger.debug(f"Dropping degenerate order record #{index}")
            continue
        normalized.append((index, order))

    normalized.sort(key=lambda pair: order_sort_key(pair[1], pair[0]))
    return [order for _, order in normalized]


# =============================================================================
# PAYLOAD EXTRACTION
# =============================================================================

ORDER_PRIMARY_HINT_KEYS = (
    "displayId",
    "display_id",
    "displayNumber",
    "display_number",
    "orderNumber",
    "order_number",
    "ticket",
    "number",
    "id",
    "reference",
    "name",
    "orderId",
    "order_id",
    "guid",
    "uuid",
)

ORDER_SECONDARY_HINT_KEYS = (
    "status",
    "orderStatus",
    "approvalStatus",
    "state",
    "stage",
    "fulfillment_status",
    "fulfillmentStatus",
    "createdAt",
    "created_at",
    "createdDate",
    "openedDate",
    "placedAt",
    "timestamp",
    "total",
    "totalPrice",
    "amount",
    "currency",
    "customer",
    "customerName",
    "diningOption",
    "serviceType",
    "orderType",
    "checks",
    "voided",
    "notes",
)

ORDER_ENVELOPE_KEYS = (
    "orders",
    "data.orders",
    "result.orders",
    "payload.orders",
    "body.orders",
    "order",
    "data",
)


def looks_like_order_record(value: Any) -> bool:
    if not isinstance(value, dict):
        return False

    for path in ITEM_COLLECTION_PATHS:
        for candidate in extract_at_path(value, path):
            if isinstance(candidate, dict) or (isinstance(candidate, list) and candidate):
                return True

    if not any(key in value for key in ORDER_PRIMARY_HINT_KEYS):
        return False
    return any(key in value for key in ORDER_SECONDARY_HINT_KEYS)


def _collect_orders_from(candidate: Any) -> list[dict]:
    queue: deque = deque(ensure_list(candidate))
    orders: list[dict] = []
    seen: set[int] = set()

    while queue:
        value = queue.popleft()
        if isinstance(value, list):
            if id(value) not in seen:
                seen.add(id(value))
                queue.extend(value)
            continue
        if not isinstance(value, dict) or id(value) in seen:
            continue
        seen.add(id(value))

        if looks_like_order_record(value):
            orders.append(value)
            continue
        queue.extend(nested for nested in value.values() if isinstance(nested, (dict, list)))

    return orders


def extract_orders_from_payload(payload: Any) -> list[dict]:
    """
    Find order records in an arbitrary response envelope.

    Known envelope keys are tried first; otherwise the whole payload is
    searched for order-shaped records.
    """
    if payload is None:
        return []
    if isinstance(payload, list):
        return _collect_orders_from(payload)

    for key in ORDER_ENVELOPE_KEYS:
        orders = _collect_orders_from(pick_value(payload, (key,)))
        if orders:
            return orders

    return _collect_orders_from(payload)
