"""
Lookup Tables

Builds the auxiliary tables the normalization pipeline resolves names and
ordering against:
    - menu lookup: identifier -> kitchen / POS / display names, menu
      position and prep stations
    - modifier metadata: option identifier -> group and option ordering
    - dining options: normalized key -> display label

Tables are immutable snapshots. LookupRegistry swaps in a freshly built
LookupTables (with version + 1) whenever the menu or config payload
signature changes, and never touches tables already handed out.

Author: Khalil Bannouri
Version: 1.0.0
"""

import hashlib
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from ordersync.domain.canonical import (
    collect_string_values_at_paths,
    ensure_list,
    extract_at_path,
    normalize_lookup_key,
    pick_value,
    stable_stringify,
    to_string_value,
)

logger = logging.getLogger(__name__)


MENU_ITEM_ID_KEYS = (
    "guid",
    "id",
    "multiLocationId",
    "referenceId",
    "externalId",
    "sku",
    "code",
    "itemGuid",
    "item_guid",
    "itemId",
    "item_id",
    "menuItemGuid",
    "menu_item_guid",
    "menuItemId",
    "menu_item_id",
    "modifierGuid",
    "modifier_guid",
    "modifierId",
    "modifier_id",
)

MENU_KITCHEN_NAME_KEYS = ("kitchenName", "kitchen_name")
MENU_POS_NAME_KEYS = ("posName", "pos_name", "posDisplayName", "pos_display_name")
MENU_DISPLAY_NAME_KEYS = ("displayName", "display_name", "label", "title")
MENU_FALLBACK_NAME_KEYS = ("name", "description")
MENU_ITEM_COLLECTION_KEYS = ("menuItems", "menu_items")

GROUP_REFERENCE_KEYS = ("modifierGroupReferences", "modifier_group_references")
OPTION_REFERENCE_KEYS = ("modifierOptionReferences", "modifier_option_references")
EMBEDDED_GROUP_KEYS = ("modifierGroups", "modifier_groups")
EMBEDDED_OPTION_KEYS = ("modifierOptions", "modifier_options", "options", "modifiers")
OPTION_ID_KEYS = ("guid", "id", "multiLocationId", "referenceId", "externalId")

DINING_OPTION_COLLECTION_PATHS = (
    "data.diningOptions",
    "data.dining_options",
    "diningOptions",
    "dining_options",
)

DINING_OPTION_IDENTIFIER_PATHS = (
    "guid",
    "id",
    "uuid",
    "externalId",
    "external_id",
    "value",
    "code",
    "optionGuid",
    "optionId",
    "option.guid",
    "option.id",
    "diningOptionGuid",
    "diningOptionId",
    "dining_option_guid",
    "dining_option_id",
    "diningOption.guid",
    "diningOption.id",
    "serviceTypeGuid",
    "serviceTypeId",
    "orderTypeGuid",
    "orderTypeId",
    "fulfillmentTypeGuid",
    "fulfillmentTypeId",
    "channelGuid",
    "channelId",
    "modeGuid",
    "modeId",
)

DINING_OPTION_LABEL_PATHS = (
    "name",
    "displayName",
    "display_name",
    "label",
    "title",
    "description",
    "posName",
    "pos_name",
    "webDisplayName",
    "shortName",
    "short_name",
    "defaultName",
    "externalName",
    "diningOptionName",
    "dining_option_name",
    "serviceTypeName",
    "orderTypeName",
    "names.*",
    "displayNames.*",
    "labels.*",
)


# =============================================================================
# TABLE ENTRIES
# =============================================================================

@dataclass
class MenuLookupEntry:
    """
    Names and placement of one menu node.

    Attributes:
        kitchen_name: Name printed on kitchen tickets
        pos_name: Name shown on the POS
        display_name: Guest-facing name
        fallback_name: Plain ``name`` / ``description``
        menu_order_index: Position among menu items in menu traversal order
        prep_stations: Prep station GUIDs the item is routed to
    """
    kitchen_name: Optional[str] = None
    pos_name: Optional[str] = None
    display_name: Optional[str] = None
    fallback_name: Optional[str] = None
    menu_order_index: Optional[int] = None
    prep_stations: Optional[list[str]] = None

    @property
    def preferred_name(self) -> Optional[str]:
        """Kitchen name first, then display, POS and fallback names."""
        return self.kitchen_name or self.display_name or self.pos_name or self.fallback_name

    def merged_with(self, other: "MenuLookupEntry") -> "MenuLookupEntry":
        """Fill the fields this entry is missing from ``other``."""
        return MenuLookupEntry(
            kitchen_name=self.kitchen_name or other.kitchen_name,
            pos_name=self.pos_name or other.pos_name,
            display_name=self.display_name or other.display_name,
            fallback_name=self.fallback_name or other.fallback_name,
            menu_order_index=(
                self.menu_order_index
                if self.menu_order_index is not None
                else other.menu_order_index
            ),
            prep_stations=self.prep_stations or other.prep_stations,
        )


@dataclass(frozen=True)
class ModifierMetadata:
    """Where a modifier option sits in the menu's group/option structure."""
    group_name: Optional[str] = None
    group_id: Optional[str] = None
    group_order: Optional[int] = None
    option_order: Optional[int] = None
    option_name: Optional[str] = None

    @property
    def rank(self) -> tuple[float, float]:
        return (
            self.group_order if self.group_order is not None else float("inf"),
            self.option_order if self.option_order is not None else float("inf"),
        )


@dataclass(frozen=True)
class LookupTables:
    """
    Immutable snapshot of every lookup the normalizer consults.

    ``version`` increments once per update in which the menu or config
    signature changed; cache entries remember the version they were
    normalized against.
    """
    menu_lookup: dict[str, MenuLookupEntry] = field(default_factory=dict)
    modifier_metadata_lookup: dict[str, ModifierMetadata] = field(default_factory=dict)
    dining_option_lookup: dict[str, str] = field(default_factory=dict)
    version: int = 0
    menu_signature: Optional[str] = None
    config_signature: Optional[str] = None


# =============================================================================
# TREE WALKING
# =============================================================================

def _walk_dicts(root: Any, visitor: Callable[[dict, Optional[str]], None]) -> None:
    """Visit every dict in ``root`` once, passing the key it was found under."""
    seen: set[int] = set()
    stack: list[tuple[Any, Optional[str]]] = [(root, None)]

    while stack:
        node, parent_key = stack.pop()
        if isinstance(node, (list, dict)):
            if id(node) in seen:
                continue
            seen.add(id(node))

        if isinstance(node, list):
            for element in reversed(node):
                stack.append((element, parent_key))
        elif isinstance(node, dict):
            visitor(node, parent_key)
            for key, value in reversed(list(node.items())):
                if isinstance(value, (list, dict)):
                    stack.append((value, key))


def _scalar_identifiers(node: dict, keys: tuple[str, ...]) -> list[str]:
    identifiers: list[str] = []
    for key in keys:
        value = node.get(key)
        if value is None or isinstance(value, (dict, list, bool)):
            continue
        text = to_string_value(value)
        if text and text.strip() and text.strip() not in identifiers:
            identifiers.append(text.strip())
    return identifiers


def _first_text(node: dict, keys: tuple[str, ...]) -> Optional[str]:
    value = pick_value(node, keys)
    if value is None or isinstance(value, (dict, list)):
        return None
    text = to_string_value(value)
    return text.strip() if text and text.strip() else None


def _prep_stations(node: dict) -> Optional[list[str]]:
    stations: list[str] = []
    for station in ensure_list(node.get("prepStations") or node.get("prep_stations")):
        if isinstance(station, dict):
            station = station.get("guid") or station.get("id")
        text = to_string_value(station)
        if text and text.strip() and text.strip() not in stations:
            stations.append(text.strip())
    return stations or None


# =============================================================================
# MENU LOOKUP
# =============================================================================

def build_menu_lookup(menu_payload: Any) -> dict[str, MenuLookupEntry]:
    """
    Index every named menu node by every identifier it carries.

    Nodes found inside a ``menuItems`` collection receive a
    ``menu_order_index`` in traversal order. When several nodes share an
    identifier the first registration wins per field.

    Args:
        menu_payload: Raw menu document (any shape)

    Returns:
        dict mapping identifier -> MenuLookupEntry
    """
    lookup: dict[str, MenuLookupEntry] = {}
    menu_item_counter = 0

    def visit(node: dict, parent_key: Optional[str]) -> None:
        nonlocal menu_item_counter

        menu_order_index = None
        if parent_key in MENU_ITEM_COLLECTION_KEYS:
            menu_order_index = menu_item_counter
            menu_item_counter += 1

        identifiers = _scalar_identifiers(node, MENU_ITEM_ID_KEYS)
        if not identifiers:
            return

        kitchen_name = _first_text(node, MENU_KITCHEN_NAME_KEYS)
        pos_name = _first_text(node, MENU_POS_NAME_KEYS)
        display_name = _first_text(node, MENU_DISPLAY_NAME_KEYS)
        fallback_name = _first_text(node, MENU_FALLBACK_NAME_KEYS)
        display_name = display_name or fallback_name
        fallback_name = fallback_name or display_name or pos_name or kitchen_name

        if not (kitchen_name or pos_name or display_name or fallback_name):
            return

        entry = MenuLookupEntry(
            kitchen_name=kitchen_name,
            pos_name=pos_name,
            display_name=display_name,
            fallback_name=fallback_name,
            menu_order_index=menu_order_index,
            prep_stations=_prep_stations(node),
        )

        for identifier in identifiers:
            existing = lookup.get(identifier)
            lookup[identifier] = existing.merged_with(entry) if existing else entry

    _walk_dicts(menu_payload, visit)
    return lookup


# =============================================================================
# MODIFIER METADATA
# =============================================================================

def _collect_reference_tables(menu_payload: Any) -> tuple[dict[str, dict], dict[str, dict]]:
    groups: dict[str, dict] = {}
    options: dict[str, dict] = {}

    def register(table: dict[str, dict], container: Any) -> None:
        if isinstance(container, dict):
            entries = list(container.items())
        elif isinstance(container, list):
            entries = [(None, value) for value in container]
        else:
            return
        for key, value in entries:
            if not isinstance(value, dict):
                continue
            for reference in (key, value.get("referenceId")):
                text = to_string_value(reference) if reference is not None else None
                if text and text not in table:
                    table[text] = value

    def visit(node: dict, parent_key: Optional[str]) -> None:
        for key in GROUP_REFERENCE_KEYS:
            register(groups, node.get(key))
        for key in OPTION_REFERENCE_KEYS:
            register(options, node.get(key))

    _walk_dicts(menu_payload, visit)
    return groups, options


def _resolve_reference(reference: Any, table: dict[str, dict]) -> Optional[dict]:
    if isinstance(reference, dict):
        # bare {"referenceId": n} pointers resolve through the table
        referenced = to_string_value(reference.get("referenceId"))
        if referenced in table and not _first_text(reference, ("name", "displayName")):
            return table[referenced]
        return reference
    text = to_string_value(reference)
    if text is None:
        return None
    return table.get(text)


def build_modifier_metadata_lookup(menu_payload: Any) -> dict[str, ModifierMetadata]:
    """
    Map modifier option identifiers to their group and option positions.

    Positions come from each menu item's own group list and each group's
    option list, resolved through the menu's reference tables (or from
    embedded ``modifierGroups``). When an option appears under several
    groups the lowest (group_order, option_order) wins.
    """
    groups_table, options_table = _collect_reference_tables(menu_payload)
    lookup: dict[str, ModifierMetadata] = {}

    def register(keys: list[str], metadata: ModifierMetadata) -> None:
        for key in keys:
            existing = lookup.get(key)
            if existing is None or metadata.rank < existing.rank:
                lookup[key] = metadata

    def register_group(group: dict, group_order: int, option_refs: list[Any]) -> None:
        group_name = _first_text(group, ("name", "displayName", "kitchenName", "posName"))
        group_id = _first_text(group, ("guid", "id")) or _first_text(group, ("referenceId",))
        for option_order, option_ref in enumerate(option_refs):
            option = _resolve_reference(option_ref, options_table)
            if option is None:
                continue
            keys = _scalar_identifiers(option, OPTION_ID_KEYS)
            if not isinstance(option_ref, (dict, list)):
                text = to_string_value(option_ref)
                if text and text not in keys:
                    keys.append(text)
            if not keys:
                continue
            register(
                keys,
                ModifierMetadata(
                    group_name=group_name,
                    group_id=group_id or group_name,
                    group_order=group_order,
                    option_order=option_order,
                    option_name=_first_text(
                        option, ("name", "displayName", "kitchenName", "posName")
                    ),
                ),
            )

    def visit(node: dict, parent_key: Optional[str]) -> None:
        for key in GROUP_REFERENCE_KEYS:
            references = node.get(key)
            if not isinstance(references, list):
                continue
            for group_order, reference in enumerate(references):
                group = _resolve_reference(reference, groups_table)
                if group is None:
                    continue
                option_refs: list[Any] = []
                for option_key in OPTION_REFERENCE_KEYS:
                    option_refs.extend(ensure_list(group.get(option_key)))
                register_group(group, group_order, option_refs)

        for key in EMBEDDED_GROUP_KEYS:
            embedded = node.get(key)
            if not isinstance(embedded, list):
                continue
            for group_order, group in enumerate(embedded):
                if not isinstance(group, dict):
                    continue
                for option_key in EMBEDDED_OPTION_KEYS:
                    options = group.get(option_key)
                    if isinstance(options, list):
                        register_group(group, group_order, options)
                        break

    _walk_dicts(menu_payload, visit)
    return lookup


# =============================================================================
# DINING OPTIONS
# =============================================================================

def build_dining_option_lookup(config_payload: Any) -> dict[str, str]:
    """
    Map every identifier and label variant of each dining option to one
    display label, keyed by ``normalize_lookup_key``.

    Example:
        >>> lookup = build_dining_option_lookup(
        ...     {"diningOptions": [{"guid": "dine-in-guid", "name": "Dine In"}]}
        ... )
        >>> lookup["dine in guid"]
        'Dine In'
    """
    lookup: dict[str, str] = {}
    if config_payload is None:
        return lookup

    def add_mapping(key_value: str, display: Optional[str]) -> None:
        key = normalize_lookup_key(key_value)
        if not key or not display:
            return
        lookup.setdefault(key, display)

    def process_entry(entry: Any) -> None:
        if entry is None:
            return
        if isinstance(entry, list):
            for element in entry:
                process_entry(element)
            return
        if not isinstance(entry, dict):
            text = to_string_value(entry)
            if text and text.strip():
                add_mapping(text, text.strip())
            return

        identifiers = collect_string_values_at_paths(entry, DINING_OPTION_IDENTIFIER_PATHS)
        labels = collect_string_values_at_paths(entry, DINING_OPTION_LABEL_PATHS)
        primary_label = labels[0] if labels else (identifiers[0] if identifiers else None)

        for label in labels:
            add_mapping(label, primary_label)
        for identifier in identifiers:
            add_mapping(identifier, primary_label)

    collections: list[Any] = []
    for path in DINING_OPTION_COLLECTION_PATHS:
        collections.extend(extract_at_path(config_payload, path))

    if not collections:
        process_entry(config_payload)
    for collection in collections:
        if isinstance(collection, dict) and not _looks_like_dining_option(collection):
            process_entry(list(collection.values()))
        else:
            process_entry(collection)

    return lookup


def _looks_like_dining_option(value: dict) -> bool:
    return any(key in value for key in ("guid", "id", "name", "displayName", "externalId"))


# =============================================================================
# TABLE ASSEMBLY
# =============================================================================

def compute_signature(payload: Any) -> Optional[str]:
    """Content hash of a payload; None means "no payload"."""
    if payload is None:
        return None
    return hashlib.sha256(stable_stringify(payload).encode("utf-8")).hexdigest()


def build_lookup_tables(
    menu_payload: Any,
    config_payload: Any,
    version: int = 0,
) -> LookupTables:
    """Build a complete LookupTables snapshot from raw payloads."""
    return LookupTables(
        menu_lookup=build_menu_lookup(menu_payload),
        modifier_metadata_lookup=build_modifier_metadata_lookup(menu_payload),
        dining_option_lookup=build_dining_option_lookup(config_payload),
        version=version,
        menu_signature=compute_signature(menu_payload),
        config_signature=compute_signature(config_payload),
    )


class LookupRegistry:
    """
    Owns the current LookupTables and replaces them when payloads change.

    Example:
        >>> registry = LookupRegistry()
        >>> registry.update(menu_payload=menu, config_payload=config)
        True
        >>> registry.update(menu_payload=menu, config_payload=config)
        False
    """

    def __init__(self, tables: Optional[LookupTables] = None):
        self._tables = tables or LookupTables()

    @property
    def tables(self) -> LookupTables:
        return self._tables

    @property
    def version(self) -> int:
        return self._tables.version

    def update(
        self,
        menu_payload: Any = None,
        config_payload: Any = None,
    ) -> bool:
        """
        Rebuild the tables if either payload's signature changed.

        A None payload means "unavailable this cycle" and keeps the
        current half of the tables.

        Returns:
            bool: True when a new version was published
        """
        current = self._tables
        menu_signature = (
            compute_signature(menu_payload)
            if menu_payload is not None
            else current.menu_signature
        )
        config_signature = (
            compute_signature(config_payload)
            if config_payload is not None
            else current.config_signature
        )

        menu_changed = menu_signature != current.menu_signature
        config_changed = config_signature != current.config_signature
        if not (menu_changed or config_changed):
            return False

        self._tables = LookupTables(
            menu_lookup=(
                build_menu_lookup(menu_payload) if menu_changed else current.menu_lookup
            ),
            modifier_metadata_lookup=(
                build_modifier_metadata_lookup(menu_payload)
                if menu_changed
                else current.modifier_metadata_lookup
            ),
            dining_option_lookup=(
                build_dining_option_lookup(config_payload)
                if config_changed
                else current.dining_option_lookup
            ),
            version=current.version + 1,
            menu_signature=menu_signature,
            config_signature=config_signature,
        )

        logger.info(
            f"Lookup tables rebuilt (version={self._tables.version}, "
            f"menu_changed={menu_changed}, config_changed={config_changed}, "
            f"menu_entries={len(self._tables.menu_lookup)}, "
            f"dining_options={len(self._tables.dining_option_lookup)})"
        )
        return True
