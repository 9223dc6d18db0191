"""
Canonicalization Utilities

Tolerant extraction and coercion helpers shared by the normalization
pipeline and the lookup builders. Upstream payloads are untrusted JSON
trees, so nothing here raises on odd input: a helper that cannot make
sense of a value returns None (or an empty list) instead.

Key paths:
    Dotted paths address values inside nested dicts. A segment ending in
    "[]" fans out over the elements of a list, and a bare "*" segment fans
    out over list elements or dict values. A named segment applied to a
    list maps over its dict elements.

        extract_at_path(order, "checks[].selections[].displayName")
        extract_at_path(order, "statusTimes.*")

Author: Khalil Bannouri
Version: 1.0.0
"""

import json
import math
import re
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Iterable, Optional


WILDCARD = "*"

_NON_ALNUM = re.compile(r"[^a-z0-9]+")
_NUMBER_CHARS = re.compile(r"[^0-9.\-]")
_NUMERIC_STRING = re.compile(r"^-?\d+(\.\d+)?$")
_COMPACT_OFFSET = re.compile(r"([+-]\d{2})(\d{2})$")
_HEX_GUID = re.compile(r"^[0-9a-f-]+$")
_HEX_LETTER = re.compile(r"[a-f]")

EPOCH_MILLIS_THRESHOLD = 1_000_000_000_000
EPOCH_SECONDS_THRESHOLD = 1_000_000_000
NUMERIC_DATE_STRING_THRESHOLD = 1_000_000

LABEL_KEYS = ("name", "displayName", "display_name", "label", "title", "value")


# =============================================================================
# KEY PATHS
# =============================================================================

def split_key_path(path: str) -> list[str]:
    """Split a dotted key path into segments, expanding ``name[]``."""
    segments: list[str] = []
    for part in path.split("."):
        if not part:
            continue
        if part.endswith("[]"):
            name = part[:-2]
            if name:
                segments.append(name)
            segments.append(WILDCARD)
        else:
            segments.append(part)
    return segments


def extract_at_path(source: Any, path: str) -> list[Any]:
    """
    Collect every non-None value addressed by ``path`` inside ``source``.

    Args:
        source: Any JSON-like tree
        path: Dotted key path (see module docstring)

    Returns:
        Values in traversal order (empty when nothing matches)
    """
    current = [source] if source is not None else []

    for segment in split_key_path(path):
        found: list[Any] = []
        for value in current:
            if segment == WILDCARD:
                if isinstance(value, list):
                    found.extend(v for v in value if v is not None)
                elif isinstance(value, dict):
                    found.extend(v for v in value.values() if v is not None)
            elif isinstance(value, list):
                for element in value:
                    if isinstance(element, dict) and element.get(segment) is not None:
                        found.append(element[segment])
            elif isinstance(value, dict):
                child = value.get(segment)
                if child is not None:
                    found.append(child)
        current = found
        if not current:
            break

    return current


def is_blank(value: Any) -> bool:
    """None or a whitespace-only string."""
    if value is None:
        return True
    return isinstance(value, str) and not value.strip()


def pick_value(source: Any, keys: Iterable[str]) -> Any:
    """Return the first non-blank value found among ``keys``, in order."""
    for key in keys:
        for value in extract_at_path(source, key):
            if not is_blank(value):
                return value
    return None


def ensure_list(value: Any) -> list[Any]:
    if value is None:
        return []
    if isinstance(value, list):
        return value
    return [value]


# =============================================================================
# COERCION
# =============================================================================

def to_number(value: Any) -> Optional[float]:
    """
    Coerce a loosely typed value to a finite float.

    Strings are stripped of anything but digits, '.' and '-', so "$12.50"
    and "1,299" both parse. Booleans are not numbers.
    """
    if value is None or isinstance(value, bool):
        return None

    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str):
        cleaned = _NUMBER_CHARS.sub("", value)
        if not cleaned:
            return None
        try:
            number = float(cleaned)
        except ValueError:
            return None
    else:
        return None

    return number if math.isfinite(number) else None


def to_string_value(value: Any) -> Optional[str]:
    """Render a scalar as text; containers become compact JSON."""
    if value is None:
        return None
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        if not math.isfinite(value):
            return None
        return str(int(value)) if value.is_integer() else str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, (dict, list)):
        try:
            return json.dumps(value, separators=(",", ":"), default=str)
        except (TypeError, ValueError):
            # circular reference
            return None
    return str(value)


def _from_epoch(number: float) -> Optional[datetime]:
    try:
        if number > EPOCH_MILLIS_THRESHOLD:
            return datetime.fromtimestamp(number / 1000, tz=timezone.utc)
        if number > EPOCH_SECONDS_THRESHOLD:
            return datetime.fromtimestamp(number, tz=timezone.utc)
    except (OverflowError, OSError, ValueError):
        return None
    return None


def _as_utc(moment: datetime) -> datetime:
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc)


def parse_date_like(value: Any) -> Optional[datetime]:
    """
    Parse a timestamp in any of the shapes upstream systems emit.

    Accepts datetimes, epoch milliseconds (> 1e12), epoch seconds (> 1e9),
    numeric strings of either, ISO-8601 (with "Z" or "+HHMM" offsets) and
    RFC 2822 dates. Naive values are read as UTC.

    Returns:
        Timezone-aware UTC datetime, or None when unparseable
    """
    if value is None or isinstance(value, bool):
        return None

    if isinstance(value, datetime):
        return _as_utc(value)

    if isinstance(value, (int, float)):
        if not math.isfinite(value):
            return None
        return _from_epoch(float(value))

    if not isinstance(value, str):
        return None

    text = value.strip()
    if not text:
        return None

    if _NUMERIC_STRING.match(text):
        number = float(text)
        if number > NUMERIC_DATE_STRING_THRESHOLD:
            return _from_epoch(number)
        return None

    iso = text
    if iso.endswith(("Z", "z")):
        iso = iso[:-1] + "+00:00"
    iso = _COMPACT_OFFSET.sub(r"\1:\2", iso)
    try:
        return _as_utc(datetime.fromisoformat(iso))
    except ValueError:
        pass

    try:
        return _as_utc(parsedate_to_datetime(text))
    except (TypeError, ValueError, IndexError):
        return None


def to_epoch_ms(moment: Optional[datetime]) -> Optional[int]:
    if moment is None:
        return None
    return int(moment.timestamp() * 1000)


# =============================================================================
# IDENTIFIERS & KEYS
# =============================================================================

def is_likely_guid(value: Any) -> bool:
    """
    Heuristic check for upstream GUIDs.

    True for hex-and-hyphen strings of length >= 8 that contain a hyphen
    or a hex letter, so "a1b2c3d4" and "1234-5678" qualify but a plain
    display number such as "12345678" does not.
    """
    if not isinstance(value, str):
        return False
    candidate = value.strip().lower()
    if len(candidate) < 8 or not _HEX_GUID.match(candidate):
        return False
    return "-" in candidate or bool(_HEX_LETTER.search(candidate))


def normalize_lookup_key(value: Any) -> Optional[str]:
    """Lower-case and collapse runs of non-alphanumerics to one space."""
    text = to_string_value(value)
    if text is None:
        return None
    key = _NON_ALNUM.sub(" ", text.strip().lower()).strip()
    return key or None


# =============================================================================
# STRING CANDIDATES
# =============================================================================

def looks_like_structured_data(value: str) -> bool:
    text = value.strip()
    return (text.startswith("{") and text.endswith("}")) or (
        text.startswith("[") and text.endswith("]")
    )


def extract_label_from_structured_value(
    value: Any,
    seen: Optional[set[int]] = None,
) -> Optional[str]:
    """Pull a human label out of a dict (or JSON text encoding one)."""
    if isinstance(value, str):
        if not looks_like_structured_data(value):
            return None
        try:
            value = json.loads(value)
        except ValueError:
            return None

    if isinstance(value, list):
        if seen is None:
            seen = set()
        if id(value) in seen:
            return None
        seen.add(id(value))
        for element in value:
            label = extract_label_from_structured_value(element, seen)
            if label:
                return label
        return None

    if isinstance(value, dict):
        for key in LABEL_KEYS:
            candidate = value.get(key)
            if isinstance(candidate, str) and candidate.strip():
                return candidate.strip()
    return None


def select_preferred_string_candidate(candidates: Iterable[str]) -> Optional[str]:
    """
    Prefer the first plain-text candidate; fall back to a label pulled
    out of JSON-looking candidates.
    """
    structured: list[str] = []
    for candidate in candidates:
        if not candidate:
            continue
        if looks_like_structured_data(candidate):
            structured.append(candidate)
            continue
        return candidate

    for candidate in structured:
        label = extract_label_from_structured_value(candidate)
        if label:
            return label
    return None


def collect_string_values_at_paths(source: Any, paths: Iterable[str]) -> list[str]:
    """
    Gather string-ish values across ``paths``, trimmed and de-duplicated
    by lookup key, in path order. Dicts contribute their label.
    """
    results: list[str] = []
    seen: set[str] = set()

    for path in paths:
        for value in extract_at_path(source, path):
            if isinstance(value, (dict, list)):
                text = extract_label_from_structured_value(value)
            else:
                text = to_string_value(value)
            if text is None:
                continue
            text = text.strip()
            key = normalize_lookup_key(text)
            if not text or key is None or key in seen:
                continue
            seen.add(key)
            results.append(text)

    return results


# =============================================================================
# FINGERPRINTS
# =============================================================================

CYCLE_MARKER = '"[Circular]"'


def stable_stringify(value: Any) -> str:
    """
    Deterministic JSON-like serialization with sorted keys.

    Two trees with the same content produce the same string regardless
    of key insertion order. A container reached again while it is still
    being serialized is emitted as a marker instead of recursing.
    """
    active: set[int] = set()

    def render(node: Any) -> str:
        if node is None:
            return "null"
        if isinstance(node, bool):
            return "true" if node else "false"
        if isinstance(node, (int, float)):
            if isinstance(node, float) and not math.isfinite(node):
                return "null"
            return json.dumps(node)
        if isinstance(node, str):
            return json.dumps(node)
        if isinstance(node, datetime):
            return json.dumps(node.isoformat())
        if isinstance(node, (list, tuple, dict)):
            marker = id(node)
            if marker in active:
                return CYCLE_MARKER
            active.add(marker)
            try:
                if isinstance(node, dict):
                    entries = sorted(
                        f"{json.dumps(str(key))}:{render(child)}"
                        for key, child in node.items()
                    )
                    return "{" + ",".join(entries) + "}"
                return "[" + ",".join(render(child) for child in node) + "]"
            finally:
                active.discard(marker)
        return json.dumps(str(node))

    return render(value)
