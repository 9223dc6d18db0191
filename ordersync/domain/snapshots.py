"""
Menu / config snapshot records.

A snapshot is the last successfully fetched payload plus the time it
stops being fresh. Staleness never discards a snapshot: a stale one is
still served when a refetch fails.

Author: Khalil Bannouri
Version: 1.0.0
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from ordersync.domain.canonical import parse_date_like, to_number
from ordersync.domain.lookups import compute_signature


@dataclass
class CacheSnapshot:
    """
    Attributes:
        payload: Raw menu or config document
        fetched_at: When the payload was fetched (UTC)
        expires_at: End of freshness; None means fresh forever
        signature: Structural signature of the payload
    """
    payload: Any
    fetched_at: datetime
    expires_at: Optional[datetime] = None
    signature: Optional[str] = None

    def is_fresh(self, now: Optional[datetime] = None) -> bool:
        if self.expires_at is None:
            return True
        return self.expires_at > (now or datetime.now(timezone.utc))

    def to_dict(self) -> dict:
        """Convert to dictionary for persistence."""
        return {
            "payload": self.payload,
            "fetched_at": self.fetched_at.isoformat(),
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
            "signature": self.signature,
        }

    @classmethod
    def from_dict(cls, data: Any) -> Optional["CacheSnapshot"]:
        """Rebuild a persisted snapshot; None when the record is unusable."""
        if not isinstance(data, dict) or "payload" not in data:
            return None
        fetched_at = parse_date_like(data.get("fetched_at"))
        if fetched_at is None:
            return None
        payload = data["payload"]
        return cls(
            payload=payload,
            fetched_at=fetched_at,
            expires_at=parse_date_like(data.get("expires_at")),
            signature=data.get("signature") or compute_signature(payload),
        )


def prepare_snapshot(
    payload: Any,
    ttl_ms: Optional[float] = None,
    now: Optional[datetime] = None,
) -> CacheSnapshot:
    fetched_at = now or datetime.now(timezone.utc)
    expires_at = fetched_at + timedelta(milliseconds=ttl_ms) if ttl_ms else None
    return CacheSnapshot(
        payload=payload,
        fetched_at=fetched_at,
        expires_at=expires_at,
        signature=compute_signature(payload),
    )


def parse_cache_control_max_age(header_value: Optional[str]) -> Optional[float]:
    """
    Read ``max-age`` (seconds) from a Cache-Control header.

    Example:
        >>> parse_cache_control_max_age("public, max-age=300")
        300.0
    """
    if not header_value:
        return None

    for directive in header_value.split(","):
        key, _, value = directive.strip().partition("=")
        if key.strip().lower() != "max-age" or not value.strip():
            continue
        seconds = to_number(value.strip().strip('"'))
        if seconds is not None and seconds >= 0:
            return seconds
    return None


def resolve_ttl_ms(payload: Any, cache_control: Optional[str] = None) -> Optional[float]:
    """
    Freshness window of a fetched document.

    The Cache-Control ``max-age`` wins; otherwise a numeric ``ttlSeconds``
    field in the payload. Zero or missing means no expiry.
    """
    seconds = parse_cache_control_max_age(cache_control)
    if not seconds and isinstance(payload, dict):
        candidate = payload.get("ttlSeconds")
        if isinstance(candidate, (int, float)) and not isinstance(candidate, bool):
            seconds = float(candidate)
    if not seconds or seconds <= 0:
        return None
    return seconds * 1000
