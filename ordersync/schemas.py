"""
Pydantic Schemas for Canonical Entities and API Responses

Everything past the normalization boundary is typed through these models:
- Normalized orders, items and modifiers
- The upstream bulk-listing envelope
- Read-only service responses (orders, modifiers, diagnostics, health)

Author: Khalil Bannouri
Version: 1.0.0
"""

from pydantic import BaseModel, ConfigDict, Field
from typing import Optional, Any
from datetime import datetime
from enum import Enum


READY_STATUS = "READY"


# =============================================================================
# ENUMS
# =============================================================================

class OrdersDetailEnum(str, Enum):
    IDS = "ids"
    FULL = "full"


class DiagnosticLevelEnum(str, Enum):
    DEBUG = "debug"
    INFO = "info"
    WARN = "warn"
    ERROR = "error"


class FulfillmentFilterEnum(str, Enum):
    NEW = "new"
    HOLD = "hold"
    SENT = "sent"
    READY = "ready"


# =============================================================================
# CANONICAL ENTITIES
# =============================================================================

class NormalizedModifier(BaseModel):
    """A modifier after de-duplication; quantity is summed across occurrences."""
    id: str
    identifier: Optional[str] = None
    name: str
    quantity: float = Field(default=1, gt=0)
    group_name: Optional[str] = None
    group_id: Optional[str] = None
    group_order: Optional[int] = None
    option_order: Optional[int] = None
    option_name: Optional[str] = None


class NormalizedOrderItem(BaseModel):
    """Single line item of a normalized order."""
    id: str
    name: str
    quantity: float = Field(default=1, gt=0)
    price: Optional[float] = None
    currency: Optional[str] = None
    notes: Optional[str] = None
    fulfillment_status: Optional[str] = None
    menu_order_index: Optional[int] = None
    prep_stations: Optional[list[str]] = None
    modifiers: list[NormalizedModifier] = Field(default_factory=list)


class NormalizedOrder(BaseModel):
    """
    Canonical order entity produced by the normalization pipeline.

    ``id`` is always present and stable for the same raw record;
    ``items`` is always a list.
    """
    id: str
    display_id: Optional[str] = None
    guid: Optional[str] = None
    status: Optional[str] = None
    created_at: Optional[datetime] = None
    created_at_raw: Optional[str] = None
    total: Optional[float] = None
    currency: Optional[str] = None
    customer_name: Optional[str] = None
    tab_name: Optional[str] = None
    dining_option: Optional[str] = None
    fulfillment_status: Optional[str] = None
    notes: Optional[str] = None
    items: list[NormalizedOrderItem] = Field(default_factory=list)
    prep_station_guids: Optional[list[str]] = None


# =============================================================================
# UPSTREAM ENVELOPES
# =============================================================================

class OrdersQuery(BaseModel):
    """Query parameters of one bulk listing request."""
    limit: int = Field(..., ge=1)
    detail: OrdersDetailEnum = OrdersDetailEnum.IDS
    time_zone: str = "UTC"
    since: Optional[datetime] = None
    minutes: Optional[int] = Field(default=None, ge=1)

    def to_params(self) -> dict[str, Any]:
        """Render as upstream query-string parameters."""
        params: dict[str, Any] = {
            "limit": self.limit,
            "detail": self.detail.value,
            "timeZone": self.time_zone,
        }
        if self.since is not None:
            params["since"] = self.since.isoformat().replace("+00:00", "Z")
        elif self.minutes is not None:
            params["minutes"] = self.minutes
        return params


class OrdersWindow(BaseModel):
    model_config = ConfigDict(extra="allow")

    start: Optional[str] = None
    end: Optional[str] = None


class OrdersLatestResponse(BaseModel):
    """
    Bulk listing envelope.

    ``orders`` holds GUID strings when ``detail == "ids"`` and full
    records otherwise; ``data`` is an alternate location some upstream
    versions use for full records.
    """
    model_config = ConfigDict(extra="allow")

    ok: bool = True
    detail: Optional[str] = None
    orders: list[Any] = Field(default_factory=list)
    ids: Optional[list[Any]] = None
    data: Optional[Any] = None
    window: Optional[OrdersWindow] = None
    debug: Optional[dict[str, Any]] = None


# =============================================================================
# SERVICE RESPONSES
# =============================================================================

class OrdersListResponse(BaseModel):
    """Published snapshot of the order cache."""
    orders: list[NormalizedOrder]
    count: int
    lookup_version: int
    last_success_at: Optional[datetime] = None
    is_refreshing: bool = False
    error: Optional[str] = None


class ModifierSummaryItem(BaseModel):
    id: str
    name: str
    qty: float
    order: Optional[int] = None


class ModifierSummaryGroup(BaseModel):
    id: str
    name: str
    order: Optional[int] = None
    items: list[ModifierSummaryItem]


class DiagnosticEventSchema(BaseModel):
    id: str
    type: str
    level: DiagnosticLevelEnum
    timestamp: datetime
    sequence: int
    payload: dict[str, Any] = Field(default_factory=dict)


class DiagnosticsResponse(BaseModel):
    events: list[DiagnosticEventSchema]
    last_error: Optional[DiagnosticEventSchema] = None


class DebugDiffMismatch(BaseModel):
    field: str
    normalized_value: Any = None
    raw_value: Any = None


class DebugDiffEntry(BaseModel):
    guid: str
    normalized_only: bool = False
    raw_only: bool = False
    mismatches: list[DebugDiffMismatch] = Field(default_factory=list)


class DebugDiffResponse(BaseModel):
    entries: list[DebugDiffEntry]
    issues: list[str]


class RefreshResponse(BaseModel):
    """Outcome of a manually triggered refresh cycle."""
    success: bool
    cancelled: bool = False
    message: str
    orders_count: int
    lookup_version: int
    cursor: Optional[datetime] = None
    duration_ms: float = 0.0


class ErrorResponse(BaseModel):
    """Standard error response."""
    success: bool = False
    error: str
    detail: Optional[str] = None


class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    upstream: str
    storage: str
    sync: str
    orders_cached: int
    lookup_version: int
    last_success_at: Optional[datetime] = None
    timestamp: datetime
