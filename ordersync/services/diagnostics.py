"""
Diagnostics Recorder

Bounded, in-process timeline of sync events (refresh started / succeeded /
failed, fallbacks, omissions, limit saturation, stale lookups, storage
outages). Purely observational: nothing in the sync path reads it back.

Every event is mirrored to the ``ordersync.diagnostics`` logger at the
matching level.

Usage:
    recorder = DiagnosticsRecorder(max_events=200)
    recorder.record(REFRESH_STARTED, payload={"silent": True})
    recorder.record(REFRESH_ERROR, DiagnosticLevelEnum.ERROR, error=e)

Author: Khalil Bannouri
Version: 1.0.0
"""

import itertools
import logging
import uuid
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

from ordersync.schemas import DiagnosticEventSchema, DiagnosticLevelEnum

logger = logging.getLogger("ordersync.diagnostics")


# =============================================================================
# EVENT TYPES
# =============================================================================

REFRESH_STARTED = "orders.refresh.started"
REFRESH_SUCCESS = "orders.refresh.success"
REFRESH_ERROR = "orders.refresh.error"
REFRESH_FALLBACK = "orders.refresh.fallback"
OMISSION_DETECTED = "orders.refresh.omission-detected"
LIMIT_SATURATED = "orders.refresh.limit-saturated"
LOOKUPS_STALE = "lookups.refresh.stale"
STORAGE_UNAVAILABLE = "storage.unavailable"

_LOG_LEVELS = {
    DiagnosticLevelEnum.DEBUG: logging.DEBUG,
    DiagnosticLevelEnum.INFO: logging.INFO,
    DiagnosticLevelEnum.WARN: logging.WARNING,
    DiagnosticLevelEnum.ERROR: logging.ERROR,
}


@dataclass
class DiagnosticEvent:
    id: str
    type: str
    level: DiagnosticLevelEnum
    timestamp: datetime
    sequence: int
    payload: dict[str, Any] = field(default_factory=dict)

    def to_schema(self) -> DiagnosticEventSchema:
        return DiagnosticEventSchema(
            id=self.id,
            type=self.type,
            level=self.level,
            timestamp=self.timestamp,
            sequence=self.sequence,
            payload=self.payload,
        )


class DiagnosticsRecorder:
    """
    Ring buffer of the most recent diagnostic events plus the last error.

    Args:
        max_events: Timeline capacity; older events are dropped first
    """

    def __init__(self, max_events: int = 200):
        self._events: deque[DiagnosticEvent] = deque(maxlen=max_events)
        self._sequence = itertools.count(1)
        self.last_error: Optional[DiagnosticEvent] = None

    def record(
        self,
        event_type: str,
        level: DiagnosticLevelEnum = DiagnosticLevelEnum.INFO,
        payload: Optional[dict[str, Any]] = None,
        error: Optional[BaseException] = None,
        clear_last_error: bool = False,
    ) -> DiagnosticEvent:
        """
        Append an event to the timeline.

        Args:
            event_type: One of the module-level event type constants
            level: Severity; ERROR events become ``last_error``
            payload: Free-form JSON-compatible details
            error: Exception to attach (message and class name)
            clear_last_error: Forget the previous error (successful refresh)

        Returns:
            DiagnosticEvent: The recorded event
        """
        details = dict(payload or {})
        if error is not None:
            details["error"] = str(error) or error.__class__.__name__
            details["error_type"] = error.__class__.__name__

        event = DiagnosticEvent(
            id=uuid.uuid4().hex,
            type=event_type,
            level=level,
            timestamp=datetime.now(timezone.utc),
            sequence=next(self._sequence),
            payload=details,
        )
        self._events.append(event)

        if clear_last_error:
            self.last_error = None
        if level == DiagnosticLevelEnum.ERROR:
            self.last_error = event

        logger.log(_LOG_LEVELS[level], f"{event_type} {details}" if details else event_type)
        return event

    def events(self, event_type: Optional[str] = None) -> list[DiagnosticEvent]:
        if event_type is None:
            return list(self._events)
        return [event for event in self._events if event.type == event_type]

    def clear(self) -> None:
        self._events.clear()
        self.last_error = None
