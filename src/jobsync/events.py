"""Event reporting for managed resources.

Events are the operator-facing trail of what the engine did to an object:
created, updated or deleted its external counterpart, or failed to. The
recorder is constructed once by the entry point and passed down explicitly;
there is no process-wide recorder.
"""

from __future__ import annotations

import logging
import threading
from collections import deque
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from .models import ManagedResource

logger = logging.getLogger(__name__)

DEFAULT_COMPONENT = "jobsync-controller"

# Bounded so a flapping object cannot grow memory without limit
DEFAULT_HISTORY_SIZE = 1000


class EventSeverity(str, Enum):
    """Event types, as shown to operators."""

    NORMAL = "Normal"
    WARNING = "Warning"


# Event reasons
REASON_CREATED = "Created"
REASON_UPDATED = "Updated"
REASON_DELETED = "Deleted"
REASON_SYNC_FAILED = "SyncFailed"
REASON_DELETE_FAILED = "DeleteFailed"


@dataclass(frozen=True)
class RecordedEvent:
    """A single event about one managed resource."""

    key: str
    severity: EventSeverity
    reason: str
    message: str
    component: str = DEFAULT_COMPONENT
    resource_version: str = ""
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        result = asdict(self)
        result["severity"] = self.severity.value
        result["timestamp"] = self.timestamp.isoformat()
        return result


class EventRecorder:
    """Records events to the structured log and keeps a bounded history."""

    def __init__(
        self,
        component: str = DEFAULT_COMPONENT,
        history_size: int = DEFAULT_HISTORY_SIZE,
    ) -> None:
        self._component = component
        self._lock = threading.Lock()
        self._history: deque[RecordedEvent] = deque(maxlen=history_size)

    def event(
        self,
        obj: ManagedResource,
        severity: EventSeverity,
        reason: str,
        message: str,
    ) -> RecordedEvent:
        """Record an event about ``obj``."""
        recorded = RecordedEvent(
            key=obj.key,
            severity=severity,
            reason=reason,
            message=message,
            component=self._component,
            resource_version=obj.resource_version,
        )
        with self._lock:
            self._history.append(recorded)

        log_level = logging.WARNING if severity == EventSeverity.WARNING else logging.INFO
        logger.log(
            log_level,
            "Resource event",
            extra={
                "event": recorded.to_dict(),
                # Flatten key fields for easier querying
                "key": recorded.key,
                "reason": reason,
                "severity": severity.value,
            },
        )
        return recorded

    def normal(self, obj: ManagedResource, reason: str, message: str) -> RecordedEvent:
        return self.event(obj, EventSeverity.NORMAL, reason, message)

    def warning(self, obj: ManagedResource, reason: str, message: str) -> RecordedEvent:
        return self.event(obj, EventSeverity.WARNING, reason, message)

    def history(self, key: str | None = None) -> list[RecordedEvent]:
        """Recorded events, oldest first, optionally for one key."""
        with self._lock:
            return [e for e in self._history if key is None or e.key == key]
