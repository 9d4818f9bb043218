"""Event definitions shared by the connection manager, the alert director and UI subscribers.

Events stay transport-agnostic: producers and consumers exchange these typed
structures through the EventBus instead of loose dictionaries.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Mapping, Optional


class EventType(str, Enum):
    """Top level event categories."""

    CONNECTION_STATE = "connection_state"
    NETWORK_SNAPSHOT = "network_snapshot"
    SYSTEM_FAULT = "system_fault"
    ALERT_FIRED = "alert_fired"


class Severity(str, Enum):
    """Event severity."""

    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"


@dataclass(slots=True)
class EventBase:
    """Fields shared by all events."""

    event_type: EventType
    severity: Severity
    source: str
    message: str
    detail: Mapping[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class ConnectionStateEvent(EventBase):
    """Published on every ConnectionManager state transition."""

    previous: str = ""
    current: str = ""
    endpoint: Optional[str] = None


@dataclass(slots=True)
class NetworkSnapshotEvent(EventBase):
    """Carries a freshly published NetworkSnapshot."""

    snapshot: Any = None


@dataclass(slots=True)
class SystemFaultEvent(EventBase):
    """Connectivity or delivery fault, split by category."""

    component: str = ""
    endpoint: Optional[str] = None
    category: str = ""  # e.g. probe, reconnect, email


@dataclass(slots=True)
class AlertFiredEvent(EventBase):
    """Emitted after a notification has been persisted."""

    alert_id: str = ""
    notification_id: str = ""
    evidence_ref: Optional[str] = None


@dataclass(slots=True)
class EventEnvelope:
    """Wraps an event with its publication timestamp."""

    event: EventBase
    ts: float
    id: Optional[str] = None


def event_detail(**values: Any) -> Dict[str, Any]:
    """Drop ``None`` values so detail mappings stay compact."""

    return {key: value for key, value in values.items() if value is not None}
