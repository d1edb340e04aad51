"""
Event Publisher - typed notifications for map layers and status boards.

Listeners subscribe by event name (or "*" for everything). A failing
listener is logged and skipped; it never stops the publisher or the
tick that produced the event.
"""

import threading
from collections import deque
from dataclasses import dataclass, field
from typing import Callable, ClassVar, Deque, Dict, List, Optional

from logger import setup_logger

logger = setup_logger("events")

MAX_RECENT_EVENTS = 500
ALL_EVENTS = "*"


# =============================================================================
# EVENTS
# =============================================================================

@dataclass(frozen=True)
class UnitStatusChanged:
    name: ClassVar[str] = "unitStatusChanged"
    unit_id: str
    from_status: Optional[str]
    to_status: str
    active_incident_id: Optional[str]
    position: dict

    def to_dict(self) -> dict:
        return {
            "unitId": self.unit_id,
            "fromStatus": self.from_status,
            "toStatus": self.to_status,
            "activeIncidentId": self.active_incident_id,
            "position": self.position,
        }


@dataclass(frozen=True)
class UnitPositionsUpdated:
    name: ClassVar[str] = "unitPositionsUpdated"
    records: List[dict] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {"records": self.records}


@dataclass(frozen=True)
class UnitArrival:
    name: ClassVar[str] = "unitArrival"
    unit_id: str
    position: dict
    incident_id: Optional[str]

    def to_dict(self) -> dict:
        return {"unitId": self.unit_id, "position": self.position, "incidentId": self.incident_id}


@dataclass(frozen=True)
class UnitArrivedAtStation:
    name: ClassVar[str] = "unitArrivedAtStation"
    unit_id: str
    position: dict

    def to_dict(self) -> dict:
        return {"unitId": self.unit_id, "position": self.position}


@dataclass(frozen=True)
class UnitMovementStarted:
    name: ClassVar[str] = "unitMovementStarted"
    unit_id: str
    target: dict

    def to_dict(self) -> dict:
        return {"unitId": self.unit_id, "target": self.target}


@dataclass(frozen=True)
class TickCompleted:
    name: ClassVar[str] = "tickCompleted"
    timestamp: float

    def to_dict(self) -> dict:
        return {"timestamp": self.timestamp}


EVENT_TYPES = (UnitStatusChanged, UnitPositionsUpdated, UnitArrival,
               UnitArrivedAtStation, UnitMovementStarted, TickCompleted)
EVENT_NAMES = frozenset(cls.name for cls in EVENT_TYPES)


# =============================================================================
# BUS
# =============================================================================

class EventBus:
    """Synchronous fan-out of engine events."""

    def __init__(self, max_recent: int = MAX_RECENT_EVENTS):
        self._lock = threading.Lock()
        self._listeners: Dict[str, List[Callable]] = {}
        self._recent: Deque[dict] = deque(maxlen=max_recent)

    def subscribe(self, event_name: str, callback: Callable) -> Callable:
        """Register a listener; returns the callback so it can be used as a decorator."""
        if event_name != ALL_EVENTS and event_name not in EVENT_NAMES:
            raise ValueError(f"Unknown event: {event_name}")
        with self._lock:
            self._listeners.setdefault(event_name, []).append(callback)
        return callback

    def unsubscribe(self, event_name: str, callback: Callable):
        with self._lock:
            callbacks = self._listeners.get(event_name, [])
            if callback in callbacks:
                callbacks.remove(callback)

    def publish(self, event):
        with self._lock:
            callbacks = (list(self._listeners.get(event.name, [])) +
                         list(self._listeners.get(ALL_EVENTS, [])))
            if not isinstance(event, TickCompleted):
                self._recent.append({"event": event.name, **event.to_dict()})

        for callback in callbacks:
            try:
                callback(event)
            except Exception as e:
                logger.error(f"Error in listener for {event.name}: {e}")

    def recent(self, limit: int = 100, event_name: Optional[str] = None) -> List[dict]:
        """Most recent published events (oldest first), tickCompleted excluded."""
        with self._lock:
            entries = list(self._recent)
        if event_name:
            entries = [e for e in entries if e["event"] == event_name]
        return entries[-limit:] if limit > 0 else []
