"""
Unit records and the closed vocabularies that describe them.

A unit is a simulated emergency vehicle identified by its call sign. Its
record holds where it is, where it is going and which dispatch status
it currently shows.
"""

import re
import time
from dataclasses import dataclass, replace
from enum import Enum
from typing import Optional

from geo import Coordinates

MOVEMENT_EPSILON_DEG = 0.00001

_WHITESPACE = re.compile(r"\s+")
_BARE_SIX_DIGITS = re.compile(r"^\d{6}$")


# =============================================================================
# ENUMS
# =============================================================================

class OperationalStatus(Enum):
    """Dispatch-visible status. Values are the two-letter dispatch codes."""
    ASSIGNED = "ov"      # Opdracht verstrekt: bound to an incident, not moving yet
    DISPATCHED = "ut"    # Uitgerukt: driving to the incident
    ON_SCENE = "tp"      # Ter plaatse
    RELEASED = "ir"      # Ingerukt: released at the scene
    AVAILABLE = "bs"     # Beschikbaar: returning, can take a new incident
    AT_STATION = "kz"    # Op kazerne

    @property
    def code(self) -> str:
        return self.value

    @property
    def label(self) -> str:
        return STATUS_LABELS[self]

    @property
    def available_for_new_incident(self) -> bool:
        return self in (OperationalStatus.AVAILABLE, OperationalStatus.AT_STATION)

    @property
    def bound_to_incident(self) -> bool:
        return self in INCIDENT_BOUND_STATUSES

    @classmethod
    def from_code(cls, code: str) -> "OperationalStatus":
        if not isinstance(code, str):
            raise ValueError(f"Status code must be a string, got {code!r}")
        return cls(code.strip().lower())


STATUS_LABELS = {
    OperationalStatus.ASSIGNED: "Assigned",
    OperationalStatus.DISPATCHED: "Dispatched",
    OperationalStatus.ON_SCENE: "On scene",
    OperationalStatus.RELEASED: "Released",
    OperationalStatus.AVAILABLE: "Available (returning)",
    OperationalStatus.AT_STATION: "At station",
}

INCIDENT_BOUND_STATUSES = frozenset({
    OperationalStatus.ASSIGNED,
    OperationalStatus.DISPATCHED,
    OperationalStatus.ON_SCENE,
    OperationalStatus.RELEASED,
})


class MovementPhase(Enum):
    """Why a unit is (or is not) moving."""
    IDLE = "idle"
    EN_ROUTE_TO_INCIDENT = "enRouteToIncident"
    ON_SCENE = "onScene"
    RETURNING_TO_STATION = "returningToStation"

    @property
    def is_moving(self) -> bool:
        return self in (MovementPhase.EN_ROUTE_TO_INCIDENT, MovementPhase.RETURNING_TO_STATION)


class TargetKind(Enum):
    INCIDENT = "incident"
    STATION = "station"


# =============================================================================
# DATA MODELS
# =============================================================================

@dataclass(frozen=True)
class Target:
    """Current destination of a moving unit."""
    lat: float
    lng: float
    kind: TargetKind
    ref_id: Optional[str] = None

    @property
    def coordinates(self) -> Coordinates:
        return Coordinates(self.lat, self.lng)

    def to_dict(self) -> dict:
        return {"lat": self.lat, "lng": self.lng, "kind": self.kind.value, "refId": self.ref_id}

    @classmethod
    def from_dict(cls, data: dict) -> "Target":
        if not isinstance(data, dict):
            raise ValueError(f"Target must be a mapping, got {data!r:.40}")
        ref_id = data.get("refId", data.get("ref_id"))
        return cls(
            lat=float(data["lat"]),
            lng=float(data["lng"]),
            kind=TargetKind(data["kind"]),
            ref_id=str(ref_id) if ref_id is not None else None,
        )


@dataclass
class UnitRecord:
    """Last known state of one unit, keyed by its normalized call sign."""
    id: str
    position: Coordinates
    previous_position: Optional[Coordinates] = None
    movement_phase: MovementPhase = MovementPhase.IDLE
    operational_status: OperationalStatus = OperationalStatus.AT_STATION
    active_incident_id: Optional[str] = None
    target: Optional[Target] = None
    last_update: float = 0.0  # epoch seconds

    @classmethod
    def at_station(cls, unit_id: str, station: Coordinates,
                   now: Optional[float] = None) -> "UnitRecord":
        """A freshly resolved unit standing at its home station."""
        return cls(
            id=unit_id,
            position=station,
            previous_position=station,
            last_update=time.time() if now is None else now,
        )

    def copy(self) -> "UnitRecord":
        # All nested values are immutable, a shallow replace is a full copy
        return replace(self)

    def has_moved(self) -> bool:
        """True if the position differs from the previous tick's snapshot."""
        if self.previous_position is None:
            return False
        return (abs(self.position.lat - self.previous_position.lat) > MOVEMENT_EPSILON_DEG or
                abs(self.position.lng - self.previous_position.lng) > MOVEMENT_EPSILON_DEG)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "position": self.position.to_dict(),
            "previousPosition": self.previous_position.to_dict() if self.previous_position else None,
            "movementPhase": self.movement_phase.value,
            "operationalStatus": self.operational_status.value,
            "activeIncidentId": self.active_incident_id,
            "target": self.target.to_dict() if self.target else None,
            "lastUpdate": self.last_update,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "UnitRecord":
        data = dict(data)  # Copy to avoid mutation
        # Handle missing optional fields
        data.setdefault("previousPosition", None)
        data.setdefault("movementPhase", MovementPhase.IDLE.value)
        data.setdefault("operationalStatus", OperationalStatus.AT_STATION.value)
        data.setdefault("activeIncidentId", None)
        data.setdefault("target", None)
        data.setdefault("lastUpdate", 0.0)

        incident_id = data["activeIncidentId"]
        return cls(
            id=normalize_unit_id(data["id"]),
            position=Coordinates.from_dict(data["position"]),
            previous_position=(Coordinates.from_dict(data["previousPosition"])
                               if data["previousPosition"] else None),
            movement_phase=MovementPhase(data["movementPhase"]),
            operational_status=OperationalStatus.from_code(data["operationalStatus"]),
            active_incident_id=str(incident_id) if incident_id is not None else None,
            target=Target.from_dict(data["target"]) if data["target"] else None,
            last_update=float(data["lastUpdate"]),
        )


def normalize_unit_id(unit_id: Optional[str]) -> str:
    """Canonical call sign: '17 0232', '170232' and '17-0232' are the same unit."""
    if not unit_id:
        return ""
    normalized = _WHITESPACE.sub("-", str(unit_id).strip().lower())
    if _BARE_SIX_DIGITS.match(normalized):
        normalized = f"{normalized[:2]}-{normalized[2:]}"
    return normalized
