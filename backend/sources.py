"""
Collaborator interfaces consumed by the engine, with JSON-file and
in-memory implementations.

The engine only ever calls ``list()`` (incidents, stations) and ``get()``
(unit profiles). How upstream systems store those lists is their business.
"""

import json
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, List, Optional

from geo import Coordinates
from logger import setup_logger
from stations import Station, UnitProfile
from units import normalize_unit_id

logger = setup_logger("sources")

CLOSED_INCIDENT_STATUSES = frozenset({"closed", "archived", "afgesloten", "gearchiveerd"})


@dataclass(frozen=True)
class Incident:
    """An incident as seen by the engine."""
    id: str
    coordinates: Optional[Coordinates]
    assigned_unit_ids: List[str] = field(default_factory=list)
    closed: bool = False

    @classmethod
    def from_dict(cls, data: dict) -> "Incident":
        status = str(data.get("status") or "").strip().lower()
        closed = bool(data.get("closed", False)) or status in CLOSED_INCIDENT_STATUSES

        unit_ids = data.get("assignedUnitIds")
        if unit_ids is None:
            unit_ids = [u.get("unitId") or u.get("roepnummer")
                        for u in data.get("assignedUnits", []) if isinstance(u, dict)]
        unit_ids = [normalize_unit_id(u) for u in unit_ids if u]

        return cls(
            id=str(data["id"]),
            coordinates=_parse_incident_coordinates(data.get("coordinates")),
            assigned_unit_ids=unit_ids,
            closed=closed,
        )


def _parse_incident_coordinates(raw) -> Optional[Coordinates]:
    """Accepts GeoJSON order [lng, lat] or a {lat, lng} mapping."""
    try:
        if isinstance(raw, (list, tuple)) and len(raw) == 2:
            coords = Coordinates(lat=float(raw[1]), lng=float(raw[0]))
        elif isinstance(raw, dict):
            coords = Coordinates.from_dict(raw)
        else:
            return None
    except (KeyError, TypeError, ValueError):
        return None
    return coords if coords.is_valid() else None


# =============================================================================
# INTERFACES
# =============================================================================

class IncidentSource(ABC):
    """Feed of current incidents and their assigned units."""

    @abstractmethod
    def list(self) -> List[Incident]:
        """Return every known incident. Errors propagate to the caller."""
        pass


class StationSource(ABC):
    @abstractmethod
    def list(self) -> List[Station]:
        pass


class UnitProfileSource(ABC):
    @abstractmethod
    def get(self, unit_id: str) -> Optional[UnitProfile]:
        """Return the profile for a unit, or None when unknown."""
        pass


# =============================================================================
# IN-MEMORY IMPLEMENTATIONS
# =============================================================================

class StaticIncidentSource(IncidentSource):
    """Incident list held in memory; replace() swaps the whole list."""

    def __init__(self, incidents: Iterable[Incident] = ()):
        self._incidents = list(incidents)

    def replace(self, incidents: Iterable[Incident]):
        self._incidents = list(incidents)

    def list(self) -> List[Incident]:
        return list(self._incidents)


class StaticStationSource(StationSource):
    def __init__(self, stations: Iterable[Station] = ()):
        self._stations = list(stations)

    def add(self, station: Station):
        self._stations.append(station)

    def list(self) -> List[Station]:
        return list(self._stations)


class StaticUnitProfileSource(UnitProfileSource):
    def __init__(self, profiles: Iterable[UnitProfile] = ()):
        self._profiles: Dict[str, UnitProfile] = {p.unit_id: p for p in profiles}

    def get(self, unit_id: str) -> Optional[UnitProfile]:
        return self._profiles.get(normalize_unit_id(unit_id))


# =============================================================================
# JSON FILE IMPLEMENTATIONS
# =============================================================================

def _read_json_list(path: Path, what: str) -> list:
    """Read a JSON array from disk; a missing file is an empty list."""
    if not path.exists():
        return []
    with open(path, "r", encoding="utf-8") as f:
        data = json.load(f)
    if isinstance(data, dict):
        data = data.get(what, [])
    if not isinstance(data, list):
        raise ValueError(f"{path} does not contain a list of {what}")
    return data


class JsonIncidentSource(IncidentSource):
    """Reads incidents from a JSON file on every call.

    Read errors propagate so the watcher can treat them as a lost feed.
    """

    def __init__(self, path: Path):
        self.path = Path(path)

    def list(self) -> List[Incident]:
        incidents = []
        for raw in _read_json_list(self.path, "incidents"):
            try:
                incidents.append(Incident.from_dict(raw))
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"Skipping malformed incident {raw!r:.80}: {e}")
        return incidents


class JsonStationSource(StationSource):
    def __init__(self, path: Path):
        self.path = Path(path)

    def list(self) -> List[Station]:
        try:
            raw_stations = _read_json_list(self.path, "stations")
        except (OSError, ValueError) as e:
            logger.error(f"Error loading stations from {self.path}: {e}")
            return []
        return [Station.from_dict(raw) for raw in raw_stations if isinstance(raw, dict)]


class JsonUnitProfileSource(UnitProfileSource):
    def __init__(self, path: Path):
        self.path = Path(path)

    def get(self, unit_id: str) -> Optional[UnitProfile]:
        try:
            raw_profiles = _read_json_list(self.path, "units")
        except (OSError, ValueError) as e:
            logger.error(f"Error loading unit profiles from {self.path}: {e}")
            return None
        key = normalize_unit_id(unit_id)
        for raw in raw_profiles:
            if not isinstance(raw, dict):
                continue
            profile = UnitProfile.from_dict(raw)
            if profile.unit_id == key:
                return profile
        return None
