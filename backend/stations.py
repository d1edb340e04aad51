"""
Station Resolver - where is a unit's home station?

Resolution order, first hit wins:
1. an explicit location recorded on the unit's profile
2. the station named on the unit's profile
3. the unit's post/group label, via POST_TO_STATION or directly by name
4. a regional heuristic on the call-sign prefix (PREFIX_RULES)
5. the first station in the reference list with usable coordinates
"""

import math
import re
from dataclasses import dataclass, asdict
from typing import Dict, List, Optional, Tuple

from geo import Coordinates
from logger import setup_logger
from units import normalize_unit_id

logger = setup_logger("stations")


# =============================================================================
# DATA MODELS
# =============================================================================

@dataclass(frozen=True)
class Station:
    """A fire station (kazerne) from the reference list."""
    id: str
    name: str
    lat: float
    lng: float
    group_label: str = ""
    place: str = ""

    @property
    def coordinates(self) -> Coordinates:
        return Coordinates(self.lat, self.lng)

    def has_valid_coordinates(self) -> bool:
        return self.coordinates.is_valid()

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "Station":
        lat = _as_float(data.get("lat", data.get("latitude")))
        lng = _as_float(data.get("lng", data.get("lon", data.get("longitude"))))
        coords = data.get("coordinates")
        if isinstance(coords, dict):
            lat = _as_float(coords.get("lat"))
            lng = _as_float(coords.get("lng", coords.get("lon")))
        return cls(
            id=str(data.get("id", "")),
            name=str(data.get("name", data.get("naam", ""))),
            lat=lat,
            lng=lng,
            group_label=str(data.get("groupLabel", data.get("group_label", "")) or ""),
            place=str(data.get("place", data.get("plaats", "")) or ""),
        )


@dataclass(frozen=True)
class UnitProfile:
    """What the unit roster knows about a unit's home base."""
    unit_id: str
    location_override: Optional[Coordinates] = None
    station_name: str = ""
    post: str = ""

    @classmethod
    def from_dict(cls, data: dict) -> "UnitProfile":
        override = data.get("location") or data.get("locationOverride")
        location = None
        if isinstance(override, dict) and override.get("lat") is not None:
            lng = override.get("lng", override.get("lon"))
            if lng is not None:
                location = Coordinates(_as_float(override["lat"]), _as_float(lng))
        return cls(
            unit_id=normalize_unit_id(data.get("unitId", data.get("unit_id", ""))),
            location_override=location,
            station_name=str(data.get("station", data.get("stationName", "")) or ""),
            post=str(data.get("post", data.get("groupLabel", "")) or ""),
        )


def _as_float(value) -> float:
    if value is None or value == "":
        return math.nan
    try:
        return float(value)
    except (TypeError, ValueError):
        return math.nan


# =============================================================================
# LOOKUP TABLES
# =============================================================================

# Post labels (lower-case) that do not match their station's name
POST_TO_STATION: Dict[str, str] = {
    "gb - botlekweg": "Gezamenlijke Brandweer - Botlekweg",
    "gb-botlekweg": "Gezamenlijke Brandweer - Botlekweg",
    "botlekweg": "Gezamenlijke Brandweer - Botlekweg",
    "gb - merseyweg": "Gezamenlijke Brandweer - Merseyweg",
    "gb-merseyweg": "Gezamenlijke Brandweer - Merseyweg",
    "merseyweg": "Gezamenlijke Brandweer - Merseyweg",
}

# (region code, company prefix, station name) for call signs like 17-20xx
PREFIX_RULES: List[Tuple[str, str, str]] = [
    ("17", "20", "Gezamenlijke Brandweer - Botlekweg"),
]

CALL_SIGN_PATTERN = re.compile(r"^(\d+)-(\d{2})")


# =============================================================================
# RESOLVER
# =============================================================================

class StationResolver:
    """Resolves home-station coordinates for a unit through the fallback chain."""

    def __init__(self, station_source, profile_source=None,
                 post_mapping: Optional[Dict[str, str]] = None,
                 prefix_rules: Optional[List[Tuple[str, str, str]]] = None):
        self.station_source = station_source
        self.profile_source = profile_source
        self.post_mapping = POST_TO_STATION if post_mapping is None else post_mapping
        self.prefix_rules = PREFIX_RULES if prefix_rules is None else prefix_rules

    def _stations(self) -> List[Station]:
        try:
            return list(self.station_source.list())
        except Exception as e:
            logger.error(f"Station list unavailable: {e}")
            return []

    def _profile(self, unit_id: str) -> Optional[UnitProfile]:
        if self.profile_source is None:
            return None
        try:
            return self.profile_source.get(unit_id)
        except Exception as e:
            logger.error(f"Unit profile lookup failed for {unit_id}: {e}")
            return None

    @staticmethod
    def find_by_name(stations: List[Station], name: str) -> Optional[Station]:
        """Case-insensitive match on station name or place, either containing the other."""
        wanted = name.lower().strip()
        if not wanted:
            return None
        for station in stations:
            if not station.has_valid_coordinates():
                continue
            candidates = [station.name.lower().strip(), station.place.lower().strip()]
            for candidate in candidates:
                if candidate and (wanted in candidate or candidate in wanted):
                    return station
        return None

    @staticmethod
    def first_valid(stations: List[Station]) -> Optional[Station]:
        for station in stations:
            if station.has_valid_coordinates():
                return station
        return None

    def resolve(self, unit_id: str) -> Optional[Coordinates]:
        """Home-station coordinates for a unit, or None if no tier produces one."""
        result = self.resolve_with_source(unit_id)
        return result[0] if result else None

    def resolve_with_source(self, unit_id: str) -> Optional[Tuple[Coordinates, str]]:
        """Like resolve(), also naming the tier that produced the answer."""
        key = normalize_unit_id(unit_id)
        profile = self._profile(key)

        if profile and profile.location_override and profile.location_override.is_valid():
            return profile.location_override, "override"

        stations = self._stations()

        if profile and profile.station_name:
            station = self.find_by_name(stations, profile.station_name)
            if station:
                return station.coordinates, "station"

        if profile and profile.post:
            station = self._resolve_post(stations, profile.post)
            if station:
                return station.coordinates, "post"

        station = self._resolve_prefix(stations, key)
        if station:
            return station.coordinates, "prefix"

        station = self.first_valid(stations)
        if station:
            return station.coordinates, "fallback"

        logger.warning(f"No station could be resolved for unit {key}")
        return None

    def _resolve_post(self, stations: List[Station], post: str) -> Optional[Station]:
        normalized = post.lower().strip()
        mapped = self.post_mapping.get(normalized)
        if mapped:
            station = self.find_by_name(stations, mapped)
            if station:
                return station
        for station in stations:
            if (station.group_label and station.group_label.lower().strip() == normalized
                    and station.has_valid_coordinates()):
                return station
        return self.find_by_name(stations, post)

    def _resolve_prefix(self, stations: List[Station], unit_id: str) -> Optional[Station]:
        match = CALL_SIGN_PATTERN.match(unit_id)
        if not match:
            return None
        region, company = match.groups()
        for rule_region, rule_prefix, station_name in self.prefix_rules:
            if region == rule_region and company.startswith(rule_prefix):
                station = self.find_by_name(stations, station_name)
                if station:
                    return station
        return None
