"""
Geospatial helpers for unit movement.

Units travel along the great circle between their position and their
target (a flight line, no road network). Everything here is pure and
deterministic so the scheduler can be tested tick by tick.
"""

import math
from dataclasses import dataclass, asdict
from typing import Optional

EARTH_RADIUS_KM = 6371.0

# Closer than this (10 m) counts as "already there"; bearing math is skipped.
ARRIVAL_THRESHOLD_KM = 0.01


@dataclass(frozen=True)
class Coordinates:
    """A WGS84 point in decimal degrees."""
    lat: float
    lng: float

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "Coordinates":
        lng = data["lng"] if "lng" in data else data["lon"]
        return cls(lat=float(data["lat"]), lng=float(lng))

    def is_valid(self) -> bool:
        """Finite and not the (0, 0) placeholder used by incomplete data."""
        if not (math.isfinite(self.lat) and math.isfinite(self.lng)):
            return False
        if self.lat == 0 or self.lng == 0:
            return False
        return -90.0 <= self.lat <= 90.0 and -180.0 <= self.lng <= 180.0


@dataclass(frozen=True)
class StepResult:
    position: Coordinates
    arrived: bool
    distance_moved_km: float = 0.0


def distance_km(a: Coordinates, b: Coordinates) -> float:
    """Haversine distance between two points in kilometers."""
    d_lat = math.radians(b.lat - a.lat)
    d_lng = math.radians(b.lng - a.lng)
    h = (math.sin(d_lat / 2) ** 2 +
         math.cos(math.radians(a.lat)) * math.cos(math.radians(b.lat)) *
         math.sin(d_lng / 2) ** 2)
    return EARTH_RADIUS_KM * 2 * math.atan2(math.sqrt(h), math.sqrt(1 - h))


def bearing_rad(origin: Coordinates, target: Coordinates) -> float:
    """Initial great-circle bearing from origin to target, radians clockwise from north."""
    lat1 = math.radians(origin.lat)
    lat2 = math.radians(target.lat)
    d_lng = math.radians(target.lng - origin.lng)
    y = math.sin(d_lng) * math.cos(lat2)
    x = math.cos(lat1) * math.sin(lat2) - math.sin(lat1) * math.cos(lat2) * math.cos(d_lng)
    return math.atan2(y, x)


def bearing_deg(origin: Coordinates, target: Coordinates) -> float:
    """Initial bearing in compass degrees (0-360)."""
    return (math.degrees(bearing_rad(origin, target)) + 360.0) % 360.0


def destination_point(origin: Coordinates, bearing: float, distance: float) -> Coordinates:
    """Point reached travelling `distance` km from origin along `bearing` (radians)."""
    angular = distance / EARTH_RADIUS_KM
    lat1 = math.radians(origin.lat)
    lng1 = math.radians(origin.lng)
    lat2 = math.asin(math.sin(lat1) * math.cos(angular) +
                     math.cos(lat1) * math.sin(angular) * math.cos(bearing))
    lng2 = lng1 + math.atan2(math.sin(bearing) * math.sin(angular) * math.cos(lat1),
                             math.cos(angular) - math.sin(lat1) * math.sin(lat2))
    # Normalize longitude to [-180, 180)
    lng_deg = (math.degrees(lng2) + 540.0) % 360.0 - 180.0
    return Coordinates(lat=math.degrees(lat2), lng=lng_deg)


def step_distance_km(speed_kmh: float, elapsed_ms: float) -> float:
    """Distance covered at `speed_kmh` during `elapsed_ms`."""
    return max(0.0, speed_kmh) * max(0.0, elapsed_ms) / 3_600_000.0


def is_already_there(current: Coordinates, target: Coordinates,
                     threshold_km: float = ARRIVAL_THRESHOLD_KM) -> bool:
    return current == target or distance_km(current, target) < threshold_km


def step(current: Coordinates, target: Coordinates,
         speed_kmh: float, elapsed_ms: float,
         remaining_km: Optional[float] = None) -> StepResult:
    """Advance `current` toward `target` for one tick.

    Snaps exactly onto the target (arrived=True) when the remaining distance
    is no more than what this step covers. Identical points short-circuit
    without touching the bearing math.
    """
    if current == target:
        return StepResult(position=target, arrived=True)

    remaining = distance_km(current, target) if remaining_km is None else remaining_km
    to_move = step_distance_km(speed_kmh, elapsed_ms)

    if remaining <= to_move:
        return StepResult(position=target, arrived=True, distance_moved_km=remaining)
    if to_move == 0:
        return StepResult(position=current, arrived=False)

    new_position = destination_point(current, bearing_rad(current, target), to_move)
    return StepResult(position=new_position, arrived=False, distance_moved_km=to_move)
