"""Tests for the geospatial helpers."""
import math
import pytest

from geo import (
    ARRIVAL_THRESHOLD_KM,
    Coordinates,
    bearing_deg,
    destination_point,
    distance_km,
    is_already_there,
    step,
    step_distance_km,
)


STATION = Coordinates(52.0, 4.4)
INCIDENT = Coordinates(52.05, 4.45)


class TestCoordinates:
    """Tests for the Coordinates dataclass."""

    def test_valid(self):
        assert STATION.is_valid() is True

    def test_zero_placeholder_is_invalid(self):
        assert Coordinates(0.0, 0.0).is_valid() is False
        assert Coordinates(52.0, 0.0).is_valid() is False

    def test_nan_is_invalid(self):
        assert Coordinates(math.nan, 4.4).is_valid() is False

    def test_out_of_range_is_invalid(self):
        assert Coordinates(91.0, 4.4).is_valid() is False
        assert Coordinates(52.0, 181.0).is_valid() is False

    def test_from_dict_accepts_lon(self):
        assert Coordinates.from_dict({"lat": "52.0", "lon": 4.4}) == STATION

    def test_to_dict(self):
        assert STATION.to_dict() == {"lat": 52.0, "lng": 4.4}


class TestDistance:
    """Tests for haversine distance."""

    def test_same_point_is_zero(self):
        assert distance_km(STATION, STATION) == 0.0

    def test_known_distance(self):
        # 0.05 degrees north-east near Rotterdam is roughly 6.5 km
        assert 6.4 < distance_km(STATION, INCIDENT) < 6.7

    def test_symmetric(self):
        assert distance_km(STATION, INCIDENT) == pytest.approx(distance_km(INCIDENT, STATION))

    def test_one_degree_latitude(self):
        assert distance_km(Coordinates(52.0, 4.4), Coordinates(53.0, 4.4)) == pytest.approx(111.19, abs=0.1)


class TestBearing:
    """Tests for bearing and destination point."""

    def test_north(self):
        assert bearing_deg(STATION, Coordinates(53.0, 4.4)) == pytest.approx(0.0, abs=1e-9)

    def test_east_is_roughly_90(self):
        assert bearing_deg(STATION, Coordinates(52.0, 5.4)) == pytest.approx(90.0, abs=1.0)

    def test_destination_point_distance(self):
        for bearing in (0.0, 1.0, 2.5, 4.0):
            end = destination_point(STATION, bearing, 1.0)
            assert distance_km(STATION, end) == pytest.approx(1.0, rel=1e-6)

    def test_destination_point_normalizes_longitude(self):
        end = destination_point(Coordinates(10.0, 179.99), math.pi / 2, 5.0)
        assert -180.0 <= end.lng < 180.0


class TestStep:
    """Tests for the per-tick interpolation step."""

    def test_step_distance(self):
        assert step_distance_km(80.0, 100) == pytest.approx(80.0 * 100 / 3_600_000)

    def test_identical_points_arrive(self):
        result = step(STATION, STATION, 80.0, 100)
        assert result.arrived is True
        assert result.position == STATION

    def test_moves_closer(self):
        before = distance_km(STATION, INCIDENT)
        result = step(STATION, INCIDENT, 80.0, 100)
        after = distance_km(result.position, INCIDENT)

        assert result.arrived is False
        assert after < before
        assert before - after == pytest.approx(step_distance_km(80.0, 100), rel=1e-3)

    def test_snaps_to_target_when_in_reach(self):
        near = destination_point(INCIDENT, 0.0, 0.001)
        result = step(near, INCIDENT, 80.0, 100)

        assert result.arrived is True
        assert result.position == INCIDENT

    def test_zero_elapsed_does_not_move(self):
        result = step(STATION, INCIDENT, 80.0, 0)
        assert result.arrived is False
        assert result.position == STATION

    def test_reaches_target_in_bounded_ticks(self):
        position = STATION
        ticks = 0
        limit = int(distance_km(STATION, INCIDENT) / step_distance_km(80.0, 100)) + 2
        while ticks < limit:
            result = step(position, INCIDENT, 80.0, 100)
            position = result.position
            ticks += 1
            if result.arrived:
                break
        assert position == INCIDENT


class TestAlreadyThere:
    """Tests for the 10 m arrival threshold."""

    def test_threshold_constant(self):
        assert ARRIVAL_THRESHOLD_KM == 0.01

    def test_within_threshold(self):
        assert is_already_there(STATION, Coordinates(52.00004, 4.4)) is True

    def test_outside_threshold(self):
        assert is_already_there(STATION, Coordinates(52.001, 4.4)) is False
