"""Tests for the status transition table."""
import pytest

from status_machine import (
    TRANSITIONS,
    Effect,
    InvalidTransition,
    Trigger,
    _check_table,
    allowed_triggers,
    can_transition,
    departure_trigger,
    plan_tick,
    transition,
)
from units import MovementPhase, OperationalStatus as S, TargetKind


class TestTransitionTable:
    """Tests for the legal edges."""

    def test_full_cycle(self):
        chain = [
            (S.AT_STATION, Trigger.ASSIGN, S.ASSIGNED),
            (S.ASSIGNED, Trigger.MOVEMENT_STARTED, S.DISPATCHED),
            (S.DISPATCHED, Trigger.ARRIVED_AT_INCIDENT, S.ON_SCENE),
            (S.ON_SCENE, Trigger.RELEASE, S.RELEASED),
            (S.RELEASED, Trigger.MOVEMENT_STARTED, S.AVAILABLE),
            (S.AVAILABLE, Trigger.ARRIVED_AT_STATION, S.AT_STATION),
        ]
        for from_status, trigger, to_status in chain:
            assert transition(from_status, trigger).to_status == to_status

    def test_returning_unit_can_be_assigned(self):
        edge = transition(S.AVAILABLE, Trigger.ASSIGN)
        assert edge.to_status == S.ASSIGNED
        assert edge.has(Effect.BIND_INCIDENT)

    def test_table_size(self):
        assert len(TRANSITIONS) == 7

    def test_no_skipping(self):
        assert not can_transition(S.ASSIGNED, Trigger.ARRIVED_AT_INCIDENT)
        assert not can_transition(S.AT_STATION, Trigger.RELEASE)
        assert not can_transition(S.RELEASED, Trigger.ARRIVED_AT_STATION)

    def test_invalid_raises(self):
        with pytest.raises(InvalidTransition) as exc_info:
            transition(S.DISPATCHED, Trigger.RELEASE)
        assert exc_info.value.status == S.DISPATCHED
        assert "ut" in str(exc_info.value)

    def test_invalid_transition_is_value_error(self):
        with pytest.raises(ValueError):
            transition(S.AT_STATION, Trigger.ARRIVED_AT_STATION)

    def test_phases(self):
        assert transition(S.ASSIGNED, Trigger.MOVEMENT_STARTED).phase == MovementPhase.EN_ROUTE_TO_INCIDENT
        assert transition(S.DISPATCHED, Trigger.ARRIVED_AT_INCIDENT).phase == MovementPhase.ON_SCENE
        assert transition(S.RELEASED, Trigger.MOVEMENT_STARTED).phase == MovementPhase.RETURNING_TO_STATION
        assert transition(S.AVAILABLE, Trigger.ARRIVED_AT_STATION).phase == MovementPhase.IDLE

    def test_station_arrival_clears_incident(self):
        edge = transition(S.AVAILABLE, Trigger.ARRIVED_AT_STATION)
        assert edge.has(Effect.CLEAR_INCIDENT)
        assert edge.has(Effect.EMIT_STATION_ARRIVAL)
        assert not transition(S.ON_SCENE, Trigger.RELEASE).has(Effect.CLEAR_INCIDENT)

    def test_allowed_triggers(self):
        assert allowed_triggers(S.ON_SCENE) == [Trigger.RELEASE]
        assert set(allowed_triggers(S.AVAILABLE)) == {Trigger.ASSIGN, Trigger.ARRIVED_AT_STATION}

    def test_release_edge_has_no_effects(self):
        assert transition(S.ON_SCENE, Trigger.RELEASE).effects == frozenset()

    def test_table_check_passes_for_shipped_table(self):
        _check_table(TRANSITIONS)

    def test_table_check_rejects_dead_end(self):
        broken = {key: edge for key, edge in TRANSITIONS.items() if edge.from_status != S.ON_SCENE}
        with pytest.raises(RuntimeError, match="stuck"):
            _check_table(broken)


class TestPlanning:
    """Tests for per-tick planning."""

    def test_departure_trigger(self):
        assert departure_trigger(S.ASSIGNED, TargetKind.INCIDENT) == Trigger.MOVEMENT_STARTED
        assert departure_trigger(S.RELEASED, TargetKind.STATION) == Trigger.MOVEMENT_STARTED
        assert departure_trigger(S.DISPATCHED, TargetKind.INCIDENT) is None
        assert departure_trigger(S.ASSIGNED, TargetKind.STATION) is None

    def test_departure_then_arrival(self):
        planned = plan_tick(S.ASSIGNED, TargetKind.INCIDENT, movement_started=True, arrived=True)
        assert [t.to_status for t in planned] == [S.DISPATCHED, S.ON_SCENE]

    def test_no_arrival_without_departure(self):
        planned = plan_tick(S.ASSIGNED, TargetKind.INCIDENT, movement_started=False, arrived=True)
        assert planned == []

    def test_arrival_only(self):
        planned = plan_tick(S.AVAILABLE, TargetKind.STATION, movement_started=True, arrived=True)
        assert [t.to_status for t in planned] == [S.AT_STATION]

    def test_nothing_while_moving(self):
        assert plan_tick(S.DISPATCHED, TargetKind.INCIDENT, True, False) == []
