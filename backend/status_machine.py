"""
Status State Machine - the only place that knows which status follows which.

    atStation/available --assign--> assigned --moving--> dispatched
        --arrived--> onScene --release--> released --moving--> available
        --arrived at station--> atStation

The functions here are pure: they answer "what happens next" and leave
applying the answer (moving targets, emitting events) to the scheduler.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Dict, FrozenSet, List, Optional, Tuple

from units import MovementPhase, OperationalStatus, TargetKind


class Trigger(Enum):
    ASSIGN = "assign"
    MOVEMENT_STARTED = "movementStarted"
    ARRIVED_AT_INCIDENT = "arrivedAtIncident"
    RELEASE = "release"
    ARRIVED_AT_STATION = "arrivedAtStation"


class Effect(Enum):
    """Side effects the caller must apply together with the new status.

    Targets are not effects: the scheduler commands set them before the edge fires.
    """
    BIND_INCIDENT = "bindIncident"
    CLEAR_TARGET = "clearTarget"
    EMIT_ARRIVAL = "emitArrival"
    CLEAR_INCIDENT = "clearIncident"
    EMIT_STATION_ARRIVAL = "emitStationArrival"


class InvalidTransition(ValueError):
    """Requested trigger is not allowed from the unit's current status."""

    def __init__(self, status: OperationalStatus, trigger: Trigger):
        self.status = status
        self.trigger = trigger
        super().__init__(f"cannot {trigger.value} from status {status.value} ({status.label})")


@dataclass(frozen=True)
class Transition:
    from_status: OperationalStatus
    trigger: Trigger
    to_status: OperationalStatus
    phase: Optional[MovementPhase]  # None leaves the phase as the caller set it
    effects: FrozenSet[Effect] = frozenset()

    def has(self, effect: Effect) -> bool:
        return effect in self.effects


def _edge(from_status, trigger, to_status, phase=None, *effects) -> Tuple[tuple, Transition]:
    return (from_status, trigger), Transition(from_status, trigger, to_status, phase, frozenset(effects))


S = OperationalStatus
P = MovementPhase

TRANSITIONS: Dict[Tuple[OperationalStatus, Trigger], Transition] = dict([
    _edge(S.AT_STATION, Trigger.ASSIGN, S.ASSIGNED, None, Effect.BIND_INCIDENT),
    _edge(S.AVAILABLE, Trigger.ASSIGN, S.ASSIGNED, None, Effect.BIND_INCIDENT),
    _edge(S.ASSIGNED, Trigger.MOVEMENT_STARTED, S.DISPATCHED, P.EN_ROUTE_TO_INCIDENT),
    _edge(S.DISPATCHED, Trigger.ARRIVED_AT_INCIDENT, S.ON_SCENE, P.ON_SCENE,
          Effect.CLEAR_TARGET, Effect.EMIT_ARRIVAL),
    _edge(S.ON_SCENE, Trigger.RELEASE, S.RELEASED),
    _edge(S.RELEASED, Trigger.MOVEMENT_STARTED, S.AVAILABLE, P.RETURNING_TO_STATION),
    _edge(S.AVAILABLE, Trigger.ARRIVED_AT_STATION, S.AT_STATION, P.IDLE,
          Effect.CLEAR_TARGET, Effect.CLEAR_INCIDENT, Effect.EMIT_STATION_ARRIVAL),
])

del S, P


def _check_table(table: Dict[Tuple[OperationalStatus, Trigger], Transition]):
    """Every status must be reachable and leavable."""
    unreachable = set(OperationalStatus) - {t.to_status for t in table.values()}
    stuck = set(OperationalStatus) - {t.from_status for t in table.values()}
    if unreachable or stuck:
        raise RuntimeError(f"Broken transition table: unreachable={sorted(s.value for s in unreachable)}, "
                           f"stuck={sorted(s.value for s in stuck)}")


_check_table(TRANSITIONS)


def transition(status: OperationalStatus, trigger: Trigger) -> Transition:
    """Look up the edge for (status, trigger). Raises InvalidTransition if there is none."""
    edge = TRANSITIONS.get((status, trigger))
    if edge is None:
        raise InvalidTransition(status, trigger)
    return edge


def can_transition(status: OperationalStatus, trigger: Trigger) -> bool:
    return (status, trigger) in TRANSITIONS


def allowed_triggers(status: OperationalStatus) -> List[Trigger]:
    return [trigger for (from_status, trigger) in TRANSITIONS if from_status == status]


def departure_trigger(status: OperationalStatus,
                      target_kind: Optional[TargetKind]) -> Optional[Trigger]:
    """Trigger to fire when a unit with this status and target starts moving, if any."""
    if status == OperationalStatus.ASSIGNED and target_kind == TargetKind.INCIDENT:
        return Trigger.MOVEMENT_STARTED
    if status == OperationalStatus.RELEASED and target_kind == TargetKind.STATION:
        return Trigger.MOVEMENT_STARTED
    return None


def arrival_trigger(target_kind: TargetKind) -> Trigger:
    if target_kind == TargetKind.INCIDENT:
        return Trigger.ARRIVED_AT_INCIDENT
    return Trigger.ARRIVED_AT_STATION


def journey_phase(target_kind: TargetKind) -> MovementPhase:
    """Phase a unit is in while it drives toward a target of this kind."""
    if target_kind == TargetKind.INCIDENT:
        return MovementPhase.EN_ROUTE_TO_INCIDENT
    return MovementPhase.RETURNING_TO_STATION


def plan_tick(status: OperationalStatus, target_kind: Optional[TargetKind],
              movement_started: bool, arrived: bool) -> List[Transition]:
    """Transitions one tick produces, in order: departure first, then arrival.

    A unit whose departure is not legal yet (e.g. still waiting for an
    assignment) never arrives on the same tick.
    """
    planned: List[Transition] = []
    current = status
    if movement_started:
        trigger = departure_trigger(current, target_kind)
        if trigger is not None:
            edge = transition(current, trigger)
            planned.append(edge)
            current = edge.to_status
    if arrived and target_kind is not None:
        trigger = arrival_trigger(target_kind)
        if can_transition(current, trigger):
            planned.append(transition(current, trigger))
    return planned
