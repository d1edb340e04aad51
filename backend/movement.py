"""
Movement Scheduler - advances every unit with a target, one tick at a time.

This is the single writer of unit records. Collaborators change unit state
only through the public commands below (start_movement, assign_to_incident,
release_from_incident, return_to_station and the two resets); each
command checks the status table first and answers with a result dict
instead of raising when the request does not fit the unit's status.

Per tick, for every unit with a target:
1. departure (assigned -> dispatched, released -> available) is applied
   before interpolation, so a unit leaves on the tick after it got a target
2. the position is stepped along the great circle toward the target
3. arrival (-> onScene, -> atStation) is applied after interpolation
Changed records are persisted and announced in one batch; tickCompleted is
announced every tick.
"""

import asyncio
import threading
import time
from typing import Callable, List, Optional, Union

from config import DEFAULT_MAX_TICK_ELAPSED_MS, DEFAULT_SPEED_KMH, DEFAULT_TICK_INTERVAL_MS
from events import (
    EventBus, TickCompleted, UnitArrival, UnitArrivedAtStation,
    UnitMovementStarted, UnitPositionsUpdated, UnitStatusChanged,
)
from geo import Coordinates, is_already_there, step
from logger import setup_logger
from position_store import PositionStore
from stations import StationResolver
from status_machine import (
    Effect, InvalidTransition, Transition, Trigger,
    arrival_trigger, can_transition, departure_trigger, journey_phase, plan_tick, transition,
)
from units import (
    MovementPhase, OperationalStatus, Target, TargetKind, UnitRecord, normalize_unit_id,
)

logger = setup_logger("movement")

# (unit_id, status_code, context) -> None
StatusSync = Callable[[str, str, dict], None]


def _result(status: str, message: str, **extra) -> dict:
    return {"status": status, "message": message, **extra}


class MovementScheduler:
    """Owns all unit-record mutation: the tick and the public commands."""

    def __init__(self,
                 store: PositionStore,
                 resolver: StationResolver,
                 event_bus: Optional[EventBus] = None,
                 speed_kmh: float = DEFAULT_SPEED_KMH,
                 tick_interval_ms: int = DEFAULT_TICK_INTERVAL_MS,
                 max_tick_elapsed_ms: Optional[int] = DEFAULT_MAX_TICK_ELAPSED_MS,
                 incident_source=None,
                 status_sync: Optional[StatusSync] = None,
                 clock: Callable[[], float] = time.time):
        if speed_kmh <= 0:
            raise ValueError("speed_kmh must be positive")
        self.store = store
        self.resolver = resolver
        self.event_bus = event_bus or EventBus()
        self.speed_kmh = speed_kmh
        self.tick_interval_ms = tick_interval_ms
        self.max_tick_elapsed_ms = max_tick_elapsed_ms
        self.incident_source = incident_source
        self.status_sync = status_sync
        self.clock = clock
        self.tick_count = 0
        self.last_tick_at: Optional[float] = None
        self._lock = threading.RLock()

    # ===== INTERNALS =====

    def _sync_status(self, record: UnitRecord, from_status: Optional[OperationalStatus]):
        """Mirror a status change to the external hook; its failures never abort the change."""
        if self.status_sync is None:
            return
        context = {
            "fromStatus": from_status.value if from_status else None,
            "incidentId": record.active_incident_id,
            "position": record.position.to_dict(),
        }
        try:
            self.status_sync(record.id, record.operational_status.value, context)
        except Exception as e:
            logger.error(f"Status sync failed for {record.id} -> {record.operational_status.value}: {e}")

    def _apply(self, record: UnitRecord, edge: Transition, events: list,
               incident_id: Optional[str] = None):
        """Apply one status edge to a record and queue the events it produces."""
        from_status = record.operational_status
        record.operational_status = edge.to_status
        if edge.phase is not None:
            record.movement_phase = edge.phase
        if edge.has(Effect.BIND_INCIDENT):
            record.active_incident_id = incident_id
        if edge.has(Effect.CLEAR_TARGET):
            record.target = None
        if edge.has(Effect.CLEAR_INCIDENT):
            record.active_incident_id = None

        position = record.position.to_dict()
        events.append(UnitStatusChanged(
            unit_id=record.id,
            from_status=from_status.value,
            to_status=edge.to_status.value,
            active_incident_id=record.active_incident_id,
            position=position,
        ))
        if edge.has(Effect.EMIT_ARRIVAL):
            events.append(UnitArrival(unit_id=record.id, position=position,
                                      incident_id=record.active_incident_id))
        if edge.has(Effect.EMIT_STATION_ARRIVAL):
            events.append(UnitArrivedAtStation(unit_id=record.id, position=position))

        logger.info(f"Status {record.id}: {from_status.value} -> {edge.to_status.value}"
                    f" (incident {record.active_incident_id or '-'})")
        self._sync_status(record, from_status)

    def _publish(self, events: list):
        for event in events:
            self.event_bus.publish(event)

    def _get_or_create(self, unit_id: str, now: float) -> Optional[UnitRecord]:
        """Existing record, or a new one standing at its resolved home station."""
        record = self.store.get(unit_id)
        if record is not None:
            return record
        station = self.resolver.resolve(unit_id)
        if station is None:
            logger.warning(f"Cannot create unit {unit_id}: no home station resolved")
            return None
        record = UnitRecord.at_station(unit_id, station, now=now)
        self.store.set(unit_id, record)
        logger.info(f"Created unit {unit_id} at station ({station.lat:.5f}, {station.lng:.5f})")
        return record

    def _begin_journey(self, record: UnitRecord, destination: Coordinates,
                       kind: TargetKind, ref_id: Optional[str],
                       now: float, events: list) -> str:
        """Give a unit its target, or complete the journey at once if it is already there."""
        if is_already_there(record.position, destination):
            self._arrive_immediately(record, destination, kind, now, events)
            return f"{record.id} already at {kind.value}"

        record.target = Target(lat=destination.lat, lng=destination.lng, kind=kind, ref_id=ref_id)
        record.movement_phase = journey_phase(kind)
        record.previous_position = record.position
        record.last_update = now
        events.append(UnitMovementStarted(unit_id=record.id, target=record.target.to_dict()))
        logger.info(f"{record.id} heading to {kind.value} {ref_id or ''} "
                    f"({destination.lat:.5f}, {destination.lng:.5f})")
        return f"{record.id} moving to {kind.value}"

    def _arrive_immediately(self, record: UnitRecord, destination: Coordinates,
                            kind: TargetKind, now: float, events: list):
        """Walk the legal departure and arrival edges without any interpolation."""
        record.previous_position = record.position
        record.position = destination
        record.target = None
        record.last_update = now
        trigger = departure_trigger(record.operational_status, kind)
        if trigger is not None:
            self._apply(record, transition(record.operational_status, trigger), events)
        trigger = arrival_trigger(kind)
        if can_transition(record.operational_status, trigger):
            self._apply(record, transition(record.operational_status, trigger), events)
        if record.target is None and record.movement_phase.is_moving:
            record.movement_phase = MovementPhase.IDLE

    # ===== TICK =====

    def tick(self, now: Optional[float] = None) -> dict:
        """Advance all moving units once. Safe to call manually (tests, admin)."""
        with self._lock:
            now = self.clock() if now is None else now
            events: list = []
            changed: List[UnitRecord] = []

            for record in self.store.all():
                if record.target is None:
                    continue
                if self._advance(record, now, events):
                    changed.append(record)

            if changed:
                self.store.save_all(changed)
                events.append(UnitPositionsUpdated(records=[r.to_dict() for r in changed]))

            self.tick_count += 1
            self.last_tick_at = now
            self._publish(events)
            self.event_bus.publish(TickCompleted(timestamp=now))

            if changed:
                logger.debug(f"Tick {self.tick_count}: {len(changed)} units updated")
            return {"tick": self.tick_count, "changed": len(changed), "timestamp": now}

    def _advance(self, record: UnitRecord, now: float, events: list) -> bool:
        """One unit's share of a tick. Returns True if the record changed."""
        target = record.target
        # A pending target is the unit leaving; the position check covers persisted data
        started = record.movement_phase.is_moving or record.has_moved()

        if not record.movement_phase.is_moving:
            logger.warning(f"{record.id} has a target but phase {record.movement_phase.value}; "
                           f"adopting {journey_phase(target.kind).value}")
            record.movement_phase = journey_phase(target.kind)

        elapsed_ms = max(0.0, (now - record.last_update) * 1000.0)
        if self.max_tick_elapsed_ms:
            elapsed_ms = min(elapsed_ms, float(self.max_tick_elapsed_ms))

        result = step(record.position, target.coordinates, self.speed_kmh, elapsed_ms)
        edges = plan_tick(record.operational_status, target.kind, started, result.arrived)
        changed = bool(edges) or result.arrived or result.position != record.position

        departure = [e for e in edges if e.trigger == Trigger.MOVEMENT_STARTED]
        for edge in departure:
            self._apply(record, edge, events)

        record.previous_position = record.position
        record.position = result.position
        record.last_update = now

        if result.arrived:
            record.target = None
            arrivals = [e for e in edges if e.trigger != Trigger.MOVEMENT_STARTED]
            for edge in arrivals:
                self._apply(record, edge, events)
            if not arrivals:
                logger.warning(f"{record.id} reached {target.kind.value} with status "
                               f"{record.operational_status.value}; no arrival transition")
            if record.movement_phase.is_moving:
                record.movement_phase = (MovementPhase.ON_SCENE
                                         if record.operational_status == OperationalStatus.ON_SCENE
                                         else MovementPhase.IDLE)
            logger.info(f"{record.id} arrived at {target.kind.value}")

        return changed

    # ===== COMMANDS =====

    def start_movement(self, unit_id: str, target: Coordinates,
                       target_kind: Union[TargetKind, str],
                       target_ref_id: Optional[Union[str, int]] = None) -> dict:
        """Send a unit toward an incident or a station.

        An incident target assigns an unbound unit first. A station target is
        only accepted for released or returning units.
        """
        with self._lock:
            now = self.clock()
            key = normalize_unit_id(unit_id)
            try:
                kind = TargetKind(target_kind) if not isinstance(target_kind, TargetKind) else target_kind
            except ValueError:
                return self._reject(key, f"unknown target kind {target_kind!r}")
            if not key:
                return self._reject(unit_id, "empty unit id")
            if not target.is_valid():
                return self._reject(key, f"invalid target coordinates {target.to_dict()}")
            ref_id = str(target_ref_id).strip() if target_ref_id is not None else ""
            if kind == TargetKind.INCIDENT and not ref_id:
                return self._reject(key, "incident target needs an incident id")

            record = self._get_or_create(key, now)
            if record is None:
                return self._reject(key, "no home station could be resolved")

            ref_id = ref_id or None
            events: list = []
            status = record.operational_status

            if kind == TargetKind.INCIDENT:
                if status.bound_to_incident:
                    if record.active_incident_id != ref_id:
                        return self._reject(key, f"already bound to incident {record.active_incident_id}")
                    if status in (OperationalStatus.ON_SCENE, OperationalStatus.RELEASED):
                        return self._noop(key, f"already {status.label.lower()} at incident {ref_id}")
                    if record.target is not None and record.target.coordinates == target:
                        return self._noop(key, f"already moving to incident {ref_id}")
                else:
                    self._apply(record, transition(status, Trigger.ASSIGN), events, incident_id=ref_id)
            else:
                if status == OperationalStatus.AT_STATION and is_already_there(record.position, target):
                    return self._noop(key, "already at station")
                if status not in (OperationalStatus.RELEASED, OperationalStatus.AVAILABLE):
                    return self._reject(key, f"cannot drive to a station with status {status.value}")
                if record.target is not None and record.target.coordinates == target:
                    return self._noop(key, "already returning to this station")

            message = self._begin_journey(record, target, kind, ref_id, now, events)
            self.store.save_all([record])
            self._publish(events)
            return _result("success", message, unit=record.to_dict())

    def assign_to_incident(self, unit_id: str, incident_id: Union[str, int],
                           coordinates: Optional[Coordinates] = None) -> dict:
        """Bind a unit to an incident and, if its location is known, send it there."""
        with self._lock:
            now = self.clock()
            key = normalize_unit_id(unit_id)
            incident_id = str(incident_id).strip() if incident_id is not None else ""
            if not key:
                return self._reject(unit_id, "empty unit id")
            if not incident_id:
                return self._reject(key, "empty incident id")
            record = self._get_or_create(key, now)
            if record is None:
                return self._reject(key, "no home station could be resolved")

            status = record.operational_status
            if status.bound_to_incident and record.active_incident_id != incident_id:
                return self._reject(key, f"already bound to incident {record.active_incident_id}")

            if coordinates is None:
                coordinates = self._incident_coordinates(incident_id)

            if status.bound_to_incident:
                if (status == OperationalStatus.ASSIGNED and record.target is None
                        and coordinates is not None and coordinates.is_valid()):
                    return self.start_movement(key, coordinates, TargetKind.INCIDENT, incident_id)
                return self._noop(key, f"already assigned to incident {incident_id}")

            if coordinates is not None and coordinates.is_valid():
                return self.start_movement(key, coordinates, TargetKind.INCIDENT, incident_id)

            events: list = []
            self._apply(record, transition(status, Trigger.ASSIGN), events, incident_id=incident_id)
            if record.target is not None:
                # Was returning to station; stop and wait for the incident location
                record.target = None
            record.movement_phase = MovementPhase.IDLE
            record.last_update = now
            self.store.save_all([record])
            self._publish(events)
            return _result("success", f"{key} assigned to incident {incident_id}, location unknown",
                           unit=record.to_dict())

    def release_from_incident(self, unit_id: str) -> dict:
        """Release an on-scene unit and start its trip home (deferred if no station resolves)."""
        with self._lock:
            now = self.clock()
            key = normalize_unit_id(unit_id)
            record = self.store.get(key)
            if record is None:
                return self._reject(key, "unknown unit")
            try:
                edge = transition(record.operational_status, Trigger.RELEASE)
            except InvalidTransition as e:
                return self._reject(key, str(e))

            events: list = []
            self._apply(record, edge, events)
            record.last_update = now
            message = self._start_return(record, now, events)
            self.store.save_all([record])
            self._publish(events)
            return _result("success", message, unit=record.to_dict(),
                           return_deferred=record.target is None and
                           record.operational_status == OperationalStatus.RELEASED)

    def return_to_station(self, unit_id: str) -> dict:
        """Start (or retry) the trip home for a released unit that has no target yet."""
        with self._lock:
            now = self.clock()
            key = normalize_unit_id(unit_id)
            record = self.store.get(key)
            if record is None:
                return self._reject(key, "unknown unit")
            if record.operational_status != OperationalStatus.RELEASED:
                return self._reject(key, f"not released (status {record.operational_status.value})")
            if record.target is not None:
                return self._noop(key, "return trip already under way")

            events: list = []
            message = self._start_return(record, now, events)
            if record.target is None and record.operational_status == OperationalStatus.RELEASED:
                return _result("error", message, unit=record.to_dict(), return_deferred=True)
            self.store.save_all([record])
            self._publish(events)
            return _result("success", message, unit=record.to_dict())

    def _start_return(self, record: UnitRecord, now: float, events: list) -> str:
        station = self.resolver.resolve(record.id)
        if station is None:
            logger.warning(f"Return trip for {record.id} deferred: no station resolved")
            return f"{record.id} released, return trip deferred (no station)"
        return self._begin_journey(record, station, TargetKind.STATION, None, now, events)

    def _incident_coordinates(self, incident_id: str) -> Optional[Coordinates]:
        if self.incident_source is None:
            return None
        try:
            for incident in self.incident_source.list():
                if incident.id == incident_id:
                    return incident.coordinates
        except Exception as e:
            logger.error(f"Incident lookup failed for {incident_id}: {e}")
        return None

    def _reject(self, unit_id: str, reason: str) -> dict:
        logger.warning(f"Rejected command for {unit_id}: {reason}")
        return _result("error", reason)

    def _noop(self, unit_id: str, reason: str) -> dict:
        logger.debug(f"No-op command for {unit_id}: {reason}")
        return _result("noop", reason)

    # ===== EXERCISE CONTROL =====

    def _reset_record(self, record: UnitRecord, position: Coordinates, now: float, events: list):
        """Force a record to atStation/idle at position, dropping target and incident."""
        from_status = record.operational_status
        record.position = position
        record.previous_position = position
        record.target = None
        record.movement_phase = MovementPhase.IDLE
        record.operational_status = OperationalStatus.AT_STATION
        record.active_incident_id = None
        record.last_update = now
        if from_status != OperationalStatus.AT_STATION:
            events.append(UnitStatusChanged(
                unit_id=record.id, from_status=from_status.value,
                to_status=OperationalStatus.AT_STATION.value,
                active_incident_id=None, position=position.to_dict(),
            ))
            self._sync_status(record, from_status)

    def _finish_reset(self, reset: List[UnitRecord], events: list):
        if reset:
            self.store.save_all(reset)
            events.append(UnitPositionsUpdated(records=[r.to_dict() for r in reset]))
        self._publish(events)

    def reset_all_to_station(self) -> dict:
        """Put every known unit back at its station, bypassing the journey statuses."""
        with self._lock:
            now = self.clock()
            events: list = []
            reset: List[UnitRecord] = []
            failed: List[str] = []

            for record in self.store.all():
                station = self.resolver.resolve(record.id)
                if station is None:
                    failed.append(record.id)
                    continue
                self._reset_record(record, station, now, events)
                reset.append(record)

            self._finish_reset(reset, events)
            logger.info(f"Exercise reset: {len(reset)} units at station"
                        + (f", {len(failed)} without station: {', '.join(failed)}" if failed else ""))
            return _result("success", f"{len(reset)} units reset to station",
                           reset=len(reset), failed=failed)

    def reset_all_statuses(self) -> dict:
        """Set every known unit to atStation where it stands; journeys in progress stop."""
        with self._lock:
            now = self.clock()
            events: list = []
            reset = self.store.all()
            for record in reset:
                self._reset_record(record, record.position, now, events)

            self._finish_reset(reset, events)
            logger.info(f"Exercise reset: {len(reset)} units set to kz in place")
            return _result("success", f"{len(reset)} units set to at station",
                           reset=len(reset), failed=[])

    # ===== QUERIES =====

    def get_unit(self, unit_id: str) -> Optional[dict]:
        record = self.store.get(unit_id)
        return record.to_dict() if record else None

    def get_units(self) -> List[dict]:
        return [r.to_dict() for r in sorted(self.store.all(), key=lambda r: r.id)]

    def moving_units(self) -> List[UnitRecord]:
        return [r for r in self.store.all() if r.target is not None]

    def is_unit_available(self, unit_id: str) -> bool:
        """Unknown units count as available; known ones when unbound or at bs/kz."""
        record = self.store.get(unit_id)
        if record is None:
            return True
        return (record.active_incident_id is None or
                record.operational_status.available_for_new_incident)

    # ===== LOOP =====

    async def run_forever(self, is_running: Callable[[], bool] = lambda: True):
        """Tick every tick_interval_ms until cancelled. Ticks never overlap."""
        interval = self.tick_interval_ms / 1000.0
        logger.info(f"Movement loop started (every {self.tick_interval_ms} ms, {self.speed_kmh} km/h)")
        while is_running():
            try:
                self.tick()
                await asyncio.sleep(interval)
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Error in movement tick: {e}")
                await asyncio.sleep(interval)
        logger.info("Movement loop stopped")
