"""Tests for the assignment watcher."""
import asyncio

import pytest

from events import ALL_EVENTS, EventBus
from geo import Coordinates
from movement import MovementScheduler
from position_store import PositionStore
from sources import Incident, StaticIncidentSource, StaticStationSource
from stations import Station, StationResolver
from units import MovementPhase, OperationalStatus, TargetKind, UnitRecord
from watcher import AssignmentWatcher


STATION = Coordinates(52.0, 4.4)
INCIDENT = Coordinates(52.05, 4.45)
HOME = Station("s1", "Kazerne A", STATION.lat, STATION.lng)


@pytest.fixture
def bus():
    return EventBus()


@pytest.fixture
def stations():
    return StaticStationSource([HOME])


@pytest.fixture
def incidents():
    return StaticIncidentSource()


@pytest.fixture
def scheduler(bus, stations):
    return MovementScheduler(PositionStore(), StationResolver(stations), bus, clock=lambda: 1000.0)


@pytest.fixture
def watcher(scheduler, incidents):
    return AssignmentWatcher(scheduler, incidents, interval_ms=10)


def on_scene(unit_id="u1", incident_id="inc-1", position=INCIDENT) -> UnitRecord:
    return UnitRecord(id=unit_id, position=position, movement_phase=MovementPhase.ON_SCENE,
                      operational_status=OperationalStatus.ON_SCENE, active_incident_id=incident_id)


class TestNewAssignments:
    """Tests for turning feed assignments into movement."""

    def test_new_pair_starts_movement(self, watcher, scheduler, incidents):
        incidents.replace([Incident("inc-1", INCIDENT, ["17 0232"])])

        result = watcher.poll()

        assert result["status"] == "success"
        assert result["assigned"] == 1
        record = scheduler.store.get("17-0232")
        assert record.operational_status == OperationalStatus.ASSIGNED
        assert record.target.kind == TargetKind.INCIDENT
        assert ("inc-1", "17-0232") in watcher.processed

    def test_second_pass_is_quiet(self, watcher, incidents, bus):
        received = []
        bus.subscribe(ALL_EVENTS, received.append)
        incidents.replace([Incident("inc-1", INCIDENT, ["u1"])])
        watcher.poll()
        count = len(received)

        result = watcher.poll()

        assert result["assigned"] == 0
        assert len(received) == count

    def test_removed_pair_is_forgotten(self, watcher, incidents):
        incidents.replace([Incident("inc-1", INCIDENT, ["u1"])])
        watcher.poll()

        incidents.replace([Incident("inc-1", INCIDENT, [])])
        watcher.poll()

        assert watcher.processed == set()

    def test_closed_incident_starts_nothing(self, watcher, scheduler, incidents):
        incidents.replace([Incident("inc-1", INCIDENT, ["u1"], closed=True)])
        watcher.poll()

        assert scheduler.store.get("u1") is None
        assert watcher.processed == set()

    def test_unit_bound_elsewhere_is_recorded(self, watcher, scheduler, incidents):
        scheduler.assign_to_incident("u1", "inc-1", INCIDENT)
        incidents.replace([Incident("inc-2", Coordinates(52.1, 4.5), ["u1"])])

        result = watcher.poll()

        assert result["assigned"] == 0
        assert ("inc-2", "u1") in watcher.processed
        assert scheduler.store.get("u1").active_incident_id == "inc-1"

    def test_location_arrives_later(self, watcher, scheduler, incidents):
        incidents.replace([Incident("inc-1", None, ["u1"])])
        watcher.poll()
        record = scheduler.store.get("u1")
        assert record.operational_status == OperationalStatus.ASSIGNED
        assert record.target is None

        incidents.replace([Incident("inc-1", INCIDENT, ["u1"])])
        result = watcher.poll()

        assert result["started"] == 1
        assert scheduler.store.get("u1").target.coordinates == INCIDENT


class TestClosedIncidents:
    """Tests for release on incident closure."""

    def test_release_on_close(self, watcher, scheduler, incidents):
        scheduler.store.set("u1", on_scene())
        incidents.replace([Incident("inc-1", INCIDENT, ["u1"], closed=True)])

        result = watcher.poll()

        assert result["released"] == 1
        record = scheduler.store.get("u1")
        assert record.operational_status == OperationalStatus.RELEASED
        assert record.target.kind == TargetKind.STATION

    def test_open_incident_keeps_unit(self, watcher, scheduler, incidents):
        scheduler.store.set("u1", on_scene())
        incidents.replace([Incident("inc-1", INCIDENT, ["u1"])])

        watcher.poll()

        assert scheduler.store.get("u1").operational_status == OperationalStatus.ON_SCENE

    def test_release_when_incident_leaves_feed(self, watcher, scheduler, incidents):
        scheduler.store.set("u1", on_scene())
        incidents.replace([Incident("inc-2", INCIDENT, ["u2"])])

        result = watcher.poll()

        assert result["released"] == 1
        record = scheduler.store.get("u1")
        assert record.operational_status == OperationalStatus.RELEASED
        assert record.target.kind == TargetKind.STATION

    def test_failed_feed_read_releases_nothing(self, scheduler):
        class Broken:
            def list(self):
                raise OSError("feed down")

        scheduler.store.set("u1", on_scene())
        watcher = AssignmentWatcher(scheduler, Broken())

        result = watcher.poll()

        assert result["status"] == "error"
        assert scheduler.store.get("u1").operational_status == OperationalStatus.ON_SCENE

    def test_deferred_return_retried(self, bus, incidents):
        stations = StaticStationSource([Station("s0", "Kazerne Nergens", 0.0, 0.0)])
        scheduler = MovementScheduler(PositionStore(), StationResolver(stations), bus, clock=lambda: 1000.0)
        watcher = AssignmentWatcher(scheduler, incidents)
        scheduler.store.set("u1", on_scene())
        incidents.replace([Incident("inc-1", INCIDENT, ["u1"], closed=True)])

        watcher.poll()
        record = scheduler.store.get("u1")
        assert record.operational_status == OperationalStatus.RELEASED
        assert record.target is None

        result = watcher.poll()
        assert result["returning"] == 0

        stations.add(HOME)
        result = watcher.poll()

        assert result["returning"] == 1
        assert scheduler.store.get("u1").target.coordinates == STATION


class TestFeedFailure:
    """Tests for a lost incident feed."""

    def test_failing_feed(self, scheduler):
        class Broken:
            def list(self):
                raise OSError("feed down")

        scheduler.assign_to_incident("u1", "inc-1", INCIDENT)
        before = scheduler.store.get("u1")
        watcher = AssignmentWatcher(scheduler, Broken())

        result = watcher.poll()

        assert result["status"] == "error"
        assert "feed down" in watcher.last_error
        assert scheduler.store.get("u1") == before

    def test_recovers_next_pass(self, scheduler, incidents):
        class Flaky:
            calls = 0

            def list(self):
                Flaky.calls += 1
                if Flaky.calls == 1:
                    raise OSError("feed down")
                return [Incident("inc-1", INCIDENT, ["u1"])]

        watcher = AssignmentWatcher(scheduler, Flaky())
        assert watcher.poll()["status"] == "error"
        assert watcher.poll()["assigned"] == 1
        assert watcher.last_error is None


class TestWatcherLoop:
    """Tests for the periodic poll loop."""

    @pytest.mark.asyncio
    async def test_loop_polls_until_cancelled(self, watcher, incidents):
        incidents.replace([Incident("inc-1", INCIDENT, ["u1"])])

        task = asyncio.create_task(watcher.run_forever())
        await asyncio.sleep(0.05)
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

        assert watcher.poll_count >= 1
        assert ("inc-1", "u1") in watcher.processed

    @pytest.mark.asyncio
    async def test_loop_stops_when_flag_clears(self, watcher):
        running = {"value": True}
        task = asyncio.create_task(watcher.run_forever(lambda: running["value"]))
        await asyncio.sleep(0.03)
        running["value"] = False
        await asyncio.wait_for(task, timeout=1.0)

        assert task.done()
