"""
Simulation Manager - wires the unit movement engine together and owns its loops.

Two cancellable asyncio tasks run while the simulation is started:
- the movement tick loop (MovementScheduler, every tick_interval_ms)
- the assignment watcher loop (AssignmentWatcher, every watcher_interval_ms)
Stopping cancels both and flushes the position store; completed ticks stay.
"""

import asyncio
import threading
import time
from datetime import datetime
from typing import Callable, List, Optional

from config import Settings, get_settings
from events import EventBus
from logger import setup_logger
from movement import MovementScheduler, StatusSync
from position_store import PositionStore
from sources import JsonIncidentSource, JsonStationSource, JsonUnitProfileSource
from stations import StationResolver
from watcher import AssignmentWatcher

logger = setup_logger("simulation")


class SimulationManager:
    """Composition root - singleton for the API, constructible directly for tests."""

    _instance = None
    _lock = threading.Lock()

    @classmethod
    def get_instance(cls) -> "SimulationManager":
        with cls._lock:
            if cls._instance is None:
                cls._instance = cls()
            return cls._instance

    @classmethod
    def reset_instance(cls):
        """Drop the singleton (tests, settings reload). Loops must be stopped first."""
        with cls._lock:
            cls._instance = None

    def __init__(self,
                 settings: Optional[Settings] = None,
                 store: Optional[PositionStore] = None,
                 incident_source=None,
                 station_source=None,
                 profile_source=None,
                 event_bus: Optional[EventBus] = None,
                 status_sync: Optional[StatusSync] = None,
                 clock: Callable[[], float] = time.time):
        self.settings = settings or get_settings()
        s = self.settings

        if store is None:
            # Load existing state
            store = PositionStore(s.positions_file)
            store.load_all()
        self.store = store
        self.incident_source = incident_source or JsonIncidentSource(s.incidents_file)
        self.station_source = station_source or JsonStationSource(s.stations_file)
        self.profile_source = profile_source or JsonUnitProfileSource(s.unit_profiles_file)
        self.event_bus = event_bus or EventBus()
        self.resolver = StationResolver(self.station_source, self.profile_source)

        self.scheduler = MovementScheduler(
            self.store, self.resolver, self.event_bus,
            speed_kmh=s.speed_kmh,
            tick_interval_ms=s.tick_interval_ms,
            max_tick_elapsed_ms=s.max_tick_elapsed_ms,
            incident_source=self.incident_source,
            status_sync=status_sync,
            clock=clock,
        )
        self.watcher = AssignmentWatcher(self.scheduler, self.incident_source,
                                         interval_ms=s.watcher_interval_ms)

        self.is_running = False
        self.started_at: Optional[str] = None
        self._tick_task: Optional[asyncio.Task] = None
        self._watcher_task: Optional[asyncio.Task] = None

    # ===== LIFECYCLE =====

    async def start(self) -> dict:
        """Start the tick and watcher loops."""
        if self.is_running:
            return {"status": "error", "message": "Simulation already running"}

        self.is_running = True
        self.started_at = datetime.now().isoformat()

        # Pick up assignments made while stopped before the first tick
        self.watcher.poll()

        self._tick_task = asyncio.create_task(
            self.scheduler.run_forever(lambda: self.is_running))
        self._watcher_task = asyncio.create_task(
            self.watcher.run_forever(lambda: self.is_running))

        logger.info("Simulation started")
        return {"status": "success", "message": "Simulation started", "started_at": self.started_at}

    async def stop(self) -> dict:
        """Cancel both loops and flush the store."""
        if not self.is_running:
            return {"status": "error", "message": "Simulation not running"}

        self.is_running = False
        for task in (self._tick_task, self._watcher_task):
            if task:
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._tick_task = None
        self._watcher_task = None

        self.store.flush()
        logger.info(f"Simulation stopped after {self.scheduler.tick_count} ticks")
        return {"status": "success", "message": "Simulation stopped",
                "tick_count": self.scheduler.tick_count}

    def get_status(self) -> dict:
        """Get current simulation status."""
        return {
            "status": "success",
            "is_running": self.is_running,
            "started_at": self.started_at,
            "tick_count": self.scheduler.tick_count,
            "last_tick_at": self.scheduler.last_tick_at,
            "poll_count": self.watcher.poll_count,
            "feed_error": self.watcher.last_error,
            "unit_count": len(self.store),
            "moving_count": len(self.scheduler.moving_units()),
            "speed_kmh": self.scheduler.speed_kmh,
            "tick_interval_ms": self.scheduler.tick_interval_ms,
            "watcher_interval_ms": self.watcher.interval_ms,
        }

    # ===== MANUAL CONTROL =====

    def tick_once(self) -> dict:
        result = self.scheduler.tick()
        return {"status": "success", **result}

    def poll_once(self) -> dict:
        return self.watcher.poll()

    def save_state(self) -> dict:
        """Manually flush unit positions to disk."""
        self.store.flush()
        return {"status": "success", "message": "State saved", "unit_count": len(self.store)}

    def get_events(self, limit: int = 100, event_name: Optional[str] = None) -> List[dict]:
        return self.event_bus.recent(limit, event_name)


# Module-level functions for API access

async def start_simulation() -> dict:
    """Start the simulation loops."""
    manager = SimulationManager.get_instance()
    return await manager.start()


async def stop_simulation() -> dict:
    """Stop the simulation loops."""
    manager = SimulationManager.get_instance()
    return await manager.stop()


def get_status() -> dict:
    """Get simulation status."""
    manager = SimulationManager.get_instance()
    return manager.get_status()


def get_events(limit: int = 100, event_name: Optional[str] = None) -> List[dict]:
    """Get recently published engine events."""
    manager = SimulationManager.get_instance()
    return manager.get_events(limit, event_name)


def save_state() -> dict:
    """Manually save unit positions."""
    manager = SimulationManager.get_instance()
    return manager.save_state()
