"""
Assignment Watcher - turns the external incident list into scheduler commands.

Each pass:
- new (incident, unit) pairs on open incidents -> assign_to_incident
- assigned units still waiting for a location -> start_movement once it is known
- on-scene units whose incident closed or left the feed -> release_from_incident
- released units without a target (station was unresolved) -> return_to_station

The watcher only issues commands; it never writes unit records itself.
"""

import asyncio
from typing import Callable, Dict, Optional, Set, Tuple

from config import DEFAULT_WATCHER_INTERVAL_MS
from logger import setup_logger
from movement import MovementScheduler
from sources import Incident
from units import OperationalStatus, TargetKind, normalize_unit_id

logger = setup_logger("watcher")

AssignmentKey = Tuple[str, str]


class AssignmentWatcher:
    """Polls an IncidentSource and issues idempotent commands to the scheduler."""

    def __init__(self, scheduler: MovementScheduler, incident_source,
                 interval_ms: int = DEFAULT_WATCHER_INTERVAL_MS):
        self.scheduler = scheduler
        self.incident_source = incident_source
        self.interval_ms = interval_ms
        self.poll_count = 0
        self.last_error: Optional[str] = None
        self._processed: Set[AssignmentKey] = set()

    @property
    def processed(self) -> Set[AssignmentKey]:
        return set(self._processed)

    def poll(self) -> dict:
        """Run one pass over the incident feed."""
        self.poll_count += 1
        try:
            incidents = list(self.incident_source.list())
        except Exception as e:
            # Feed lost; nothing already issued is touched, next pass retries
            self.last_error = str(e)
            logger.error(f"Incident feed unavailable: {e}")
            return {"status": "error", "message": f"Incident feed unavailable: {e}"}
        self.last_error = None

        by_id: Dict[str, Incident] = {incident.id: incident for incident in incidents}
        summary = {"assigned": 0, "started": 0, "released": 0, "returning": 0}

        self._assign_new_pairs(incidents, summary)
        self._sweep_units(by_id, summary)

        if any(summary.values()):
            logger.info(f"Watcher pass {self.poll_count}: " +
                        ", ".join(f"{k}={v}" for k, v in summary.items()))
        return {"status": "success", **summary}

    def _assign_new_pairs(self, incidents, summary: dict):
        seen: Set[AssignmentKey] = set()
        for incident in incidents:
            if incident.closed:
                continue
            for unit_id in incident.assigned_unit_ids:
                key = (incident.id, normalize_unit_id(unit_id))
                seen.add(key)
                if key in self._processed:
                    continue
                result = self.scheduler.assign_to_incident(key[1], incident.id, incident.coordinates)
                self._processed.add(key)
                if result["status"] == "success":
                    summary["assigned"] += 1
                else:
                    logger.debug(f"Assignment {key} not acted on: {result['message']}")

        dropped = self._processed - seen
        if dropped:
            logger.debug(f"Forgetting {len(dropped)} assignments no longer in the feed")
        self._processed &= seen

    def _sweep_units(self, by_id: Dict[str, Incident], summary: dict):
        for record in self.scheduler.store.all():
            status = record.operational_status
            incident = by_id.get(record.active_incident_id) if record.active_incident_id else None

            if status == OperationalStatus.ASSIGNED and record.target is None:
                if incident and not incident.closed and incident.coordinates:
                    result = self.scheduler.start_movement(
                        record.id, incident.coordinates, TargetKind.INCIDENT, incident.id)
                    if result["status"] == "success":
                        summary["started"] += 1

            elif status == OperationalStatus.ON_SCENE and (incident is None or incident.closed):
                reason = "closed" if incident is not None else "no longer in the feed"
                logger.info(f"Incident {record.active_incident_id} {reason}, releasing {record.id}")
                result = self.scheduler.release_from_incident(record.id)
                if result["status"] == "success":
                    summary["released"] += 1

            elif status == OperationalStatus.RELEASED and record.target is None:
                result = self.scheduler.return_to_station(record.id)
                if result["status"] == "success":
                    summary["returning"] += 1

    async def run_forever(self, is_running: Callable[[], bool] = lambda: True):
        """Poll every interval_ms until cancelled."""
        interval = self.interval_ms / 1000.0
        logger.info(f"Watcher loop started (every {self.interval_ms} ms)")
        while is_running():
            try:
                self.poll()
                await asyncio.sleep(interval)
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Error in watcher pass: {e}")
                await asyncio.sleep(interval)
        logger.info("Watcher loop stopped")
