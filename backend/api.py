"""FastAPI server for the unit movement simulator."""
import re
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, field_validator

from geo import Coordinates
from logger import setup_logger
from units import TargetKind, normalize_unit_id

logger = setup_logger("api")


# === Centralized Error Handling ===

class APIError(Exception):
    """Base API error with status code and message."""
    def __init__(self, message: str, status_code: int = 400):
        self.message = message
        self.status_code = status_code
        super().__init__(message)


class NotFoundError(APIError):
    """Resource not found error."""
    def __init__(self, message: str = "Resource not found"):
        super().__init__(message, status_code=404)


class ValidationError(APIError):
    """Input validation error."""
    def __init__(self, message: str = "Invalid input"):
        super().__init__(message, status_code=422)


class ConflictError(APIError):
    """Command not allowed in the unit's current status."""
    def __init__(self, message: str = "Conflict"):
        super().__init__(message, status_code=409)


# Call signs: digits, letters, hyphens and spaces, 1-32 chars
UNIT_ID_PATTERN = re.compile(r'^[a-zA-Z0-9 _-]{1,32}$')


def validate_unit_id(unit_id: str) -> str:
    """Validate and normalize a unit call sign. Raises ValidationError if invalid."""
    if not unit_id or not UNIT_ID_PATTERN.match(unit_id) or not unit_id.strip():
        raise ValidationError("Invalid unit_id: must be 1-32 letters, digits, spaces or hyphens")
    return normalize_unit_id(unit_id)


def command_response(result: dict) -> dict:
    """Turn an engine command result into a response, rejected commands become 409."""
    if result.get("status") == "error":
        raise ConflictError(result.get("message", "Command rejected"))
    return result


# Create FastAPI app
api = FastAPI(title="Unit Movement Simulator API", version="1.0.0")

# Enable CORS for the map and status board frontends
api.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# === Global Exception Handler ===

@api.exception_handler(APIError)
async def api_error_handler(request: Request, exc: APIError):
    """Handle all APIError subclasses with consistent JSON response."""
    return JSONResponse(
        status_code=exc.status_code,
        content={"status": "error", "message": exc.message}
    )


@api.exception_handler(Exception)
async def general_error_handler(request: Request, exc: Exception):
    """Handle unexpected errors with consistent JSON response."""
    logger.error(f"Unhandled error on {request.url.path}: {exc}")
    return JSONResponse(
        status_code=500,
        content={"status": "error", "message": "Internal server error"}
    )


# Pydantic models for request/response
class AssignRequest(BaseModel):
    incident_id: str
    lat: Optional[float] = None
    lng: Optional[float] = None

    @field_validator('incident_id')
    @classmethod
    def validate_incident_id(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError('incident_id must not be empty')
        return v.strip()


class MoveRequest(BaseModel):
    lat: float
    lng: float
    kind: str = TargetKind.INCIDENT.value
    ref_id: Optional[str] = None

    @field_validator('kind')
    @classmethod
    def validate_kind(cls, v: str) -> str:
        if v not in {k.value for k in TargetKind}:
            raise ValueError(f'kind must be one of {[k.value for k in TargetKind]}')
        return v


def _coordinates(lat: Optional[float], lng: Optional[float]) -> Optional[Coordinates]:
    if lat is None and lng is None:
        return None
    if lat is None or lng is None:
        raise ValidationError("lat and lng must be given together")
    coords = Coordinates(lat=lat, lng=lng)
    if not coords.is_valid():
        raise ValidationError(f"Invalid coordinates: {lat}, {lng}")
    return coords


# Routes

@api.get("/api/health")
def health():
    """API health check."""
    return {"status": "ok", "message": "Unit Movement Simulator API"}


# =============================================================================
# UNIT ENDPOINTS
# =============================================================================

@api.get("/units")
def list_units():
    """Get all known unit records."""
    import simulation
    manager = simulation.SimulationManager.get_instance()
    units = manager.scheduler.get_units()
    return {"status": "success", "count": len(units), "units": units}


@api.post("/units/reset")
def reset_units():
    """Put every unit back at its station (exercise restart)."""
    import simulation
    manager = simulation.SimulationManager.get_instance()
    return command_response(manager.scheduler.reset_all_to_station())


@api.post("/units/reset-status")
def reset_unit_statuses():
    """Set every unit to at-station where it stands, without moving it."""
    import simulation
    manager = simulation.SimulationManager.get_instance()
    return command_response(manager.scheduler.reset_all_statuses())


@api.get("/units/{unit_id}")
def get_unit(unit_id: str):
    """Get a single unit record."""
    unit_id = validate_unit_id(unit_id)
    import simulation
    manager = simulation.SimulationManager.get_instance()
    unit = manager.scheduler.get_unit(unit_id)
    if unit is None:
        raise NotFoundError(f"Unit {unit_id} not found")
    return {"status": "success", "unit": unit}


@api.get("/units/{unit_id}/availability")
def get_unit_availability(unit_id: str):
    """Can this unit take a new incident?"""
    unit_id = validate_unit_id(unit_id)
    import simulation
    manager = simulation.SimulationManager.get_instance()
    return {
        "status": "success",
        "unit_id": unit_id,
        "available": manager.scheduler.is_unit_available(unit_id),
    }


@api.post("/units/{unit_id}/assign")
def assign_unit(unit_id: str, request: AssignRequest):
    """Assign a unit to an incident, optionally with the incident location."""
    unit_id = validate_unit_id(unit_id)
    coords = _coordinates(request.lat, request.lng)
    import simulation
    manager = simulation.SimulationManager.get_instance()
    return command_response(
        manager.scheduler.assign_to_incident(unit_id, request.incident_id, coords))


@api.post("/units/{unit_id}/release")
def release_unit(unit_id: str):
    """Release an on-scene unit; it heads back to its station."""
    unit_id = validate_unit_id(unit_id)
    import simulation
    manager = simulation.SimulationManager.get_instance()
    return command_response(manager.scheduler.release_from_incident(unit_id))


@api.post("/units/{unit_id}/return")
def return_unit(unit_id: str):
    """Start the trip home for a released unit that is still waiting."""
    unit_id = validate_unit_id(unit_id)
    import simulation
    manager = simulation.SimulationManager.get_instance()
    return command_response(manager.scheduler.return_to_station(unit_id))


@api.post("/units/{unit_id}/move")
def move_unit(unit_id: str, move: MoveRequest):
    """Send a unit to explicit coordinates (admin/testing)."""
    unit_id = validate_unit_id(unit_id)
    coords = _coordinates(move.lat, move.lng)
    if move.kind == TargetKind.INCIDENT.value and not (move.ref_id or "").strip():
        raise ValidationError("ref_id is required for incident targets")
    import simulation
    manager = simulation.SimulationManager.get_instance()
    return command_response(
        manager.scheduler.start_movement(unit_id, coords, move.kind, move.ref_id))


@api.get("/events")
def get_events(limit: int = 100, event: Optional[str] = None):
    """Get recently published engine events, oldest first."""
    if limit < 0:
        raise ValidationError("limit must not be negative")
    import simulation
    events = simulation.get_events(limit, event)
    return {"status": "success", "count": len(events), "events": events}


# =============================================================================
# SIMULATION ENDPOINTS
# =============================================================================

@api.post("/simulation/start")
async def start_simulation():
    """Start the tick and watcher loops."""
    import simulation
    result = await simulation.start_simulation()
    return result


@api.post("/simulation/stop")
async def stop_simulation():
    """Stop the loops and save unit positions."""
    import simulation
    result = await simulation.stop_simulation()
    return result


@api.get("/simulation/status")
def get_simulation_status():
    """Get current simulation status."""
    import simulation
    return simulation.get_status()


@api.post("/simulation/tick")
def run_single_tick():
    """Advance all moving units once (admin/testing)."""
    import simulation
    manager = simulation.SimulationManager.get_instance()
    return manager.tick_once()


@api.post("/simulation/poll")
def run_single_poll():
    """Run one assignment watcher pass (admin/testing)."""
    import simulation
    manager = simulation.SimulationManager.get_instance()
    return manager.poll_once()


@api.post("/simulation/save")
def save_simulation_state():
    """Manually save unit positions."""
    import simulation
    return simulation.save_state()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(api, host="0.0.0.0", port=8000)
