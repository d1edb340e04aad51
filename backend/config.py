"""Runtime settings for the unit movement simulator.

Values come from the environment; a ``.env`` file next to the working
directory is loaded first so local overrides do not need to be exported.
"""
import os
from dataclasses import dataclass, asdict
from functools import lru_cache
from pathlib import Path
from typing import Callable

from dotenv import load_dotenv

from logger import setup_logger

load_dotenv()

logger = setup_logger("config")

BASE_DIR = Path(__file__).parent.parent
DEFAULT_DATA_DIR = BASE_DIR / "data"

DEFAULT_SPEED_KMH = 80.0
DEFAULT_TICK_INTERVAL_MS = 100
DEFAULT_WATCHER_INTERVAL_MS = 2000
DEFAULT_MAX_TICK_ELAPSED_MS = 1000


@dataclass
class Settings:
    """Tunable parameters for the scheduler, watcher and file-backed sources."""
    speed_kmh: float = DEFAULT_SPEED_KMH
    tick_interval_ms: int = DEFAULT_TICK_INTERVAL_MS
    watcher_interval_ms: int = DEFAULT_WATCHER_INTERVAL_MS
    max_tick_elapsed_ms: int = DEFAULT_MAX_TICK_ELAPSED_MS
    data_dir: Path = DEFAULT_DATA_DIR
    positions_file: Path = DEFAULT_DATA_DIR / "unit_positions.json"
    incidents_file: Path = DEFAULT_DATA_DIR / "incidents.json"
    stations_file: Path = DEFAULT_DATA_DIR / "stations.json"
    unit_profiles_file: Path = DEFAULT_DATA_DIR / "unit_profiles.json"

    def to_dict(self) -> dict:
        result = asdict(self)
        for key, value in result.items():
            if isinstance(value, Path):
                result[key] = str(value)
        return result


def _positive_env(name: str, default, cast: Callable):
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = cast(raw)
    except ValueError:
        logger.warning(f"Ignoring {name}={raw!r}: not a number, using {default}")
        return default
    if value <= 0:
        logger.warning(f"Ignoring {name}={raw!r}: must be positive, using {default}")
        return default
    return value


def _path_env(name: str, default: Path) -> Path:
    raw = os.getenv(name)
    return Path(raw) if raw else default


def load_settings() -> Settings:
    """Build settings from the current environment."""
    data_dir = _path_env("UNITSIM_DATA_DIR", DEFAULT_DATA_DIR)
    return Settings(
        speed_kmh=_positive_env("UNITSIM_SPEED_KMH", DEFAULT_SPEED_KMH, float),
        tick_interval_ms=_positive_env("UNITSIM_TICK_INTERVAL_MS", DEFAULT_TICK_INTERVAL_MS, int),
        watcher_interval_ms=_positive_env("UNITSIM_WATCHER_INTERVAL_MS", DEFAULT_WATCHER_INTERVAL_MS, int),
        max_tick_elapsed_ms=_positive_env("UNITSIM_MAX_TICK_ELAPSED_MS", DEFAULT_MAX_TICK_ELAPSED_MS, int),
        data_dir=data_dir,
        positions_file=_path_env("UNITSIM_POSITIONS_FILE", data_dir / "unit_positions.json"),
        incidents_file=_path_env("UNITSIM_INCIDENTS_FILE", data_dir / "incidents.json"),
        stations_file=_path_env("UNITSIM_STATIONS_FILE", data_dir / "stations.json"),
        unit_profiles_file=_path_env("UNITSIM_UNIT_PROFILES_FILE", data_dir / "unit_profiles.json"),
    )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    settings = load_settings()
    logger.debug(f"Loaded settings: {settings.to_dict()}")
    return settings
