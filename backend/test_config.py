"""Tests for settings loading."""
from pathlib import Path

import pytest

from config import (
    DEFAULT_SPEED_KMH,
    DEFAULT_TICK_INTERVAL_MS,
    load_settings,
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ("UNITSIM_SPEED_KMH", "UNITSIM_TICK_INTERVAL_MS", "UNITSIM_DATA_DIR",
                 "UNITSIM_POSITIONS_FILE", "UNITSIM_STATIONS_FILE", "UNITSIM_MAX_TICK_ELAPSED_MS",
                 "UNITSIM_WATCHER_INTERVAL_MS"):
        monkeypatch.delenv(name, raising=False)


class TestLoadSettings:
    """Tests for environment-driven settings."""

    def test_defaults(self):
        settings = load_settings()
        assert settings.speed_kmh == 80.0
        assert settings.tick_interval_ms == 100
        assert settings.watcher_interval_ms == 2000
        assert settings.max_tick_elapsed_ms == 1000

    def test_overrides(self, monkeypatch):
        monkeypatch.setenv("UNITSIM_SPEED_KMH", "120.5")
        monkeypatch.setenv("UNITSIM_TICK_INTERVAL_MS", "250")

        settings = load_settings()
        assert settings.speed_kmh == 120.5
        assert settings.tick_interval_ms == 250

    def test_invalid_number_falls_back(self, monkeypatch):
        monkeypatch.setenv("UNITSIM_SPEED_KMH", "fast")
        assert load_settings().speed_kmh == DEFAULT_SPEED_KMH

    def test_non_positive_falls_back(self, monkeypatch):
        monkeypatch.setenv("UNITSIM_TICK_INTERVAL_MS", "0")
        assert load_settings().tick_interval_ms == DEFAULT_TICK_INTERVAL_MS

    def test_data_dir_drives_file_defaults(self, monkeypatch, tmp_path):
        monkeypatch.setenv("UNITSIM_DATA_DIR", str(tmp_path))
        settings = load_settings()
        assert settings.positions_file == tmp_path / "unit_positions.json"
        assert settings.stations_file == tmp_path / "stations.json"

    def test_explicit_file_wins(self, monkeypatch, tmp_path):
        monkeypatch.setenv("UNITSIM_POSITIONS_FILE", str(tmp_path / "elsewhere.json"))
        assert load_settings().positions_file == Path(tmp_path / "elsewhere.json")

    def test_to_dict_stringifies_paths(self):
        data = load_settings().to_dict()
        assert isinstance(data["positions_file"], str)
