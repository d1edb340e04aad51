"""
Position Store - durable mapping from unit id to its last known record.

Readers always get their own copy of a record, and writers replace a
record as a whole, so a reader never sees a half-applied update.
"""

import json
import os
import threading
from pathlib import Path
from typing import Dict, Iterable, List, Optional

from logger import setup_logger
from units import UnitRecord, normalize_unit_id

logger = setup_logger("position_store")


class PositionStore:
    """Thread-safe key-value store of UnitRecords with optional JSON persistence."""

    def __init__(self, path: Optional[Path] = None):
        self.path = Path(path) if path else None
        self._lock = threading.Lock()
        self._records: Dict[str, UnitRecord] = {}

    # ===== READS =====

    def get(self, unit_id: str) -> Optional[UnitRecord]:
        """Get a copy of a unit's record, or None if the unit is unknown."""
        key = normalize_unit_id(unit_id)
        with self._lock:
            record = self._records.get(key)
            return record.copy() if record else None

    def all(self) -> List[UnitRecord]:
        """Copies of all records."""
        with self._lock:
            return [r.copy() for r in self._records.values()]

    def __contains__(self, unit_id: str) -> bool:
        with self._lock:
            return normalize_unit_id(unit_id) in self._records

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    # ===== WRITES =====

    def set(self, unit_id: str, record: UnitRecord):
        """Replace a unit's record in memory (not flushed)."""
        key = normalize_unit_id(unit_id)
        with self._lock:
            self._records[key] = record.copy()

    def save_all(self, records: Iterable[UnitRecord]):
        """Replace the given records in one batch and flush to disk."""
        with self._lock:
            for record in records:
                self._records[normalize_unit_id(record.id)] = record.copy()
            self._flush()

    def flush(self):
        """Public flush (acquires lock)."""
        with self._lock:
            self._flush()

    # ===== PERSISTENCE =====

    def load_all(self) -> List[UnitRecord]:
        """Load records from disk, replacing memory. Bad or missing data means an empty store."""
        records = self._read_file()
        with self._lock:
            self._records = {r.id: r for r in records}
        logger.info(f"Loaded {len(records)} unit records")
        return [r.copy() for r in records]

    def _read_file(self) -> List[UnitRecord]:
        if self.path is None or not self.path.exists():
            return []
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            logger.warning(f"Unreadable position state at {self.path}, starting empty: {e}")
            return []

        if not isinstance(data, dict):
            logger.warning(f"Position state at {self.path} is not a mapping, starting empty")
            return []

        records = []
        for unit_id, raw in data.items():
            try:
                raw = dict(raw)
                raw.setdefault("id", unit_id)
                records.append(UnitRecord.from_dict(raw))
            except (AttributeError, KeyError, TypeError, ValueError) as e:
                logger.warning(f"Skipping malformed record for {unit_id}: {e}")
        return records

    def _flush(self):
        """Write all records (must be called with lock held)."""
        if self.path is None:
            return
        data = {unit_id: record.to_dict() for unit_id, record in self._records.items()}
        tmp_path = self.path.with_name(self.path.name + ".tmp")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(tmp_path, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2, ensure_ascii=False)
            os.replace(tmp_path, self.path)
            logger.debug(f"Flushed {len(data)} unit records to {self.path}")
        except OSError as e:
            logger.error(f"Error saving unit positions: {e}")
