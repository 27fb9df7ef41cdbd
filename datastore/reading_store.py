from __future__ import annotations
import json
from datetime import datetime
from functools import lru_cache
from pathlib import Path
from threading import Lock
from typing import List, Optional

from app.schemas import SensorReadingRecord
from models.records import NormalizedSample
from services.errors import PersistenceError
from settings import get_settings

RECENT_LIMIT = 50


class ReadingStore:
    """Append-only reading log with store-assigned identities.

    When ``persistence_path`` is set the whole log is rewritten on every append,
    together with the next identity so ids are never reused across restarts.
    """

    def __init__(self, persistence_path: Optional[Path] = None) -> None:
        self._readings: List[SensorReadingRecord] = []
        self._next_id = 1
        self.persistence_path = persistence_path
        self._lock = Lock()
        if persistence_path:
            persistence_path.parent.mkdir(parents=True, exist_ok=True)
            self._load_from_disk()

    def append(self, sample: NormalizedSample, received_at: datetime) -> SensorReadingRecord:
        with self._lock:
            record = SensorReadingRecord(
                id=self._next_id,
                generated_at=sample.generated_at,
                device_id=sample.device_id,
                temperature=sample.temperature,
                humidity=sample.humidity,
                received_at=received_at,
            )
            self._readings.append(record)
            try:
                self._persist(self._next_id + 1)
            except OSError as exc:
                self._readings.pop()
                raise PersistenceError(f"Could not write reading log: {exc}") from exc
            self._next_id += 1
            return record.model_copy()

    def recent(
        self, limit: int = RECENT_LIMIT, device_id: Optional[int] = None
    ) -> list[SensorReadingRecord]:
        """Most recently received readings first, optionally for a single device."""

        with self._lock:
            candidates = [
                item
                for item in self._readings
                if device_id is None or item.device_id == device_id
            ]
        candidates.sort(key=lambda item: (item.received_at, item.id), reverse=True)
        return [item.model_copy() for item in candidates[:limit]]

    def get(self, reading_id: int) -> Optional[SensorReadingRecord]:
        with self._lock:
            for item in self._readings:
                if item.id == reading_id:
                    return item.model_copy()
        return None

    def __len__(self) -> int:
        with self._lock:
            return len(self._readings)

    def _persist(self, next_id: int) -> None:
        if not self.persistence_path:
            return
        payload = {
            "next_id": next_id,
            "readings": [item.model_dump(mode="json") for item in self._readings],
        }
        tmp_path = self.persistence_path.with_suffix(self.persistence_path.suffix + ".tmp")
        tmp_path.write_text(json.dumps(payload, indent=2))
        tmp_path.replace(self.persistence_path)

    def _load_from_disk(self) -> None:
        if not self.persistence_path or not self.persistence_path.exists():
            return

        try:
            raw = self.persistence_path.read_text() or "{}"
            data = json.loads(raw)
        except (OSError, json.JSONDecodeError):
            data = {}

        for payload in data.get("readings", []):
            self._readings.append(SensorReadingRecord.model_validate(payload))
        highest = max((item.id for item in self._readings), default=0)
        self._next_id = max(int(data.get("next_id", 1)), highest + 1)


@lru_cache
def build_default_store(path: Optional[str] = None) -> ReadingStore:
    settings = get_settings()
    store_path = settings.store_path if path is None else path
    persistence = Path(store_path) if store_path else None
    return ReadingStore(persistence_path=persistence)
