import json
import logging
import os
import threading
from dataclasses import replace
from datetime import datetime
from typing import Dict, Iterable, List, Optional

from megalist.domain.entities import Megalist
from megalist.domain.ports import MegalistRepository

logger = logging.getLogger(__name__)


def _stamp(record: Megalist, existing: Optional[Megalist]) -> Megalist:
    now = datetime.now()
    created_at = existing.created_at if existing and existing.created_at else record.created_at or now
    return replace(record, created_at=created_at, updated_at=now)


class InMemoryMegalistRepository(MegalistRepository):
    """Registry kept in process memory. Used for tests and one-off runs."""

    def __init__(self, records: Optional[Iterable[Megalist]] = None):
        self._records: Dict[str, Megalist] = {}
        self._lock = threading.Lock()
        for record in records or []:
            self.upsert(record)

    def upsert(self, record: Megalist) -> Megalist:
        record.validate()
        with self._lock:
            stored = _stamp(record, self._records.get(record.id))
            self._records[record.id] = stored
        return replace(stored)

    def find_by_id(self, playlist_id: str) -> Optional[Megalist]:
        with self._lock:
            record = self._records.get(playlist_id)
        return replace(record) if record else None

    def find_many_by_ids(self, playlist_ids: Iterable[str]) -> List[Megalist]:
        with self._lock:
            return [replace(self._records[pid]) for pid in playlist_ids if pid in self._records]

    def find_many_by_owner(self, owner_id: str) -> List[Megalist]:
        with self._lock:
            return [replace(r) for r in self._records.values() if r.owner_id == owner_id]

    def delete_by_ids(self, playlist_ids: Iterable[str]) -> int:
        deleted = 0
        with self._lock:
            for pid in playlist_ids:
                if self._records.pop(pid, None) is not None:
                    deleted += 1
        return deleted


class JsonMegalistRepository(MegalistRepository):
    """Registry persisted as a single JSON document.

    Every write rewrites the file through a temporary file and ``os.replace``
    so a crash never leaves a half-written registry behind.
    """

    def __init__(self, path: str):
        """Initialize JSON registry.

        Args:
            path: Location of the registry file; parent directories are created
        """
        self.path = path
        directory = os.path.dirname(os.path.abspath(path))
        os.makedirs(directory, exist_ok=True)
        self._lock = threading.Lock()

    def _load(self) -> Dict[str, Megalist]:
        if not os.path.exists(self.path):
            return {}
        with open(self.path, 'r') as f:
            data = json.load(f)
        return {item['id']: Megalist.from_json(item) for item in data.get('megalists', [])}

    def _save(self, records: Dict[str, Megalist]) -> None:
        payload = {'megalists': [r.to_json() for r in records.values()]}
        tmp_path = f"{self.path}.tmp"
        try:
            with open(tmp_path, 'w') as f:
                json.dump(payload, f, indent=2, ensure_ascii=False)
            os.replace(tmp_path, self.path)
        except Exception as e:
            logger.error(f"Failed to save megalist registry {self.path}: {e}")
            raise

    def upsert(self, record: Megalist) -> Megalist:
        record.validate()
        with self._lock:
            records = self._load()
            stored = _stamp(record, records.get(record.id))
            records[record.id] = stored
            self._save(records)
        logger.debug(f"Saved megalist {record.id} ({record.kind.value})")
        return replace(stored)

    def find_by_id(self, playlist_id: str) -> Optional[Megalist]:
        with self._lock:
            return self._load().get(playlist_id)

    def find_many_by_ids(self, playlist_ids: Iterable[str]) -> List[Megalist]:
        with self._lock:
            records = self._load()
        return [records[pid] for pid in playlist_ids if pid in records]

    def find_many_by_owner(self, owner_id: str) -> List[Megalist]:
        with self._lock:
            records = self._load()
        return [r for r in records.values() if r.owner_id == owner_id]

    def delete_by_ids(self, playlist_ids: Iterable[str]) -> int:
        with self._lock:
            records = self._load()
            deleted = 0
            for pid in playlist_ids:
                if records.pop(pid, None) is not None:
                    deleted += 1
            if deleted:
                self._save(records)
        logger.debug(f"Deleted {deleted} megalist record(s)")
        return deleted
