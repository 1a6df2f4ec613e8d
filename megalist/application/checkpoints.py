import json
import logging
import os
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


@dataclass
class PopulationCheckpoint:
    """Progress of an initial population, saved after every confirmed batch."""

    playlist_id: str
    target_uris: List[str]
    added: int = 0
    updated_at: datetime = field(default_factory=datetime.now)

    @property
    def remaining(self) -> List[str]:
        return self.target_uris[self.added:]

    def to_json(self) -> Dict[str, Any]:
        """Serialize checkpoint to JSON."""
        return {
            "playlistId": self.playlist_id,
            "targetUris": self.target_uris,
            "added": self.added,
            "updatedAt": self.updated_at.isoformat(),
        }

    @classmethod
    def from_json(cls, data: Dict[str, Any]) -> "PopulationCheckpoint":
        """Deserialize checkpoint from JSON."""
        return cls(
            playlist_id=data["playlistId"],
            target_uris=list(data["targetUris"]),
            added=data.get("added", 0),
            updated_at=datetime.fromisoformat(data["updatedAt"]) if data.get("updatedAt") else datetime.now(),
        )


class CheckpointStore:
    """In-memory storage for population checkpoints."""

    def __init__(self):
        self._checkpoints: Dict[str, PopulationCheckpoint] = {}
        self._lock = threading.Lock()

    def save(self, checkpoint: PopulationCheckpoint) -> None:
        with self._lock:
            self._checkpoints[checkpoint.playlist_id] = checkpoint

    def load(self, playlist_id: str) -> Optional[PopulationCheckpoint]:
        with self._lock:
            return self._checkpoints.get(playlist_id)

    def delete(self, playlist_id: str) -> None:
        with self._lock:
            self._checkpoints.pop(playlist_id, None)

    def list_pending(self) -> List[PopulationCheckpoint]:
        with self._lock:
            return list(self._checkpoints.values())


class FileCheckpointStore(CheckpointStore):
    """Checkpoints persisted as one JSON file per playlist."""

    def __init__(self, checkpoint_dir: str = "checkpoints"):
        """Initialize checkpoint store.

        Args:
            checkpoint_dir: Directory to store checkpoint files
        """
        super().__init__()
        self.checkpoint_dir = checkpoint_dir
        os.makedirs(checkpoint_dir, exist_ok=True)

    def _get_checkpoint_path(self, playlist_id: str) -> str:
        return os.path.join(self.checkpoint_dir, f"population_{playlist_id}.json")

    def save(self, checkpoint: PopulationCheckpoint) -> None:
        checkpoint_path = self._get_checkpoint_path(checkpoint.playlist_id)
        try:
            with open(checkpoint_path, 'w') as f:
                json.dump(checkpoint.to_json(), f, indent=2)
            logger.debug(f"Saved checkpoint for playlist {checkpoint.playlist_id} "
                         f"at {checkpoint.added}/{len(checkpoint.target_uris)}")
        except Exception as e:
            logger.error(f"Failed to save checkpoint: {e}")
            raise

    def load(self, playlist_id: str) -> Optional[PopulationCheckpoint]:
        checkpoint_path = self._get_checkpoint_path(playlist_id)
        if not os.path.exists(checkpoint_path):
            return None
        with open(checkpoint_path, 'r') as f:
            return PopulationCheckpoint.from_json(json.load(f))

    def delete(self, playlist_id: str) -> None:
        checkpoint_path = self._get_checkpoint_path(playlist_id)
        if os.path.exists(checkpoint_path):
            os.remove(checkpoint_path)
            logger.debug(f"Deleted checkpoint for playlist {playlist_id}")

    def list_pending(self) -> List[PopulationCheckpoint]:
        checkpoints = []
        for filename in sorted(os.listdir(self.checkpoint_dir)):
            if filename.startswith("population_") and filename.endswith(".json"):
                with open(os.path.join(self.checkpoint_dir, filename), 'r') as f:
                    checkpoints.append(PopulationCheckpoint.from_json(json.load(f)))
        return checkpoints
