from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from .errors import InvalidMegalistState


class PlaylistKind(str, Enum):
    """Kind of playlist managed by the app."""

    MERGED = "MERGED"
    SURPRISE = "SURPRISE"
    ADOPTED = "ADOPTED"


@dataclass
class Megalist:
    """Registry record for a derived playlist.

    The external playlist id doubles as the primary key. ``track_count`` is a
    cached value only; the playlist service stays authoritative.
    """

    id: str
    owner_id: str
    source_playlist_ids: List[str] = field(default_factory=list)
    track_count: int = 0
    kind: PlaylistKind = PlaylistKind.MERGED
    is_frozen: bool = False
    is_isolated: bool = False
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def __post_init__(self):
        # Keep source order, drop repeats
        seen = set()
        unique = []
        for source_id in self.source_playlist_ids:
            if source_id not in seen:
                seen.add(source_id)
                unique.append(source_id)
        self.source_playlist_ids = unique
        if not isinstance(self.kind, PlaylistKind):
            self.kind = PlaylistKind(self.kind)

    @property
    def is_syncable(self) -> bool:
        """Only unfrozen merged megalists take part in reconciliation."""
        return self.kind == PlaylistKind.MERGED and not self.is_frozen

    def validate(self) -> None:
        """Raise InvalidMegalistState if the record combines illegal flags."""
        if not self.id:
            raise InvalidMegalistState("Megalist id is required")
        if not self.owner_id:
            raise InvalidMegalistState(f"Megalist {self.id} has no owner")
        if self.id in self.source_playlist_ids and self.kind != PlaylistKind.ADOPTED:
            raise InvalidMegalistState(
                f"Megalist {self.id} lists itself as a source but is {self.kind.value}"
            )
        if self.kind == PlaylistKind.SURPRISE and self.is_frozen:
            raise InvalidMegalistState(f"Surprise mix {self.id} cannot be frozen")
        if self.track_count < 0:
            raise InvalidMegalistState(f"Megalist {self.id} has a negative track count")

    def to_json(self) -> Dict[str, Any]:
        """Serialize record to JSON."""
        return {
            "id": self.id,
            "ownerId": self.owner_id,
            "sourcePlaylistIds": list(self.source_playlist_ids),
            "trackCount": self.track_count,
            "kind": self.kind.value,
            "isFrozen": self.is_frozen,
            "isIsolated": self.is_isolated,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
            "updatedAt": self.updated_at.isoformat() if self.updated_at else None,
        }

    @classmethod
    def from_json(cls, data: Dict[str, Any]) -> "Megalist":
        """Deserialize record from JSON."""
        return cls(
            id=data["id"],
            owner_id=data["ownerId"],
            source_playlist_ids=list(data.get("sourcePlaylistIds", [])),
            track_count=data.get("trackCount", 0),
            kind=PlaylistKind(data.get("kind", PlaylistKind.MERGED.value)),
            is_frozen=data.get("isFrozen", False),
            is_isolated=data.get("isIsolated", False),
            created_at=datetime.fromisoformat(data["createdAt"]) if data.get("createdAt") else None,
            updated_at=datetime.fromisoformat(data["updatedAt"]) if data.get("updatedAt") else None,
        )


@dataclass(frozen=True)
class PlaylistMetadata:
    """Playlist metadata as reported by the playlist service.

    ``owner_id`` may be empty and ``track_count`` zero right after creation,
    until the service has propagated the new playlist.
    """

    id: str
    name: str
    owner_id: Optional[str] = None
    track_count: int = 0
    description: str = ""
    snapshot_id: Optional[str] = None


@dataclass(frozen=True)
class SyncPlan:
    """Minimal change set bringing a derived playlist in line with its sources."""

    playlist_id: str
    to_add: List[str]
    to_remove: List[str]
    final_track_count: int
    valid_source_ids: List[str]
    invalid_source_ids: List[str] = field(default_factory=list)

    @property
    def has_track_changes(self) -> bool:
        return bool(self.to_add or self.to_remove)

    @property
    def changed(self) -> bool:
        """True when tracks differ or a source has to be dropped from the record."""
        return self.has_track_changes or bool(self.invalid_source_ids)


@dataclass(frozen=True)
class SyncPreview:
    """Added/removed counts shown to the user before a sync is confirmed."""

    added: int
    removed: int
    playlist_ids: List[str] = field(default_factory=list)

    @property
    def is_up_to_date(self) -> bool:
        return self.added == 0 and self.removed == 0


@dataclass(frozen=True)
class SyncResult:
    """Outcome of applying a sync plan."""

    playlist_id: str
    added: int
    removed: int
    final_track_count: int
    valid_source_ids: List[str]
    changed: bool
    shuffled: bool = False


@dataclass(frozen=True)
class PopulationResult:
    """Progress of an initial bulk population.

    ``added`` is the number of tracks durably present from acknowledged batches.
    """

    playlist_id: str
    added: int
    total: int

    @property
    def complete(self) -> bool:
        return self.added >= self.total

    @property
    def next_offset(self) -> int:
        return self.added


@dataclass
class BatchOutcome:
    """Per-playlist entry of a settle-all batch report."""

    playlist_id: str
    success: bool
    result: Optional[SyncResult] = None
    error: Optional[str] = None


@dataclass
class BatchReport:
    """Settle-all report over independent per-playlist operations."""

    outcomes: List[BatchOutcome] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)

    @property
    def succeeded(self) -> List[BatchOutcome]:
        return [o for o in self.outcomes if o.success]

    @property
    def failed(self) -> List[BatchOutcome]:
        return [o for o in self.outcomes if not o.success]

    @property
    def all_succeeded(self) -> bool:
        return not self.failed


@dataclass
class CachedPlaylist:
    """Client-facing view of a playlist, enriched with registry flags."""

    id: str
    name: str = ""
    owner_id: Optional[str] = None
    track_count: int = 0
    is_megalist: bool = False
    is_syncable: bool = False
    kind: Optional[PlaylistKind] = None
    is_frozen: bool = False
    is_isolated: bool = False
