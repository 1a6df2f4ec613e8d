import threading
from dataclasses import replace
from typing import Dict, Iterable, List, Optional

from megalist.domain.entities import CachedPlaylist, Megalist, PlaylistMetadata


class PlaylistCache:
    """Client-side view of the user's playlists.

    Passed explicitly to the poller and the service. Writers from the
    poller thread and request threads are serialized by a lock.
    """

    def __init__(self):
        self._playlists: Dict[str, CachedPlaylist] = {}
        self._lock = threading.Lock()

    def get(self, playlist_id: str) -> Optional[CachedPlaylist]:
        with self._lock:
            cached = self._playlists.get(playlist_id)
        return replace(cached) if cached else None

    def all(self) -> List[CachedPlaylist]:
        with self._lock:
            return [replace(p) for p in self._playlists.values()]

    def set_all(self, playlists: Iterable[CachedPlaylist]) -> None:
        with self._lock:
            self._playlists = {p.id: p for p in playlists}

    def add(self, playlist: CachedPlaylist) -> None:
        with self._lock:
            self._playlists[playlist.id] = playlist

    def remove_many(self, playlist_ids: Iterable[str]) -> None:
        with self._lock:
            for playlist_id in playlist_ids:
                self._playlists.pop(playlist_id, None)

    def update(self, metadata: PlaylistMetadata) -> CachedPlaylist:
        """Merge fresh service metadata into the cached entry, keeping registry flags."""
        with self._lock:
            current = self._playlists.get(metadata.id) or CachedPlaylist(id=metadata.id)
            updated = replace(
                current,
                name=metadata.name or current.name,
                owner_id=metadata.owner_id or current.owner_id,
                track_count=metadata.track_count,
            )
            self._playlists[metadata.id] = updated
        return replace(updated)

    def apply_record(self, record: Megalist) -> None:
        """Copy registry flags onto the cached entry."""
        with self._lock:
            current = self._playlists.get(record.id) or CachedPlaylist(id=record.id, owner_id=record.owner_id)
            self._playlists[record.id] = replace(
                current,
                is_megalist=True,
                is_syncable=record.is_syncable,
                kind=record.kind,
                is_frozen=record.is_frozen,
                is_isolated=record.is_isolated,
                track_count=record.track_count,
            )


def to_cached(metadata: PlaylistMetadata, record: Optional[Megalist] = None) -> CachedPlaylist:
    """Build a cache entry from service metadata and an optional registry record."""
    cached = CachedPlaylist(
        id=metadata.id,
        name=metadata.name,
        owner_id=metadata.owner_id,
        track_count=metadata.track_count,
    )
    if record is None:
        return cached
    return replace(
        cached,
        is_megalist=True,
        is_syncable=record.is_syncable,
        kind=record.kind,
        is_frozen=record.is_frozen,
        is_isolated=record.is_isolated,
    )
