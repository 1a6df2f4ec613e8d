import os
import sys
import threading
from typing import Dict, List, Optional, Set

import pytest


def _ensure_project_root_on_sys_path() -> None:
    here = os.path.dirname(__file__)
    project_root = os.path.abspath(os.path.join(here, "..", ".."))
    if project_root not in sys.path:
        sys.path.insert(0, project_root)


_ensure_project_root_on_sys_path()

from megalist.domain.entities import PlaylistMetadata  # noqa: E402
from megalist.domain.errors import PlaylistApiError, PlaylistNotFound  # noqa: E402
from megalist.domain.tracks import MAX_BATCH_SIZE, chunked  # noqa: E402


@pytest.fixture(autouse=True)
def _clear_spotify_tokens_env():
    """Ensure SPOTIFY access/refresh tokens do not leak across tests.
    Some tests may load a .env that sets these variables; clear before each test
    and restore afterwards so tests explicitly setting them remain deterministic.
    """
    keys = ['SPOTIFY_ACCESS_TOKEN', 'SPOTIFY_REFRESH_TOKEN', 'SPOTIFY_CLIENT_ID',
            'SPOTIFY_CLIENT_SECRET', 'SPOTIFY_REDIRECT_URI', 'MEGALIST_CONFIG_DIR']
    backup = {k: os.environ.get(k) for k in keys}
    for k in keys:
        os.environ.pop(k, None)
    try:
        yield
    finally:
        for k, v in backup.items():
            if v is None:
                os.environ.pop(k, None)
            else:
                os.environ[k] = v


class FakePlaylistService:
    """In-memory playlist service with the batching behaviour of the real client.

    ``failing_sources`` makes reads of those playlists raise 404,
    ``fail_add_on_call`` makes the n-th ``add_tracks`` batch (1-based) fail.
    """

    def __init__(self, user_id: str = "user-1"):
        self.user_id = user_id
        self.tracks: Dict[str, List[str]] = {}
        self.names: Dict[str, str] = {}
        self.owners: Dict[str, Optional[str]] = {}
        self.failing_sources: Set[str] = set()
        self.failing_unfollow: Set[str] = set()
        self.fail_add_on_call: Optional[int] = None
        self.add_batches: List[List[str]] = []
        self.calls: List[tuple] = []
        self._counter = 0
        self._lock = threading.Lock()

    def add_playlist(self, playlist_id: str, tracks: List[str], name: str = "",
                     owner_id: Optional[str] = None) -> None:
        self.tracks[playlist_id] = list(tracks)
        self.names[playlist_id] = name or playlist_id
        self.owners[playlist_id] = owner_id or self.user_id

    def current_user_id(self) -> str:
        return self.user_id

    def list_all_tracks(self, playlist_id: str) -> List[str]:
        with self._lock:
            self.calls.append(('list', playlist_id))
            if playlist_id in self.failing_sources or playlist_id not in self.tracks:
                raise PlaylistNotFound(f"Playlist {playlist_id} not found")
            return list(self.tracks[playlist_id])

    def add_tracks(self, playlist_id: str, track_uris: List[str]) -> List[str]:
        snapshots = []
        for batch in chunked(track_uris, MAX_BATCH_SIZE):
            with self._lock:
                self.add_batches.append(list(batch))
                self.calls.append(('add', playlist_id, list(batch)))
                if self.fail_add_on_call == len(self.add_batches):
                    raise PlaylistApiError("Internal server error", 500)
                self.tracks.setdefault(playlist_id, []).extend(batch)
                self._counter += 1
                snapshots.append(f"snap-{self._counter}")
        return snapshots

    def remove_tracks(self, playlist_id: str, track_uris: List[str]) -> List[str]:
        snapshots = []
        for batch in chunked(track_uris, MAX_BATCH_SIZE):
            with self._lock:
                self.calls.append(('remove', playlist_id, list(batch)))
                drop = set(batch)
                self.tracks[playlist_id] = [u for u in self.tracks.get(playlist_id, []) if u not in drop]
                self._counter += 1
                snapshots.append(f"snap-{self._counter}")
        return snapshots

    def replace_tracks(self, playlist_id: str, track_uris: List[str]) -> None:
        with self._lock:
            self.calls.append(('replace', playlist_id, list(track_uris)))
            self.tracks[playlist_id] = list(track_uris)

    def get_metadata(self, playlist_id: str) -> PlaylistMetadata:
        with self._lock:
            self.calls.append(('metadata', playlist_id))
            if playlist_id not in self.tracks:
                raise PlaylistNotFound(f"Playlist {playlist_id} not found")
            return PlaylistMetadata(
                id=playlist_id,
                name=self.names.get(playlist_id, ""),
                owner_id=self.owners.get(playlist_id),
                track_count=len(self.tracks[playlist_id]),
            )

    def create_playlist(self, owner_id: str, name: str, description: str = "") -> PlaylistMetadata:
        with self._lock:
            self._counter += 1
            playlist_id = f"new-{self._counter}"
            self.calls.append(('create', playlist_id, name))
            self.tracks[playlist_id] = []
            self.names[playlist_id] = name
            self.owners[playlist_id] = owner_id
        return PlaylistMetadata(id=playlist_id, name=name, owner_id=None, track_count=0)

    def update_metadata(self, playlist_id: str, name: Optional[str] = None,
                        description: Optional[str] = None) -> None:
        with self._lock:
            self.calls.append(('update', playlist_id, name, description))
            if name:
                self.names[playlist_id] = name

    def find_playlist_by_name(self, name: str) -> Optional[PlaylistMetadata]:
        for playlist_id, playlist_name in list(self.names.items()):
            if playlist_name.lower() == name.lower() and self.owners.get(playlist_id) == self.user_id:
                return self.get_metadata(playlist_id)
        return None

    def list_user_playlists(self) -> List[PlaylistMetadata]:
        return [self.get_metadata(pid) for pid in list(self.tracks)]

    def unfollow_playlist(self, playlist_id: str) -> None:
        with self._lock:
            self.calls.append(('unfollow', playlist_id))
            if playlist_id in self.failing_unfollow:
                raise PlaylistApiError("Forbidden", 403)
            self.tracks.pop(playlist_id, None)
            self.names.pop(playlist_id, None)
            self.owners.pop(playlist_id, None)

    def mutations(self, playlist_id: Optional[str] = None) -> List[tuple]:
        return [c for c in self.calls
                if c[0] in ('add', 'remove', 'replace') and (playlist_id is None or c[1] == playlist_id)]


@pytest.fixture
def playlist_service():
    """Fresh in-memory playlist service."""
    return FakePlaylistService()
