from __future__ import annotations

from typing import Iterable, List, Optional, Protocol

from .entities import Megalist, PlaylistMetadata


class PlaylistService(Protocol):
    """Port defining the contract for the external playlist service.

    Implementations own pagination and the 100-item batch limit, and raise
    typed errors from ``megalist.domain.errors`` instead of retrying.
    """

    def current_user_id(self) -> str:
        """Return the id of the authenticated user."""

    def list_all_tracks(self, playlist_id: str) -> List[str]:
        """Return every playable track URI of the playlist, in playlist order."""

    def add_tracks(self, playlist_id: str, track_uris: List[str]) -> List[str]:
        """Append tracks in batches; return one snapshot id per acknowledged batch."""

    def remove_tracks(self, playlist_id: str, track_uris: List[str]) -> List[str]:
        """Remove all occurrences of the given tracks, in batches."""

    def replace_tracks(self, playlist_id: str, track_uris: List[str]) -> None:
        """Overwrite the whole playlist with the given tracks."""

    def get_metadata(self, playlist_id: str) -> PlaylistMetadata:
        """Return current playlist metadata."""

    def create_playlist(self, owner_id: str, name: str, description: str = "") -> PlaylistMetadata:
        """Create a private playlist. Returned metadata may be incomplete."""

    def update_metadata(self, playlist_id: str, name: Optional[str] = None,
                        description: Optional[str] = None) -> None:
        """Change playlist name and/or description."""

    def find_playlist_by_name(self, name: str) -> Optional[PlaylistMetadata]:
        """Return the user's playlist with this name (case-insensitive), if any."""

    def list_user_playlists(self) -> List[PlaylistMetadata]:
        """Return all playlists in the user's library."""

    def unfollow_playlist(self, playlist_id: str) -> None:
        """Remove the playlist from the user's library."""


class MegalistRepository(Protocol):
    """Port for the derived-playlist registry."""

    def upsert(self, record: Megalist) -> Megalist:
        """Insert or replace the record keyed by its id."""

    def find_by_id(self, playlist_id: str) -> Optional[Megalist]:
        """Return the record or None."""

    def find_many_by_ids(self, playlist_ids: Iterable[str]) -> List[Megalist]:
        """Return the records that exist among the given ids."""

    def find_many_by_owner(self, owner_id: str) -> List[Megalist]:
        """Return every record owned by the user."""

    def delete_by_ids(self, playlist_ids: Iterable[str]) -> int:
        """Delete records; unknown ids are ignored. Return number deleted."""
