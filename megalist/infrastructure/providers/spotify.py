import logging
from typing import Any, Callable, Dict, List, Optional

import requests
import spotipy
from spotipy.exceptions import SpotifyException

from megalist.domain.entities import PlaylistMetadata
from megalist.domain.errors import (
    AuthenticationError, PlaylistApiError, PlaylistNotFound, RateLimited,
)
from megalist.domain.ports import PlaylistService
from megalist.domain.tracks import MAX_BATCH_SIZE, chunked
from megalist.infrastructure.auth import SessionTokenProvider

logger = logging.getLogger(__name__)

_TRACK_FIELDS = 'items(is_local,track(uri,type,is_local)),next'
_METADATA_FIELDS = 'id,name,description,snapshot_id,owner(id),tracks(total)'


class SpotifyPlaylistClient(PlaylistService):
    """Thin batching wrapper around the Spotify playlist endpoints.

    Owns pagination and the 100-item batch limit. Every non-success response
    is raised as a typed error carrying the HTTP status; nothing is retried.
    """

    def __init__(self,
                 token_provider: Optional[SessionTokenProvider] = None,
                 client: Optional[spotipy.Spotify] = None,
                 requests_timeout: int = 15):
        """Initialize Spotify playlist client.

        Args:
            token_provider: Source of the bearer token for each request
            client: Pre-built spotipy client, used as is (tests, scripts)
            requests_timeout: HTTP timeout in seconds
        """
        if token_provider is None and client is None:
            raise ValueError("Either token_provider or client is required")
        self._token_provider = token_provider
        self._client = client
        self._client_token: Optional[str] = None
        self._requests_timeout = requests_timeout
        self._user_id: Optional[str] = None

    def _spotify(self) -> spotipy.Spotify:
        """Return a spotipy client authorised with the current session token."""
        if self._token_provider is None:
            return self._client
        token = self._token_provider.get_access_token()
        if self._client is None or token != self._client_token:
            self._client = spotipy.Spotify(auth=token, requests_timeout=self._requests_timeout)
            self._client_token = token
        return self._client

    def _call(self, operation: str, fn: Callable[[spotipy.Spotify], Any]) -> Any:
        """Run ``fn`` against the client, translating failures into typed errors."""
        client = self._spotify()
        try:
            return fn(client)
        except SpotifyException as e:
            raise self._translate_error(e, operation) from e
        except requests.exceptions.RequestException as e:
            logger.error(f"Network failure during {operation}: {e}")
            raise PlaylistApiError(f"Network failure during {operation}: {e}") from e

    @staticmethod
    def _translate_error(error: SpotifyException, operation: str) -> PlaylistApiError:
        status = getattr(error, 'http_status', None)
        message = getattr(error, 'msg', None) or str(error)
        logger.warning(f"Spotify returned {status} during {operation}: {message}")
        if status == 401:
            return AuthenticationError(message)
        if status == 404:
            return PlaylistNotFound(message)
        if status == 429:
            headers = getattr(error, 'headers', None) or {}
            try:
                retry_after = int(headers.get('Retry-After', 1))
            except (TypeError, ValueError):
                retry_after = 1
            return RateLimited(retry_after_ms=retry_after * 1000, message=message)
        return PlaylistApiError(message, status)

    @staticmethod
    def _to_metadata(data: Dict[str, Any]) -> PlaylistMetadata:
        owner = data.get('owner') or {}
        tracks = data.get('tracks') or {}
        return PlaylistMetadata(
            id=data['id'],
            name=data.get('name') or '',
            owner_id=owner.get('id') or None,
            track_count=tracks.get('total') or 0,
            description=data.get('description') or '',
            snapshot_id=data.get('snapshot_id'),
        )

    def current_user_id(self) -> str:
        """Return the id of the authenticated user (cached per client)."""
        if self._user_id is None:
            user = self._call('current_user', lambda sp: sp.current_user())
            self._user_id = user['id']
        return self._user_id

    def list_all_tracks(self, playlist_id: str) -> List[str]:
        """Return all track URIs of a playlist, following the ``next`` cursor.

        Local files, episodes and unavailable (null) entries are skipped.
        """
        uris: List[str] = []
        page = self._call(
            'list tracks',
            lambda sp: sp.playlist_items(
                playlist_id, fields=_TRACK_FIELDS, limit=MAX_BATCH_SIZE,
                additional_types=('track',),
            ),
        )
        while page:
            for item in page.get('items') or []:
                uri = self._playable_uri(item)
                if uri:
                    uris.append(uri)
            if not page.get('next'):
                break
            current = page
            page = self._call('list tracks', lambda sp: sp.next(current))

        logger.debug(f"Fetched {len(uris)} tracks from playlist {playlist_id}")
        return uris

    @staticmethod
    def _playable_uri(item: Optional[Dict[str, Any]]) -> Optional[str]:
        if not item or item.get('is_local'):
            return None
        track = item.get('track')
        if not track or track.get('is_local'):
            return None
        if track.get('type', 'track') != 'track':
            return None
        return track.get('uri') or None

    def add_tracks(self, playlist_id: str, track_uris: List[str]) -> List[str]:
        """Append tracks in batches of 100, in order.

        Returns:
            Snapshot id of every acknowledged batch. If batch k fails, batches
            1..k-1 stay applied and the error propagates.
        """
        snapshots: List[str] = []
        for batch in chunked(track_uris, MAX_BATCH_SIZE):
            result = self._call('add tracks', lambda sp: sp.playlist_add_items(playlist_id, batch))
            snapshots.append((result or {}).get('snapshot_id'))
        return snapshots

    def remove_tracks(self, playlist_id: str, track_uris: List[str]) -> List[str]:
        """Remove every occurrence of the given tracks, in batches of 100."""
        snapshots: List[str] = []
        for batch in chunked(track_uris, MAX_BATCH_SIZE):
            result = self._call(
                'remove tracks',
                lambda sp: sp.playlist_remove_all_occurrences_of_items(playlist_id, batch),
            )
            snapshots.append((result or {}).get('snapshot_id'))
        return snapshots

    def replace_tracks(self, playlist_id: str, track_uris: List[str]) -> None:
        """Overwrite the playlist contents.

        The replace endpoint takes at most 100 items; the rest is appended.
        Incremental sync must never use this, since it resets the "added at"
        date of every track.
        """
        head = list(track_uris[:MAX_BATCH_SIZE])
        self._call('replace tracks', lambda sp: sp.playlist_replace_items(playlist_id, head))
        rest = list(track_uris[MAX_BATCH_SIZE:])
        if rest:
            self.add_tracks(playlist_id, rest)
        logger.info(f"Replaced contents of playlist {playlist_id} with {len(track_uris)} tracks")

    def get_metadata(self, playlist_id: str) -> PlaylistMetadata:
        data = self._call('get playlist', lambda sp: sp.playlist(playlist_id, fields=_METADATA_FIELDS))
        return self._to_metadata(data)

    def create_playlist(self, owner_id: str, name: str, description: str = "") -> PlaylistMetadata:
        """Create a private playlist. Owner and totals may not be populated yet."""
        logger.info(f"Creating new playlist: {name}")
        data = self._call(
            'create playlist',
            lambda sp: sp.user_playlist_create(owner_id, name, public=False, description=description),
        )
        return self._to_metadata(data)

    def update_metadata(self, playlist_id: str, name: Optional[str] = None,
                        description: Optional[str] = None) -> None:
        self._call(
            'update playlist',
            lambda sp: sp.playlist_change_details(playlist_id, name=name, description=description),
        )

    def list_user_playlists(self) -> List[PlaylistMetadata]:
        """Return every playlist in the user's library."""
        playlists: List[PlaylistMetadata] = []
        offset = 0
        limit = 50
        while True:
            page = self._call(
                'list playlists',
                lambda sp: sp.current_user_playlists(limit=limit, offset=offset),
            )
            items = (page or {}).get('items') or []
            playlists.extend(self._to_metadata(p) for p in items if p)
            if not page or not page.get('next') or len(items) < limit:
                break
            offset += limit
        return playlists

    def find_playlist_by_name(self, name: str) -> Optional[PlaylistMetadata]:
        wanted = name.strip().lower()
        user_id = self.current_user_id()
        for playlist in self.list_user_playlists():
            if playlist.name.strip().lower() == wanted and playlist.owner_id == user_id:
                return playlist
        return None

    def unfollow_playlist(self, playlist_id: str) -> None:
        self._call('unfollow playlist', lambda sp: sp.current_user_unfollow_playlist(playlist_id))
        logger.info(f"Unfollowed playlist {playlist_id}")
