from unittest.mock import Mock, patch

import pytest
import requests
from spotipy.exceptions import SpotifyException

from megalist.domain.errors import (
    AuthenticationError, PlaylistApiError, PlaylistNotFound, RateLimited,
)
from megalist.infrastructure.providers.spotify import SpotifyPlaylistClient


def _item(uri, is_local=False, kind='track'):
    return {'is_local': is_local, 'track': {'uri': uri, 'type': kind, 'is_local': is_local}}


class TestSpotifyPlaylistClient:
    """Contract tests for the Spotify playlist client."""

    def setup_method(self):
        """Set up test fixtures."""
        self.mock_spotify = Mock()
        self.client = SpotifyPlaylistClient(client=self.mock_spotify)

    def test_requires_token_provider_or_client(self):
        with pytest.raises(ValueError):
            SpotifyPlaylistClient()

    def test_list_all_tracks_follows_next_cursor(self):
        first_page = {'items': [_item('spotify:track:1'), _item('spotify:track:2')], 'next': 'page-2'}
        second_page = {'items': [_item('spotify:track:3')], 'next': None}
        self.mock_spotify.playlist_items.return_value = first_page
        self.mock_spotify.next.return_value = second_page

        uris = self.client.list_all_tracks('p1')

        assert uris == ['spotify:track:1', 'spotify:track:2', 'spotify:track:3']
        self.mock_spotify.next.assert_called_once_with(first_page)
        assert self.mock_spotify.playlist_items.call_args[1]['limit'] == 100

    def test_list_all_tracks_skips_unplayable_items(self):
        self.mock_spotify.playlist_items.return_value = {
            'items': [
                None,
                {'track': None},
                _item('spotify:local:x', is_local=True),
                _item('spotify:episode:1', kind='episode'),
                {'track': {'type': 'track'}},
                _item('spotify:track:ok'),
            ],
            'next': None,
        }

        assert self.client.list_all_tracks('p1') == ['spotify:track:ok']

    def test_add_tracks_batches_of_100(self):
        self.mock_spotify.playlist_add_items.side_effect = [
            {'snapshot_id': 's1'}, {'snapshot_id': 's2'}, {'snapshot_id': 's3'},
        ]
        uris = [f'spotify:track:{i}' for i in range(250)]

        snapshots = self.client.add_tracks('p1', uris)

        assert snapshots == ['s1', 's2', 's3']
        sizes = [len(c[0][1]) for c in self.mock_spotify.playlist_add_items.call_args_list]
        assert sizes == [100, 100, 50]

    def test_add_tracks_failure_keeps_earlier_batches(self):
        self.mock_spotify.playlist_add_items.side_effect = [
            {'snapshot_id': 's1'},
            SpotifyException(500, -1, 'Internal error'),
        ]

        with pytest.raises(PlaylistApiError) as exc_info:
            self.client.add_tracks('p1', [f'spotify:track:{i}' for i in range(150)])

        assert exc_info.value.http_status == 500
        assert self.mock_spotify.playlist_add_items.call_count == 2

    def test_remove_tracks_removes_all_occurrences(self):
        self.mock_spotify.playlist_remove_all_occurrences_of_items.return_value = {'snapshot_id': 's1'}

        assert self.client.remove_tracks('p1', ['a', 'b']) == ['s1']
        self.mock_spotify.playlist_remove_all_occurrences_of_items.assert_called_once_with('p1', ['a', 'b'])

    def test_replace_tracks_appends_beyond_100(self):
        self.mock_spotify.playlist_add_items.return_value = {'snapshot_id': 's'}
        uris = [f'spotify:track:{i}' for i in range(130)]

        self.client.replace_tracks('p1', uris)

        self.mock_spotify.playlist_replace_items.assert_called_once_with('p1', uris[:100])
        self.mock_spotify.playlist_add_items.assert_called_once_with('p1', uris[100:])

    def test_replace_with_empty_list_clears(self):
        self.client.replace_tracks('p1', [])

        self.mock_spotify.playlist_replace_items.assert_called_once_with('p1', [])
        self.mock_spotify.playlist_add_items.assert_not_called()

    def test_get_metadata(self):
        self.mock_spotify.playlist.return_value = {
            'id': 'p1', 'name': 'Mix', 'owner': {'id': 'user-1'},
            'tracks': {'total': 12}, 'snapshot_id': 'snap',
        }

        metadata = self.client.get_metadata('p1')

        assert metadata.owner_id == 'user-1'
        assert metadata.track_count == 12

    def test_create_playlist_may_be_incomplete(self):
        self.mock_spotify.user_playlist_create.return_value = {'id': 'new', 'name': 'Mix'}

        metadata = self.client.create_playlist('user-1', 'Mix')

        assert metadata.id == 'new'
        assert metadata.owner_id is None
        assert metadata.track_count == 0
        assert self.mock_spotify.user_playlist_create.call_args[1]['public'] is False

    def test_find_playlist_by_name_only_matches_own_playlists(self):
        self.mock_spotify.current_user.return_value = {'id': 'user-1'}
        self.mock_spotify.current_user_playlists.return_value = {
            'items': [
                {'id': 'theirs', 'name': 'Mix', 'owner': {'id': 'other'}},
                {'id': 'mine', 'name': 'MIX ', 'owner': {'id': 'user-1'}},
            ],
            'next': None,
        }

        assert self.client.find_playlist_by_name('mix').id == 'mine'
        assert self.client.find_playlist_by_name('other') is None

    def test_list_user_playlists_pages(self):
        page_one = {'items': [{'id': f'p{i}', 'name': str(i)} for i in range(50)], 'next': 'more'}
        page_two = {'items': [{'id': 'last', 'name': 'last'}], 'next': None}
        self.mock_spotify.current_user_playlists.side_effect = [page_one, page_two]

        playlists = self.client.list_user_playlists()

        assert len(playlists) == 51
        offsets = [c[1]['offset'] for c in self.mock_spotify.current_user_playlists.call_args_list]
        assert offsets == [0, 50]

    def test_unfollow(self):
        self.client.unfollow_playlist('p1')

        self.mock_spotify.current_user_unfollow_playlist.assert_called_once_with('p1')

    @pytest.mark.parametrize('status,expected', [
        (401, AuthenticationError),
        (404, PlaylistNotFound),
        (502, PlaylistApiError),
    ])
    def test_error_translation(self, status, expected):
        self.mock_spotify.playlist.side_effect = SpotifyException(status, -1, 'failure')

        with pytest.raises(expected) as exc_info:
            self.client.get_metadata('p1')

        assert exc_info.value.http_status == status

    def test_rate_limit_carries_retry_after(self):
        self.mock_spotify.playlist.side_effect = SpotifyException(
            429, -1, 'Too many requests', headers={'Retry-After': '3'},
        )

        with pytest.raises(RateLimited) as exc_info:
            self.client.get_metadata('p1')

        assert exc_info.value.retry_after_ms == 3000

    def test_network_failure(self):
        self.mock_spotify.playlist.side_effect = requests.exceptions.ConnectionError('down')

        with pytest.raises(PlaylistApiError) as exc_info:
            self.client.get_metadata('p1')

        assert exc_info.value.http_status is None

    def test_no_retry_on_failure(self):
        self.mock_spotify.playlist.side_effect = SpotifyException(503, -1, 'unavailable')

        with pytest.raises(PlaylistApiError):
            self.client.get_metadata('p1')

        assert self.mock_spotify.playlist.call_count == 1


class TestTokenHandling:
    """Tests for bearer token handling."""

    @patch('megalist.infrastructure.providers.spotify.spotipy.Spotify')
    def test_client_rebuilt_when_token_changes(self, mock_spotify_class):
        provider = Mock()
        provider.get_access_token.side_effect = ['token-1', 'token-1', 'token-2']
        mock_spotify_class.return_value.playlist_items.return_value = {'items': [], 'next': None}
        client = SpotifyPlaylistClient(token_provider=provider)

        client.list_all_tracks('p1')
        client.list_all_tracks('p1')
        client.list_all_tracks('p1')

        tokens = [c[1]['auth'] for c in mock_spotify_class.call_args_list]
        assert tokens == ['token-1', 'token-2']

    @patch('megalist.infrastructure.providers.spotify.spotipy.Spotify')
    def test_missing_credential_fails_before_request(self, mock_spotify_class):
        provider = Mock()
        provider.get_access_token.side_effect = AuthenticationError()
        client = SpotifyPlaylistClient(token_provider=provider)

        with pytest.raises(AuthenticationError):
            client.add_tracks('p1', ['a'])

        mock_spotify_class.assert_not_called()
