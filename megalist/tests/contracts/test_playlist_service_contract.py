import inspect
from unittest.mock import Mock

import pytest

from megalist.domain.entities import PlaylistMetadata
from megalist.domain.ports import MegalistRepository, PlaylistService
from megalist.infrastructure.persistence import InMemoryMegalistRepository, JsonMegalistRepository
from megalist.infrastructure.providers.spotify import SpotifyPlaylistClient


def _port_methods(port):
    return [name for name, _ in inspect.getmembers(port, inspect.isfunction) if not name.startswith('_')]


@pytest.mark.parametrize('name', _port_methods(PlaylistService))
def test_spotify_client_implements_port(name):
    assert callable(getattr(SpotifyPlaylistClient, name, None))


@pytest.mark.parametrize('name', _port_methods(PlaylistService))
def test_fake_service_implements_port(name, playlist_service):
    assert callable(getattr(playlist_service, name, None))


@pytest.mark.parametrize('implementation', [InMemoryMegalistRepository, JsonMegalistRepository])
def test_repositories_implement_port(implementation):
    for name in _port_methods(MegalistRepository):
        assert callable(getattr(implementation, name, None)), name


def test_contract_semantics(playlist_service):
    playlist_service.add_playlist('p1', ['a', 'b'], name='Rock', owner_id='user-1')

    assert playlist_service.list_all_tracks('p1') == ['a', 'b']

    created = playlist_service.create_playlist('user-1', 'Mix')
    assert isinstance(created, PlaylistMetadata)
    assert created.track_count == 0

    snapshots = playlist_service.add_tracks(created.id, ['a', 'b', 'c'])
    assert snapshots
    playlist_service.remove_tracks(created.id, ['b'])
    assert playlist_service.list_all_tracks(created.id) == ['a', 'c']

    found = playlist_service.find_playlist_by_name('rock')
    assert found is not None and found.id == 'p1'


def test_spotify_client_returns_port_types():
    spotify = Mock()
    spotify.playlist.return_value = {
        'id': 'p1', 'name': 'Rock', 'owner': {'id': 'user-1'}, 'tracks': {'total': 2},
    }
    client = SpotifyPlaylistClient(client=spotify)

    metadata = client.get_metadata('p1')

    assert isinstance(metadata, PlaylistMetadata)
    assert metadata.track_count == 2
