from megalist.application.cache import PlaylistCache, to_cached
from megalist.domain.entities import CachedPlaylist, Megalist, PlaylistKind, PlaylistMetadata


def test_update_keeps_registry_flags():
    cache = PlaylistCache()
    cache.add(CachedPlaylist(id="p1", name="Mix", is_megalist=True, kind=PlaylistKind.MERGED))

    updated = cache.update(PlaylistMetadata(id="p1", name="", owner_id="user-1", track_count=5))

    assert updated.name == "Mix"
    assert updated.owner_id == "user-1"
    assert updated.track_count == 5
    assert updated.is_megalist


def test_apply_record_and_remove():
    cache = PlaylistCache()
    cache.apply_record(Megalist(id="p1", owner_id="user-1", is_frozen=True, track_count=2))

    cached = cache.get("p1")
    assert cached.is_frozen
    assert not cached.is_syncable

    cache.remove_many(["p1", "unknown"])
    assert cache.get("p1") is None


def test_to_cached_without_record():
    cached = to_cached(PlaylistMetadata(id="p1", name="Plain", owner_id="u", track_count=1))

    assert not cached.is_megalist
    assert cached.kind is None


def test_returned_entries_are_copies():
    cache = PlaylistCache()
    cache.add(CachedPlaylist(id="p1", name="Mix"))

    cache.get("p1").name = "changed"

    assert cache.get("p1").name == "Mix"
