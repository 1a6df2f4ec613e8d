import random
from collections import Counter

import pytest

from megalist.domain.tracks import MAX_BATCH_SIZE, chunked, dedupe, shuffle, unique_in_order


class TestDedupe:
    """Tests for track set helpers."""

    def test_dedupe_returns_distinct_members(self):
        tracks = ["a", "b", "a", "c", "b"]

        result = dedupe(tracks)

        assert result == {"a", "b", "c"}
        assert len(result) == len(set(tracks))

    def test_dedupe_empty(self):
        assert dedupe([]) == set()

    def test_unique_in_order_keeps_first_occurrence(self):
        assert unique_in_order(["c", "a", "c", "b", "a"]) == ["c", "a", "b"]

    def test_unique_in_order_accepts_generators(self):
        assert unique_in_order(u for u in ["x", "x", "y"]) == ["x", "y"]


class TestShuffle:
    """Tests for Fisher-Yates shuffle."""

    def test_shuffle_is_a_permutation(self):
        tracks = [f"spotify:track:{i}" for i in range(50)]
        original = list(tracks)

        result = shuffle(tracks, rng=random.Random(7))

        assert result is tracks
        assert sorted(result) == sorted(original)

    def test_shuffle_short_lists(self):
        assert shuffle([]) == []
        assert shuffle(["only"]) == ["only"]

    def test_shuffle_is_close_to_uniform(self):
        rng = random.Random(1234)
        counts = Counter()
        runs = 6000
        for _ in range(runs):
            counts[tuple(shuffle(["a", "b", "c"], rng=rng))] += 1

        assert len(counts) == 6
        expected = runs / 6
        for permutation, count in counts.items():
            assert abs(count - expected) < expected * 0.15, permutation

    def test_first_position_is_uniform(self):
        rng = random.Random(99)
        positions = Counter()
        for _ in range(4000):
            positions[shuffle(list("abcd"), rng=rng)[0]] += 1

        for letter in "abcd":
            assert 800 < positions[letter] < 1200


class TestChunked:
    """Tests for batching."""

    def test_batches_of_at_most_100(self):
        items = [str(i) for i in range(250)]

        batches = list(chunked(items))

        assert [len(b) for b in batches] == [100, 100, 50]
        assert [u for b in batches for u in b] == items
        assert MAX_BATCH_SIZE == 100

    def test_empty_input_yields_nothing(self):
        assert list(chunked([])) == []

    def test_invalid_size(self):
        with pytest.raises(ValueError):
            list(chunked(["a"], 0))
