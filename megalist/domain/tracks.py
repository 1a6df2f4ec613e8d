from __future__ import annotations

import random
from typing import Iterable, Iterator, List, MutableSequence, Optional, Sequence, Set


# Hard limit of the playlist service for track mutation calls
MAX_BATCH_SIZE = 100


def dedupe(tracks: Iterable[str]) -> Set[str]:
    """Return the distinct track identifiers. Order is not preserved."""
    return set(tracks)


def unique_in_order(tracks: Iterable[str]) -> List[str]:
    """Drop repeated identifiers, keeping the first occurrence of each."""
    seen: Set[str] = set()
    result: List[str] = []
    for uri in tracks:
        if uri not in seen:
            seen.add(uri)
            result.append(uri)
    return result


def shuffle(tracks: MutableSequence[str], rng: Optional[random.Random] = None) -> MutableSequence[str]:
    """Permute ``tracks`` in place with Fisher-Yates and return the same list."""
    rand = rng or random
    index = len(tracks)
    while index > 1:
        swap = rand.randrange(index)
        index -= 1
        tracks[index], tracks[swap] = tracks[swap], tracks[index]
    return tracks


def chunked(items: Sequence[str], size: int = MAX_BATCH_SIZE) -> Iterator[List[str]]:
    """Yield consecutive slices of at most ``size`` items."""
    if size <= 0:
        raise ValueError("Batch size must be positive")
    for start in range(0, len(items), size):
        yield list(items[start:start + size])
