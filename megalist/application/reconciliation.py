import contextvars
import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Dict, List, Sequence

from megalist.crosscutting.logging import log_sync_start
from megalist.domain.entities import Megalist, PlaylistKind, SyncPlan, SyncPreview
from megalist.domain.errors import AuthenticationError, MegalistNotSyncable, SourceUnavailable
from megalist.domain.ports import PlaylistService
from megalist.domain.tracks import dedupe, unique_in_order


logger = logging.getLogger(__name__)


@dataclass
class SourceUnion:
    """Deduplicated union of source tracks plus which sources resolved."""

    tracks: List[str]
    valid_source_ids: List[str]
    invalid_sources: List[SourceUnavailable]

    @property
    def invalid_source_ids(self) -> List[str]:
        return [s.source_id for s in self.invalid_sources]


class ReconciliationEngine:
    """Computes add/remove plans for derived playlists.

    Holds no state between calls: the registry record is always passed in.
    Source fetches of one reconciliation run concurrently and fail
    independently of each other.
    """

    def __init__(self, playlist_service: PlaylistService, max_workers: int = 8):
        """Initialize reconciliation engine.

        Args:
            playlist_service: External playlist client
            max_workers: Upper bound of concurrent playlist fetches
        """
        self.playlist_service = playlist_service
        self.max_workers = max(1, max_workers)

    def _fetch_all(self, playlist_ids: Sequence[str]) -> Dict[str, object]:
        """Fetch tracks of every playlist; map id to track list or the exception."""
        results: Dict[str, object] = {}
        if not playlist_ids:
            return results

        workers = min(self.max_workers, len(playlist_ids))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix='megalist-fetch') as pool:
            futures = {pid: pool.submit(contextvars.copy_context().run,
                                        self.playlist_service.list_all_tracks, pid)
                       for pid in playlist_ids}
            for pid, future in futures.items():
                try:
                    results[pid] = future.result()
                except Exception as e:
                    results[pid] = e
        return results

    def collect_union(self, source_ids: Sequence[str], tolerate_missing: bool = True) -> SourceUnion:
        """Union the tracks of ``source_ids`` in source order, without repeats.

        Args:
            source_ids: Source playlist ids
            tolerate_missing: When False, the first source failure is raised

        Raises:
            AuthenticationError: Always propagated, a missing session is not a
                missing source
        """
        source_ids = unique_in_order(source_ids)
        fetched = self._fetch_all(source_ids)

        merged: List[str] = []
        valid: List[str] = []
        invalid: List[SourceUnavailable] = []
        for source_id in source_ids:
            result = fetched[source_id]
            if isinstance(result, Exception):
                if isinstance(result, AuthenticationError) or not tolerate_missing:
                    raise result
                logger.warning(f"Source playlist {source_id} not available, it will be dropped: {result}")
                invalid.append(SourceUnavailable(source_id, result))
                continue
            valid.append(source_id)
            merged.extend(result)

        return SourceUnion(tracks=unique_in_order(merged), valid_source_ids=valid, invalid_sources=invalid)

    @staticmethod
    def ensure_syncable(record: Megalist) -> None:
        if record.is_frozen:
            raise MegalistNotSyncable(record.id, "playlist is frozen")
        if record.kind != PlaylistKind.MERGED:
            raise MegalistNotSyncable(record.id, f"{record.kind.value.lower()} playlists are not synced")

    def reconcile(self, record: Megalist) -> SyncPlan:
        """Diff the derived playlist against the union of its valid sources.

        Returns:
            SyncPlan with the tracks to add (union order), the tracks to remove
            (playlist order) and the surviving source ids. The caller persists
            ``valid_source_ids`` so deleted upstream sources drop out.
        """
        self.ensure_syncable(record)
        log_sync_start(logger, record.id, len(record.source_playlist_ids))

        current = self.playlist_service.list_all_tracks(record.id)
        union = self.collect_union(record.source_playlist_ids)

        current_set = dedupe(current)
        desired_set = dedupe(union.tracks)
        to_add = [uri for uri in union.tracks if uri not in current_set]
        to_remove = unique_in_order(uri for uri in current if uri not in desired_set)

        plan = SyncPlan(
            playlist_id=record.id,
            to_add=to_add,
            to_remove=to_remove,
            final_track_count=len(union.tracks),
            valid_source_ids=union.valid_source_ids,
            invalid_source_ids=union.invalid_source_ids,
        )

        if not plan.changed:
            logger.info(f"Megalist {record.id} is already up to date ({plan.final_track_count} tracks)")
        else:
            logger.info(f"Megalist {record.id}: +{len(to_add)} / -{len(to_remove)} tracks, "
                        f"{len(plan.invalid_source_ids)} source(s) dropped")
        return plan

    def preview(self, record: Megalist) -> SyncPreview:
        """Counts the user confirms before a sync; nothing is mutated."""
        plan = self.reconcile(record)
        return SyncPreview(added=len(plan.to_add), removed=len(plan.to_remove), playlist_ids=[record.id])

    def preview_many(self, records: Sequence[Megalist]) -> SyncPreview:
        """Sum previews of independent reconciliations run in parallel."""
        if not records:
            return SyncPreview(added=0, removed=0, playlist_ids=[])

        workers = min(self.max_workers, len(records))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix='megalist-preview') as pool:
            previews = list(pool.map(self.preview, records))

        return SyncPreview(
            added=sum(p.added for p in previews),
            removed=sum(p.removed for p in previews),
            playlist_ids=[r.id for r in records],
        )
