import contextvars
import logging
import uuid
from concurrent.futures import ThreadPoolExecutor
from dataclasses import replace
from typing import Callable, Dict, List, Optional, Sequence

from megalist.application.cache import PlaylistCache, to_cached
from megalist.application.executor import BatchExecutor, ProgressCallback
from megalist.application.poller import ConsistencyPoller
from megalist.application.reconciliation import ReconciliationEngine
from megalist.crosscutting.logging import CorrelationContext, log_error, log_sync_complete
from megalist.domain.entities import (
    BatchOutcome, BatchReport, CachedPlaylist, Megalist, PlaylistKind,
    PopulationResult, SyncPreview, SyncResult,
)
from megalist.domain.errors import (
    EmptySourceSelection, InsufficientTracks,
    MegalistNotFound, PlaylistExists,
)
from megalist.domain.ports import MegalistRepository, PlaylistService
from megalist.domain.tracks import dedupe, shuffle, unique_in_order


logger = logging.getLogger(__name__)


class MegalistService:
    """Use cases over derived playlists.

    Wires the reconciliation engine, the batch executor, the registry and
    the consistency poller together. Every method takes explicit ids; the
    service keeps no per-user state apart from the playlist cache.
    """

    def __init__(self,
                 playlist_service: PlaylistService,
                 repository: MegalistRepository,
                 engine: Optional[ReconciliationEngine] = None,
                 executor: Optional[BatchExecutor] = None,
                 poller: Optional[ConsistencyPoller] = None,
                 cache: Optional[PlaylistCache] = None,
                 max_workers: int = 8):
        """Initialize megalist service.

        Args:
            playlist_service: External playlist client
            repository: Derived-playlist registry
            engine: Reconciliation engine (built from ``playlist_service`` if omitted)
            executor: Batch executor (built without checkpoints if omitted)
            poller: Consistency poller for newly created playlists
            cache: Client-side playlist cache
            max_workers: Parallelism for cross-playlist operations
        """
        self.playlist_service = playlist_service
        self.repository = repository
        self.max_workers = max(1, max_workers)
        self.engine = engine or ReconciliationEngine(playlist_service, max_workers=self.max_workers)
        self.executor = executor or BatchExecutor(playlist_service, max_workers=self.max_workers)
        self.cache = cache or PlaylistCache()
        self.poller = poller

    # Creation

    def _ensure_name_free(self, name: str) -> None:
        existing = self.playlist_service.find_playlist_by_name(name)
        if existing:
            raise PlaylistExists(existing.id, name)

    def _track_new_playlist(self, playlist_id: str, is_initially_empty: bool) -> None:
        if self.poller is not None:
            self.poller.start_polling(playlist_id, is_initially_empty=is_initially_empty)

    def create_megalist(self,
                        owner_id: str,
                        name: str,
                        source_ids: Sequence[str],
                        shuffle_tracks: bool = False,
                        progress: Optional[ProgressCallback] = None) -> Megalist:
        """Create a new playlist holding the deduplicated union of ``source_ids``.

        Raises:
            PlaylistExists: A playlist with this name exists; the caller may
                add to it or replace it instead
            EmptySourceSelection: The sources hold no tracks
            PopulationFailed: Part of the tracks were added; the record is
                kept so ``resume_population`` can finish
        """
        self._ensure_name_free(name)

        union = self.engine.collect_union(source_ids, tolerate_missing=False)
        if not union.tracks:
            raise EmptySourceSelection(list(source_ids))

        tracks = list(union.tracks)
        if shuffle_tracks:
            shuffle(tracks)

        logger.info(f"Creating megalist '{name}' from {len(union.valid_source_ids)} playlists "
                    f"({len(tracks)} unique tracks)")
        created = self.playlist_service.create_playlist(owner_id, name)
        record = self.repository.upsert(Megalist(
            id=created.id,
            owner_id=owner_id,
            source_playlist_ids=union.valid_source_ids,
            track_count=len(tracks),
            kind=PlaylistKind.MERGED,
        ))
        self.cache.add(replace(to_cached(created, record), name=name, owner_id=owner_id,
                               track_count=len(tracks)))
        self._track_new_playlist(created.id, is_initially_empty=False)

        self.executor.populate(created.id, tracks, progress=progress)
        return record

    def resume_population(self, playlist_id: str,
                          progress: Optional[ProgressCallback] = None) -> PopulationResult:
        """Finish an interrupted population from its checkpoint."""
        result = self.executor.resume(playlist_id, progress=progress)
        record = self.repository.find_by_id(playlist_id)
        if record is not None:
            self.repository.upsert(replace(record, track_count=result.total))
        return result

    def create_empty_megalist(self, owner_id: str, name: str) -> Megalist:
        """Create a frozen megalist without sources, to be filled later."""
        self._ensure_name_free(name)
        created = self.playlist_service.create_playlist(owner_id, name)
        record = self.repository.upsert(Megalist(
            id=created.id,
            owner_id=owner_id,
            source_playlist_ids=[],
            track_count=0,
            kind=PlaylistKind.MERGED,
            is_frozen=True,
        ))
        self.cache.add(replace(to_cached(created, record), name=name, owner_id=owner_id))
        self._track_new_playlist(created.id, is_initially_empty=True)
        logger.info(f"Created empty megalist '{name}' ({created.id})")
        return record

    def add_sources(self, target_id: str, new_source_ids: Sequence[str],
                    shuffle_after: bool = False) -> Megalist:
        """Append the tracks of ``new_source_ids`` that the target does not hold yet.

        An empty frozen megalist is unfrozen when it receives its first sources.
        """
        new_source_ids = [sid for sid in new_source_ids if sid != target_id]
        record = self.repository.find_by_id(target_id)
        if record is None:
            record = Megalist(id=target_id, owner_id=self.playlist_service.current_user_id())

        current = self.playlist_service.list_all_tracks(target_id)
        union = self.engine.collect_union(new_source_ids, tolerate_missing=False)
        present = dedupe(current)
        to_add = [uri for uri in union.tracks if uri not in present]

        if to_add:
            self.executor.append(target_id, to_add)
            if shuffle_after:
                self.executor.shuffle_playlist(target_id)

        activating = record.is_frozen and not record.source_playlist_ids
        sources = unique_in_order(list(record.source_playlist_ids) + list(union.valid_source_ids))
        kind = PlaylistKind.ADOPTED if record.kind == PlaylistKind.ADOPTED else PlaylistKind.MERGED
        updated = self.repository.upsert(replace(
            record,
            source_playlist_ids=sources,
            track_count=len(current) + len(to_add),
            kind=kind,
            is_frozen=False if activating else record.is_frozen,
        ))
        self.cache.apply_record(updated)
        logger.info(f"Added {len(to_add)} tracks to {target_id} from {len(new_source_ids)} playlists")
        return updated

    def replace_megalist(self, target_id: str, source_ids: Sequence[str]) -> Megalist:
        """Overwrite the target with the union of ``source_ids``."""
        source_ids = [sid for sid in source_ids if sid != target_id]
        union = self.engine.collect_union(source_ids, tolerate_missing=False)
        if not union.tracks:
            raise EmptySourceSelection(list(source_ids))

        self.executor.replace_all(target_id, union.tracks)

        record = self.repository.find_by_id(target_id)
        if record is None:
            record = Megalist(id=target_id, owner_id=self.playlist_service.current_user_id())
        updated = self.repository.upsert(replace(
            record,
            source_playlist_ids=union.valid_source_ids,
            track_count=len(union.tracks),
            kind=PlaylistKind.MERGED,
        ))
        self.cache.apply_record(updated)
        logger.info(f"Replaced contents of {target_id} with {len(union.tracks)} tracks")
        return updated

    # Reconciliation

    def _require(self, playlist_id: str) -> Megalist:
        record = self.repository.find_by_id(playlist_id)
        if record is None:
            raise MegalistNotFound(playlist_id)
        return record

    def require_syncable(self, playlist_id: str) -> Megalist:
        """Registry record of a megalist that sync would reconcile.

        Raises:
            MegalistNotFound: No record for this playlist
            MegalistNotSyncable: The record is frozen or not a merged megalist
        """
        record = self._require(playlist_id)
        self.engine.ensure_syncable(record)
        return record

    def preview_sync(self, playlist_ids: Sequence[str]) -> SyncPreview:
        """Total added/removed counts a sync of these megalists would apply."""
        records = [r for r in self.repository.find_many_by_ids(playlist_ids) if r.is_syncable]
        return self.engine.preview_many(records)

    def sync_megalist(self, playlist_id: str, shuffle_after: bool = False) -> SyncResult:
        """Bring one megalist in line with its sources and persist the surviving sources."""
        record = self._require(playlist_id)
        with CorrelationContext(playlist_id=playlist_id, stage='sync'):
            plan = self.engine.reconcile(record)
            if not plan.changed:
                return SyncResult(
                    playlist_id=playlist_id,
                    added=0,
                    removed=0,
                    final_track_count=plan.final_track_count,
                    valid_source_ids=list(plan.valid_source_ids),
                    changed=False,
                )

            result = self.executor.apply_plan(plan, shuffle_after=shuffle_after)
            updated = self.repository.upsert(replace(
                record,
                source_playlist_ids=result.valid_source_ids,
                track_count=result.final_track_count,
                kind=PlaylistKind.MERGED,
            ))
            self.cache.apply_record(updated)
            log_sync_complete(logger, playlist_id, result.added, result.removed,
                              final_track_count=result.final_track_count)
        return result

    def sync_all(self, playlist_ids: Sequence[str], shuffle_after: bool = False) -> BatchReport:
        """Sync every syncable megalist concurrently and report each outcome.

        One failing megalist never prevents the others from completing.
        """
        records = {r.id: r for r in self.repository.find_many_by_ids(playlist_ids)}
        syncable = [pid for pid in unique_in_order(playlist_ids)
                    if pid in records and records[pid].is_syncable]
        skipped = [pid for pid in unique_in_order(playlist_ids) if pid not in syncable]
        for pid in skipped:
            logger.info(f"Skipping {pid}: not a syncable megalist")

        report = BatchReport(skipped=skipped)
        if not syncable:
            return report

        operation_id = f"sync_all_{uuid.uuid4().hex[:8]}"
        with CorrelationContext(operation_id=operation_id, stage='sync_all'):
            report.outcomes = self._settle_all(
                syncable, lambda pid: self.sync_megalist(pid, shuffle_after=shuffle_after),
            )
        logger.info(f"Synced {len(report.succeeded)}/{len(syncable)} megalists "
                    f"({len(report.failed)} failed, {len(skipped)} skipped)")
        return report

    def _settle_all(self, playlist_ids: List[str],
                    operation: Callable[[str], Optional[SyncResult]]) -> List[BatchOutcome]:
        workers = min(self.max_workers, len(playlist_ids))
        outcomes: List[BatchOutcome] = []
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix='megalist-batch') as pool:
            futures = {pid: pool.submit(contextvars.copy_context().run, operation, pid)
                       for pid in playlist_ids}
            for pid, future in futures.items():
                try:
                    outcomes.append(BatchOutcome(playlist_id=pid, success=True, result=future.result()))
                except Exception as e:
                    log_error(logger, f"Operation on {pid} failed", e, playlist_id=pid)
                    outcomes.append(BatchOutcome(playlist_id=pid, success=False, error=str(e)))
        return outcomes

    def shuffle_playlists(self, playlist_ids: Sequence[str]) -> None:
        """Reorder the given playlists randomly."""
        self.executor.shuffle_playlists(unique_in_order(playlist_ids))

    # Surprise mixes

    def create_surprise_mix(self,
                            owner_id: str,
                            source_ids: Sequence[str],
                            count: int,
                            name: str,
                            overwrite_id: Optional[str] = None) -> Megalist:
        """Create or overwrite a playlist with ``count`` random unique tracks.

        Raises:
            PlaylistExists: Create mode and the name is taken
            InsufficientTracks: Fewer than ``count`` unique tracks available
        """
        if count <= 0:
            raise ValueError("Track count must be positive")
        if overwrite_id is None:
            self._ensure_name_free(name)

        union = self.engine.collect_union(source_ids, tolerate_missing=False)
        if len(union.tracks) < count:
            raise InsufficientTracks(count, len(union.tracks))
        sample = shuffle(list(union.tracks))[:count]

        if overwrite_id is not None:
            playlist_id = overwrite_id
            logger.info(f"Overwriting surprise mix {playlist_id} with {count} tracks")
            self.executor.replace_all(playlist_id, sample)
            metadata = self.playlist_service.get_metadata(playlist_id)
        else:
            metadata = self.playlist_service.create_playlist(owner_id, name)
            playlist_id = metadata.id
            logger.info(f"Creating surprise mix '{name}' ({playlist_id}) with {count} tracks")
            self.executor.replace_all(playlist_id, sample)
            self._track_new_playlist(playlist_id, is_initially_empty=False)

        existing = self.repository.find_by_id(playlist_id)
        record = self.repository.upsert(Megalist(
            id=playlist_id,
            owner_id=existing.owner_id if existing else owner_id,
            source_playlist_ids=[sid for sid in source_ids if sid != playlist_id],
            track_count=count,
            kind=PlaylistKind.SURPRISE,
            is_frozen=False,
            is_isolated=existing.is_isolated if existing else False,
            created_at=existing.created_at if existing else None,
        ))
        self.cache.add(replace(to_cached(metadata, record), name=metadata.name or name,
                               owner_id=metadata.owner_id or owner_id, track_count=count))
        return record

    def create_global_surprise(self, owner_id: str, count: int, name: str,
                               overwrite_id: Optional[str] = None) -> Megalist:
        """Surprise mix over the whole library, minus isolated playlists and other mixes."""
        excluded = {r.id for r in self.repository.find_many_by_owner(owner_id)
                    if r.is_isolated or r.kind == PlaylistKind.SURPRISE}
        if overwrite_id:
            excluded.add(overwrite_id)
        source_ids = [p.id for p in self.playlist_service.list_user_playlists()
                      if p.id not in excluded]
        if not source_ids:
            raise EmptySourceSelection([])
        return self.create_surprise_mix(owner_id, source_ids, count, name, overwrite_id=overwrite_id)

    # Flags

    def _require_owned(self, owner_id: str, playlist_id: str) -> Megalist:
        record = self.repository.find_by_id(playlist_id)
        if record is None or record.owner_id != owner_id:
            raise MegalistNotFound(playlist_id)
        return record

    def set_frozen(self, owner_id: str, playlist_id: str, frozen: bool) -> Megalist:
        record = self._require_owned(owner_id, playlist_id)
        updated = self.repository.upsert(replace(record, is_frozen=frozen))
        self.cache.apply_record(updated)
        logger.info(f"Megalist {playlist_id} {'frozen' if frozen else 'unfrozen'}")
        return updated

    def set_isolated(self, owner_id: str, playlist_id: str, isolated: bool) -> Megalist:
        """Toggle exclusion from global surprise mixes.

        Playlists the app does not manage yet are adopted first.
        """
        record = self.repository.find_by_id(playlist_id)
        if record is None and isolated:
            return self.adopt_playlist(owner_id, playlist_id, isolate=True)
        record = self._require_owned(owner_id, playlist_id)
        updated = self.repository.upsert(replace(record, is_isolated=isolated))
        self.cache.apply_record(updated)
        return updated

    def adopt_playlist(self, owner_id: str, playlist_id: str, isolate: bool = True) -> Megalist:
        """Register an existing playlist so flags can be attached to it."""
        record = self.repository.find_by_id(playlist_id)
        if record is not None:
            if record.owner_id != owner_id:
                raise MegalistNotFound(playlist_id)
            updated = self.repository.upsert(replace(record, is_isolated=isolate))
        else:
            metadata = self.playlist_service.get_metadata(playlist_id)
            updated = self.repository.upsert(Megalist(
                id=playlist_id,
                owner_id=owner_id,
                source_playlist_ids=[playlist_id],
                track_count=metadata.track_count,
                kind=PlaylistKind.ADOPTED,
                is_isolated=isolate,
            ))
            logger.info(f"Adopted playlist {playlist_id}")
        self.cache.apply_record(updated)
        return updated

    # Editing

    def add_tracks(self, playlist_id: str, track_uris: Sequence[str]) -> int:
        """Manually append tracks and refresh the cached count from the service."""
        uris = unique_in_order(track_uris)
        sent = self.executor.append(playlist_id, uris)
        metadata = self.playlist_service.get_metadata(playlist_id)
        record = self.repository.find_by_id(playlist_id)
        if record is not None:
            self.repository.upsert(replace(record, track_count=metadata.track_count))
        self.cache.update(metadata)
        return sent

    def count_unique_tracks(self, source_ids: Sequence[str]) -> int:
        """Number of distinct tracks across ``source_ids``, e.g. to size a surprise mix."""
        return len(self.engine.collect_union(source_ids, tolerate_missing=False).tracks)

    def clear_playlist(self, playlist_id: str) -> None:
        """Remove every track from a playlist, keeping its registry record."""
        self.executor.replace_all(playlist_id, [])
        record = self.repository.find_by_id(playlist_id)
        if record is not None:
            self.repository.upsert(replace(record, track_count=0))
        cached = self.cache.get(playlist_id)
        if cached is not None:
            self.cache.add(replace(cached, track_count=0))
        logger.info(f"Cleared playlist {playlist_id}")

    def update_details(self, playlist_id: str, name: Optional[str] = None,
                       description: Optional[str] = None) -> None:
        self.playlist_service.update_metadata(playlist_id, name=name, description=description)
        cached = self.cache.get(playlist_id)
        if cached is not None and name:
            self.cache.add(replace(cached, name=name))

    def delete_playlists(self, playlist_ids: Sequence[str]) -> BatchReport:
        """Unfollow playlists concurrently; drop registry records of the ones removed."""
        ids = unique_in_order(playlist_ids)
        if not ids:
            return BatchReport()

        def unfollow(pid: str) -> None:
            self.playlist_service.unfollow_playlist(pid)

        report = BatchReport(outcomes=self._settle_all(ids, unfollow))
        removed = [o.playlist_id for o in report.succeeded]
        if removed:
            deleted = self.repository.delete_by_ids(removed)
            self.cache.remove_many(removed)
            logger.info(f"Unfollowed {len(removed)} playlists, {deleted} registry records deleted")
        return report

    # Library

    def load_library(self, owner_id: str) -> List[CachedPlaylist]:
        """Fetch the user's playlists and decorate them with registry flags."""
        playlists = self.playlist_service.list_user_playlists()
        records: Dict[str, Megalist] = {r.id: r for r in self.repository.find_many_by_owner(owner_id)}
        self.cache.set_all(to_cached(p, records.get(p.id)) for p in playlists)
        logger.info(f"Loaded {len(playlists)} playlists, {len(records)} managed by megalist")
        return self.cache.all()
