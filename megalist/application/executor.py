import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, List, Optional, Sequence

from megalist.application.checkpoints import CheckpointStore, PopulationCheckpoint
from megalist.domain.entities import PopulationResult, SyncPlan, SyncResult
from megalist.domain.errors import (
    AuthenticationError, BatchMutationError, PlaylistApiError, PopulationFailed,
)
from megalist.domain.ports import PlaylistService
from megalist.domain.tracks import MAX_BATCH_SIZE, chunked, shuffle


logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, int], None]


class BatchExecutor:
    """Applies track changes to a playlist in strictly sequential batches.

    Batch n+1 is only sent once batch n has been acknowledged. Applied
    batches are never rolled back.
    """

    def __init__(self,
                 playlist_service: PlaylistService,
                 checkpoint_store: Optional[CheckpointStore] = None,
                 batch_size: int = MAX_BATCH_SIZE,
                 max_workers: int = 8):
        """Initialize batch executor.

        Args:
            playlist_service: External playlist client
            checkpoint_store: Where population progress is saved after each batch
            batch_size: Tracks per call, capped at the service limit of 100
            max_workers: Parallelism for multi-playlist shuffles
        """
        self.playlist_service = playlist_service
        self.checkpoint_store = checkpoint_store
        self.batch_size = max(1, min(batch_size, MAX_BATCH_SIZE))
        self.max_workers = max(1, max_workers)

    def populate(self,
                 playlist_id: str,
                 target: Sequence[str],
                 added: int = 0,
                 progress: Optional[ProgressCallback] = None) -> PopulationResult:
        """Add ``target[added:]`` to a new or emptied playlist.

        Args:
            playlist_id: Playlist being populated
            target: Full ordered track list the playlist should end up with
            added: Tracks already confirmed by an earlier run
            progress: Called with ``(added, total)`` after each confirmed batch

        Raises:
            PopulationFailed: Carries the playlist id and the next unsent offset
            AuthenticationError: Session missing or expired before any track was added
        """
        target = list(target)
        total = len(target)
        if added < 0 or added > total:
            raise ValueError(f"Offset {added} out of range for {total} tracks")

        if added:
            logger.info(f"Resuming population of {playlist_id} at {added}/{total}")

        checkpoint = PopulationCheckpoint(playlist_id=playlist_id, target_uris=target, added=added)
        self._save_checkpoint(checkpoint)

        for batch in chunked(target[added:], self.batch_size):
            try:
                snapshots = self.playlist_service.add_tracks(playlist_id, batch)
            except AuthenticationError as e:
                if not added:
                    raise
                logger.error(f"Session expired while populating {playlist_id} at {added}/{total}")
                raise PopulationFailed(playlist_id, added=added, total=total, cause=e) from e
            except Exception as e:
                logger.error(f"Population of {playlist_id} failed at {added}/{total}: {e}")
                raise PopulationFailed(playlist_id, added=added, total=total, cause=e) from e

            if not self._acknowledged(snapshots):
                error = PlaylistApiError(f"Batch at offset {added} was not acknowledged")
                logger.error(f"Population of {playlist_id} stopped at {added}/{total}: {error}")
                raise PopulationFailed(playlist_id, added=added, total=total, cause=error)

            added += len(batch)
            checkpoint.added = added
            self._save_checkpoint(checkpoint)
            logger.info(f"Adding tracks to {playlist_id}... {added} / {total}")
            if progress:
                progress(added, total)

        if self.checkpoint_store is not None:
            self.checkpoint_store.delete(playlist_id)
        return PopulationResult(playlist_id=playlist_id, added=added, total=total)

    def resume(self, playlist_id: str, progress: Optional[ProgressCallback] = None) -> PopulationResult:
        """Continue a failed population from its stored checkpoint."""
        if self.checkpoint_store is None:
            raise ValueError("Resuming requires a checkpoint store")
        checkpoint = self.checkpoint_store.load(playlist_id)
        if checkpoint is None:
            raise LookupError(f"No pending population for playlist {playlist_id}")
        return self.populate(playlist_id, checkpoint.target_uris, added=checkpoint.added, progress=progress)

    def _save_checkpoint(self, checkpoint: PopulationCheckpoint) -> None:
        if self.checkpoint_store is not None:
            self.checkpoint_store.save(checkpoint)

    @staticmethod
    def _acknowledged(snapshots: Optional[List[str]]) -> bool:
        return bool(snapshots) and all(snapshots)

    def apply_plan(self, plan: SyncPlan, shuffle_after: bool = False) -> SyncResult:
        """Apply a reconciliation plan: removals first, then additions.

        Sync plans are recomputed from scratch on the next run, so a failure
        here is reported as failed rather than resumable.
        """
        playlist_id = plan.playlist_id
        if plan.to_remove:
            self._mutate('remove', playlist_id, plan.to_remove, self.playlist_service.remove_tracks)
        if plan.to_add:
            self._mutate('add', playlist_id, plan.to_add, self.playlist_service.add_tracks)

        shuffled = False
        if shuffle_after and plan.has_track_changes:
            self.shuffle_playlist(playlist_id)
            shuffled = True

        return SyncResult(
            playlist_id=playlist_id,
            added=len(plan.to_add),
            removed=len(plan.to_remove),
            final_track_count=plan.final_track_count,
            valid_source_ids=list(plan.valid_source_ids),
            changed=plan.changed,
            shuffled=shuffled,
        )

    def _mutate(self, operation: str, playlist_id: str, uris: List[str],
                call: Callable[[str, List[str]], List[str]]) -> None:
        for batch in chunked(uris, self.batch_size):
            try:
                snapshots = call(playlist_id, batch)
            except AuthenticationError:
                raise
            except Exception as e:
                logger.error(f"Failed to {operation} tracks on {playlist_id}: {e}")
                raise BatchMutationError(playlist_id, operation, e) from e
            if not self._acknowledged(snapshots):
                raise BatchMutationError(
                    playlist_id, operation, PlaylistApiError("Batch was not acknowledged"),
                )

    def append(self, playlist_id: str, uris: Sequence[str]) -> int:
        """Add tracks without checkpointing. Returns the number of tracks sent."""
        uris = list(uris)
        if uris:
            self._mutate('add', playlist_id, uris, self.playlist_service.add_tracks)
        return len(uris)

    def replace_all(self, playlist_id: str, uris: Sequence[str]) -> int:
        """Overwrite the playlist with ``uris``. Only for full replacement flows."""
        try:
            self.playlist_service.replace_tracks(playlist_id, list(uris))
        except AuthenticationError:
            raise
        except Exception as e:
            raise BatchMutationError(playlist_id, 'replace', e) from e
        return len(uris)

    def shuffle_playlist(self, playlist_id: str) -> int:
        """Reorder a playlist randomly. Returns the number of tracks shuffled."""
        uris = self.playlist_service.list_all_tracks(playlist_id)
        if len(uris) <= 1:
            logger.info(f"Playlist {playlist_id} has too few tracks to shuffle, skipping")
            return 0
        logger.info(f"Shuffling {len(uris)} tracks of {playlist_id}...")
        self.replace_all(playlist_id, shuffle(uris))
        return len(uris)

    def shuffle_playlists(self, playlist_ids: Sequence[str]) -> None:
        """Shuffle several playlists independently; the first error propagates."""
        if not playlist_ids:
            return
        workers = min(self.max_workers, len(playlist_ids))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix='megalist-shuffle') as pool:
            for _ in pool.map(self.shuffle_playlist, playlist_ids):
                pass
