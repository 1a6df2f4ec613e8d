import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

from megalist.application.cache import PlaylistCache
from megalist.domain.entities import PlaylistMetadata
from megalist.domain.ports import PlaylistService


logger = logging.getLogger(__name__)

DEFAULT_INTERVAL_SEC = 5.0
DEFAULT_TIMEOUT_SEC = 60.0


@dataclass
class PollTarget:
    """A newly created playlist waiting for the service to report it complete."""

    playlist_id: str
    is_initially_empty: bool
    start_time: float


class ConsistencyPoller:
    """Waits for freshly created playlists to show up with full metadata.

    A single shared timer thread runs while at least one playlist is
    tracked. Each tick fetches metadata for every tracked playlist and
    stops tracking it once the owner is known and the track count is
    plausible, or once the timeout elapses.
    """

    def __init__(self,
                 playlist_service: PlaylistService,
                 on_settled: Optional[Callable[[PlaylistMetadata], None]] = None,
                 cache: Optional[PlaylistCache] = None,
                 interval: float = DEFAULT_INTERVAL_SEC,
                 timeout: float = DEFAULT_TIMEOUT_SEC,
                 clock: Callable[[], float] = time.monotonic):
        """Initialize poller.

        Args:
            playlist_service: External playlist client
            on_settled: Called with the final metadata; defaults to updating ``cache``
            cache: Playlist cache refreshed when no callback is given
            interval: Seconds between ticks
            timeout: Seconds after which a playlist is abandoned
            clock: Monotonic time source
        """
        self.playlist_service = playlist_service
        self.cache = cache
        self.on_settled = on_settled or self._update_cache
        self.interval = interval
        self.timeout = timeout
        self.clock = clock

        self._targets: Dict[str, PollTarget] = {}
        self._lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def _update_cache(self, metadata: PlaylistMetadata) -> None:
        if self.cache is not None:
            self.cache.update(metadata)

    @property
    def tracked_ids(self) -> List[str]:
        with self._lock:
            return list(self._targets)

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start_polling(self, playlist_id: str, is_initially_empty: bool = False) -> None:
        """Track a playlist; starts the shared timer if it is not running."""
        with self._lock:
            self._targets[playlist_id] = PollTarget(
                playlist_id=playlist_id,
                is_initially_empty=is_initially_empty,
                start_time=self.clock(),
            )
            if not self.is_running:
                self._stop_event.clear()
                self._thread = threading.Thread(
                    target=self._run, name='megalist-poller', daemon=True,
                )
                self._thread.start()
        logger.debug(f"Polling playlist {playlist_id} until it is consistent")

    def stop(self) -> None:
        """Stop the timer and forget all tracked playlists."""
        self._stop_event.set()
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=self.interval + 1)
        with self._lock:
            self._targets.clear()
            self._thread = None

    def _run(self) -> None:
        while not self._stop_event.wait(self.interval):
            self.poll_once()
            with self._lock:
                if not self._targets:
                    self._thread = None
                    return

    def poll_once(self) -> None:
        """Run a single tick over every tracked playlist."""
        with self._lock:
            targets = list(self._targets.values())

        now = self.clock()
        for target in targets:
            if now - target.start_time > self.timeout:
                logger.warning(f"Polling for playlist {target.playlist_id} timed out "
                               f"after {self.timeout:.0f}s")
                self._untrack(target.playlist_id)
                continue

            try:
                metadata = self.playlist_service.get_metadata(target.playlist_id)
            except Exception as e:
                logger.error(f"Error polling playlist {target.playlist_id}: {e}")
                continue

            if self._is_consistent(metadata, target):
                logger.info(f"Playlist {target.playlist_id} is consistent "
                            f"({metadata.track_count} tracks)")
                self._untrack(target.playlist_id)
                try:
                    self.on_settled(metadata)
                except Exception as e:
                    logger.error(f"Settled callback failed for {target.playlist_id}: {e}")

    @staticmethod
    def _is_consistent(metadata: PlaylistMetadata, target: PollTarget) -> bool:
        return bool(metadata.owner_id) and (metadata.track_count > 0 or target.is_initially_empty)

    def _untrack(self, playlist_id: str) -> None:
        with self._lock:
            self._targets.pop(playlist_id, None)
