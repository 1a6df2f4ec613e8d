from typing import List, Optional


class MegalistError(Exception):
    """Base class for all megalist errors."""


class PlaylistApiError(MegalistError):
    """Non-success response from the playlist service."""

    def __init__(self, message: str, http_status: Optional[int] = None) -> None:
        super().__init__(message)
        self.message = message
        self.http_status = http_status

    def __str__(self) -> str:
        if self.http_status is None:
            return self.message
        return f"[{self.http_status}] {self.message}"


class AuthenticationError(PlaylistApiError):
    """Missing or expired credential. Raised before any mutation is attempted."""

    def __init__(self, message: str = "Not authenticated", http_status: Optional[int] = 401) -> None:
        super().__init__(message, http_status)


class PlaylistNotFound(PlaylistApiError):
    """Requested playlist does not exist or is not visible to the user."""

    def __init__(self, message: str = "Playlist not found", http_status: Optional[int] = 404) -> None:
        super().__init__(message, http_status)


class RateLimited(PlaylistApiError):
    """Request was rate limited. Includes suggested wait time in milliseconds."""

    def __init__(self, retry_after_ms: int, message: str = "Rate limited") -> None:
        super().__init__(message, 429)
        self.retry_after_ms = retry_after_ms


class SourceUnavailable(MegalistError):
    """A source playlist could not be read. Handled by dropping the source."""

    def __init__(self, source_id: str, cause: Optional[Exception] = None) -> None:
        super().__init__(f"Source playlist {source_id} is unavailable: {cause}")
        self.source_id = source_id
        self.cause = cause


class BatchMutationError(MegalistError):
    """A batch add/remove/replace call failed; earlier batches stay applied."""

    def __init__(self, playlist_id: str, operation: str, cause: Optional[Exception] = None) -> None:
        super().__init__(f"Failed to {operation} tracks on playlist {playlist_id}: {cause}")
        self.playlist_id = playlist_id
        self.operation = operation
        self.cause = cause


class PopulationFailed(BatchMutationError):
    """Initial population stopped part-way. Resume from ``next_offset``."""

    def __init__(self, playlist_id: str, added: int, total: int,
                 cause: Optional[Exception] = None) -> None:
        super().__init__(playlist_id, "add", cause)
        self.added = added
        self.total = total

    @property
    def next_offset(self) -> int:
        return self.added

    def __str__(self) -> str:
        return (f"Population of playlist {self.playlist_id} stopped at "
                f"{self.added}/{self.total}: {self.cause}")


class MegalistNotFound(MegalistError):
    """No registry record exists for the playlist id."""

    def __init__(self, playlist_id: str) -> None:
        super().__init__(f"Megalist {playlist_id} not found in registry")
        self.playlist_id = playlist_id


class MegalistNotSyncable(MegalistError):
    """Record is frozen or not a merged megalist, so it is never reconciled."""

    def __init__(self, playlist_id: str, reason: str) -> None:
        super().__init__(f"Megalist {playlist_id} cannot be synced: {reason}")
        self.playlist_id = playlist_id
        self.reason = reason


class InvalidMegalistState(MegalistError):
    """Record combines flags that are not allowed together."""


class PlaylistExists(MegalistError):
    """A playlist with the requested name already exists for the user."""

    def __init__(self, playlist_id: str, name: str = "") -> None:
        super().__init__(f"Playlist '{name}' already exists ({playlist_id})")
        self.playlist_id = playlist_id
        self.name = name


class EmptySourceSelection(MegalistError):
    """The selected sources do not contain any track."""

    def __init__(self, source_ids: Optional[List[str]] = None) -> None:
        super().__init__("No tracks found in the selected playlists")
        self.source_ids = list(source_ids or [])


class InsufficientTracks(MegalistError):
    """Requested sample size exceeds the distinct tracks available."""

    def __init__(self, requested: int, available: int) -> None:
        super().__init__(
            f"Requested {requested} tracks but only {available} unique tracks are available"
        )
        self.requested = requested
        self.available = available
