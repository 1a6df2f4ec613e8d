import json
import logging
import os
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from megalist.domain.entities import BatchReport


logger = logging.getLogger(__name__)


class OutcomeStatus(str, Enum):
    """Status of one playlist in a batch operation."""

    SYNCED = "synced"
    UP_TO_DATE = "up_to_date"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass
class ReportHeader:
    """Header information for a batch sync report."""

    job_id: str
    started_at: datetime
    finished_at: Optional[datetime] = None
    operation: str = "sync_all"
    shuffled: bool = False

    def to_json(self) -> Dict[str, Any]:
        """Serialize header to JSON."""
        return {
            "jobId": self.job_id,
            "startedAt": self.started_at.isoformat(),
            "finishedAt": self.finished_at.isoformat() if self.finished_at else None,
            "operation": self.operation,
            "shuffled": self.shuffled,
        }

    @classmethod
    def from_json(cls, data: Dict[str, Any]) -> "ReportHeader":
        """Deserialize header from JSON."""
        return cls(
            job_id=data["jobId"],
            started_at=datetime.fromisoformat(data["startedAt"]),
            finished_at=datetime.fromisoformat(data["finishedAt"]) if data.get("finishedAt") else None,
            operation=data.get("operation", "sync_all"),
            shuffled=data.get("shuffled", False),
        )


@dataclass
class PlaylistOutcome:
    """Per-playlist line of a batch sync report."""

    playlist_id: str
    status: OutcomeStatus
    added: int = 0
    removed: int = 0
    final_track_count: Optional[int] = None
    error: Optional[str] = None

    def to_json(self) -> Dict[str, Any]:
        """Serialize outcome to JSON."""
        return {
            "playlistId": self.playlist_id,
            "status": self.status.value,
            "added": self.added,
            "removed": self.removed,
            "finalTrackCount": self.final_track_count,
            "error": self.error,
        }

    @classmethod
    def from_json(cls, data: Dict[str, Any]) -> "PlaylistOutcome":
        """Deserialize outcome from JSON."""
        return cls(
            playlist_id=data["playlistId"],
            status=OutcomeStatus(data["status"]),
            added=data.get("added", 0),
            removed=data.get("removed", 0),
            final_track_count=data.get("finalTrackCount"),
            error=data.get("error"),
        )


@dataclass
class SyncReport:
    """Complete batch sync report."""

    header: ReportHeader
    playlists: List[PlaylistOutcome] = field(default_factory=list)

    @property
    def totals(self) -> Dict[str, int]:
        counts = {status.value: 0 for status in OutcomeStatus}
        for outcome in self.playlists:
            counts[outcome.status.value] += 1
        counts["added"] = sum(o.added for o in self.playlists)
        counts["removed"] = sum(o.removed for o in self.playlists)
        return counts

    def to_json(self) -> Dict[str, Any]:
        """Serialize report to JSON."""
        return {
            "header": self.header.to_json(),
            "totals": self.totals,
            "playlists": [p.to_json() for p in self.playlists],
        }

    @classmethod
    def from_json(cls, data: Dict[str, Any]) -> "SyncReport":
        """Deserialize report from JSON."""
        return cls(
            header=ReportHeader.from_json(data["header"]),
            playlists=[PlaylistOutcome.from_json(p) for p in data.get("playlists", [])],
        )


def create_sync_report(job_id: str, started_at: datetime, batch: BatchReport,
                       shuffled: bool = False) -> SyncReport:
    """Turn a settle-all batch report into a serializable sync report."""
    outcomes: List[PlaylistOutcome] = []
    for outcome in batch.outcomes:
        if not outcome.success:
            outcomes.append(PlaylistOutcome(outcome.playlist_id, OutcomeStatus.FAILED, error=outcome.error))
            continue
        result = outcome.result
        if result is None:
            outcomes.append(PlaylistOutcome(outcome.playlist_id, OutcomeStatus.SYNCED))
            continue
        status = OutcomeStatus.SYNCED if result.changed else OutcomeStatus.UP_TO_DATE
        outcomes.append(PlaylistOutcome(
            playlist_id=outcome.playlist_id,
            status=status,
            added=result.added,
            removed=result.removed,
            final_track_count=result.final_track_count,
        ))
    outcomes.extend(PlaylistOutcome(pid, OutcomeStatus.SKIPPED) for pid in batch.skipped)

    header = ReportHeader(job_id=job_id, started_at=started_at,
                          finished_at=datetime.now(), shuffled=shuffled)
    return SyncReport(header=header, playlists=outcomes)


def save_report(report: SyncReport, report_path: str) -> str:
    """Write the report as JSON and return the file path."""
    os.makedirs(report_path, exist_ok=True)
    report_file = os.path.join(report_path, f"sync_report_{report.header.job_id}.json")
    with open(report_file, 'w') as f:
        json.dump(report.to_json(), f, indent=2)
    logger.info(f"Report saved to: {report_file}")
    return report_file
