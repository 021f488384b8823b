"""Transfer job records and their state machine."""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional

from storage_api.schemas import ConflictPolicy, TransferEndpoint


class JobState(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (JobState.COMPLETED, JobState.FAILED, JobState.CANCELLED)


class FileStatus(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    SKIPPED = "skipped"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self not in (FileStatus.QUEUED, FileStatus.RUNNING)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class TransferFile:
    """One file of a job. Paths are relative to the job's source and destination paths."""

    source_path: str
    destination_path: str
    bytes_total: int
    bytes_transferred: int = 0
    status: FileStatus = FileStatus.QUEUED
    error: Optional[str] = None
    # Where the bytes actually landed (differs from destination_path after a rename).
    written_path: Optional[str] = None
    # Set when an overwrite replaced an existing file of replaced_bytes.
    replaced: bool = False
    replaced_bytes: int = 0

    def report(self, num_bytes: int) -> None:
        """Record progress; only ever moves forward, so a retry never shows a dip."""
        if num_bytes > self.bytes_transferred:
            self.bytes_transferred = min(num_bytes, self.bytes_total) if self.bytes_total else num_bytes

    def to_dict(self) -> Dict:
        return {
            "source_path": self.source_path,
            "destination_path": self.written_path or self.destination_path,
            "bytes_total": self.bytes_total,
            "bytes_transferred": self.bytes_transferred,
            "status": self.status.value,
            "error": self.error,
        }


@dataclass
class TransferJob:
    source: TransferEndpoint
    destination: TransferEndpoint
    files: List[TransferFile]
    conflict_policy: ConflictPolicy
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    state: JobState = JobState.QUEUED
    created_at: datetime = field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    error: Optional[str] = None
    cleaned_up: bool = False

    @property
    def bytes_total(self) -> int:
        return sum(f.bytes_total for f in self.files)

    @property
    def bytes_transferred(self) -> int:
        return sum(f.bytes_transferred for f in self.files)

    @property
    def percentage(self) -> float:
        total = self.bytes_total
        if total == 0:
            return 100.0 if self.state == JobState.COMPLETED else 0.0
        return round(100.0 * self.bytes_transferred / total, 1)

    def mark_running(self) -> None:
        if self.state == JobState.QUEUED:
            self.state = JobState.RUNNING
            self.started_at = utcnow()

    def finish(self) -> JobState:
        """Derive the terminal state from the file outcomes."""
        if self.state == JobState.CANCELLED or any(f.status == FileStatus.CANCELLED for f in self.files):
            self.state = JobState.CANCELLED
        elif any(f.status == FileStatus.FAILED for f in self.files):
            self.state = JobState.FAILED
            failed = [f for f in self.files if f.status == FileStatus.FAILED]
            self.error = f"{len(failed)} of {len(self.files)} files failed; first: {failed[0].source_path}: {failed[0].error}"
        else:
            self.state = JobState.COMPLETED
        self.completed_at = utcnow()
        return self.state

    def to_dict(self) -> Dict:
        return {
            "job_id": self.id,
            "state": self.state.value,
            "bytes_transferred": self.bytes_transferred,
            "bytes_total": self.bytes_total,
            "percentage": self.percentage,
            "conflict_policy": self.conflict_policy.value,
            "files": [f.to_dict() for f in self.files],
            "created_at": self.created_at,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "error": self.error,
        }
