"""Runtime job records for the processing queue, remote tasks and exports."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from lipsync.models.session import utcnow
from lipsync.utils.cancellation import CancelToken


class RemoteTaskStatus(str, Enum):
    """Task status as reported by the lip-sync service."""

    SUBMITTED = "submitted"
    PROCESSING = "processing"
    SUCCEED = "succeed"
    FAILED = "failed"


@dataclass
class RemoteTask:
    """One poll result for a remote task."""

    task_id: str
    status: RemoteTaskStatus
    status_message: str | None = None
    result_url: str | None = None
    result_duration: float | None = None


@dataclass
class ProcessingJob:
    """A batch of segments being processed for one session."""

    session_id: str
    segment_ids: list[str]
    max_concurrent: int
    cursor: int = 0
    in_flight: set[str] = field(default_factory=set)
    completed: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    cancel_token: CancelToken = field(default_factory=CancelToken)
    started_at: datetime = field(default_factory=utcnow)

    @property
    def is_running(self) -> bool:
        return not self.cancel_token.cancelled

    def to_dict(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "segment_ids": list(self.segment_ids),
            "current_index": self.cursor,
            "is_running": self.is_running,
            "active_segments": sorted(self.in_flight),
            "completed": list(self.completed),
            "failed": list(self.failed),
            "max_concurrent": self.max_concurrent,
            "started_at": self.started_at.isoformat(),
        }


class ExportStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass
class ExportJob:
    """An export of one session to a single output file."""

    export_id: str
    session_id: str
    output_path: str
    status: ExportStatus = ExportStatus.RUNNING
    progress: float = 0.0
    error_message: str | None = None
    cancel_token: CancelToken = field(default_factory=CancelToken)
    created_at: datetime = field(default_factory=utcnow)
    completed_at: datetime | None = None

    @property
    def is_running(self) -> bool:
        return self.status == ExportStatus.RUNNING

    @property
    def download_path(self) -> str:
        return f"/api/export/download/{self.export_id}"

    def to_dict(self) -> dict[str, Any]:
        return {
            "export_id": self.export_id,
            "session_id": self.session_id,
            "status": self.status.value,
            "progress": self.progress,
            "error_message": self.error_message,
            "download_url": self.download_path if self.status == ExportStatus.COMPLETED else None,
            "created_at": self.created_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }


@dataclass(frozen=True)
class TimelineRange:
    """A span of the source timeline, optionally replaced by another clip."""

    start: float
    end: float
    replacement_path: str | None = None

    @property
    def duration(self) -> float:
        return self.end - self.start
