"""In-memory session and segment models.

A session owns one uploaded source video and the segments carved out of it.
Nothing here is persisted; everything lives for the lifetime of the process.
"""

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any


def utcnow() -> datetime:
    return datetime.now(UTC)


class SegmentStatus(str, Enum):
    """Processing lifecycle of a segment."""

    PENDING = "pending"
    EXTRACTING = "extracting"
    UPLOADING = "uploading"
    PROCESSING = "processing"
    COMPLETE = "complete"
    FAILED = "failed"


class ApprovalStatus(str, Enum):
    """Review decision for a processed segment."""

    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


# Legal status transitions. Entering EXTRACTING from FAILED is a retry.
ALLOWED_TRANSITIONS: dict[SegmentStatus, frozenset[SegmentStatus]] = {
    SegmentStatus.PENDING: frozenset({SegmentStatus.EXTRACTING}),
    SegmentStatus.EXTRACTING: frozenset({SegmentStatus.UPLOADING, SegmentStatus.FAILED}),
    SegmentStatus.UPLOADING: frozenset({SegmentStatus.PROCESSING, SegmentStatus.FAILED}),
    SegmentStatus.PROCESSING: frozenset({SegmentStatus.COMPLETE, SegmentStatus.FAILED}),
    SegmentStatus.COMPLETE: frozenset(),
    SegmentStatus.FAILED: frozenset({SegmentStatus.EXTRACTING}),
}

IN_FLIGHT_STATUSES = frozenset(
    {SegmentStatus.EXTRACTING, SegmentStatus.UPLOADING, SegmentStatus.PROCESSING}
)
PROCESSABLE_STATUSES = frozenset({SegmentStatus.PENDING, SegmentStatus.FAILED})


def can_transition(current: SegmentStatus, target: SegmentStatus) -> bool:
    return target in ALLOWED_TRANSITIONS[current]


@dataclass(frozen=True)
class VideoMetadata:
    """Properties of a media file as reported by ffprobe."""

    duration: float  # seconds
    width: int
    height: int
    framerate: float
    codec: str
    container: str
    size: int  # bytes

    def to_dict(self) -> dict[str, Any]:
        return {
            "duration": self.duration,
            "resolution": {"width": self.width, "height": self.height},
            "framerate": self.framerate,
            "codec": self.codec,
            "format": self.container,
            "size": self.size,
        }


@dataclass
class Segment:
    """A time range of the source video sent for lip-sync resynthesis."""

    id: str
    session_id: str
    start: float
    end: float
    original_video_path: str
    status: SegmentStatus = SegmentStatus.PENDING
    approval: ApprovalStatus = ApprovalStatus.PENDING
    extracted_video_path: str | None = None
    extracted_audio_path: str | None = None
    processed_video_path: str | None = None
    error_message: str | None = None
    retry_count: int = 0
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def duration(self) -> float:
        return self.end - self.start

    def overlaps(self, start: float, end: float) -> bool:
        return start < self.end and end > self.start

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary."""
        return {
            "id": self.id,
            "session_id": self.session_id,
            "start_time": self.start,
            "end_time": self.end,
            "duration": self.duration,
            "original_video_path": self.original_video_path,
            "extracted_video_path": self.extracted_video_path,
            "extracted_audio_path": self.extracted_audio_path,
            "processed_video_path": self.processed_video_path,
            "status": self.status.value,
            "approval_status": self.approval.value,
            "error_message": self.error_message,
            "retry_count": self.retry_count,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }


@dataclass
class Session:
    """An uploaded source video and its ordered segment ids."""

    id: str
    original_video_path: str
    metadata: VideoMetadata
    original_filename: str | None = None
    segment_ids: list[str] = field(default_factory=list)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def touch(self) -> None:
        self.updated_at = utcnow()

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "original_video_path": self.original_video_path,
            "original_filename": self.original_filename,
            "metadata": self.metadata.to_dict(),
            "segment_ids": list(self.segment_ids),
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }
