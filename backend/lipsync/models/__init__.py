from lipsync.models.jobs import (
    ExportJob,
    ExportStatus,
    ProcessingJob,
    RemoteTask,
    RemoteTaskStatus,
    TimelineRange,
)
from lipsync.models.session import (
    ApprovalStatus,
    Segment,
    SegmentStatus,
    Session,
    VideoMetadata,
)

__all__ = [
    "ApprovalStatus",
    "ExportJob",
    "ExportStatus",
    "ProcessingJob",
    "RemoteTask",
    "RemoteTaskStatus",
    "Segment",
    "SegmentStatus",
    "Session",
    "TimelineRange",
    "VideoMetadata",
]
