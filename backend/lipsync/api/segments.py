"""
Segment API endpoints.

Provides:
- POST /segments - Create a segment in a session
- GET /segments/session/{session_id} - List a session's segments
- DELETE /segments/session/{session_id} - Delete all of a session's segments
- GET /segments/{segment_id} - Get one segment
- DELETE /segments/{segment_id} - Delete a segment that is not being processed
- PUT /segments/{segment_id}/approval - Approve or reject a processed segment
- POST /segments/{segment_id}/retry - Reprocess a failed segment
- GET /segments/{segment_id}/video/{kind} - Stream the original or processed clip
"""

import logging
import os
from typing import Any, Literal

from fastapi import APIRouter, Depends, status
from fastapi.responses import FileResponse

from lipsync.api.deps import get_scheduler, get_store
from lipsync.exceptions import FileNotFoundInStorageError, StateConflictError
from lipsync.models.session import ApprovalStatus, Segment, SegmentStatus
from lipsync.schemas.session import ApprovalUpdate, SegmentCreate
from lipsync.services.queue_scheduler import QueueScheduler
from lipsync.services.session_store import SessionStore
from lipsync.utils.cleanup import remove_files

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/segments", tags=["segments"])


def _remove_segment_files(segments: list[Segment]) -> None:
    paths = []
    for seg in segments:
        paths += [seg.extracted_video_path, seg.extracted_audio_path, seg.processed_video_path]
    result = remove_files(paths)
    if result.removed:
        logger.info(f"Removed {len(result.removed)} files of {len(segments)} deleted segments")


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_segment(request: SegmentCreate, store: SessionStore = Depends(get_store)) -> dict[str, Any]:
    segment = store.add_segment(request.session_id, request.start_time, request.end_time)
    return segment.to_dict()


@router.get("/session/{session_id}")
async def list_segments(session_id: str, store: SessionStore = Depends(get_store)) -> list[dict[str, Any]]:
    store.require_session(session_id)
    return [seg.to_dict() for seg in store.list_segments(session_id)]


@router.delete("/session/{session_id}")
async def clear_segments(session_id: str, store: SessionStore = Depends(get_store)) -> dict[str, Any]:
    store.require_session(session_id)
    segments = store.list_segments(session_id)
    deleted = store.clear_segments(session_id)
    _remove_segment_files(segments)
    return {"session_id": session_id, "deleted": deleted}


@router.get("/{segment_id}")
async def get_segment(segment_id: str, store: SessionStore = Depends(get_store)) -> dict[str, Any]:
    return store.require_segment(segment_id).to_dict()


@router.delete("/{segment_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_segment(segment_id: str, store: SessionStore = Depends(get_store)) -> None:
    segment = store.require_segment(segment_id)
    store.remove_segment(segment_id)
    _remove_segment_files([segment])


@router.put("/{segment_id}/approval")
async def update_approval(
    segment_id: str,
    request: ApprovalUpdate,
    store: SessionStore = Depends(get_store),
) -> dict[str, Any]:
    store.require_segment(segment_id)
    store.set_approval(segment_id, ApprovalStatus(request.approval_status))
    return store.require_segment(segment_id).to_dict()


@router.post("/{segment_id}/retry", status_code=status.HTTP_202_ACCEPTED)
async def retry_segment(
    segment_id: str,
    store: SessionStore = Depends(get_store),
    scheduler: QueueScheduler = Depends(get_scheduler),
) -> dict[str, Any]:
    """Run the full pipeline again for a failed segment."""
    segment = store.require_segment(segment_id)
    if segment.status != SegmentStatus.FAILED:
        raise StateConflictError(f"Only failed segments can be retried (is {segment.status.value})")
    job = await scheduler.enqueue(segment.session_id, [segment_id])
    return job.to_dict()


@router.get("/{segment_id}/video/{kind}")
async def stream_segment_video(
    segment_id: str,
    kind: Literal["original", "processed"],
    store: SessionStore = Depends(get_store),
) -> FileResponse:
    segment = store.require_segment(segment_id)
    path = segment.extracted_video_path if kind == "original" else segment.processed_video_path
    if not path or not os.path.exists(path):
        raise FileNotFoundInStorageError(f"No {kind} video for segment {segment_id}")
    return FileResponse(path=path, media_type="video/mp4", filename=os.path.basename(path))
