"""
Export API endpoints.

Provides:
- POST /export - Start exporting a reviewed session
- GET /export/estimate/{session_id} - Readiness and time estimate
- GET /export/status/{session_id} - Latest export for a session
- GET /export/download/{export_id} - Download a finished export
- DELETE /export/{session_id} - Cancel or discard the session's export
"""

import os
from typing import Any

from fastapi import APIRouter, Depends, status
from fastapi.responses import FileResponse
from starlette.background import BackgroundTask

from lipsync.api.deps import get_export_service, get_store
from lipsync.exceptions import ExportNotFoundError, ExportNotReadyError, StateConflictError
from lipsync.models.jobs import ExportStatus
from lipsync.models.session import ApprovalStatus
from lipsync.schemas.session import ExportRequest, ExportStartResponse
from lipsync.services.export_service import ExportService, estimate_export_seconds
from lipsync.services.session_store import SessionStore

router = APIRouter(prefix="/export", tags=["export"])

MEDIA_TYPES = {
    ".mp4": "video/mp4",
    ".mov": "video/quicktime",
}


@router.post("", response_model=ExportStartResponse, status_code=status.HTTP_202_ACCEPTED)
async def start_export(
    request: ExportRequest,
    store: SessionStore = Depends(get_store),
    exports: ExportService = Depends(get_export_service),
) -> ExportStartResponse:
    job = await exports.start_export(request.session_id, container=request.format)
    session = store.require_session(request.session_id)
    segments = store.list_segments(request.session_id)
    return ExportStartResponse(
        export_id=job.export_id,
        status=job.status.value,
        estimated_seconds=estimate_export_seconds(session.metadata.duration, len(segments)),
    )


@router.get("/estimate/{session_id}")
async def get_export_estimate(
    session_id: str,
    store: SessionStore = Depends(get_store),
    exports: ExportService = Depends(get_export_service),
) -> dict[str, Any]:
    session = store.require_session(session_id)
    segments = store.list_segments(session_id)
    try:
        exports.check_ready(session_id)
        ready, reason = True, None
    except ExportNotReadyError as e:
        ready, reason = False, e.message
    return {
        "session_id": session_id,
        "ready": ready,
        "reason": reason,
        "approved": sum(1 for s in segments if s.approval == ApprovalStatus.APPROVED),
        "rejected": sum(1 for s in segments if s.approval == ApprovalStatus.REJECTED),
        "estimated_seconds": estimate_export_seconds(session.metadata.duration, len(segments)),
    }


@router.get("/status/{session_id}")
async def get_export_status(
    session_id: str,
    exports: ExportService = Depends(get_export_service),
) -> dict[str, Any]:
    return exports.status(session_id)


@router.get("/download/{export_id}")
async def download_export(
    export_id: str,
    exports: ExportService = Depends(get_export_service),
) -> FileResponse:
    """Send the export file; it is removed after the grace period."""
    job = exports.find_export(export_id)
    if job.status != ExportStatus.COMPLETED:
        raise StateConflictError(f"Export {export_id} is {job.status.value}")
    if not os.path.exists(job.output_path):
        raise ExportNotFoundError(export_id)

    async def schedule_cleanup() -> None:
        exports.mark_downloaded(export_id)

    ext = os.path.splitext(job.output_path)[1].lower()
    return FileResponse(
        path=job.output_path,
        media_type=MEDIA_TYPES.get(ext, "application/octet-stream"),
        filename=f"lipsync_export_{export_id}{ext}",
        background=BackgroundTask(schedule_cleanup),
    )


@router.delete("/{session_id}")
async def cancel_export(
    session_id: str,
    exports: ExportService = Depends(get_export_service),
) -> dict[str, Any]:
    cancelled = await exports.cancel_export(session_id)
    if not cancelled:
        raise ExportNotFoundError()
    return {"session_id": session_id, "cancelled": True}
