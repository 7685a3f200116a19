"""
Processing queue API endpoints.

Provides:
- POST /queue/process - Start processing a session's segments
- POST /queue/cancel - Stop admitting further segments
- GET /queue/status/{session_id} - Batch and segment status
"""

from typing import Any

from fastapi import APIRouter, Depends, status

from lipsync.api.deps import get_scheduler
from lipsync.schemas.session import ProcessRequest, SessionRequest
from lipsync.services.queue_scheduler import QueueScheduler

router = APIRouter(prefix="/queue", tags=["queue"])


@router.post("/process", status_code=status.HTTP_202_ACCEPTED)
async def start_processing(
    request: ProcessRequest,
    scheduler: QueueScheduler = Depends(get_scheduler),
) -> dict[str, Any]:
    job = await scheduler.enqueue(request.session_id, request.segment_ids)
    return job.to_dict()


@router.post("/cancel")
async def cancel_processing(
    request: SessionRequest,
    scheduler: QueueScheduler = Depends(get_scheduler),
) -> dict[str, Any]:
    cancelled = await scheduler.cancel(request.session_id)
    return {"session_id": request.session_id, "cancelled": cancelled}


@router.get("/status/{session_id}")
async def get_queue_status(
    session_id: str,
    scheduler: QueueScheduler = Depends(get_scheduler),
) -> dict[str, Any]:
    return scheduler.status(session_id)
