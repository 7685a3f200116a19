"""
Session API endpoints.

Provides:
- POST /sessions - Upload a source video and open a session
- GET /sessions/{session_id} - Session metadata and segments
- GET /sessions/{session_id}/video - Stream the uploaded source video (supports Range)
- DELETE /sessions/{session_id} - Stop work and remove the session and its files
"""

import asyncio
import logging
import os
import shutil
import uuid
from pathlib import Path

from fastapi import APIRouter, Depends, File, UploadFile, status
from fastapi.responses import FileResponse

from lipsync.api.deps import get_export_service, get_scheduler, get_store, get_transformer
from lipsync.api.files import MEDIA_TYPES
from lipsync.config import get_settings
from lipsync.exceptions import (
    FileNotFoundInStorageError,
    ProbeError,
    UnsupportedMediaTypeError,
    ValidationError,
)
from lipsync.schemas.session import SessionResponse
from lipsync.services.export_service import ExportService
from lipsync.services.media_transformer import MediaTransformer
from lipsync.services.queue_scheduler import QueueScheduler
from lipsync.services.session_store import SessionStore

logger = logging.getLogger(__name__)
settings = get_settings()
router = APIRouter(prefix="/sessions", tags=["sessions"])

UPLOAD_CHUNK_SIZE = 1024 * 1024


def session_dir(session_id: str) -> Path:
    return Path(settings.temp_storage_path) / session_id


async def _save_upload(file: UploadFile, dest: Path) -> int:
    max_bytes = settings.max_upload_size_mb * 1024 * 1024
    written = 0
    with open(dest, "wb") as f:
        while chunk := await file.read(UPLOAD_CHUNK_SIZE):
            written += len(chunk)
            if written > max_bytes:
                raise ValidationError(f"File exceeds the {settings.max_upload_size_mb}MB upload limit")
            f.write(chunk)
    return written


@router.post("", response_model=SessionResponse, status_code=status.HTTP_201_CREATED)
async def create_session(
    file: UploadFile = File(...),
    store: SessionStore = Depends(get_store),
    transformer: MediaTransformer = Depends(get_transformer),
) -> SessionResponse:
    """Store an uploaded video, probe it and open a session for it."""
    if file.content_type and file.content_type not in settings.allowed_video_types:
        raise UnsupportedMediaTypeError(f"Unsupported video type: {file.content_type}")

    session_id = str(uuid.uuid4())
    directory = session_dir(session_id)
    directory.mkdir(parents=True, exist_ok=True)
    ext = os.path.splitext(file.filename or "")[1].lower() or ".mp4"
    video_path = directory / f"original{ext}"

    try:
        size = await _save_upload(file, video_path)
        metadata = await transformer.probe(str(video_path))
    except (ProbeError, ValidationError):
        shutil.rmtree(directory, ignore_errors=True)
        raise

    session = store.create_session(
        str(video_path), metadata, original_filename=file.filename, session_id=session_id
    )
    logger.info(f"Uploaded {file.filename} ({size} bytes) as session {session_id}")
    return SessionResponse(session=session.to_dict())


@router.get("/{session_id}", response_model=SessionResponse)
async def get_session(session_id: str, store: SessionStore = Depends(get_store)) -> SessionResponse:
    session = store.require_session(session_id)
    store.touch_session(session_id)
    return SessionResponse(
        session=session.to_dict(),
        segments=[seg.to_dict() for seg in store.list_segments(session_id)],
    )


@router.get("/{session_id}/video")
async def stream_session_video(session_id: str, store: SessionStore = Depends(get_store)) -> FileResponse:
    """Serve the uploaded source video for playback next to the segment clips."""
    session = store.require_session(session_id)
    path = session.original_video_path
    if not os.path.exists(path):
        raise FileNotFoundInStorageError(f"Source video missing for session {session_id}")
    ext = os.path.splitext(path)[1].lower()
    return FileResponse(
        path=path,
        media_type=MEDIA_TYPES.get(ext, "application/octet-stream"),
        filename=session.original_filename or os.path.basename(path),
    )


@router.delete("/{session_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_session(
    session_id: str,
    store: SessionStore = Depends(get_store),
    scheduler: QueueScheduler = Depends(get_scheduler),
    exports: ExportService = Depends(get_export_service),
) -> None:
    """Cancel queued work and exports, then drop the session and its working directory."""
    store.require_session(session_id)
    await scheduler.cancel(session_id)
    await exports.cancel_export(session_id)
    store.delete_session(session_id)
    await asyncio.to_thread(shutil.rmtree, session_dir(session_id), True)
    logger.info(f"Deleted session {session_id}")
