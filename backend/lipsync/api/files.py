"""Serves files from temp storage so the lip-sync service can fetch them."""

from fastapi import APIRouter, Depends
from fastapi.responses import FileResponse

from lipsync.api.deps import get_exposure
from lipsync.exceptions import FileNotFoundInStorageError
from lipsync.services.file_exposure import FileExposure, LocalFileExposure

router = APIRouter(prefix="/files", tags=["files"])

MEDIA_TYPES = {
    ".wav": "audio/wav",
    ".mp3": "audio/mpeg",
    ".aac": "audio/aac",
    ".mp4": "video/mp4",
    ".mov": "video/quicktime",
    ".avi": "video/x-msvideo",
    ".webm": "video/webm",
}


@router.get("/{storage_key:path}")
async def get_file(storage_key: str, exposure: FileExposure = Depends(get_exposure)) -> FileResponse:
    if not isinstance(exposure, LocalFileExposure):
        raise FileNotFoundInStorageError("Local file serving is not enabled")

    file_path = exposure.get_file_path(storage_key)
    if not file_path.is_file():
        raise FileNotFoundInStorageError(f"File not found: {storage_key}")

    return FileResponse(
        path=str(file_path),
        media_type=MEDIA_TYPES.get(file_path.suffix.lower(), "application/octet-stream"),
        filename=file_path.name,
    )
