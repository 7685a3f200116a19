"""Expose local files at URLs the lip-sync service can fetch.

LocalFileExposure serves files straight out of the temp storage directory via
the /api/files route (development, or when the backend is publicly
reachable). GCSFileExposure uploads to a bucket and hands out V4 signed URLs.
"""

import asyncio
import logging
import os
import time
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Protocol
from urllib.parse import quote

from lipsync.config import Settings, get_settings
from lipsync.exceptions import FileNotFoundInStorageError
from lipsync.utils.cleanup import CleanupResult

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ExposedFile:
    """A file reachable at ``url`` until ``handle`` is revoked."""

    url: str
    handle: str


class FileExposure(Protocol):
    async def expose_for_transfer(self, path: str) -> ExposedFile: ...

    async def revoke(self, handles: Sequence[str]) -> CleanupResult: ...


class LocalFileExposure:
    """Serve files from the temp storage root over HTTP."""

    def __init__(self, settings: Settings | None = None) -> None:
        self.settings = settings or get_settings()
        self.base_path = Path(self.settings.temp_storage_path).resolve()
        self.base_path.mkdir(parents=True, exist_ok=True)

    def _relative_key(self, path: str) -> str:
        resolved = Path(path).resolve()
        try:
            return resolved.relative_to(self.base_path).as_posix()
        except ValueError:
            raise FileNotFoundInStorageError(f"File is outside temp storage: {path}")

    def get_public_url(self, storage_key: str) -> str:
        return f"{self.settings.public_base_url.rstrip('/')}/api/files/{quote(storage_key)}"

    def get_file_path(self, storage_key: str) -> Path:
        """Resolve a storage key back to a path, refusing keys that escape the root."""
        full_path = (self.base_path / storage_key).resolve()
        if full_path != self.base_path and self.base_path not in full_path.parents:
            raise FileNotFoundInStorageError(f"Invalid storage key: {storage_key}")
        return full_path

    async def expose_for_transfer(self, path: str) -> ExposedFile:
        if not os.path.exists(path):
            raise FileNotFoundInStorageError(f"File not found: {path}")
        key = self._relative_key(path)
        return ExposedFile(url=self.get_public_url(key), handle=key)

    async def revoke(self, handles: Sequence[str]) -> CleanupResult:
        # Served files are owned by their segments; nothing to remove here
        return CleanupResult()


class GCSFileExposure:
    """Upload files to Google Cloud Storage and expose them via signed URLs."""

    def __init__(self, settings: Settings | None = None, client=None) -> None:
        self.settings = settings or get_settings()
        self._client = client
        self._bucket = None

    @property
    def client(self):
        if self._client is None:
            from google.cloud import storage

            if self.settings.gcs_project_id:
                self._client = storage.Client(project=self.settings.gcs_project_id)
            else:
                self._client = storage.Client()
        return self._client

    @property
    def bucket(self):
        if self._bucket is None:
            self._bucket = self.client.bucket(self.settings.gcs_bucket_name)
        return self._bucket

    def _blob_name(self, path: str) -> str:
        parent = os.path.basename(os.path.dirname(path)) or "files"
        return f"{self.settings.gcs_key_prefix}/{parent}/{int(time.time() * 1000)}_{os.path.basename(path)}"

    def _upload_and_sign(self, path: str) -> ExposedFile:
        blob_name = self._blob_name(path)
        blob = self.bucket.blob(blob_name)
        blob.upload_from_filename(path)
        expiration = datetime.now(timezone.utc) + timedelta(seconds=self.settings.signed_url_expiration_s)
        url = blob.generate_signed_url(expiration=expiration, method="GET", version="v4")
        logger.info(f"[GCS] Uploaded {path} to gs://{self.settings.gcs_bucket_name}/{blob_name}")
        return ExposedFile(url=url, handle=blob_name)

    async def expose_for_transfer(self, path: str) -> ExposedFile:
        if not os.path.exists(path):
            raise FileNotFoundInStorageError(f"File not found: {path}")
        return await asyncio.to_thread(self._upload_and_sign, path)

    def _delete_blobs(self, handles: Sequence[str]) -> CleanupResult:
        result = CleanupResult()
        for name in handles:
            try:
                self.bucket.blob(name).delete()
                result.removed.append(name)
            except Exception as e:
                result.failed[name] = str(e)
                logger.warning(f"[GCS] Failed to delete {name}: {e}")
        return result

    async def revoke(self, handles: Sequence[str]) -> CleanupResult:
        if not handles:
            return CleanupResult()
        return await asyncio.to_thread(self._delete_blobs, list(handles))


_file_exposure: FileExposure | None = None


def get_file_exposure() -> FileExposure:
    global _file_exposure
    if _file_exposure is None:
        settings = get_settings()
        _file_exposure = GCSFileExposure(settings) if settings.use_cloud_storage else LocalFileExposure(settings)
    return _file_exposure
