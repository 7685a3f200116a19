"""Client for the Kling AI lip-sync API.

A task is submitted with publicly fetchable URLs for a video clip and an
audio track, polled until it reaches a terminal state, and its result video
is downloaded to local disk. Every request carries a freshly signed JWT.
"""

import asyncio
import logging
import os
import time
from collections.abc import Awaitable, Callable
from typing import Any

import httpx
import jwt

from lipsync.config import Settings, get_settings
from lipsync.exceptions import (
    RemoteDownloadError,
    RemoteResultMissing,
    RemoteStatusError,
    RemoteSubmitError,
    RemoteTaskFailed,
    RemoteTaskNotFound,
    RemoteTaskTimeout,
)
from lipsync.models.jobs import RemoteTask, RemoteTaskStatus
from lipsync.services.file_exposure import FileExposure, get_file_exposure
from lipsync.utils.cleanup import CleanupResult

logger = logging.getLogger(__name__)

LIP_SYNC_PATH = "/v1/videos/lip-sync"
USER_AGENT = "Lipsync-Studio/0.1.0"

# Progress reported while waiting on a task
STATUS_PROGRESS: dict[RemoteTaskStatus, float] = {
    RemoteTaskStatus.SUBMITTED: 10.0,
    RemoteTaskStatus.PROCESSING: 50.0,
    RemoteTaskStatus.SUCCEED: 100.0,
    RemoteTaskStatus.FAILED: 0.0,
}

ProgressCallback = Callable[[float], None]
StatusCallback = Callable[[RemoteTaskStatus], None]


def create_api_token(access_key: str, secret_key: str, ttl_s: int = 1800, leeway_s: int = 5) -> str:
    """Sign a short-lived HS256 token identifying the caller by access key."""
    now = int(time.time())
    payload = {
        "iss": access_key,
        "exp": now + ttl_s,
        "nbf": now - leeway_s,
    }
    return jwt.encode(payload, secret_key, algorithm="HS256", headers={"typ": "JWT"})


def _extract_task_id(body: Any) -> str | None:
    """Pull the task id out of any of the response shapes the API returns."""
    if not isinstance(body, dict):
        return None
    data = body.get("data")
    if body.get("code") == 0 and isinstance(data, dict) and data.get("task_id"):
        return str(data["task_id"])
    if body.get("task_id"):
        return str(body["task_id"])
    if body.get("success") and isinstance(data, dict) and data.get("task_id"):
        return str(data["task_id"])
    return None


def parse_task(raw: dict[str, Any]) -> RemoteTask:
    try:
        status = RemoteTaskStatus(raw.get("task_status"))
    except ValueError:
        raise RemoteStatusError(f"Unknown task status: {raw.get('task_status')}", task_id=raw.get("task_id"))

    result_url = None
    result_duration = None
    videos = (raw.get("task_result") or {}).get("videos") or []
    if videos:
        result_url = videos[0].get("url") or None
        if videos[0].get("duration") is not None:
            try:
                result_duration = float(videos[0]["duration"])
            except (TypeError, ValueError):
                result_duration = None

    return RemoteTask(
        task_id=str(raw.get("task_id")),
        status=status,
        status_message=raw.get("task_status_msg"),
        result_url=result_url,
        result_duration=result_duration,
    )


class KlingLipSyncClient:
    """Submit, poll and download Kling lip-sync tasks."""

    def __init__(
        self,
        settings: Settings | None = None,
        file_exposure: FileExposure | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.settings = settings or get_settings()
        self.file_exposure = file_exposure or get_file_exposure()
        self._transport = transport
        self._sleep = sleep
        self._clock = clock
        # task_id -> exposure handles to revoke once the task is done
        self._exposed: dict[str, list[str]] = {}

    @property
    def is_configured(self) -> bool:
        return bool(self.settings.klingai_access_key and self.settings.klingai_secret_key)

    def _headers(self) -> dict[str, str]:
        token = create_api_token(
            self.settings.klingai_access_key,
            self.settings.klingai_secret_key,
            ttl_s=self.settings.klingai_token_ttl_s,
            leeway_s=self.settings.klingai_token_leeway_s,
        )
        return {
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/json",
            "User-Agent": USER_AGENT,
        }

    def _client(self, timeout: float | None = None) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.settings.klingai_api_endpoint,
            timeout=timeout or self.settings.klingai_request_timeout_s,
            transport=self._transport,
        )

    def timeout_for(self, duration: float) -> float:
        """Wait budget for a task on a clip of the given length."""
        return self.settings.klingai_timeout_floor_s + self.settings.klingai_timeout_per_second_s * duration

    async def submit(self, video_path: str, audio_path: str) -> str:
        """Expose both files and create a lip-sync task.

        Raises:
            RemoteSubmitError: On transport failure, non-2xx status or a body without a task id
        """
        video = await self.file_exposure.expose_for_transfer(video_path)
        try:
            audio = await self.file_exposure.expose_for_transfer(audio_path)
        except Exception:
            await self._revoke([video.handle])
            raise
        handles = [video.handle, audio.handle]

        payload = {
            "input": {
                "mode": "audio2video",
                "video_url": video.url,
                "audio_type": "url",
                "audio_url": audio.url,
            }
        }

        try:
            async with self._client() as client:
                response = await client.post(LIP_SYNC_PATH, json=payload, headers=self._headers())
        except httpx.HTTPError as e:
            await self._revoke(handles)
            raise RemoteSubmitError(f"Lip-sync submit failed: {e}")

        if response.status_code >= 300:
            await self._revoke(handles)
            logger.error(f"[KLING] Submit failed: {response.status_code} {response.text}")
            raise RemoteSubmitError(f"Lip-sync submit failed: HTTP {response.status_code}")

        try:
            body = response.json()
        except ValueError:
            body = None
        task_id = _extract_task_id(body)
        if not task_id:
            await self._revoke(handles)
            logger.error(f"[KLING] Unexpected submit response: {response.text}")
            raise RemoteSubmitError("Lip-sync submit response did not include a task id")

        self._exposed[task_id] = handles
        logger.info(f"[KLING] Submitted task {task_id}")
        return task_id

    async def poll_status(self, task_id: str) -> RemoteTask:
        """Fetch the current status of a task.

        The list endpoint returns recent tasks; the one with a matching id is
        selected.
        """
        try:
            async with self._client() as client:
                response = await client.get(
                    LIP_SYNC_PATH, params={"task_id": task_id}, headers=self._headers()
                )
        except httpx.HTTPError as e:
            raise RemoteStatusError(f"Lip-sync status request failed: {e}", task_id=task_id)

        if response.status_code >= 300:
            raise RemoteStatusError(f"Lip-sync status request failed: HTTP {response.status_code}", task_id=task_id)

        try:
            body = response.json()
        except ValueError:
            raise RemoteStatusError("Lip-sync status response is not JSON", task_id=task_id)

        if not isinstance(body, dict) or body.get("code") != 0:
            message = body.get("message") if isinstance(body, dict) else None
            raise RemoteStatusError(f"Lip-sync status error: {message or 'unexpected response'}", task_id=task_id)

        data = body.get("data")
        tasks = data if isinstance(data, list) else [data] if isinstance(data, dict) else []
        for raw in tasks:
            if isinstance(raw, dict) and str(raw.get("task_id")) == task_id:
                return parse_task(raw)

        raise RemoteTaskNotFound(task_id=task_id)

    async def wait_until_terminal(
        self,
        task_id: str,
        on_progress: ProgressCallback | None = None,
        timeout: float | None = None,
        on_status: StatusCallback | None = None,
    ) -> str:
        """Poll until the task succeeds and return its result URL.

        Raises:
            RemoteTaskFailed: Task reported failed
            RemoteResultMissing: Task succeeded without a result URL
            RemoteTaskTimeout: Budget exhausted before a terminal state
        """
        budget = timeout if timeout is not None else self.settings.klingai_timeout_floor_s
        deadline = self._clock() + budget
        last_status: RemoteTaskStatus | None = None

        while True:
            task = await self.poll_status(task_id)

            if task.status != last_status:
                logger.info(f"[KLING] Task {task_id}: {task.status.value}")
                last_status = task.status
                if on_status:
                    on_status(task.status)
            if on_progress:
                on_progress(STATUS_PROGRESS[task.status])

            if task.status == RemoteTaskStatus.SUCCEED:
                if not task.result_url:
                    raise RemoteResultMissing(task_id=task_id)
                return task.result_url
            if task.status == RemoteTaskStatus.FAILED:
                raise RemoteTaskFailed(
                    f"Lip-sync task failed: {task.status_message or 'unknown error'}", task_id=task_id
                )

            interval = (
                self.settings.klingai_poll_interval_submitted_s
                if task.status == RemoteTaskStatus.SUBMITTED
                else self.settings.klingai_poll_interval_processing_s
            )
            remaining = deadline - self._clock()
            if remaining <= 0:
                raise RemoteTaskTimeout(
                    f"Lip-sync task did not finish within {budget:.0f}s", task_id=task_id
                )
            await self._sleep(min(interval, remaining))

    async def download(self, result_url: str, output_path: str) -> str:
        """Stream the result video to output_path; partial files are removed on failure."""
        try:
            async with httpx.AsyncClient(
                timeout=self.settings.klingai_download_timeout_s,
                transport=self._transport,
                follow_redirects=True,
            ) as client:
                async with client.stream("GET", result_url) as response:
                    if response.status_code >= 300:
                        raise RemoteDownloadError(f"Result download failed: HTTP {response.status_code}")
                    with open(output_path, "wb") as f:
                        async for chunk in response.aiter_bytes():
                            f.write(chunk)
        except (httpx.HTTPError, OSError, RemoteDownloadError) as e:
            if os.path.exists(output_path):
                os.unlink(output_path)
            if isinstance(e, RemoteDownloadError):
                raise
            raise RemoteDownloadError(f"Result download failed: {e}")

        logger.info(f"[KLING] Downloaded result to {output_path}")
        return output_path

    async def release(self, task_id: str) -> CleanupResult:
        """Revoke the exposure handles created for a task."""
        return await self._revoke(self._exposed.pop(task_id, []))

    async def _revoke(self, handles: list[str]) -> CleanupResult:
        if not handles:
            return CleanupResult()
        try:
            result = await self.file_exposure.revoke(handles)
        except Exception as e:
            logger.warning(f"[KLING] Failed to revoke exposed files {handles}: {e}")
            return CleanupResult(failed={h: str(e) for h in handles})
        if not result.ok:
            logger.warning(f"[KLING] Some exposed files were not revoked: {result.failed}")
        return result

    async def transform(
        self,
        video_path: str,
        audio_path: str,
        output_path: str,
        on_progress: ProgressCallback | None = None,
        timeout: float | None = None,
        on_status: StatusCallback | None = None,
    ) -> str:
        """Submit, wait and download in one call.

        Progress: 10 after submission, 10-90 while the task runs, 90 while
        downloading, 100 when the file is on disk. Exposed files are always
        released afterwards.
        """
        report = on_progress or (lambda _p: None)
        task_id = await self.submit(video_path, audio_path)
        try:
            report(10.0)
            def await_progress(p: float) -> None:
                report(10.0 + p * 0.8)

            result_url = await self.wait_until_terminal(
                task_id, on_progress=await_progress, timeout=timeout, on_status=on_status
            )
            report(90.0)
            await self.download(result_url, output_path)
            report(100.0)
            return output_path
        finally:
            await self.release(task_id)


_kling_client: KlingLipSyncClient | None = None


def get_kling_client() -> KlingLipSyncClient:
    global _kling_client
    if _kling_client is None:
        _kling_client = KlingLipSyncClient()
    return _kling_client
