"""Tests for the Kling lip-sync client.

Uses httpx.MockTransport in place of the remote API, a fake file exposure,
and a fake clock so polling runs instantly.
"""

import json
import os

import httpx
import jwt
import pytest

from lipsync.config import Settings
from lipsync.exceptions import (
    RemoteDownloadError,
    RemoteResultMissing,
    RemoteStatusError,
    RemoteSubmitError,
    RemoteTaskFailed,
    RemoteTaskNotFound,
    RemoteTaskTimeout,
)
from lipsync.models.jobs import RemoteTaskStatus
from lipsync.services.file_exposure import ExposedFile
from lipsync.services.kling_client import KlingLipSyncClient, create_api_token
from lipsync.utils.cleanup import CleanupResult

ACCESS_KEY = "test-access-key"
SECRET_KEY = "test-secret-key-0123456789abcdef0123456789"


class FakeExposure:
    def __init__(self):
        self.exposed: list[str] = []
        self.revoked: list[str] = []

    async def expose_for_transfer(self, path):
        name = os.path.basename(path)
        self.exposed.append(name)
        return ExposedFile(url=f"https://files.test/{name}", handle=name)

    async def revoke(self, handles):
        self.revoked.extend(handles)
        return CleanupResult(removed=list(handles))


class FakeClock:
    def __init__(self):
        self.now = 0.0
        self.sleeps: list[float] = []

    def __call__(self):
        return self.now

    async def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now += seconds


def task_body(task_id, status, url=None, msg=None, others=()):
    task = {"task_id": task_id, "task_status": status}
    if msg:
        task["task_status_msg"] = msg
    if status == "succeed":
        task["task_result"] = {"videos": [{"url": url, "duration": "5.4"}] if url is not None else []}
    return {"code": 0, "message": "SUCCEED", "data": [*others, task]}


class Api:
    """Scripted remote API: replies to status polls in order."""

    def __init__(self, submit_body=None, submit_status=200, statuses=(), result=b"video-bytes"):
        self.submit_body = submit_body or {"code": 0, "data": {"task_id": "task-1"}}
        self.submit_status = submit_status
        self.statuses = list(statuses)
        self.result = result
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.url.host == "cdn.test":
            return httpx.Response(200, content=self.result)
        if request.method == "POST":
            return httpx.Response(self.submit_status, json=self.submit_body)
        body = self.statuses.pop(0) if len(self.statuses) > 1 else self.statuses[0]
        return httpx.Response(200, json=body)


@pytest.fixture
def settings():
    return Settings(
        klingai_access_key=ACCESS_KEY,
        klingai_secret_key=SECRET_KEY,
        klingai_api_endpoint="https://kling.test",
        klingai_poll_interval_submitted_s=3.0,
        klingai_poll_interval_processing_s=10.0,
    )


@pytest.fixture
def exposure():
    return FakeExposure()


@pytest.fixture
def clock():
    return FakeClock()


def make_client(settings, exposure, clock, api):
    return KlingLipSyncClient(
        settings=settings,
        file_exposure=exposure,
        transport=httpx.MockTransport(api),
        sleep=clock.sleep,
        clock=clock,
    )


class TestToken:
    def test_claims(self):
        token = create_api_token(ACCESS_KEY, SECRET_KEY, ttl_s=1800, leeway_s=5)

        claims = jwt.decode(token, SECRET_KEY, algorithms=["HS256"])
        assert claims["iss"] == ACCESS_KEY
        assert claims["exp"] - claims["nbf"] == 1805
        assert jwt.get_unverified_header(token)["typ"] == "JWT"


class TestSubmit:
    """Tests for task submission."""

    @pytest.mark.asyncio
    async def test_submit_payload_and_auth(self, settings, exposure, clock):
        api = Api()
        client = make_client(settings, exposure, clock, api)

        task_id = await client.submit("/work/segment_a.mp4", "/work/segment_a.wav")

        assert task_id == "task-1"
        request = api.requests[0]
        assert request.url.path == "/v1/videos/lip-sync"
        assert json.loads(request.content) == {
            "input": {
                "mode": "audio2video",
                "video_url": "https://files.test/segment_a.mp4",
                "audio_type": "url",
                "audio_url": "https://files.test/segment_a.wav",
            }
        }
        token = request.headers["Authorization"].removeprefix("Bearer ")
        assert jwt.decode(token, SECRET_KEY, algorithms=["HS256"])["iss"] == ACCESS_KEY

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "body",
        [
            {"code": 0, "data": {"task_id": "abc"}},
            {"task_id": "abc"},
            {"success": True, "data": {"task_id": "abc"}},
        ],
    )
    async def test_accepted_response_shapes(self, settings, exposure, clock, body):
        client = make_client(settings, exposure, clock, Api(submit_body=body))

        assert await client.submit("/work/a.mp4", "/work/a.wav") == "abc"

    @pytest.mark.asyncio
    async def test_http_error_releases_exposed_files(self, settings, exposure, clock):
        client = make_client(settings, exposure, clock, Api(submit_status=500, submit_body={"message": "oops"}))

        with pytest.raises(RemoteSubmitError):
            await client.submit("/work/a.mp4", "/work/a.wav")

        assert sorted(exposure.revoked) == ["a.mp4", "a.wav"]

    @pytest.mark.asyncio
    async def test_missing_task_id(self, settings, exposure, clock):
        client = make_client(settings, exposure, clock, Api(submit_body={"code": 1001, "message": "bad"}))

        with pytest.raises(RemoteSubmitError):
            await client.submit("/work/a.mp4", "/work/a.wav")

    @pytest.mark.asyncio
    async def test_transport_error(self, settings, exposure, clock):
        def fail(request):
            raise httpx.ConnectError("unreachable", request=request)

        client = make_client(settings, exposure, clock, fail)

        with pytest.raises(RemoteSubmitError):
            await client.submit("/work/a.mp4", "/work/a.wav")


class TestPolling:
    """Tests for status polling and waiting."""

    @pytest.mark.asyncio
    async def test_poll_selects_matching_task(self, settings, exposure, clock):
        other = {"task_id": "other", "task_status": "failed"}
        api = Api(statuses=[task_body("task-1", "processing", others=[other])])
        client = make_client(settings, exposure, clock, api)

        task = await client.poll_status("task-1")

        assert task.status == RemoteTaskStatus.PROCESSING
        assert api.requests[0].url.params["task_id"] == "task-1"

    @pytest.mark.asyncio
    async def test_poll_task_not_found(self, settings, exposure, clock):
        api = Api(statuses=[{"code": 0, "data": [{"task_id": "other", "task_status": "succeed"}]}])
        client = make_client(settings, exposure, clock, api)

        with pytest.raises(RemoteTaskNotFound):
            await client.poll_status("task-1")

    @pytest.mark.asyncio
    async def test_poll_error_code(self, settings, exposure, clock):
        client = make_client(settings, exposure, clock, Api(statuses=[{"code": 1200, "message": "denied"}]))

        with pytest.raises(RemoteStatusError):
            await client.poll_status("task-1")

    @pytest.mark.asyncio
    async def test_wait_progress_and_intervals(self, settings, exposure, clock):
        api = Api(
            statuses=[
                task_body("task-1", "submitted"),
                task_body("task-1", "processing"),
                task_body("task-1", "succeed", url="https://cdn.test/out.mp4"),
            ]
        )
        client = make_client(settings, exposure, clock, api)
        progress: list[float] = []
        statuses: list[RemoteTaskStatus] = []

        url = await client.wait_until_terminal(
            "task-1", on_progress=progress.append, timeout=300, on_status=statuses.append
        )

        assert url == "https://cdn.test/out.mp4"
        assert progress == [10.0, 50.0, 100.0]
        assert clock.sleeps == [3.0, 10.0]
        assert statuses == [RemoteTaskStatus.SUBMITTED, RemoteTaskStatus.PROCESSING, RemoteTaskStatus.SUCCEED]

    @pytest.mark.asyncio
    async def test_succeed_without_url(self, settings, exposure, clock):
        client = make_client(settings, exposure, clock, Api(statuses=[task_body("task-1", "succeed")]))

        with pytest.raises(RemoteResultMissing) as exc_info:
            await client.wait_until_terminal("task-1", timeout=300)

        assert exc_info.value.message == "Task completed without result"

    @pytest.mark.asyncio
    async def test_failed_task(self, settings, exposure, clock):
        api = Api(statuses=[task_body("task-1", "failed", msg="no face detected")])
        client = make_client(settings, exposure, clock, api)

        progress: list[float] = []

        with pytest.raises(RemoteTaskFailed) as exc_info:
            await client.wait_until_terminal("task-1", on_progress=progress.append, timeout=300)

        assert "no face detected" in exc_info.value.message
        assert exc_info.value.retryable is False
        assert progress == [0.0]

    @pytest.mark.asyncio
    async def test_timeout(self, settings, exposure, clock):
        client = make_client(settings, exposure, clock, Api(statuses=[task_body("task-1", "processing")]))

        with pytest.raises(RemoteTaskTimeout) as exc_info:
            await client.wait_until_terminal("task-1", timeout=25)

        assert exc_info.value.retryable is True
        assert sum(clock.sleeps) == pytest.approx(25)

    def test_timeout_scales_with_duration(self, settings, exposure, clock):
        client = make_client(settings, exposure, clock, Api())

        assert client.timeout_for(0) == 300
        assert client.timeout_for(10) == 600


class TestTransform:
    """Tests for the combined submit, wait and download flow."""

    @pytest.mark.asyncio
    async def test_transform_downloads_result(self, settings, exposure, clock, temp_output_dir):
        api = Api(
            statuses=[
                task_body("task-1", "processing"),
                task_body("task-1", "succeed", url="https://cdn.test/out.mp4"),
            ]
        )
        client = make_client(settings, exposure, clock, api)
        out = temp_output_dir / "processed.mp4"
        progress: list[float] = []

        await client.transform("/work/a.mp4", "/work/a.wav", str(out), on_progress=progress.append, timeout=300)

        assert out.read_bytes() == b"video-bytes"
        assert progress[0] == 10.0
        assert progress[-2] == 90.0
        assert progress[-1] == 100.0
        assert progress == sorted(progress)
        assert sorted(exposure.revoked) == ["a.mp4", "a.wav"]

    @pytest.mark.asyncio
    async def test_transform_releases_files_on_failure(self, settings, exposure, clock, temp_output_dir):
        api = Api(statuses=[task_body("task-1", "failed", msg="bad audio")])
        client = make_client(settings, exposure, clock, api)

        with pytest.raises(RemoteTaskFailed):
            await client.transform("/work/a.mp4", "/work/a.wav", str(temp_output_dir / "p.mp4"), timeout=300)

        assert sorted(exposure.revoked) == ["a.mp4", "a.wav"]

    @pytest.mark.asyncio
    async def test_download_failure_removes_partial_file(self, settings, exposure, clock, temp_output_dir):
        def handler(request):
            return httpx.Response(404)

        client = make_client(settings, exposure, clock, handler)
        out = temp_output_dir / "p.mp4"

        with pytest.raises(RemoteDownloadError):
            await client.download("https://cdn.test/missing.mp4", str(out))

        assert not out.exists()
