"""Tests for exposing local files to the lip-sync service."""

import pytest

from lipsync.config import Settings
from lipsync.exceptions import FileNotFoundInStorageError
from lipsync.services.file_exposure import GCSFileExposure, LocalFileExposure


class FakeBlob:
    def __init__(self, bucket, name):
        self.bucket = bucket
        self.name = name

    def upload_from_filename(self, path):
        self.bucket.uploaded[self.name] = path

    def generate_signed_url(self, expiration, method, version):
        assert method == "GET"
        assert version == "v4"
        return f"https://storage.test/{self.name}?X-Goog-Signature=abc"

    def delete(self):
        if self.name in self.bucket.undeletable:
            raise RuntimeError("permission denied")
        self.bucket.uploaded.pop(self.name, None)


class FakeBucket:
    def __init__(self):
        self.uploaded: dict[str, str] = {}
        self.undeletable: set[str] = set()

    def blob(self, name):
        return FakeBlob(self, name)


class FakeClient:
    def __init__(self):
        self.fake_bucket = FakeBucket()

    def bucket(self, name):
        return self.fake_bucket


class TestLocalFileExposure:
    @pytest.fixture
    def exposure(self, tmp_path):
        settings = Settings(temp_storage_path=str(tmp_path), public_base_url="https://lipsync.test/")
        return LocalFileExposure(settings)

    @pytest.mark.asyncio
    async def test_url_points_at_files_route(self, exposure, tmp_path):
        clip = tmp_path / "session-1" / "segment a.mp4"
        clip.parent.mkdir()
        clip.write_bytes(b"clip")

        exposed = await exposure.expose_for_transfer(str(clip))

        assert exposed.url == "https://lipsync.test/api/files/session-1/segment%20a.mp4"
        assert exposure.get_file_path(exposed.handle) == clip.resolve()

    @pytest.mark.asyncio
    async def test_file_outside_root_rejected(self, exposure, tmp_path_factory):
        outside = tmp_path_factory.mktemp("elsewhere") / "clip.mp4"
        outside.write_bytes(b"clip")

        with pytest.raises(FileNotFoundInStorageError):
            await exposure.expose_for_transfer(str(outside))

    def test_traversal_key_rejected(self, exposure):
        with pytest.raises(FileNotFoundInStorageError):
            exposure.get_file_path("../../etc/passwd")

    @pytest.mark.asyncio
    async def test_revoke_keeps_files(self, exposure, tmp_path):
        clip = tmp_path / "clip.mp4"
        clip.write_bytes(b"clip")

        result = await exposure.revoke(["clip.mp4"])

        assert result.ok
        assert clip.exists()


class TestGCSFileExposure:
    @pytest.fixture
    def client(self):
        return FakeClient()

    @pytest.fixture
    def exposure(self, client):
        settings = Settings(use_cloud_storage=True, gcs_bucket_name="bucket", gcs_key_prefix="lipsync")
        return GCSFileExposure(settings, client=client)

    @pytest.mark.asyncio
    async def test_upload_and_sign(self, exposure, client, tmp_path):
        clip = tmp_path / "segment_a.wav"
        clip.write_bytes(b"wav")

        exposed = await exposure.expose_for_transfer(str(clip))

        assert exposed.handle.startswith(f"lipsync/{tmp_path.name}/")
        assert exposed.handle.endswith("_segment_a.wav")
        assert client.fake_bucket.uploaded[exposed.handle] == str(clip)
        assert exposed.url.startswith("https://storage.test/")

    @pytest.mark.asyncio
    async def test_missing_file(self, exposure):
        with pytest.raises(FileNotFoundInStorageError):
            await exposure.expose_for_transfer("/nonexistent/a.wav")

    @pytest.mark.asyncio
    async def test_revoke_reports_failures(self, exposure, client):
        client.fake_bucket.undeletable.add("lipsync/s/b.wav")

        result = await exposure.revoke(["lipsync/s/a.mp4", "lipsync/s/b.wav"])

        assert result.removed == ["lipsync/s/a.mp4"]
        assert "permission denied" in result.failed["lipsync/s/b.wav"]
        assert not result.ok
