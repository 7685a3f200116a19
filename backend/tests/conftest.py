"""
Pytest fixtures for lipsync backend tests.

Most tests run against fakes and need no external tools. Tests that drive
real ffmpeg are marked @pytest.mark.requires_ffmpeg and are skipped when
ffmpeg/ffprobe are not on PATH. Run `pytest -m "not requires_ffmpeg"` to skip
them explicitly.
"""

import shutil
import subprocess
import tempfile
from pathlib import Path

import pytest

from lipsync.models.session import VideoMetadata
from lipsync.services.event_manager import SessionEventManager
from lipsync.services.session_store import SessionStore


def pytest_configure(config):
    """Register custom markers for CI/CD test filtering."""
    config.addinivalue_line(
        "markers",
        "requires_ffmpeg: mark test as requiring ffmpeg and ffprobe binaries",
    )


def _ffmpeg_available() -> bool:
    return shutil.which("ffmpeg") is not None and shutil.which("ffprobe") is not None


def pytest_collection_modifyitems(config, items):
    """Skip ffmpeg-backed tests when the binaries are missing."""
    if _ffmpeg_available():
        return
    skip = pytest.mark.skip(reason="ffmpeg/ffprobe not available")
    for item in items:
        if "requires_ffmpeg" in item.keywords:
            item.add_marker(skip)


@pytest.fixture
def temp_output_dir():
    """Temporary directory for test outputs."""
    with tempfile.TemporaryDirectory(prefix="lipsync_test_") as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def video_metadata() -> VideoMetadata:
    """Metadata of a 30 second 720p source video."""
    return VideoMetadata(
        duration=30.0,
        width=1280,
        height=720,
        framerate=30.0,
        codec="h264",
        container="mov,mp4,m4a,3gp,3g2,mj2",
        size=1_000_000,
    )


@pytest.fixture
def store() -> SessionStore:
    return SessionStore(session_timeout_seconds=3600, min_segment_duration=0.5, max_segment_duration=60.0)


@pytest.fixture
def session(store, video_metadata, temp_output_dir):
    """A session whose source video path lives in the temp directory."""
    return store.create_session(str(temp_output_dir / "original.mp4"), video_metadata)


@pytest.fixture
def events() -> SessionEventManager:
    return SessionEventManager()


def make_test_video(path: Path, duration: float, size: str = "320x240", rate: int = 24) -> Path:
    """Generate a clip with a test pattern and a sine tone."""
    subprocess.run(
        [
            "ffmpeg", "-y",
            "-f", "lavfi", "-i", f"testsrc=duration={duration}:size={size}:rate={rate}",
            "-f", "lavfi", "-i", f"sine=frequency=440:duration={duration}",
            "-c:v", "libx264", "-preset", "ultrafast", "-pix_fmt", "yuv420p",
            "-c:a", "aac",
            "-shortest",
            str(path),
        ],
        capture_output=True,
        check=True,
    )
    return path


@pytest.fixture
def video_factory():
    """Factory for synthetic clips (requires ffmpeg)."""
    return make_test_video


@pytest.fixture
def source_video(temp_output_dir) -> Path:
    """A 6 second synthetic source video (requires ffmpeg)."""
    if not _ffmpeg_available():
        pytest.skip("ffmpeg/ffprobe not available")
    return make_test_video(temp_output_dir / "source.mp4", 6.0)
