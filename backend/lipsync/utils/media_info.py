"""Media file information utilities using FFprobe."""

import asyncio
import json
import os
import subprocess

from lipsync.config import get_settings
from lipsync.exceptions import ProbeError
from lipsync.models.session import VideoMetadata


def _get_settings():
    """Get settings lazily to avoid import issues in tests."""
    return get_settings()


def _run_ffprobe(file_path: str, *args) -> dict:
    """Run ffprobe and return parsed JSON."""
    settings = _get_settings()
    cmd = [
        settings.ffprobe_path,
        "-v", "quiet",
        "-print_format", "json",
        *args,
        file_path,
    ]

    try:
        result = subprocess.run(cmd, capture_output=True, text=True)
    except FileNotFoundError as e:
        raise ProbeError(f"ffprobe not available: {e}", path=file_path)
    if result.returncode != 0:
        raise ProbeError(f"ffprobe failed for {file_path}: {result.stderr.strip()}", path=file_path)

    try:
        return json.loads(result.stdout)
    except json.JSONDecodeError as e:
        raise ProbeError(f"Failed to parse ffprobe output: {e}", path=file_path)


def parse_frame_rate(value: str | None) -> float:
    """Parse an ffprobe rational such as ``30000/1001`` into frames per second."""
    if not value:
        return 0.0
    if "/" in value:
        num, den = value.split("/", 1)
        try:
            den_f = float(den)
            return float(num) / den_f if den_f else 0.0
        except ValueError:
            return 0.0
    try:
        return float(value)
    except ValueError:
        return 0.0


def probe_video(file_path: str) -> VideoMetadata:
    """
    Read duration, resolution, frame rate, codec and container of a video.

    Args:
        file_path: Path to media file

    Returns:
        VideoMetadata for the first video stream

    Raises:
        ProbeError: If the file is unreadable or has no video stream
    """
    if not os.path.exists(file_path):
        raise ProbeError(f"File not found: {file_path}", path=file_path)

    data = _run_ffprobe(file_path, "-show_format", "-show_streams")
    streams = data.get("streams", [])
    video = next((s for s in streams if s.get("codec_type") == "video"), None)
    if video is None:
        raise ProbeError("No video stream found", path=file_path)

    fmt = data.get("format", {})
    duration = fmt.get("duration") or video.get("duration")
    if duration is None:
        raise ProbeError(f"Duration not found in: {file_path}", path=file_path)

    framerate = parse_frame_rate(video.get("avg_frame_rate"))
    if not framerate:
        framerate = parse_frame_rate(video.get("r_frame_rate"))

    return VideoMetadata(
        duration=float(duration),
        width=int(video.get("width") or 0),
        height=int(video.get("height") or 0),
        framerate=framerate,
        codec=video.get("codec_name", "unknown"),
        container=fmt.get("format_name", "unknown"),
        size=int(fmt.get("size") or os.path.getsize(file_path)),
    )


async def probe_video_async(file_path: str) -> VideoMetadata:
    """Async version of probe_video."""
    return await asyncio.to_thread(probe_video, file_path)


def get_media_duration(file_path: str) -> float:
    """Get media file duration in seconds."""
    data = _run_ffprobe(file_path, "-show_format")
    format_info = data.get("format", {})
    if "duration" not in format_info:
        raise ProbeError(f"Duration not found in: {file_path}", path=file_path)
    return float(format_info["duration"])


async def get_media_duration_async(file_path: str) -> float:
    return await asyncio.to_thread(get_media_duration, file_path)
