"""Async FFmpeg runner with progress reporting via ``-progress pipe:1``."""

import asyncio
import logging
from collections.abc import Callable, Sequence

from lipsync.exceptions import MediaToolError

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[float], None]


def escape_concat_path(path: str) -> str:
    """Escape a path for an ffmpeg concat list ``file '...'`` line."""
    return path.replace("'", "'\\''")


def write_concat_list(list_path: str, files: Sequence[str]) -> None:
    with open(list_path, "w") as f:
        for file_path in files:
            f.write(f"file '{escape_concat_path(file_path)}'\n")


def parse_progress_line(line: str) -> float | None:
    """Return output time in seconds for an ``out_time_us=`` line."""
    if not line.startswith("out_time_us="):
        return None
    try:
        return int(line.split("=", 1)[1]) / 1_000_000
    except ValueError:
        # ffmpeg prints N/A before the first frame
        return None


async def run_ffmpeg(
    cmd: list[str],
    *,
    expected_duration: float | None = None,
    on_progress: ProgressCallback | None = None,
    description: str = "ffmpeg",
) -> None:
    """Run an ffmpeg command, reporting 0-100 progress against expected_duration.

    Raises:
        MediaToolError: If ffmpeg cannot be started or exits non-zero
    """
    track = on_progress is not None and expected_duration and expected_duration > 0
    if track:
        # -progress must precede the output path
        cmd = cmd[:-1] + ["-progress", "pipe:1", "-nostats"] + cmd[-1:]

    logger.debug(f"[FFMPEG] {description}: {' '.join(cmd)}")

    try:
        proc = await asyncio.create_subprocess_exec(
            *cmd,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as e:
        raise MediaToolError(f"{description} could not start: {e}", command=cmd)

    try:
        if track:
            stderr_task = asyncio.create_task(proc.stderr.read())
            last_reported = -1.0
            async for raw_line in proc.stdout:
                line = raw_line.decode("utf-8", errors="replace").strip()
                out_time = parse_progress_line(line)
                if out_time is not None:
                    pct = max(0.0, min(99.0, out_time / expected_duration * 100))
                    if pct >= last_reported + 1:
                        last_reported = pct
                        on_progress(pct)
                elif line == "progress=end":
                    break
            await proc.stdout.read()
            stderr_bytes = await stderr_task
            await proc.wait()
        else:
            _, stderr_bytes = await proc.communicate()
    except asyncio.CancelledError:
        if proc.returncode is None:
            proc.kill()
            await proc.wait()
        raise

    if proc.returncode != 0:
        stderr_text = stderr_bytes.decode("utf-8", errors="replace")
        logger.error(f"[FFMPEG] {description} failed ({proc.returncode}): {stderr_text[-2000:]}")
        raise MediaToolError(
            f"{description} failed",
            returncode=proc.returncode,
            stderr=stderr_text,
            command=cmd,
        )

    if on_progress is not None:
        on_progress(100.0)
