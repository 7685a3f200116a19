"""FFmpeg-based media operations for segment processing and export.

Provides:
- extract_range: re-encode a time range of a video into a standalone clip
- extract_audio: PCM WAV track of a clip for the lip-sync service
- normalize: re-encode to the canonical profile so mixed sources can be joined
- concat: join clips, stream-copying when they share an encoding
- split_at_ranges: rebuild a video with some ranges replaced by other clips
"""

import asyncio
import logging
import os
import shutil
import tempfile
from collections.abc import Sequence
from dataclasses import dataclass, field

from lipsync.config import Settings, get_settings
from lipsync.models.jobs import TimelineRange
from lipsync.models.session import VideoMetadata
from lipsync.utils.cancellation import CancelToken
from lipsync.utils.ffmpeg import ProgressCallback, run_ffmpeg, write_concat_list
from lipsync.utils.media_info import get_media_duration_async, probe_video_async

logger = logging.getLogger(__name__)

# Gaps shorter than this are float noise, not footage
MIN_PART_DURATION_S = 0.001

# Share of concat progress spent normalizing when inputs are mixed
NORMALIZE_PROGRESS_SHARE = 70.0
# Share of split progress spent extracting original parts
EXTRACT_PROGRESS_SHARE = 40.0


@dataclass
class ConcatItem:
    """A clip to join, marked with whether it came from the lip-sync service."""

    path: str
    is_replacement: bool = False


@dataclass
class PlanPart:
    """One contiguous piece of the export output."""

    source_start: float
    source_end: float
    replacement_path: str | None = None
    output_start: float = 0.0
    output_duration: float = 0.0

    @property
    def is_replacement(self) -> bool:
        return self.replacement_path is not None

    @property
    def source_duration(self) -> float:
        return self.source_end - self.source_start


@dataclass
class ExportPlan:
    parts: list[PlanPart] = field(default_factory=list)
    source_duration: float = 0.0

    @property
    def output_duration(self) -> float:
        return sum(p.output_duration for p in self.parts)

    @property
    def has_replacements(self) -> bool:
        return any(p.is_replacement for p in self.parts)


def build_export_plan(
    ranges: Sequence[TimelineRange],
    source_duration: float,
    replacement_durations: dict[str, float] | None = None,
) -> ExportPlan:
    """Lay out original and replacement parts for an export.

    Source footage is consumed up to each range's end, so every second of the
    original outside replaced ranges appears exactly once. A replacement
    occupies its own measured duration in the output, which may differ from
    the range it replaces. Adjacent original spans are merged.

    Args:
        ranges: Non-overlapping ranges; rejected ones have no replacement_path
        source_duration: Duration of the source video in seconds
        replacement_durations: Measured duration per replacement path

    Raises:
        ValueError: If ranges overlap or fall outside the source
    """
    replacement_durations = replacement_durations or {}
    plan = ExportPlan(source_duration=source_duration)
    cursor = 0.0
    output_pos = 0.0

    def add_original(start: float, end: float) -> None:
        nonlocal output_pos
        if end - start < MIN_PART_DURATION_S:
            return
        last = plan.parts[-1] if plan.parts else None
        if last is not None and not last.is_replacement and abs(last.source_end - start) < MIN_PART_DURATION_S:
            last.source_end = end
            last.output_duration = last.source_duration
        else:
            plan.parts.append(
                PlanPart(source_start=start, source_end=end, output_start=output_pos, output_duration=end - start)
            )
        output_pos = plan.parts[-1].output_start + plan.parts[-1].output_duration

    for rng in sorted(ranges, key=lambda r: r.start):
        if rng.start < 0 or rng.end > source_duration + MIN_PART_DURATION_S:
            raise ValueError(f"Range {rng.start:.3f}-{rng.end:.3f}s is outside the source (0-{source_duration:.3f}s)")
        if rng.start < cursor - MIN_PART_DURATION_S:
            raise ValueError(f"Range starting at {rng.start:.3f}s overlaps the previous range ending at {cursor:.3f}s")

        add_original(cursor, rng.start)
        if rng.replacement_path:
            actual = replacement_durations.get(rng.replacement_path, rng.duration)
            plan.parts.append(
                PlanPart(
                    source_start=rng.start,
                    source_end=rng.end,
                    replacement_path=rng.replacement_path,
                    output_start=output_pos,
                    output_duration=actual,
                )
            )
            output_pos += actual
        else:
            add_original(rng.start, rng.end)
        cursor = max(cursor, rng.end)

    add_original(cursor, source_duration)
    return plan


class MediaTransformer:
    """Runs ffmpeg/ffprobe for extraction, normalization and assembly."""

    def __init__(self, settings: Settings | None = None):
        self.settings = settings or get_settings()
        self.ffmpeg_path = self.settings.ffmpeg_path

    async def probe(self, path: str) -> VideoMetadata:
        return await probe_video_async(path)

    async def extract_range(
        self,
        source_path: str,
        output_path: str,
        start: float,
        duration: float,
        on_progress: ProgressCallback | None = None,
    ) -> str:
        """Re-encode ``duration`` seconds of source starting at ``start``.

        Re-encoding (rather than stream copy) makes the cut frame-exact.
        """
        cmd = [
            self.ffmpeg_path,
            "-y",
            "-ss", f"{start:.3f}",
            "-i", source_path,
            "-t", f"{duration:.3f}",
            "-c:v", "libx264",
            "-preset", "ultrafast",
            "-crf", "18",
            "-c:a", "aac",
            "-avoid_negative_ts", "make_zero",
            output_path,
        ]
        await run_ffmpeg(
            cmd,
            expected_duration=duration,
            on_progress=on_progress,
            description=f"extract {start:.2f}s+{duration:.2f}s",
        )
        return output_path

    async def extract_audio(
        self,
        clip_path: str,
        output_path: str,
        on_progress: ProgressCallback | None = None,
        duration: float | None = None,
    ) -> str:
        """Extract the audio track as 44.1kHz stereo 16-bit PCM WAV."""
        if on_progress is not None and duration is None:
            duration = await get_media_duration_async(clip_path)
        cmd = [
            self.ffmpeg_path,
            "-y",
            "-i", clip_path,
            "-vn",
            "-acodec", "pcm_s16le",
            "-ar", "44100",
            "-ac", "2",
            output_path,
        ]
        await run_ffmpeg(
            cmd,
            expected_duration=duration,
            on_progress=on_progress,
            description="extract audio",
        )
        return output_path

    def _normalize_command(self, source_path: str, output_path: str) -> list[str]:
        s = self.settings
        w, h = s.normalize_width, s.normalize_height
        vf = (
            f"scale={w}:{h}:force_original_aspect_ratio=decrease,"
            f"pad={w}:{h}:(ow-iw)/2:(oh-ih)/2,setsar=1"
        )
        return [
            self.ffmpeg_path,
            "-y",
            "-i", source_path,
            "-vf", vf,
            "-r", str(s.normalize_fps),
            "-c:v", "libx264",
            "-b:v", s.normalize_video_bitrate,
            "-preset", "medium",
            "-crf", "23",
            "-pix_fmt", "yuv420p",
            "-colorspace", "bt709",
            "-color_primaries", "bt709",
            "-color_trc", "bt709",
            "-c:a", "aac",
            "-profile:a", "aac_low",
            "-b:a", s.normalize_audio_bitrate,
            "-ar", str(s.normalize_audio_sample_rate),
            "-ac", "2",
            "-movflags", "+faststart",
            output_path,
        ]

    async def normalize(
        self,
        source_path: str,
        output_path: str,
        on_progress: ProgressCallback | None = None,
        duration: float | None = None,
    ) -> str:
        """Re-encode to the canonical resolution, frame rate, colour and audio profile."""
        if on_progress is not None and duration is None:
            duration = await get_media_duration_async(source_path)
        await run_ffmpeg(
            self._normalize_command(source_path, output_path),
            expected_duration=duration,
            on_progress=on_progress,
            description=f"normalize {os.path.basename(source_path)}",
        )
        return output_path

    async def _concat_copy(self, files: Sequence[str], output_path: str, work_dir: str) -> None:
        if len(files) == 1:
            await asyncio.to_thread(shutil.copy2, files[0], output_path)
            return

        list_path = os.path.join(work_dir, "concat_list.txt")
        write_concat_list(list_path, files)
        cmd = [
            self.ffmpeg_path,
            "-y",
            "-f", "concat",
            "-safe", "0",
            "-i", list_path,
            "-c", "copy",
            "-movflags", "+faststart",
            output_path,
        ]
        await run_ffmpeg(cmd, description=f"concat {len(files)} parts")

    async def concat(
        self,
        items: Sequence[ConcatItem],
        output_path: str,
        on_progress: ProgressCallback | None = None,
    ) -> str:
        """Join clips in order.

        Homogeneous inputs (all originals or all replacements) are stream
        copied. Mixed inputs are first normalized to a common profile; that
        pass accounts for the first 70% of progress.
        """
        if not items:
            raise ValueError("Nothing to concatenate")

        report = on_progress or (lambda _p: None)
        mixed = len({item.is_replacement for item in items}) > 1
        work_dir = tempfile.mkdtemp(prefix="concat_", dir=os.path.dirname(os.path.abspath(output_path)))

        try:
            if mixed:
                logger.info(f"[CONCAT] Mixed sources, normalizing {len(items)} parts before joining")
                files: list[str] = []
                share = NORMALIZE_PROGRESS_SHARE / len(items)
                for i, item in enumerate(items):
                    normalized = os.path.join(work_dir, f"normalized_{i}.mp4")

                    def item_progress(p: float, base: float = i * share) -> None:
                        report(base + p / 100 * share)

                    await self.normalize(item.path, normalized, on_progress=item_progress)
                    files.append(normalized)
                await self._concat_copy(files, output_path, work_dir)
            else:
                await self._concat_copy([item.path for item in items], output_path, work_dir)
            report(100.0)
        finally:
            shutil.rmtree(work_dir, ignore_errors=True)

        logger.info(f"[CONCAT] Wrote {output_path}")
        return output_path

    async def split_at_ranges(
        self,
        source_path: str,
        ranges: Sequence[TimelineRange],
        output_path: str,
        on_progress: ProgressCallback | None = None,
        cancel_token: CancelToken | None = None,
    ) -> ExportPlan:
        """Rebuild source_path with replacement clips substituted for their ranges.

        Only the temporary original parts created here are deleted afterwards;
        replacement clips belong to the caller.
        """
        report = on_progress or (lambda _p: None)
        metadata = await self.probe(source_path)

        replacement_durations: dict[str, float] = {}
        for rng in ranges:
            if rng.replacement_path and rng.replacement_path not in replacement_durations:
                replacement_durations[rng.replacement_path] = await get_media_duration_async(rng.replacement_path)

        plan = build_export_plan(ranges, metadata.duration, replacement_durations)
        for part in plan.parts:
            if part.is_replacement:
                drift = part.output_duration - part.source_duration
                logger.info(
                    f"[SPLIT] Replacement for {part.source_start:.2f}-{part.source_end:.2f}s: "
                    f"{part.source_duration:.2f}s -> {part.output_duration:.2f}s ({drift:+.2f}s)"
                )

        work_dir = tempfile.mkdtemp(prefix="split_", dir=os.path.dirname(os.path.abspath(output_path)))
        try:
            items: list[ConcatItem] = []
            originals = [p for p in plan.parts if not p.is_replacement]
            share = EXTRACT_PROGRESS_SHARE / max(1, len(originals))
            done = 0
            for i, part in enumerate(plan.parts):
                if cancel_token is not None:
                    cancel_token.raise_if_cancelled()
                if part.is_replacement:
                    items.append(ConcatItem(part.replacement_path, is_replacement=True))
                    continue

                part_path = os.path.join(work_dir, f"part_{i}_original.mp4")

                def part_progress(p: float, base: float = done * share) -> None:
                    report(base + p / 100 * share)

                await self.extract_range(
                    source_path, part_path, part.source_start, part.source_duration, on_progress=part_progress
                )
                items.append(ConcatItem(part_path, is_replacement=False))
                done += 1

            if cancel_token is not None:
                cancel_token.raise_if_cancelled()
            report(EXTRACT_PROGRESS_SHARE)

            def concat_progress(p: float) -> None:
                report(EXTRACT_PROGRESS_SHARE + p / 100 * (100 - EXTRACT_PROGRESS_SHARE))

            await self.concat(items, output_path, on_progress=concat_progress)
        finally:
            shutil.rmtree(work_dir, ignore_errors=True)

        logger.info(
            f"[SPLIT] Exported {len(plan.parts)} parts, expected duration {plan.output_duration:.2f}s "
            f"(source {metadata.duration:.2f}s)"
        )
        return plan


_media_transformer: MediaTransformer | None = None


def get_media_transformer() -> MediaTransformer:
    global _media_transformer
    if _media_transformer is None:
        _media_transformer = MediaTransformer()
    return _media_transformer
