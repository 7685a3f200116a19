"""Tests for the ffmpeg media transformer.

Unit tests replace the ffmpeg runner with a fake that records commands and
creates output files. Integration tests at the bottom run real ffmpeg.
"""

import asyncio
from pathlib import Path

import pytest

from lipsync.exceptions import MediaToolError
from lipsync.models.jobs import TimelineRange
from lipsync.models.session import VideoMetadata
from lipsync.services import media_transformer as mt
from lipsync.services.media_transformer import ConcatItem, MediaTransformer
from lipsync.utils.cancellation import CancelToken
from lipsync.utils.media_info import get_media_duration


class FakeFFmpeg:
    """Records ffmpeg invocations and writes a placeholder output file."""

    def __init__(self, fail_on: str | None = None):
        self.commands: list[list[str]] = []
        self.concat_lists: list[str] = []
        self.fail_on = fail_on

    async def __call__(self, cmd, *, expected_duration=None, on_progress=None, description="ffmpeg"):
        self.commands.append(cmd)
        if "concat" in cmd:
            list_path = cmd[cmd.index("-i") + 1]
            self.concat_lists.append(Path(list_path).read_text())
        if self.fail_on and self.fail_on in description:
            raise MediaToolError(f"{description} failed", returncode=1, stderr="boom")
        Path(cmd[-1]).write_bytes(b"fake")
        if on_progress is not None:
            on_progress(50.0)
            on_progress(100.0)


@pytest.fixture
def fake_ffmpeg(monkeypatch):
    fake = FakeFFmpeg()
    monkeypatch.setattr(mt, "run_ffmpeg", fake)

    async def fake_duration(path):
        return 2.0

    monkeypatch.setattr(mt, "get_media_duration_async", fake_duration)
    return fake


@pytest.fixture
def transformer() -> MediaTransformer:
    return MediaTransformer()


def _clips(directory: Path, *names: str) -> list[str]:
    paths = []
    for name in names:
        path = directory / name
        path.write_bytes(b"clip")
        paths.append(str(path))
    return paths


class TestCommands:
    """Tests for the ffmpeg arguments each operation uses."""

    @pytest.mark.asyncio
    async def test_extract_range_reencodes_with_seek(self, transformer, fake_ffmpeg, temp_output_dir):
        out = str(temp_output_dir / "segment.mp4")

        await transformer.extract_range("/videos/src.mp4", out, 5.0, 2.5)

        cmd = fake_ffmpeg.commands[0]
        assert cmd[cmd.index("-ss") + 1] == "5.000"
        assert cmd[cmd.index("-t") + 1] == "2.500"
        assert cmd[cmd.index("-c:v") + 1] == "libx264"
        assert cmd[cmd.index("-crf") + 1] == "18"
        assert cmd[cmd.index("-avoid_negative_ts") + 1] == "make_zero"
        assert cmd[-1] == out

    @pytest.mark.asyncio
    async def test_extract_audio_is_pcm_wav(self, transformer, fake_ffmpeg, temp_output_dir):
        out = str(temp_output_dir / "segment.wav")

        await transformer.extract_audio("/videos/segment.mp4", out)

        cmd = fake_ffmpeg.commands[0]
        assert "-vn" in cmd
        assert cmd[cmd.index("-acodec") + 1] == "pcm_s16le"
        assert cmd[cmd.index("-ar") + 1] == "44100"
        assert cmd[cmd.index("-ac") + 1] == "2"

    @pytest.mark.asyncio
    async def test_normalize_uses_canonical_profile(self, transformer, fake_ffmpeg, temp_output_dir):
        await transformer.normalize("/videos/a.mp4", str(temp_output_dir / "n.mp4"))

        cmd = fake_ffmpeg.commands[0]
        assert cmd[cmd.index("-r") + 1] == "24"
        assert "scale=1280:720" in cmd[cmd.index("-vf") + 1]
        assert cmd[cmd.index("-pix_fmt") + 1] == "yuv420p"
        assert cmd[cmd.index("-color_primaries") + 1] == "bt709"
        assert cmd[cmd.index("-ar") + 1] == "48000"
        assert cmd[cmd.index("-profile:a") + 1] == "aac_low"


class TestConcat:
    """Tests for copy vs normalize-then-concat selection."""

    @pytest.mark.asyncio
    async def test_homogeneous_inputs_are_stream_copied(self, transformer, fake_ffmpeg, temp_output_dir):
        files = _clips(temp_output_dir, "a.mp4", "b.mp4")
        out = str(temp_output_dir / "out.mp4")

        await transformer.concat([ConcatItem(f) for f in files], out)

        assert len(fake_ffmpeg.commands) == 1
        cmd = fake_ffmpeg.commands[0]
        assert cmd[cmd.index("-c") + 1] == "copy"
        assert fake_ffmpeg.concat_lists[0] == "".join(f"file '{f}'\n" for f in files)

    @pytest.mark.asyncio
    async def test_all_replacements_are_stream_copied(self, transformer, fake_ffmpeg, temp_output_dir):
        files = _clips(temp_output_dir, "p1.mp4", "p2.mp4")

        await transformer.concat(
            [ConcatItem(f, is_replacement=True) for f in files], str(temp_output_dir / "out.mp4")
        )

        assert len(fake_ffmpeg.commands) == 1

    @pytest.mark.asyncio
    async def test_mixed_inputs_are_normalized_first(self, transformer, fake_ffmpeg, temp_output_dir):
        original, processed = _clips(temp_output_dir, "part.mp4", "processed.mp4")
        progress: list[float] = []

        await transformer.concat(
            [ConcatItem(original), ConcatItem(processed, is_replacement=True)],
            str(temp_output_dir / "out.mp4"),
            on_progress=progress.append,
        )

        # Two normalize passes and one copy concat
        assert len(fake_ffmpeg.commands) == 3
        assert all("-vf" in cmd for cmd in fake_ffmpeg.commands[:2])
        assert "normalized_0.mp4" in fake_ffmpeg.concat_lists[0]
        assert "normalized_1.mp4" in fake_ffmpeg.concat_lists[0]
        assert progress == sorted(progress)
        assert progress[-1] == 100.0
        assert max(p for p in progress if p < 100.0) <= 70.0

    @pytest.mark.asyncio
    async def test_temporary_files_removed_on_failure(self, transformer, monkeypatch, temp_output_dir):
        fake = FakeFFmpeg(fail_on="concat")
        monkeypatch.setattr(mt, "run_ffmpeg", fake)

        async def fake_duration(path):
            return 2.0

        monkeypatch.setattr(mt, "get_media_duration_async", fake_duration)
        original, processed = _clips(temp_output_dir, "part.mp4", "processed.mp4")

        with pytest.raises(MediaToolError):
            await transformer.concat(
                [ConcatItem(original), ConcatItem(processed, is_replacement=True)],
                str(temp_output_dir / "out.mp4"),
            )

        assert not list(temp_output_dir.glob("concat_*"))

    @pytest.mark.asyncio
    async def test_empty_input_rejected(self, transformer, temp_output_dir):
        with pytest.raises(ValueError):
            await transformer.concat([], str(temp_output_dir / "out.mp4"))


class TestSplitAtRanges:
    """Tests for split_at_ranges with a fake ffmpeg."""

    @pytest.fixture
    def fake_probe(self, monkeypatch):
        async def probe(path):
            return VideoMetadata(
                duration=30.0, width=1280, height=720, framerate=30.0, codec="h264", container="mp4", size=1
            )

        monkeypatch.setattr(mt, "probe_video_async", probe)

    @pytest.mark.asyncio
    async def test_replacements_kept_and_parts_removed(
        self, transformer, fake_ffmpeg, fake_probe, temp_output_dir
    ):
        (processed,) = _clips(temp_output_dir, "processed_a.mp4")
        out = str(temp_output_dir / "export.mp4")

        plan = await transformer.split_at_ranges(
            "/videos/src.mp4", [TimelineRange(5.0, 10.0, processed)], out
        )

        assert [p.is_replacement for p in plan.parts] == [False, True, False]
        assert Path(processed).exists()
        assert Path(out).exists()
        assert not list(temp_output_dir.glob("split_*"))
        # Two originals extracted, three normalized, one concat
        assert len(fake_ffmpeg.commands) == 6

    @pytest.mark.asyncio
    async def test_cancelled_before_start(self, transformer, fake_ffmpeg, fake_probe, temp_output_dir):
        token = CancelToken()
        token.cancel()

        with pytest.raises(asyncio.CancelledError):
            await transformer.split_at_ranges(
                "/videos/src.mp4",
                [TimelineRange(5.0, 10.0)],
                str(temp_output_dir / "export.mp4"),
                cancel_token=token,
            )

        assert fake_ffmpeg.commands == []
        assert not list(temp_output_dir.glob("split_*"))


@pytest.mark.requires_ffmpeg
class TestWithFFmpeg:
    """Integration tests against real ffmpeg."""

    @pytest.mark.asyncio
    async def test_extract_range_duration(self, transformer, source_video, temp_output_dir):
        out = str(temp_output_dir / "segment.mp4")
        progress: list[float] = []

        await transformer.extract_range(str(source_video), out, 1.0, 2.0, on_progress=progress.append)

        assert get_media_duration(out) == pytest.approx(2.0, abs=0.2)
        assert progress[-1] == 100.0

    @pytest.mark.asyncio
    async def test_extract_audio(self, transformer, source_video, temp_output_dir):
        out = str(temp_output_dir / "audio.wav")

        await transformer.extract_audio(str(source_video), out)

        assert get_media_duration(out) == pytest.approx(6.0, abs=0.2)

    @pytest.mark.asyncio
    async def test_split_with_longer_replacement(self, transformer, source_video, video_factory, temp_output_dir):
        replacement = video_factory(temp_output_dir / "processed.mp4", 2.5, size="640x360")
        out = str(temp_output_dir / "export.mp4")

        plan = await transformer.split_at_ranges(
            str(source_video), [TimelineRange(2.0, 4.0, str(replacement))], out
        )

        assert plan.output_duration == pytest.approx(6.5, abs=0.1)
        assert get_media_duration(out) == pytest.approx(6.5, abs=0.4)
        assert replacement.exists()

    @pytest.mark.asyncio
    async def test_probe(self, transformer, source_video):
        metadata = await transformer.probe(str(source_video))

        assert metadata.width == 320
        assert metadata.height == 240
        assert metadata.framerate == pytest.approx(24.0)
        assert metadata.duration == pytest.approx(6.0, abs=0.2)
