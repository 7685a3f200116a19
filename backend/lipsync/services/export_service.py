"""Export of a session to a single video with approved segments replaced.

One export may run per session. The output lives in the session's working
directory until it has been downloaded (then removed after a grace period),
the export is cancelled, or it fails.
"""

import asyncio
import logging
import math
import os
import uuid
from typing import Any

from lipsync.config import Settings, get_settings
from lipsync.exceptions import (
    ExportNotFoundError,
    ExportNotReadyError,
    LipsyncError,
    StateConflictError,
)
from lipsync.models.jobs import ExportJob, ExportStatus, TimelineRange
from lipsync.models.session import ApprovalStatus, Segment, SegmentStatus, utcnow
from lipsync.services import event_manager as events
from lipsync.services.event_manager import SessionEventManager
from lipsync.services.media_transformer import MediaTransformer
from lipsync.services.session_store import SessionStore
from lipsync.utils.cleanup import remove_files

logger = logging.getLogger(__name__)

# Progress events are published at most once per this many percent
PROGRESS_STEP = 1.0


def build_ranges(segments: list[Segment]) -> list[TimelineRange]:
    """Timeline ranges for an export, replacing only approved, processed segments."""
    ranges = []
    for seg in sorted(segments, key=lambda s: s.start):
        replacement = None
        if (
            seg.approval == ApprovalStatus.APPROVED
            and seg.status == SegmentStatus.COMPLETE
            and seg.processed_video_path
        ):
            replacement = seg.processed_video_path
        ranges.append(TimelineRange(start=seg.start, end=seg.end, replacement_path=replacement))
    return ranges


def estimate_export_seconds(duration: float, segment_count: int) -> int:
    """Rough wall-clock estimate shown to the user before an export starts."""
    return math.ceil(max(30.0, duration * 0.1) + segment_count * 5)


class ExportService:
    """Starts, tracks, cancels and cleans up exports."""

    def __init__(
        self,
        store: SessionStore,
        transformer: MediaTransformer,
        events_manager: SessionEventManager,
        settings: Settings | None = None,
    ) -> None:
        self.store = store
        self.transformer = transformer
        self.events = events_manager
        self.settings = settings or get_settings()
        # session_id -> latest export
        self._exports: dict[str, ExportJob] = {}
        self._tasks: dict[str, asyncio.Task] = {}
        self._cleanup_tasks: dict[str, asyncio.Task] = {}
        self._lock = asyncio.Lock()

    def check_ready(self, session_id: str) -> list[Segment]:
        """Segments of a session that is ready for export.

        Raises:
            SessionNotFoundError: Unknown session
            ExportNotReadyError: No segments, or some still awaiting review
        """
        self.store.require_session(session_id)
        segments = self.store.list_segments(session_id)
        if not segments:
            raise ExportNotReadyError("Session has no segments to export")
        pending = [s for s in segments if s.approval == ApprovalStatus.PENDING]
        if pending:
            raise ExportNotReadyError(f"{len(pending)} segments still need review")
        return segments

    async def start_export(self, session_id: str, container: str = "mp4") -> ExportJob:
        """Begin exporting a session in the background.

        Raises:
            SessionNotFoundError: Unknown session
            ExportNotReadyError: Session not ready
            StateConflictError: An export is already running for the session
        """
        async with self._lock:
            session = self.store.require_session(session_id)
            current = self._exports.get(session_id)
            if current is not None and current.is_running:
                raise StateConflictError(f"Export already running for session {session_id}")
            segments = self.check_ready(session_id)

            if current is not None:
                self._discard(current)

            export_id = str(uuid.uuid4())
            output_dir = os.path.dirname(session.original_video_path)
            job = ExportJob(
                export_id=export_id,
                session_id=session_id,
                output_path=os.path.join(output_dir, f"export_{export_id}.{container}"),
            )
            self._exports[session_id] = job
            ranges = build_ranges(segments)
            self._tasks[export_id] = asyncio.create_task(self._run(job, session.original_video_path, ranges))

        replaced = sum(1 for r in ranges if r.replacement_path)
        logger.info(
            f"[EXPORT] Session {session_id}: export {export_id} started "
            f"({replaced}/{len(ranges)} segments replaced)"
        )
        self.events.publish_nowait(
            session_id,
            events.EXPORT_STARTED,
            {
                "export_id": export_id,
                "estimated_seconds": estimate_export_seconds(session.metadata.duration, len(segments)),
            },
        )
        return job

    async def _run(self, job: ExportJob, source_path: str, ranges: list[TimelineRange]) -> None:
        last_reported = -PROGRESS_STEP

        def on_progress(p: float) -> None:
            nonlocal last_reported
            job.progress = round(p, 1)
            if p - last_reported >= PROGRESS_STEP:
                last_reported = p
                self.events.publish_nowait(
                    job.session_id,
                    events.EXPORT_PROGRESS,
                    {"export_id": job.export_id, "progress": job.progress},
                )

        try:
            await self.transformer.split_at_ranges(
                source_path, ranges, job.output_path, on_progress=on_progress, cancel_token=job.cancel_token
            )
        except asyncio.CancelledError:
            remove_files([job.output_path])
            if job.status == ExportStatus.RUNNING:
                job.status = ExportStatus.CANCELLED
                job.completed_at = utcnow()
            logger.info(f"[EXPORT] Export {job.export_id} cancelled")
            return
        except Exception as e:
            remove_files([job.output_path])
            job.status = ExportStatus.FAILED
            job.error_message = e.message if isinstance(e, LipsyncError) else str(e)
            job.completed_at = utcnow()
            if isinstance(e, LipsyncError):
                logger.error(f"[EXPORT] Export {job.export_id} failed: {job.error_message}")
            else:
                logger.exception(f"[EXPORT] Export {job.export_id} failed unexpectedly")
            self.events.publish_nowait(
                job.session_id,
                events.EXPORT_FAILED,
                {"export_id": job.export_id, "error": job.error_message},
            )
            return
        finally:
            self._tasks.pop(job.export_id, None)

        if job.cancel_token.cancelled:
            # Cancelled after the last checkpoint; discard the finished file
            remove_files([job.output_path])
            job.status = ExportStatus.CANCELLED
            job.completed_at = utcnow()
            return

        job.status = ExportStatus.COMPLETED
        job.progress = 100.0
        job.completed_at = utcnow()
        logger.info(f"[EXPORT] Export {job.export_id} completed: {job.output_path}")
        self.events.publish_nowait(
            job.session_id,
            events.EXPORT_COMPLETED,
            {"export_id": job.export_id, "download_path": job.download_path},
        )

    def get_export(self, session_id: str) -> ExportJob | None:
        return self._exports.get(session_id)

    def find_export(self, export_id: str) -> ExportJob:
        for job in self._exports.values():
            if job.export_id == export_id:
                return job
        raise ExportNotFoundError(export_id)

    def status(self, session_id: str) -> dict[str, Any]:
        job = self._exports.get(session_id)
        if job is None:
            raise ExportNotFoundError()
        return job.to_dict()

    async def wait(self, session_id: str) -> None:
        """Wait for a session's running export, if any, to finish."""
        job = self._exports.get(session_id)
        task = self._tasks.get(job.export_id) if job else None
        if task is not None:
            await asyncio.shield(task)

    def mark_downloaded(self, export_id: str) -> None:
        """Schedule removal of a downloaded export after the grace period."""
        job = self.find_export(export_id)
        if export_id in self._cleanup_tasks:
            return
        self._cleanup_tasks[export_id] = asyncio.create_task(
            self._remove_after(job, self.settings.export_grace_period_s)
        )

    async def _remove_after(self, job: ExportJob, delay: float) -> None:
        try:
            await asyncio.sleep(delay)
            self._discard(job)
            logger.info(f"[EXPORT] Removed downloaded export {job.export_id}")
        finally:
            self._cleanup_tasks.pop(job.export_id, None)

    def _discard(self, job: ExportJob) -> None:
        remove_files([job.output_path])
        if self._exports.get(job.session_id) is job:
            del self._exports[job.session_id]

    async def cancel_export(self, session_id: str) -> bool:
        """Cancel a running export, or drop a finished one, deleting its output now."""
        job = self._exports.get(session_id)
        if job is None:
            return False

        job.cancel_token.cancel("Export cancelled")
        task = self._tasks.get(job.export_id)
        if task is not None:
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        if job.status == ExportStatus.RUNNING:
            job.status = ExportStatus.CANCELLED
            job.completed_at = utcnow()

        cleanup = self._cleanup_tasks.pop(job.export_id, None)
        if cleanup is not None:
            cleanup.cancel()
        self._discard(job)
        logger.info(f"[EXPORT] Session {session_id}: export {job.export_id} cancelled")
        self.events.publish_nowait(session_id, events.EXPORT_CANCELLED, {"export_id": job.export_id})
        return True

    async def shutdown(self) -> None:
        tasks = list(self._tasks.values()) + list(self._cleanup_tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
