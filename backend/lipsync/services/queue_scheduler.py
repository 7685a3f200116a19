"""Bounded-concurrency processing queue for segments.

Each session runs at most one batch. Segments are admitted in the order
given, at most ``max_concurrent`` at a time, and each runs the pipeline:

    extract clip (0-30%) -> extract audio (30-50%) -> lip-sync (50-100%)

A failing segment is marked failed and reported; its siblings continue.
Cancelling a batch stops admission of further segments while the ones
already running finish.
"""

import asyncio
import logging
import os
from collections.abc import Sequence
from typing import Any

from lipsync.config import Settings, get_settings
from lipsync.exceptions import LipsyncError, NoProcessableSegmentsError, StateConflictError
from lipsync.models.jobs import ProcessingJob, RemoteTaskStatus
from lipsync.models.session import PROCESSABLE_STATUSES, SegmentStatus
from lipsync.services import event_manager as events
from lipsync.services.event_manager import SessionEventManager
from lipsync.services.kling_client import KlingLipSyncClient
from lipsync.services.media_transformer import MediaTransformer
from lipsync.services.session_store import SessionStore

logger = logging.getLogger(__name__)


class SegmentGone(Exception):
    """The segment or its session was removed while being processed."""


def segment_artifact_paths(original_video_path: str, segment_id: str) -> dict[str, str]:
    """Artifact locations, next to the source video."""
    base_dir = os.path.dirname(original_video_path)
    return {
        "video": os.path.join(base_dir, f"segment_{segment_id}.mp4"),
        "audio": os.path.join(base_dir, f"segment_{segment_id}.wav"),
        "processed": os.path.join(base_dir, f"processed_{segment_id}.mp4"),
    }


class QueueScheduler:
    """Runs per-session batches of segment processing."""

    def __init__(
        self,
        store: SessionStore,
        transformer: MediaTransformer,
        remote: KlingLipSyncClient,
        events_manager: SessionEventManager,
        settings: Settings | None = None,
    ) -> None:
        self.store = store
        self.transformer = transformer
        self.remote = remote
        self.events = events_manager
        self.settings = settings or get_settings()
        self._jobs: dict[str, ProcessingJob] = {}
        self._tasks: dict[str, asyncio.Task] = {}
        self._lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def enqueue(self, session_id: str, segment_ids: Sequence[str] | None = None) -> ProcessingJob:
        """Start processing a batch for a session.

        Args:
            session_id: Session whose segments to process
            segment_ids: Segments in admission order; all segments by start time when omitted

        Raises:
            SessionNotFoundError: Unknown session
            StateConflictError: A batch is already running for the session
            NoProcessableSegmentsError: None of the segments is pending or failed
        """
        async with self._lock:
            self.store.require_session(session_id)
            if session_id in self._jobs:
                raise StateConflictError(f"Session {session_id} is already processing")

            if segment_ids is None:
                candidates = self.store.list_segments(session_id)
            else:
                candidates = [self.store.get_segment(sid) for sid in dict.fromkeys(segment_ids)]
            processable = [
                seg.id
                for seg in candidates
                if seg is not None and seg.session_id == session_id and seg.status in PROCESSABLE_STATUSES
            ]
            if not processable:
                raise NoProcessableSegmentsError()

            job = ProcessingJob(
                session_id=session_id,
                segment_ids=processable,
                max_concurrent=max(1, self.settings.max_concurrent_segments),
            )
            self._jobs[session_id] = job
            self._tasks[session_id] = asyncio.create_task(self._run(job))

        logger.info(
            f"[QUEUE] Session {session_id}: queued {len(processable)} segments "
            f"(max {job.max_concurrent} concurrent)"
        )
        return job

    async def cancel(self, session_id: str) -> bool:
        """Stop admitting segments for a session's batch. Running segments finish."""
        job = self._jobs.get(session_id)
        if job is None:
            return False
        job.cancel_token.cancel("Processing cancelled")
        logger.info(f"[QUEUE] Session {session_id}: cancel requested, {len(job.in_flight)} still running")
        return True

    def get_job(self, session_id: str) -> ProcessingJob | None:
        return self._jobs.get(session_id)

    def is_processing(self, session_id: str) -> bool:
        return session_id in self._jobs

    def status(self, session_id: str) -> dict[str, Any]:
        """Snapshot of a session's batch and segment states."""
        self.store.require_session(session_id)
        job = self._jobs.get(session_id)
        segments = self.store.list_segments(session_id)
        counts: dict[str, int] = {s.value: 0 for s in SegmentStatus}
        for seg in segments:
            counts[seg.status.value] += 1
        return {
            "session_id": session_id,
            "is_processing": job is not None,
            "job": job.to_dict() if job else None,
            "counts": counts,
            "segments": [seg.to_dict() for seg in segments],
        }

    async def wait(self, session_id: str) -> None:
        """Wait for a session's batch to finish, if one is running."""
        task = self._tasks.get(session_id)
        if task is not None:
            await asyncio.shield(task)

    async def shutdown(self) -> None:
        for job in self._jobs.values():
            job.cancel_token.cancel("Shutting down")
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    # ------------------------------------------------------------------
    # Batch execution
    # ------------------------------------------------------------------

    async def _run(self, job: ProcessingJob) -> None:
        semaphore = asyncio.Semaphore(job.max_concurrent)
        workers: list[asyncio.Task] = []
        try:
            for segment_id in job.segment_ids:
                await semaphore.acquire()
                if job.cancel_token.cancelled:
                    semaphore.release()
                    break
                job.cursor += 1
                job.in_flight.add(segment_id)
                workers.append(asyncio.create_task(self._run_segment(job, segment_id, semaphore)))

            if workers:
                await asyncio.gather(*workers)
        except asyncio.CancelledError:
            for worker in workers:
                worker.cancel()
            await asyncio.gather(*workers, return_exceptions=True)
            raise
        finally:
            self._jobs.pop(job.session_id, None)
            self._tasks.pop(job.session_id, None)

        summary = {
            "total": len(job.segment_ids),
            "admitted": job.cursor,
            "completed": len(job.completed),
            "failed": len(job.failed),
        }
        if job.cancel_token.cancelled:
            logger.info(f"[QUEUE] Session {job.session_id}: cancelled {summary}")
            self.events.publish_nowait(job.session_id, events.QUEUE_CANCELLED, summary)
        else:
            logger.info(f"[QUEUE] Session {job.session_id}: completed {summary}")
            self.events.publish_nowait(job.session_id, events.QUEUE_COMPLETED, summary)

    async def _run_segment(self, job: ProcessingJob, segment_id: str, semaphore: asyncio.Semaphore) -> None:
        try:
            await self.process_segment(job.session_id, segment_id)
            job.completed.append(segment_id)
        except SegmentGone:
            logger.info(f"[QUEUE] Segment {segment_id} was removed during processing")
        except Exception as e:
            job.failed.append(segment_id)
            self._record_failure(job.session_id, segment_id, e)
        finally:
            job.in_flight.discard(segment_id)
            semaphore.release()

    def _record_failure(self, session_id: str, segment_id: str, error: Exception) -> None:
        if isinstance(error, LipsyncError):
            message, code, retryable = error.message, error.code, error.retryable
            logger.error(f"[QUEUE] Segment {segment_id} failed: [{code}] {message}")
        else:
            message, code, retryable = str(error) or type(error).__name__, "INTERNAL_ERROR", True
            logger.exception(f"[QUEUE] Segment {segment_id} failed unexpectedly")

        self.store.mark_failed(segment_id, message)
        self.events.publish_nowait(
            session_id,
            events.SEGMENT_FAILED,
            {"segment_id": segment_id, "error": message, "code": code, "retryable": retryable},
        )
        self._notify(session_id, segment_id, SegmentStatus.FAILED, 0.0)

    def _notify(self, session_id: str, segment_id: str, status: SegmentStatus, progress: float) -> None:
        self.events.publish_nowait(
            session_id,
            events.PROCESSING_STATUS,
            {"segment_id": segment_id, "status": status.value, "progress": round(progress, 1)},
        )

    def _require(self, ok: bool) -> None:
        if not ok:
            raise SegmentGone()

    async def process_segment(self, session_id: str, segment_id: str) -> None:
        """Run the full pipeline for one segment, updating the store as it goes."""
        segment = self.store.get_segment(segment_id)
        if segment is None:
            raise SegmentGone()

        self._require(self.store.begin_extraction(segment_id))
        self._notify(session_id, segment_id, SegmentStatus.EXTRACTING, 0.0)
        paths = segment_artifact_paths(segment.original_video_path, segment_id)

        await self.transformer.extract_range(
            segment.original_video_path,
            paths["video"],
            segment.start,
            segment.duration,
            on_progress=lambda p: self._notify(session_id, segment_id, SegmentStatus.EXTRACTING, p * 0.3),
        )
        self._require(self.store.update_paths(segment_id, extracted_video_path=paths["video"]))

        await self.transformer.extract_audio(
            paths["video"],
            paths["audio"],
            on_progress=lambda p: self._notify(session_id, segment_id, SegmentStatus.EXTRACTING, 30 + p * 0.2),
            duration=segment.duration,
        )
        self._require(self.store.update_paths(segment_id, extracted_audio_path=paths["audio"]))

        self._require(self.store.update_status(segment_id, SegmentStatus.UPLOADING))
        self._notify(session_id, segment_id, SegmentStatus.UPLOADING, 50.0)

        current_status = SegmentStatus.UPLOADING

        def on_remote_status(status: RemoteTaskStatus) -> None:
            nonlocal current_status
            if status == RemoteTaskStatus.PROCESSING and current_status == SegmentStatus.UPLOADING:
                if self.store.update_status(segment_id, SegmentStatus.PROCESSING):
                    current_status = SegmentStatus.PROCESSING

        await self.remote.transform(
            paths["video"],
            paths["audio"],
            paths["processed"],
            on_progress=lambda p: self._notify(session_id, segment_id, current_status, 50 + p * 0.5),
            timeout=self.remote.timeout_for(segment.duration),
            on_status=on_remote_status,
        )

        # Tasks can finish before a processing status is ever observed
        self._require(self.store.update_status(segment_id, SegmentStatus.PROCESSING))
        self._require(self.store.update_paths(segment_id, processed_video_path=paths["processed"]))
        self._require(self.store.update_status(segment_id, SegmentStatus.COMPLETE))
        self._notify(session_id, segment_id, SegmentStatus.COMPLETE, 100.0)
        logger.info(f"[QUEUE] Segment {segment_id} complete")
