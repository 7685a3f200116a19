"""In-memory store for sessions and their segments.

Single source of truth for segment state. Callers receive copies and change
state only through the store's methods, which enforce the status state
machine and keep the segment -> session index consistent.

Mutations addressed at an unknown id return False/None instead of raising,
since sessions may be evicted while background work is still running.
"""

import asyncio
import dataclasses
import logging
import threading
import uuid
from datetime import UTC, datetime, timedelta

from lipsync.config import get_settings
from lipsync.exceptions import (
    InvalidSegmentRangeError,
    SegmentNotFoundError,
    SegmentOverlapError,
    SessionNotFoundError,
    StateConflictError,
)
from lipsync.models.session import (
    IN_FLIGHT_STATUSES,
    ApprovalStatus,
    Segment,
    SegmentStatus,
    Session,
    VideoMetadata,
    can_transition,
    utcnow,
)

logger = logging.getLogger(__name__)


def _copy_segment(segment: Segment) -> Segment:
    return dataclasses.replace(segment)


def _copy_session(session: Session) -> Session:
    return dataclasses.replace(session, segment_ids=list(session.segment_ids))


class SessionStore:
    """Thread-safe in-memory store with idle-timeout eviction."""

    def __init__(
        self,
        session_timeout_seconds: int | None = None,
        min_segment_duration: float | None = None,
        max_segment_duration: float | None = None,
    ) -> None:
        settings = get_settings()
        self._sessions: dict[str, Session] = {}
        self._segments: dict[str, Segment] = {}
        # segment_id -> session_id
        self._segment_index: dict[str, str] = {}
        self._lock = threading.Lock()
        self._timeout = timedelta(
            seconds=session_timeout_seconds
            if session_timeout_seconds is not None
            else settings.session_timeout_seconds
        )
        self.min_segment_duration = (
            min_segment_duration if min_segment_duration is not None else settings.segment_min_duration_s
        )
        self.max_segment_duration = (
            max_segment_duration if max_segment_duration is not None else settings.segment_max_duration_s
        )

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def create_session(
        self,
        original_video_path: str,
        metadata: VideoMetadata,
        original_filename: str | None = None,
        session_id: str | None = None,
    ) -> Session:
        session = Session(
            id=session_id or str(uuid.uuid4()),
            original_video_path=original_video_path,
            metadata=metadata,
            original_filename=original_filename,
        )
        with self._lock:
            self._sessions[session.id] = session
        logger.info(f"[STORE] Created session {session.id} ({metadata.duration:.2f}s)")
        return _copy_session(session)

    def get_session(self, session_id: str) -> Session | None:
        with self._lock:
            session = self._sessions.get(session_id)
            return _copy_session(session) if session else None

    def require_session(self, session_id: str) -> Session:
        session = self.get_session(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        return session

    def touch_session(self, session_id: str) -> bool:
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                return False
            session.touch()
            return True

    def delete_session(self, session_id: str) -> bool:
        """Remove a session and all its segments. Files on disk are left alone."""
        with self._lock:
            return self._delete_session_locked(session_id)

    def _delete_session_locked(self, session_id: str) -> bool:
        session = self._sessions.pop(session_id, None)
        if session is None:
            return False
        for segment_id in session.segment_ids:
            self._segments.pop(segment_id, None)
            self._segment_index.pop(segment_id, None)
        return True

    # ------------------------------------------------------------------
    # Segments
    # ------------------------------------------------------------------

    def _validate_range(self, session: Session, start: float, end: float) -> None:
        if start < 0:
            raise InvalidSegmentRangeError("Start time must be >= 0", field="start_time")
        if end <= start:
            raise InvalidSegmentRangeError("End time must be after start time", field="end_time")
        duration = end - start
        if duration < self.min_segment_duration or duration > self.max_segment_duration:
            raise InvalidSegmentRangeError(
                f"Segment duration must be between {self.min_segment_duration}s and "
                f"{self.max_segment_duration}s (got {duration:.2f}s)",
                field="end_time",
            )
        if end > session.metadata.duration + 1e-3:
            raise InvalidSegmentRangeError(
                f"Segment ends at {end:.2f}s, beyond the video duration {session.metadata.duration:.2f}s",
                field="end_time",
            )

    def add_segment(
        self,
        session_id: str,
        start: float,
        end: float,
        segment_id: str | None = None,
    ) -> Segment:
        """Create a pending segment.

        Raises:
            SessionNotFoundError: Unknown session
            InvalidSegmentRangeError: Range violates the creation policy
            SegmentOverlapError: Range intersects an existing segment
        """
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                raise SessionNotFoundError(session_id)
            self._validate_range(session, start, end)
            for other_id in session.segment_ids:
                other = self._segments[other_id]
                if other.overlaps(start, end):
                    raise SegmentOverlapError(other.id)

            segment = Segment(
                id=segment_id or str(uuid.uuid4()),
                session_id=session_id,
                start=start,
                end=end,
                original_video_path=session.original_video_path,
            )
            self._segments[segment.id] = segment
            self._segment_index[segment.id] = session_id
            session.segment_ids.append(segment.id)
            session.touch()
        logger.info(f"[STORE] Added segment {segment.id} {start:.2f}-{end:.2f}s to session {session_id}")
        return _copy_segment(segment)

    def get_segment(self, segment_id: str) -> Segment | None:
        with self._lock:
            segment = self._segments.get(segment_id)
            return _copy_segment(segment) if segment else None

    def require_segment(self, segment_id: str) -> Segment:
        segment = self.get_segment(segment_id)
        if segment is None:
            raise SegmentNotFoundError(segment_id)
        return segment

    def session_id_for(self, segment_id: str) -> str | None:
        with self._lock:
            return self._segment_index.get(segment_id)

    def list_segments(self, session_id: str) -> list[Segment]:
        """Segments of a session ordered by start time."""
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                return []
            segments = [self._segments[sid] for sid in session.segment_ids]
            return [_copy_segment(s) for s in sorted(segments, key=lambda s: s.start)]

    def remove_segment(self, segment_id: str) -> bool:
        """Delete a segment that is not currently being processed.

        Raises:
            StateConflictError: Segment is extracting, uploading or processing
        """
        with self._lock:
            segment = self._segments.get(segment_id)
            if segment is None:
                return False
            if segment.status in IN_FLIGHT_STATUSES:
                raise StateConflictError(f"Cannot delete segment {segment_id} while it is {segment.status.value}")
            self._remove_segment_locked(segment)
        logger.info(f"[STORE] Removed segment {segment_id}")
        return True

    def _remove_segment_locked(self, segment: Segment) -> None:
        self._segments.pop(segment.id, None)
        session_id = self._segment_index.pop(segment.id, None)
        session = self._sessions.get(session_id) if session_id else None
        if session is not None:
            if segment.id in session.segment_ids:
                session.segment_ids.remove(segment.id)
            session.touch()

    def clear_segments(self, session_id: str) -> int:
        """Delete every segment of a session. Refused while any is in flight."""
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                return 0
            segments = [self._segments[sid] for sid in session.segment_ids]
            busy = [s.id for s in segments if s.status in IN_FLIGHT_STATUSES]
            if busy:
                raise StateConflictError(f"Cannot clear segments while {len(busy)} are being processed")
            for segment in segments:
                self._remove_segment_locked(segment)
            return len(segments)

    # ------------------------------------------------------------------
    # State transitions
    # ------------------------------------------------------------------

    def _touch_segment_locked(self, segment: Segment) -> None:
        segment.updated_at = utcnow()
        session = self._sessions.get(segment.session_id)
        if session is not None:
            session.touch()

    def update_status(
        self,
        segment_id: str,
        status: SegmentStatus,
        error_message: str | None = None,
    ) -> bool:
        """Move a segment to a new status.

        Raises:
            StateConflictError: Transition is not allowed from the current status
        """
        with self._lock:
            segment = self._segments.get(segment_id)
            if segment is None:
                return False
            if segment.status == status:
                return True
            if not can_transition(segment.status, status):
                raise StateConflictError(
                    f"Segment {segment_id} cannot move from {segment.status.value} to {status.value}"
                )
            if segment.status == SegmentStatus.FAILED and status == SegmentStatus.EXTRACTING:
                segment.retry_count += 1
            segment.status = status
            if status == SegmentStatus.FAILED:
                segment.error_message = error_message
            elif status == SegmentStatus.EXTRACTING:
                segment.error_message = None
            self._touch_segment_locked(segment)
            return True

    def begin_extraction(self, segment_id: str) -> bool:
        """Claim a pending or failed segment for processing (a retry when failed)."""
        return self.update_status(segment_id, SegmentStatus.EXTRACTING)

    def mark_failed(self, segment_id: str, error_message: str) -> bool:
        """Record a failure. Has no effect on segments that are not in flight."""
        with self._lock:
            segment = self._segments.get(segment_id)
            if segment is None or segment.status not in IN_FLIGHT_STATUSES:
                return False
            segment.status = SegmentStatus.FAILED
            segment.error_message = error_message
            self._touch_segment_locked(segment)
            return True

    def update_paths(
        self,
        segment_id: str,
        *,
        extracted_video_path: str | None = None,
        extracted_audio_path: str | None = None,
        processed_video_path: str | None = None,
    ) -> bool:
        """Set artifact paths. Paths are only ever set or overwritten, never cleared."""
        with self._lock:
            segment = self._segments.get(segment_id)
            if segment is None:
                return False
            if extracted_video_path is not None:
                segment.extracted_video_path = extracted_video_path
            if extracted_audio_path is not None:
                segment.extracted_audio_path = extracted_audio_path
            if processed_video_path is not None:
                segment.processed_video_path = processed_video_path
            self._touch_segment_locked(segment)
            return True

    def set_approval(self, segment_id: str, approval: ApprovalStatus) -> bool:
        """Record a review decision.

        Raises:
            StateConflictError: Segment has not finished processing
        """
        with self._lock:
            segment = self._segments.get(segment_id)
            if segment is None:
                return False
            if segment.status != SegmentStatus.COMPLETE:
                raise StateConflictError(
                    f"Segment {segment_id} must be complete before review (is {segment.status.value})"
                )
            segment.approval = approval
            self._touch_segment_locked(segment)
            return True

    # ------------------------------------------------------------------
    # Eviction
    # ------------------------------------------------------------------

    def evict_idle(self, now: datetime | None = None) -> list[str]:
        """Drop sessions idle for longer than the timeout.

        Sessions with segments in flight are kept. Returns evicted session ids.
        """
        now = now or datetime.now(UTC)
        evicted: list[str] = []
        with self._lock:
            for session_id, session in list(self._sessions.items()):
                if now - session.updated_at <= self._timeout:
                    continue
                if any(self._segments[sid].status in IN_FLIGHT_STATUSES for sid in session.segment_ids):
                    continue
                self._delete_session_locked(session_id)
                evicted.append(session_id)
        if evicted:
            logger.info(f"[STORE] Evicted {len(evicted)} idle sessions: {', '.join(evicted)}")
        return evicted

    async def run_eviction_loop(self, interval_seconds: float) -> None:
        """Periodically evict idle sessions until cancelled."""
        while True:
            await asyncio.sleep(interval_seconds)
            self.evict_idle()


_session_store: SessionStore | None = None


def get_session_store() -> SessionStore:
    global _session_store
    if _session_store is None:
        _session_store = SessionStore()
    return _session_store
