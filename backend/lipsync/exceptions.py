"""Custom exceptions for the lipsync backend.

Every error carries a machine-readable code (see constants/error_codes.py)
so API handlers and the processing queue can report whether an operation
is worth retrying.
"""

from collections.abc import Sequence

from lipsync.constants.error_codes import get_error_spec, is_retryable
from lipsync.schemas.errors import ErrorInfo, ErrorLocation, SuggestedAction


class LipsyncError(Exception):
    """Base exception for all lipsync application errors."""

    code: str = "INTERNAL_ERROR"
    status_code: int = 500
    message: str = "An unexpected error occurred"

    def __init__(
        self,
        message: str | None = None,
        *,
        code: str | None = None,
        status_code: int | None = None,
        location: ErrorLocation | None = None,
        suggested_fix: str | None = None,
    ):
        self.message = message or self.__class__.message
        if code:
            self.code = code
        if status_code:
            self.status_code = status_code
        self.location = location
        self.suggested_fix = suggested_fix
        super().__init__(self.message)

    @property
    def retryable(self) -> bool:
        return is_retryable(self.code)

    def to_error_info(self) -> ErrorInfo:
        """Convert exception to ErrorInfo for API response."""
        spec = get_error_spec(self.code)

        suggested_actions: list[SuggestedAction] = []
        if "suggested_action" in spec:
            suggested_actions.append(
                SuggestedAction(
                    action=spec["suggested_action"],
                    endpoint=spec.get("suggested_endpoint"),
                    parameters=spec.get("parameters", {}),
                )
            )

        return ErrorInfo(
            code=self.code,
            message=self.message,
            location=self.location,
            retryable=spec.get("retryable", False),
            suggested_fix=self.suggested_fix or spec.get("suggested_fix"),
            suggested_actions=suggested_actions,
        )


# =============================================================================
# Resource Not Found Errors (404)
# =============================================================================


class NotFoundError(LipsyncError):
    """Base class for resource not found errors."""

    status_code = 404


class SessionNotFoundError(NotFoundError):
    code = "SESSION_NOT_FOUND"
    message = "Session not found"

    def __init__(self, session_id: str | None = None):
        message = f"Session not found: {session_id}" if session_id else self.message
        location = ErrorLocation(session_id=session_id) if session_id else None
        super().__init__(message, location=location)


class SegmentNotFoundError(NotFoundError):
    code = "SEGMENT_NOT_FOUND"
    message = "Segment not found"

    def __init__(self, segment_id: str | None = None):
        message = f"Segment not found: {segment_id}" if segment_id else self.message
        location = ErrorLocation(segment_id=segment_id) if segment_id else None
        super().__init__(message, location=location)


class ExportNotFoundError(NotFoundError):
    code = "EXPORT_NOT_FOUND"
    message = "Export not found"

    def __init__(self, export_id: str | None = None):
        message = f"Export not found: {export_id}" if export_id else self.message
        super().__init__(message)


class FileNotFoundInStorageError(NotFoundError):
    code = "FILE_NOT_FOUND"
    message = "File not found"


# =============================================================================
# Validation Errors (400)
# =============================================================================


class ValidationError(LipsyncError):
    """Base class for validation errors."""

    code = "VALIDATION_ERROR"
    status_code = 400


class InvalidSegmentRangeError(ValidationError):
    """Segment range violates the creation policy."""

    code = "INVALID_SEGMENT_RANGE"
    message = "Invalid segment range"

    def __init__(self, message: str | None = None, *, field: str | None = None):
        location = ErrorLocation(field=field) if field else None
        super().__init__(message or self.message, location=location)


class UnsupportedMediaTypeError(ValidationError):
    code = "UNSUPPORTED_MEDIA_TYPE"
    status_code = 415
    message = "Unsupported media type"


class ExportNotReadyError(ValidationError):
    """Export requested before every segment has been reviewed."""

    code = "EXPORT_NOT_READY"
    message = "All segments must be reviewed before export"


class NoProcessableSegmentsError(ValidationError):
    code = "NO_PROCESSABLE_SEGMENTS"
    message = "No segments in a processable state"


# =============================================================================
# Conflict Errors (409)
# =============================================================================


class ConflictError(LipsyncError):
    """Base class for conflict errors."""

    code = "CONFLICT"
    status_code = 409


class SegmentOverlapError(ConflictError):
    """New segment would intersect an existing one."""

    code = "SEGMENT_OVERLAP"
    message = "Segment overlaps an existing segment"

    def __init__(self, conflicting_segment_id: str | None = None):
        message = self.message
        location = None
        if conflicting_segment_id:
            message = f"Segment would overlap with: {conflicting_segment_id}"
            location = ErrorLocation(segment_id=conflicting_segment_id)
        super().__init__(message, location=location)


class StateConflictError(ConflictError):
    """Operation is not allowed in the resource's current state."""

    code = "STATE_CONFLICT"
    message = "Operation conflicts with current state"


# =============================================================================
# Media Tool Errors
# =============================================================================


class MediaError(LipsyncError):
    """Base class for ffmpeg/ffprobe failures."""

    status_code = 500


class ProbeError(MediaError):
    code = "PROBE_FAILED"
    status_code = 400
    message = "Could not read video metadata"

    def __init__(self, message: str | None = None, *, path: str | None = None):
        self.path = path
        super().__init__(message or self.message)


class MediaToolError(MediaError):
    """An ffmpeg invocation exited unsuccessfully."""

    code = "MEDIA_TOOL_FAILED"
    message = "Media tool failed"
    stderr_tail_lines = 20

    def __init__(
        self,
        message: str | None = None,
        *,
        returncode: int | None = None,
        stderr: str = "",
        command: Sequence[str] = (),
    ):
        self.returncode = returncode
        self.command = list(command)
        self.stderr = self._tail(stderr)
        msg = message or self.message
        if returncode is not None:
            msg = f"{msg} (exit code {returncode})"
        super().__init__(msg)

    @classmethod
    def _tail(cls, stderr: str) -> str:
        lines = [line for line in stderr.splitlines() if line.strip()]
        return "\n".join(lines[-cls.stderr_tail_lines:])


# =============================================================================
# Remote Resynthesis Errors (502/504)
# =============================================================================


class RemoteError(LipsyncError):
    """Base class for lip-sync service failures."""

    status_code = 502

    def __init__(self, message: str | None = None, *, task_id: str | None = None):
        self.task_id = task_id
        location = ErrorLocation(task_id=task_id) if task_id else None
        super().__init__(message or self.message, location=location)


class RemoteSubmitError(RemoteError):
    code = "REMOTE_SUBMIT_FAILED"
    message = "Failed to submit lip-sync task"


class RemoteStatusError(RemoteError):
    code = "REMOTE_STATUS_FAILED"
    message = "Failed to query lip-sync task status"


class RemoteTaskFailed(RemoteError):
    code = "REMOTE_TASK_FAILED"
    message = "Lip-sync task failed"


class RemoteTaskTimeout(RemoteError):
    code = "REMOTE_TASK_TIMEOUT"
    status_code = 504
    message = "Lip-sync task did not finish in time"


class RemoteTaskNotFound(RemoteError):
    code = "REMOTE_TASK_NOT_FOUND"
    message = "Task not found in response"


class RemoteResultMissing(RemoteError):
    code = "REMOTE_RESULT_MISSING"
    message = "Task completed without result"


class RemoteDownloadError(RemoteError):
    code = "REMOTE_DOWNLOAD_FAILED"
    message = "Failed to download lip-sync result"
