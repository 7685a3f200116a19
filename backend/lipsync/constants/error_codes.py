"""Error codes dictionary.

Single source of truth for error codes, their retryability, and suggested
recovery actions. Used by exception handlers to build machine-readable
error responses.
"""

from typing import Any, TypedDict


class ErrorCodeSpec(TypedDict, total=False):
    """Specification for an error code."""

    retryable: bool
    suggested_action: str
    suggested_endpoint: str
    suggested_fix: str
    parameters: dict[str, Any]


ERROR_CODES: dict[str, ErrorCodeSpec] = {
    # ==========================================================================
    # Resource errors
    # ==========================================================================
    "SESSION_NOT_FOUND": {
        "retryable": False,
        "suggested_action": "create_session",
        "suggested_endpoint": "POST /api/sessions",
        "suggested_fix": "Upload the video again; sessions expire after inactivity",
    },
    "SEGMENT_NOT_FOUND": {
        "retryable": True,
        "suggested_action": "refresh_ids",
        "suggested_endpoint": "GET /api/segments/session/{session_id}",
    },
    "EXPORT_NOT_FOUND": {
        "retryable": False,
        "suggested_action": "start_export",
        "suggested_endpoint": "POST /api/export",
    },
    "FILE_NOT_FOUND": {
        "retryable": False,
    },
    # ==========================================================================
    # Validation errors
    # ==========================================================================
    "VALIDATION_ERROR": {
        "retryable": False,
    },
    "INVALID_SEGMENT_RANGE": {
        "retryable": False,
        "suggested_fix": "Use 0 <= start < end within the video, between the minimum and maximum segment length",
    },
    "UNSUPPORTED_MEDIA_TYPE": {
        "retryable": False,
    },
    "EXPORT_NOT_READY": {
        "retryable": False,
        "suggested_action": "review_segments",
        "suggested_endpoint": "PUT /api/segments/{segment_id}/approval",
        "suggested_fix": "Approve or reject every segment before exporting",
    },
    "NO_PROCESSABLE_SEGMENTS": {
        "retryable": False,
        "suggested_fix": "Only pending or failed segments can be queued",
    },
    # ==========================================================================
    # Conflict errors
    # ==========================================================================
    "SEGMENT_OVERLAP": {
        "retryable": False,
        "suggested_fix": "Adjust the range so it does not intersect an existing segment",
    },
    "STATE_CONFLICT": {
        "retryable": True,
        "suggested_action": "wait_and_retry",
        "parameters": {"delay_ms": 2000, "max_retries": 5},
    },
    # ==========================================================================
    # Media tool errors
    # ==========================================================================
    "PROBE_FAILED": {
        "retryable": False,
        "suggested_fix": "Make sure the file is a readable video with at least one video stream",
    },
    "MEDIA_TOOL_FAILED": {
        "retryable": True,
        "suggested_action": "retry_segment",
        "suggested_endpoint": "POST /api/segments/{segment_id}/retry",
    },
    # ==========================================================================
    # Remote resynthesis errors
    # ==========================================================================
    "REMOTE_SUBMIT_FAILED": {
        "retryable": True,
        "suggested_action": "retry_segment",
        "suggested_endpoint": "POST /api/segments/{segment_id}/retry",
    },
    "REMOTE_STATUS_FAILED": {
        "retryable": True,
        "suggested_action": "retry_segment",
        "suggested_endpoint": "POST /api/segments/{segment_id}/retry",
    },
    "REMOTE_TASK_FAILED": {
        "retryable": False,
        "suggested_fix": "Check that the segment shows a clearly visible face and has speech audio",
    },
    "REMOTE_TASK_TIMEOUT": {
        "retryable": True,
        "suggested_action": "retry_segment",
        "suggested_endpoint": "POST /api/segments/{segment_id}/retry",
    },
    "REMOTE_TASK_NOT_FOUND": {
        "retryable": True,
        "suggested_action": "retry_segment",
        "suggested_endpoint": "POST /api/segments/{segment_id}/retry",
    },
    "REMOTE_RESULT_MISSING": {
        "retryable": True,
        "suggested_action": "retry_segment",
        "suggested_endpoint": "POST /api/segments/{segment_id}/retry",
    },
    "REMOTE_DOWNLOAD_FAILED": {
        "retryable": True,
        "suggested_action": "retry_segment",
        "suggested_endpoint": "POST /api/segments/{segment_id}/retry",
    },
    # ==========================================================================
    # System errors
    # ==========================================================================
    "INTERNAL_ERROR": {
        "retryable": True,
        "suggested_action": "retry_with_backoff",
        "parameters": {"delay_ms": 2000, "max_retries": 2},
    },
}


def get_error_spec(code: str) -> ErrorCodeSpec:
    """Get error specification by code.

    Args:
        code: The error code

    Returns:
        ErrorCodeSpec with retryable flag and suggested actions
    """
    return ERROR_CODES.get(code, {"retryable": False})


def is_retryable(code: str) -> bool:
    """Check if an error code is retryable."""
    return get_error_spec(code).get("retryable", False)
