"""Error codes dictionary for the render API.

Single source of truth for error codes, their retryability and a suggested
fix shown to API clients. Used by the exception handler in ``main.py``.
"""

from typing import TypedDict


class ErrorCodeSpec(TypedDict, total=False):
    """Specification for an error code."""

    retryable: bool
    suggested_fix: str


ERROR_CODES: dict[str, ErrorCodeSpec] = {
    # ==========================================================================
    # Request errors
    # ==========================================================================
    "INVALID_OUTPUT_OPTIONS": {
        "retryable": False,
        "suggested_fix": "Check width, height, fps, quality and container format",
    },
    "JOB_NOT_FOUND": {
        "retryable": False,
        "suggested_fix": "The job may have been cleaned up; submit a new render",
    },
    "JOB_NOT_COMPLETED": {
        "retryable": True,
        "suggested_fix": "Poll GET /api/render/status/{job_id} until status is completed",
    },
    "ARTIFACT_MISSING": {
        "retryable": False,
        "suggested_fix": "The rendered file was removed; submit a new render",
    },
    # ==========================================================================
    # Pipeline errors (surface as a failed job)
    # ==========================================================================
    "CAPABILITY_DETECTION_FAILED": {
        "retryable": True,
    },
    "EXTRACTION_FAILED": {
        "retryable": True,
        "suggested_fix": "Check the frame renderer logs and the composition duration",
    },
    "ASSET_DOWNLOAD_FAILED": {
        "retryable": True,
        "suggested_fix": "Make sure every audio source URL is reachable",
    },
    "ENCODING_FAILED": {
        "retryable": True,
        "suggested_fix": "Inspect the encoder output attached to the error",
    },
    # ==========================================================================
    # Save errors
    # ==========================================================================
    "ARTIFACT_SAVE_FAILED": {
        "retryable": True,
        "suggested_fix": "Check that the destination directory is writable",
    },
    "INTERNAL_ERROR": {
        "retryable": False,
    },
}


def get_error_spec(code: str) -> ErrorCodeSpec:
    """Get error specification by code.

    Args:
        code: The error code

    Returns:
        ErrorCodeSpec with retryable flag and suggested fix
    """
    return ERROR_CODES.get(code, {"retryable": False})

