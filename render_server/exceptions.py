"""Custom exceptions for the render server.

Request errors are raised straight to the API layer, which turns them into
JSON responses. Pipeline errors (extraction, audio download, encoding) are
caught by the job manager and recorded on the job as a failure message.
"""

from typing import Any

from render_server.constants.error_codes import get_error_spec


class RenderServerError(Exception):
    """Base exception for all render server errors."""

    code: str = "INTERNAL_ERROR"
    status_code: int = 500
    message: str = "An unexpected error occurred"

    def __init__(
        self,
        message: str | None = None,
        *,
        code: str | None = None,
        status_code: int | None = None,
    ):
        self.message = message or self.__class__.message
        if code:
            self.code = code
        if status_code:
            self.status_code = status_code
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        """Serialize for an API error response."""
        spec = get_error_spec(self.code)
        data: dict[str, Any] = {
            "detail": self.message,
            "code": self.code,
            "retryable": spec.get("retryable", False),
        }
        if "suggested_fix" in spec:
            data["suggested_fix"] = spec["suggested_fix"]
        return data


# =============================================================================
# Request Errors
# =============================================================================


class ValidationError(RenderServerError):
    """Base class for validation errors."""

    code = "VALIDATION_ERROR"
    status_code = 400


class InvalidOutputOptionsError(ValidationError):
    """Output options rejected before a job is created."""

    code = "INVALID_OUTPUT_OPTIONS"
    message = "Invalid output options"


class JobNotFoundError(RenderServerError):
    """No job with the given id is registered."""

    code = "JOB_NOT_FOUND"
    status_code = 404
    message = "Job not found"

    def __init__(self, job_id: str | None = None):
        message = f"Job not found: {job_id}" if job_id else self.message
        super().__init__(message)


class JobNotCompletedError(RenderServerError):
    """Operation requires a completed job."""

    code = "JOB_NOT_COMPLETED"
    status_code = 409
    message = "Job is not completed yet"

    def __init__(self, job_id: str | None = None, status: str | None = None):
        message = self.message
        if job_id and status:
            message = f"Job {job_id} is not completed yet (status: {status})"
        self.status = status
        super().__init__(message)


class ArtifactMissingError(RenderServerError):
    """The completed job's output file no longer exists."""

    code = "ARTIFACT_MISSING"
    status_code = 404
    message = "Output video file not found"


class ArtifactSaveError(RenderServerError):
    """Copying the artifact to the requested destination failed."""

    code = "ARTIFACT_SAVE_FAILED"
    status_code = 500
    message = "Failed to save output video"


# =============================================================================
# Pipeline Errors
# =============================================================================


class CapabilityDetectionError(RenderServerError):
    """Host capability query failed. Never leaves the detector."""

    code = "CAPABILITY_DETECTION_FAILED"


class ExtractionError(RenderServerError):
    """Frame renderer failed or produced an unusable frame set."""

    code = "EXTRACTION_FAILED"
    message = "Frame extraction failed"


class AssetDownloadError(RenderServerError):
    """An audio source could not be fetched."""

    code = "ASSET_DOWNLOAD_FAILED"
    message = "Asset download failed"

    def __init__(self, url: str | None = None, reason: str | None = None):
        message = self.message
        if url:
            message = f"Failed to download {url}"
            if reason:
                message += f": {reason}"
        self.url = url
        super().__init__(message)


class EncodingError(RenderServerError):
    """Encoder exited non-zero or produced an empty file."""

    code = "ENCODING_FAILED"
    message = "Encoding failed"

    def __init__(
        self,
        message: str | None = None,
        *,
        exit_code: int | None = None,
        diagnostic_tail: str = "",
    ):
        self.exit_code = exit_code
        self.diagnostic_tail = diagnostic_tail
        msg = message or self.message
        if diagnostic_tail:
            msg = f"{msg}. Error: {diagnostic_tail}"
        super().__init__(msg)
