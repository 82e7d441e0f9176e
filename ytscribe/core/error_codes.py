"""
Standardised error handling for YTScribe.

Every service boundary raises its own JobError subclass so callers can
catch per boundary; the `code` attribute carries the taxonomy tag.
"""

from ytscribe.core.constants import ErrorCode, RETRYABLE_ERRORS


class JobError(Exception):
    """Raised when a job encounters a known error condition."""

    def __init__(self, code: str, message: str, retryable: bool | None = None):
        self.code = code
        self.message = message
        # auto-detect retryable from code if not explicitly set
        self.retryable = retryable if retryable is not None else (code in RETRYABLE_ERRORS)
        super().__init__(f"[{code}] {message}")


class IngestError(JobError):
    """Submission rejected before any record or job exists."""


class DuplicateVideoError(IngestError):
    """A video with the same (owner, external id) already exists."""

    def __init__(self, existing_id: str, external_id: str):
        self.existing_id = existing_id
        self.external_id = external_id
        super().__init__(ErrorCode.DUPLICATE_VIDEO,
                         f"Video {external_id} already exists in your library",
                         retryable=False)


class AcquisitionError(JobError):
    """Audio or metadata could not be fetched from the video platform."""


class ConditioningError(JobError):
    """Audio could not be brought under the upload size ceiling."""


class TranscriptionError(JobError):
    """Speech-to-text call failed or its input was rejected."""


class ChatError(JobError):
    """Chat-completion call failed."""


def is_retryable(code: str) -> bool:
    return code in RETRYABLE_ERRORS


def classify_http_status(status: int) -> str:
    """
    Map an upstream HTTP status to an error code.
    Shared by the transcription and chat boundaries; each boundary refines
    the generic result (chat adds ContextTooLong).
    """
    if status == 429:
        return ErrorCode.RATE_LIMIT
    if status in (401, 403):
        return ErrorCode.AUTHENTICATION
    return ErrorCode.API_ERROR


def extract_error_message(body) -> str:
    """Pull a human-readable message out of an OpenAI-style error payload."""
    if isinstance(body, dict):
        err = body.get('error')
        if isinstance(err, dict):
            return str(err.get('message') or err.get('code') or err)
        if err:
            return str(err)
        return str(body.get('message', body))
    return str(body or "")[:300]
