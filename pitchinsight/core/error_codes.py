"""
Standardised error handling for PitchInsight.

Every failure the pipeline knows about is a PipelineError carrying a stable
code, a human-readable message, and whether a later retry may succeed.
"""

from pitchinsight.core.constants import (
    ErrorCode, RETRYABLE_ERRORS, MAX_ERROR_MESSAGE_LEN,
)


class PipelineError(Exception):
    """Raised when the pipeline encounters a known error condition."""

    code = "ERR_PIPELINE"

    def __init__(self, message: str, code: str | None = None,
                 retryable: bool | None = None):
        self.code = code or type(self).code
        self.message = message
        # auto-detect retryable from code if not explicitly set
        self.retryable = retryable if retryable is not None else (self.code in RETRYABLE_ERRORS)
        super().__init__(f"[{self.code}] {message}")

    def user_message(self) -> str:
        """Message suitable for the record's error_message field."""
        return self.message[:MAX_ERROR_MESSAGE_LEN]


class ConfigurationError(PipelineError):
    code = ErrorCode.CONFIGURATION


class NotFoundError(PipelineError):
    code = ErrorCode.NOT_FOUND


class AccessError(PipelineError):
    code = ErrorCode.ACCESS


class DownloadError(PipelineError):
    code = ErrorCode.DOWNLOAD_FAILED

    def __init__(self, message: str, status_code: int | None = None):
        self.status_code = status_code
        super().__init__(message)


class EmptyMediaError(PipelineError):
    code = ErrorCode.EMPTY_MEDIA


class SizeLimitError(PipelineError):
    code = ErrorCode.SIZE_LIMIT

    def __init__(self, message: str, size_bytes: int | None = None,
                 limit_bytes: int | None = None):
        self.size_bytes = size_bytes
        self.limit_bytes = limit_bytes
        super().__init__(message)


class ValidationError(PipelineError):
    code = ErrorCode.INVALID_FORMAT


class ProviderError(PipelineError):
    """Failure reported by an external provider: status code + message."""

    def __init__(self, message: str, status_code: int | None = None,
                 provider_code: str | None = None):
        self.status_code = status_code
        self.provider_code = provider_code
        super().__init__(message)


class TranscriptionError(ProviderError):
    code = ErrorCode.TRANSCRIPTION_FAILED


class AnalysisError(ProviderError):
    code = ErrorCode.ANALYSIS_FAILED


class PreconditionError(PipelineError):
    code = ErrorCode.PRECONDITION


class ClaimError(PipelineError):
    """Another transcription attempt holds the record."""
    code = ErrorCode.CLAIM_REFUSED


class PersistenceError(PipelineError):
    code = ErrorCode.PERSISTENCE


class MediaPermissionError(PipelineError, PermissionError):
    """The capture device refused access."""
    code = ErrorCode.PERMISSION_DENIED


def is_retryable(code: str) -> bool:
    return code in RETRYABLE_ERRORS
