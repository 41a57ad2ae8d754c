"""Error taxonomy shared by the pipeline services and the HTTP layer.

Every error carries a stable ``code`` and the HTTP status the API answers with,
so handlers can translate without inspecting messages.
"""

from __future__ import annotations

from typing import Optional


class PipelineError(Exception):
    code = "pipeline_error"
    http_status = 500

    def __init__(self, message: str, *, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.message = message
        # Upstream HTTP status when the error came from an external call
        self.status_code = status_code


class ValidationError(PipelineError):
    code = "validation_error"
    http_status = 400


class UnsupportedFileTypeError(ValidationError):
    pass


class FileTooLargeError(ValidationError):
    pass


class InvalidRecordingIdError(ValidationError):
    pass


class AuthError(PipelineError):
    code = "unauthorized"
    http_status = 401


class NotFoundError(PipelineError):
    code = "not_found"
    http_status = 404


class NoTranscriptError(NotFoundError):
    pass


class ConflictError(PipelineError):
    code = "conflict"
    http_status = 409


class NoSpeechError(PipelineError):
    code = "no_speech"
    http_status = 422


class UpstreamError(PipelineError):
    code = "upstream_error"
    http_status = 500


class UpstreamTimeoutError(UpstreamError):
    code = "upstream_timeout"


class RateLimitedError(UpstreamError):
    code = "rate_limited"
    http_status = 429


class QuotaExhaustedError(UpstreamError):
    code = "quota_exhausted"
    http_status = 402


class ParseError(PipelineError):
    code = "parse_error"
    http_status = 500


class PersistenceError(PipelineError):
    code = "persistence_error"
    http_status = 500


class BlobStoreError(PipelineError):
    code = "blob_store_error"
    http_status = 500


class UploadFailedError(PipelineError):
    code = "upload_failed"
    http_status = 502


class TriggerDispatchError(UploadFailedError):
    pass
