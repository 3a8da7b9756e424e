# core/exceptions.py
"""
Typed error taxonomy for the ingestion pipeline.

Every error carries a stable `code`, whether the caller may retry it, and the
HTTP status the router maps it to.
"""

from typing import List, Optional, Tuple


class MediaPipelineError(Exception):
    code = "media_pipeline_error"
    retryable = False
    http_status = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {"error": self.code, "detail": self.message}


class UnsupportedMediaType(MediaPipelineError):
    code = "unsupported_media_type"
    http_status = 415


class ConversionFailed(MediaPipelineError):
    """All conversion strategies were exhausted; carries every cause."""

    code = "conversion_failed"
    http_status = 422

    def __init__(self, message: str, causes: Optional[List[Tuple[str, BaseException]]] = None):
        self.causes = list(causes or [])
        if self.causes:
            detail = "; ".join(f"{name}: {cause}" for name, cause in self.causes)
            message = f"{message} ({detail})"
        super().__init__(message)


class NormalizationTimeout(ConversionFailed):
    code = "normalization_timeout"


class PayloadTooLarge(MediaPipelineError):
    code = "payload_too_large"
    http_status = 413

    def __init__(self, size: int, limit: int, quality: Optional[int] = None):
        self.size = size
        self.limit = limit
        self.quality = quality
        limit_mb = limit / (1024 * 1024)
        if quality is None:
            message = f"Payload of {size} bytes exceeds the {limit_mb:.1f}MB limit"
        else:
            message = (
                f"Even after compression to quality {quality}, the payload "
                f"({size} bytes) still exceeds {limit_mb:.1f}MB"
            )
        super().__init__(message)


class StorageError(MediaPipelineError):
    code = "storage_error"
    http_status = 502


class StorageNotFound(StorageError):
    code = "storage_not_found"
    http_status = 404


class StorageAccessDenied(StorageError):
    code = "storage_access_denied"
    http_status = 502


class StorageTransient(StorageError):
    code = "storage_transient"
    retryable = True
    http_status = 503


class PersistenceFailed(MediaPipelineError):
    code = "persistence_failed"
    http_status = 500


class ProjectNotFound(PersistenceFailed):
    code = "project_not_found"
    http_status = 404


class DispatchFailed(MediaPipelineError):
    code = "dispatch_failed"
    retryable = True
    http_status = 503


class MediaNotFound(MediaPipelineError):
    code = "media_not_found"
    http_status = 404


class InvalidTransition(MediaPipelineError):
    code = "invalid_transition"
    http_status = 409

    def __init__(self, media_id: str, current: Optional[str], target: str):
        self.media_id = media_id
        self.current = current
        self.target = target
        super().__init__(f"Media {media_id} cannot move from {current} to {target}")


class RedispatchUnavailable(MediaPipelineError):
    """The record kept neither a payload nor a storage reference to send again."""

    code = "redispatch_unavailable"
    http_status = 422

    def __init__(self, media_id: str):
        self.media_id = media_id
        super().__init__(
            f"Media {media_id} has no stored payload or storage reference to re-dispatch; upload a new file"
        )


class StreamLimitReached(MediaPipelineError):
    code = "stream_limit_reached"
    retryable = True
    http_status = 503
