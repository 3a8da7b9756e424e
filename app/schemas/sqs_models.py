# app/schemas/sqs_models.py
import hashlib
from pydantic import BaseModel, Field, model_validator
from typing import Optional

from schemas.request_models import StorageRef


def derive_job_id(media_id: str, attempt_epoch: int = 0) -> str:
    """Same (media id, attempt epoch) always yields the same job id."""
    digest = hashlib.sha256(f"{media_id}:{attempt_epoch}".encode("utf-8")).hexdigest()
    return f"media-{digest[:32]}"


class ProcessingJob(BaseModel):
    """Message consumed by the external analysis worker"""
    jobId: str
    mediaId: str
    projectId: str
    organizationId: Optional[str] = None
    kind: str
    fileName: str
    mimeType: str
    storageRef: Optional[StorageRef] = None
    normalizedPayloadRef: Optional[str] = None
    attemptEpoch: int = 0
    enqueuedAt: str
    version: int = 1

    @model_validator(mode="after")
    def _has_content_ref(self):
        if self.storageRef is None and not self.normalizedPayloadRef:
            raise ValueError("A job needs a storageRef or a normalizedPayloadRef")
        return self
