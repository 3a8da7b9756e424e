# schemas/request_models.py
from pydantic import BaseModel, Field, model_validator
from typing import Optional, Literal, List, Dict, Any
from enum import Enum

from models.media import as_utc


class IngestStatus(str, Enum):
    """Definitive statuses an ingestion call can report"""
    QUEUED = "queued"
    FAILED = "failed"
    MANUAL_REQUIRED = "manual-required"


class CallbackOutcome(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"


class StorageRef(BaseModel):
    """Location of an object in blob storage; opaque beyond bucket + key"""
    bucket: str = Field(..., min_length=1, description="Bucket name")
    key: str = Field(..., min_length=1, description="Object key")


# ============================================================================
# INGESTION
# ============================================================================

class IngestRequest(BaseModel):
    """
    Inbound ingestion call.
    Exactly one of `payload` (base64) or `storageRef` must be supplied.
    """
    projectId: str = Field(..., min_length=1, description="Parent project identifier")
    fileName: str = Field(..., min_length=1, description="Declared file name")
    mimeType: Optional[str] = Field("", description="Declared MIME type (may be unreliable)")
    payload: Optional[str] = Field(None, description="Base64-encoded file content")
    storageRef: Optional[StorageRef] = Field(None, description="Reference to the raw upload in blob storage")
    idempotencyKey: Optional[str] = Field(None, max_length=128, description="Client key that identifies one upload attempt")
    source: Optional[str] = Field("api-upload", max_length=64, description="Upload channel")

    @model_validator(mode="after")
    def _exactly_one_content_source(self):
        if (self.payload is None) == (self.storageRef is None):
            raise ValueError("Provide exactly one of 'payload' or 'storageRef'")
        return self

    class Config:
        json_schema_extra = {
            "example": {
                "projectId": "5f1c0d2e9b6a4c1f8e7d6c5b4a392817",
                "fileName": "IMG_4821.HEIC",
                "mimeType": "application/octet-stream",
                "storageRef": {"bucket": "media-raw-uploads", "key": "projects/5f1c/IMG_4821.HEIC"},
                "idempotencyKey": "upload-7c9e6679",
            }
        }


class IngestResponse(BaseModel):
    mediaId: str = Field(..., description="Identifier of the persisted media record")
    status: IngestStatus = Field(..., description="Definitive ingestion status")
    jobId: Optional[str] = Field(None, description="Deterministic analysis job id, when a job was published")
    error: Optional[str] = Field(None, description="Error annotation for failed or manual-required uploads")
    deduplicated: bool = Field(False, description="True when an earlier attempt of the same upload was returned")


# ============================================================================
# WORKER CALLBACKS
# ============================================================================

class AnalysisResult(BaseModel):
    summary: str = Field("", description="Short description of what was found")
    itemsCount: int = Field(0, ge=0, description="Number of items detected")
    totalBoxes: int = Field(0, ge=0, description="Boxes recommended for the detected items")
    metrics: Dict[str, Any] = Field(default_factory=dict, description="Derived metrics reported by the worker")


class CompletionCallback(BaseModel):
    """Sent by the external analysis worker when a job finishes"""
    mediaId: str = Field(..., min_length=1)
    outcome: CallbackOutcome
    result: Optional[AnalysisResult] = None
    error: Optional[str] = None
    errorCode: Optional[str] = Field(None, description="'unsupported_format' routes the record to manual processing")
    jobId: Optional[str] = None

    @model_validator(mode="after")
    def _result_on_success(self):
        if self.outcome == CallbackOutcome.SUCCESS and self.result is None:
            self.result = AnalysisResult()
        return self


# ============================================================================
# VIEWS
# ============================================================================

class MediaView(BaseModel):
    mediaId: str
    projectId: str
    organizationId: Optional[str] = None
    kind: Literal["image", "video"]
    fileName: str
    mimeType: str
    sizeBytes: int
    status: str
    statusMessage: str
    error: Optional[str] = None
    jobId: Optional[str] = None
    attemptEpoch: int = 0
    retryOfId: Optional[str] = None
    storageRef: Optional[StorageRef] = None
    normalizedPayloadPresent: bool = False
    analysisResult: Optional[Dict[str, Any]] = None
    createdAt: str
    updatedAt: str

    @classmethod
    def from_record(cls, record) -> "MediaView":
        return cls(
            mediaId=record.id,
            projectId=record.project_id,
            organizationId=record.organization_id,
            kind=record.kind,
            fileName=record.file_name,
            mimeType=record.mime_type,
            sizeBytes=record.size_bytes,
            status=record.status,
            statusMessage=record.status_message,
            error=record.error,
            jobId=record.job_id,
            attemptEpoch=record.attempt_epoch,
            retryOfId=record.retry_of_id,
            storageRef=record.storage_ref,
            normalizedPayloadPresent=record.normalized_payload_present,
            analysisResult=record.analysis_result,
            createdAt=as_utc(record.created_at).isoformat(),
            updatedAt=as_utc(record.updated_at).isoformat(),
        )


class ProcessingItemView(BaseModel):
    id: str
    kind: str
    name: str
    status: str
    source: Optional[str] = None
    startedAt: float


class ProcessingSnapshot(BaseModel):
    projectId: str
    processingItems: List[ProcessingItemView]


class HealthResponse(BaseModel):
    """Health check response"""
    status: str = Field(..., description="Overall service status")
    message: str = Field(..., description="Status message")
    database_status: Optional[str] = Field(None, description="Record store connectivity")
    s3_status: Optional[str] = Field(None, description="Raw uploads bucket status")
    sqs_status: Optional[str] = Field(None, description="SQS queue status")
    redis_status: Optional[str] = Field(None, description="Redis status")
