# services/job_dispatcher.py
"""
Job Dispatcher

Publishes the analysis job for a committed media record. Only ever called
after the Unit-of-Work Persister returned, so a published job always points
at a record that exists.

  - jobId is derived from (mediaId, attemptEpoch); republishing the same
    attempt produces the same id and the worker dedupes on it
  - a Redis SET NX marker skips a publish already done for this jobId
  - transient SQS faults are retried with exponential backoff
  - on final failure the record moves queued -> failed and is kept for
    operator re-dispatch
"""

from datetime import datetime, timezone
from typing import Optional

from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError

from core.config import settings
from core.exceptions import DispatchFailed, InvalidTransition
from core.logger import logger
from core.redis_client import DispatchMarkers
from integrations.sqs_client import PublishError, QueuePublisher, TransientPublishError
from models.media import MediaRecord
from schemas.request_models import StorageRef
from schemas.sqs_models import ProcessingJob, derive_job_id
from services.status_store import ProcessingStatusStore
from services.unit_of_work import UnitOfWorkFactory
from utils.retry import call_with_retry

DISPATCH_FAILED_ERROR = "queue unavailable - manual reprocessing required"


def payload_ref(media_id: str) -> str:
    return f"{settings.BACKEND_ENDPOINT.rstrip('/')}{settings.API_PREFIX}/media/{media_id}/payload"


def build_job(record: MediaRecord) -> ProcessingJob:
    return ProcessingJob(
        jobId=derive_job_id(record.id, record.attempt_epoch),
        mediaId=record.id,
        projectId=record.project_id,
        organizationId=record.organization_id,
        kind=record.kind,
        fileName=record.file_name,
        mimeType=record.mime_type,
        storageRef=StorageRef(**record.storage_ref) if record.storage_ref else None,
        normalizedPayloadRef=payload_ref(record.id) if record.normalized_payload_present else None,
        attemptEpoch=record.attempt_epoch,
        enqueuedAt=datetime.now(timezone.utc).isoformat(),
    )


class JobDispatcher:
    def __init__(
        self,
        publisher: QueuePublisher,
        status_store: ProcessingStatusStore,
        uow_factory: UnitOfWorkFactory,
        redis_client=None,
        enabled: Optional[bool] = None,
        max_attempts: Optional[int] = None,
        backoff_base: Optional[float] = None,
        sleep=None,
    ):
        self.publisher = publisher
        self.status_store = status_store
        self._uow_factory = uow_factory
        self.markers = DispatchMarkers(redis_client)
        self.enabled = settings.SQS_ENABLE_PUBLISH if enabled is None else enabled
        self.max_attempts = max_attempts or settings.DISPATCH_MAX_ATTEMPTS
        self.backoff_base = settings.DISPATCH_BACKOFF_BASE_SECS if backoff_base is None else backoff_base
        self._sleep = sleep

    # ========================================================================
    # DISPATCH
    # ========================================================================

    def _publish(self, job: ProcessingJob) -> str:
        retry_kwargs = {} if self._sleep is None else {"sleep": self._sleep}
        return call_with_retry(
            lambda: self.publisher.publish_json(
                job.model_dump(mode="json"),
                dedupe_id=job.jobId,
                group_id=job.projectId,
                attributes={
                    "job_id": job.jobId,
                    "media_id": job.mediaId,
                    "project_id": job.projectId,
                    "source": "media-ingestion",
                },
            ),
            retry_on=(TransientPublishError,),
            max_attempts=self.max_attempts,
            base_delay=self.backoff_base,
            description=f"SQS publish of {job.jobId}",
            **retry_kwargs,
        )

    def _record_job_id(self, media_id: str, job_id: str) -> None:
        try:
            with self._uow_factory() as uow:
                uow.media.set_job_id(media_id, job_id)
        except SQLAlchemyError:
            # the job is out; job_id stays derivable from (mediaId, attemptEpoch)
            logger.exception(f"Could not record job id {job_id} on media {media_id}")

    def _fail(self, record: MediaRecord, job_id: str, reason: str) -> DispatchFailed:
        self.markers.release(job_id)
        try:
            self.status_store.fail(record.id, DISPATCH_FAILED_ERROR)
        except InvalidTransition as e:
            # a worker already picked the record up; its status wins
            logger.warning(f"Media {record.id} not marked failed after dispatch error: {e}")
        return DispatchFailed(f"Job {job_id} for media {record.id} was not published: {reason}")

    def dispatch(self, record: MediaRecord) -> str:
        """Publish the job for a committed record; returns the job id."""
        try:
            job = build_job(record)
        except (ValidationError, TypeError) as e:
            logger.error(f"Job for media {record.id} could not be built: {e}")
            raise self._fail(record, derive_job_id(record.id, record.attempt_epoch), f"invalid job: {e}") from e

        if not self.enabled:
            logger.warning(f"SQS publishing disabled, job {job.jobId} not sent")
            raise self._fail(record, job.jobId, "queue publishing disabled")

        if not self.markers.claim(job.jobId):
            logger.info(f"Job {job.jobId} already published, skipping")
            self._record_job_id(record.id, job.jobId)
            return job.jobId

        try:
            message_id = self._publish(job)
        except PublishError as e:
            logger.error(f"Dispatch of media {record.id} failed: {e}")
            raise self._fail(record, job.jobId, str(e)) from e

        self._record_job_id(record.id, job.jobId)
        logger.info(f"Job {job.jobId} dispatched for media {record.id} (message {message_id})")
        return job.jobId
