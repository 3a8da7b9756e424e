# services/ingestion_service.py
"""
Ingestion Service

Drives one upload through the pipeline and always ends in a definitive
status:

    classify -> [fetch raw object] -> normalize -> persist -> dispatch

Pipeline rejections (undecodable, too large, raw object missing or denied)
are persisted as terminal records so they stay inspectable. Failures that
leave nothing durable (exhausted transient storage faults, aborted commits)
propagate to the caller, who may retry with the same idempotency key.
"""

import hashlib
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from typing import Optional

from core.config import settings
from core.exceptions import (
    ConversionFailed,
    DispatchFailed,
    NormalizationTimeout,
    PayloadTooLarge,
    StorageAccessDenied,
    StorageNotFound,
)
from core.logger import logger
from integrations.s3_client import StorageResolver
from models.media import MediaKind, MediaRecord, MediaStatus
from schemas.request_models import IngestResponse, IngestStatus, StorageRef
from services.format_normalizer import FormatNormalizer, NormalizedPayload, classify_upload, normalize_mime_type
from services.job_dispatcher import JobDispatcher
from services.media_persister import MediaPersister, PreparedMedia
from services.status_store import ProcessingStatusStore
from utils.log_events import log_ingestion


def compute_upload_key(
    project_id: str,
    file_name: str,
    idempotency_key: Optional[str] = None,
    data: Optional[bytes] = None,
    storage_ref: Optional[StorageRef] = None,
) -> str:
    """Client key when given, otherwise a digest of what identifies the upload."""
    if idempotency_key:
        return idempotency_key
    digest = hashlib.sha256()
    digest.update(project_id.encode("utf-8"))
    digest.update(b"\x00")
    digest.update(file_name.encode("utf-8"))
    digest.update(b"\x00")
    if data is not None:
        digest.update(data)
    elif storage_ref is not None:
        digest.update(f"{storage_ref.bucket}/{storage_ref.key}".encode("utf-8"))
    return f"sha256-{digest.hexdigest()}"


def response_for(record: MediaRecord, job_id: Optional[str] = None, deduplicated: bool = False) -> IngestResponse:
    if record.status in (MediaStatus.FAILED.value, MediaStatus.MANUAL_REQUIRED.value):
        status = IngestStatus(record.status)
    else:
        # queued, or already picked up by a worker
        status = IngestStatus.QUEUED
    return IngestResponse(
        mediaId=record.id,
        status=status,
        jobId=job_id or record.job_id,
        error=record.error,
        deduplicated=deduplicated,
    )


class IngestionService:
    def __init__(
        self,
        normalizer: FormatNormalizer,
        resolver: StorageResolver,
        persister: MediaPersister,
        dispatcher: JobDispatcher,
        status_store: ProcessingStatusStore,
        executor: Optional[ThreadPoolExecutor] = None,
        normalize_timeout: Optional[float] = None,
    ):
        self.normalizer = normalizer
        self.resolver = resolver
        self.persister = persister
        self.dispatcher = dispatcher
        self.status_store = status_store
        self._executor = executor or ThreadPoolExecutor(
            max_workers=settings.NORMALIZE_WORKERS, thread_name_prefix="normalize"
        )
        self.normalize_timeout = normalize_timeout or settings.NORMALIZE_TIMEOUT_SECS

    def shutdown(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)

    # ========================================================================
    # PIPELINE STEPS
    # ========================================================================

    def _normalize(self, data: bytes, file_name: str, mime_type: Optional[str]) -> NormalizedPayload:
        future = self._executor.submit(self.normalizer.normalize, data, file_name, mime_type)
        try:
            return future.result(timeout=self.normalize_timeout)
        except FutureTimeout as e:
            # the worker thread cannot be interrupted; it finishes and is discarded
            future.cancel()
            raise NormalizationTimeout(
                f"Normalizing {file_name} took longer than {self.normalize_timeout:.0f}s"
            ) from e

    def _reject(self, prepared: PreparedMedia, project_id: str, status: MediaStatus,
                error: Exception) -> IngestResponse:
        logger.warning(f"Upload {prepared.original_file_name} for project {project_id} rejected: {error}")
        outcome = self.persister.persist_rejected(prepared, project_id, status, str(error))
        return response_for(outcome.record, deduplicated=outcome.deduplicated)

    def _dispatch(self, record: MediaRecord) -> IngestResponse:
        self.status_store.publish(record)
        try:
            job_id = self.dispatcher.dispatch(record)
        except DispatchFailed as e:
            logger.error(f"Media {record.id} stored but not dispatched: {e}")
            return response_for(self.status_store.get(record.id))
        return response_for(record, job_id=job_id)

    def _prepare(
        self,
        project_id: str,
        file_name: str,
        mime_type: Optional[str],
        data: Optional[bytes],
        storage_ref: Optional[StorageRef],
        upload_key: str,
        source: Optional[str],
    ) -> PreparedMedia:
        kind = classify_upload(file_name, mime_type)
        return PreparedMedia(
            kind=kind,
            file_name=file_name,
            original_file_name=file_name,
            mime_type=normalize_mime_type(mime_type, file_name),
            size_bytes=len(data) if data is not None else 0,
            upload_key=upload_key,
            source=source or "api-upload",
            storage_ref=storage_ref,
        )

    def _run(self, prepared: PreparedMedia, project_id: str, mime_type: Optional[str],
             data: Optional[bytes]) -> IngestResponse:
        if prepared.kind == MediaKind.VIDEO:
            if data is not None:
                try:
                    self.normalizer.check_video(len(data))
                except PayloadTooLarge as e:
                    return self._reject(prepared, project_id, MediaStatus.FAILED, e)
                prepared.payload = data
        else:
            if data is None:
                try:
                    data = self.resolver.fetch(prepared.storage_ref)
                except (StorageNotFound, StorageAccessDenied) as e:
                    return self._reject(prepared, project_id, MediaStatus.FAILED, e)
                prepared.size_bytes = len(data)

            try:
                normalized = self._normalize(data, prepared.original_file_name, mime_type)
            except PayloadTooLarge as e:
                return self._reject(prepared, project_id, MediaStatus.FAILED, e)
            except ConversionFailed as e:
                return self._reject(prepared, project_id, MediaStatus.MANUAL_REQUIRED, e)

            prepared.payload = normalized.data
            prepared.file_name = normalized.file_name
            prepared.mime_type = normalized.mime_type
            prepared.size_bytes = normalized.size
            prepared.conversion = normalized.describe()

        outcome = self.persister.persist(prepared, project_id)
        if outcome.deduplicated:
            return response_for(outcome.record, deduplicated=True)
        return self._dispatch(outcome.record)

    # ========================================================================
    # ENTRY POINTS
    # ========================================================================

    def ingest(
        self,
        project_id: str,
        file_name: str,
        mime_type: Optional[str] = None,
        data: Optional[bytes] = None,
        storage_ref: Optional[StorageRef] = None,
        idempotency_key: Optional[str] = None,
        source: Optional[str] = None,
    ) -> IngestResponse:
        """Accept one upload, inline bytes or a storage reference."""
        if (data is None) == (storage_ref is None):
            raise ValueError("Provide exactly one of data or storage_ref")

        started = time.perf_counter()
        upload_key = compute_upload_key(project_id, file_name, idempotency_key, data, storage_ref)
        prepared = self._prepare(project_id, file_name, mime_type, data, storage_ref, upload_key, source)

        existing = self.persister.find(project_id, upload_key)
        if existing is not None:
            response = response_for(existing, deduplicated=True)
        else:
            response = self._run(prepared, project_id, mime_type, data)

        log_ingestion(
            media_id=response.mediaId,
            project_id=project_id,
            status=response.status.value,
            file_name=file_name,
            kind=prepared.kind.value,
            job_id=response.jobId,
            error=response.error,
            deduplicated=response.deduplicated,
            duration_ms=int((time.perf_counter() - started) * 1000),
        )
        return response

    def redispatch(self, media_id: str) -> IngestResponse:
        """Operator re-dispatch of a failed or manual-required record."""
        outcome = self.persister.persist_successor(media_id)
        if outcome.deduplicated:
            logger.info(f"Media {media_id} already re-dispatched as {outcome.record.id}")
            return response_for(outcome.record, deduplicated=True)
        return self._dispatch(outcome.record)
