# services/media_persister.py
"""
Unit-of-Work Persister

One transaction per ingestion attempt:
  - insert the media record (status queued) + its status history
  - insert the normalized payload row, when there is one
  - bump the parent project's updated_at

Either all of it commits or none of it is visible. The persister never talks
to the queue or to blob storage.
"""

import hashlib
from dataclasses import dataclass, field
from typing import Any, Dict, NamedTuple, Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from core.exceptions import (
    InvalidTransition,
    MediaNotFound,
    PersistenceFailed,
    ProjectNotFound,
    RedispatchUnavailable,
)
from core.logger import logger
from models.media import MediaKind, MediaRecord, MediaStatus, Project, new_id, utcnow
from schemas.request_models import StorageRef
from services.status_store import status_message
from services.unit_of_work import UnitOfWork, UnitOfWorkFactory


@dataclass
class PreparedMedia:
    """Everything known about an upload once normalization has run."""

    kind: MediaKind
    file_name: str
    original_file_name: str
    mime_type: str
    size_bytes: int
    upload_key: str
    source: str = "api-upload"
    storage_ref: Optional[StorageRef] = None
    payload: Optional[bytes] = None
    conversion: Dict[str, Any] = field(default_factory=dict)
    attempt_epoch: int = 0
    retry_of_id: Optional[str] = None


class PersistOutcome(NamedTuple):
    record: MediaRecord
    deduplicated: bool


class MediaPersister:
    def __init__(self, uow_factory: UnitOfWorkFactory):
        self._uow_factory = uow_factory

    def _build_record(self, prepared: PreparedMedia, project: Project, status: MediaStatus) -> MediaRecord:
        now = utcnow()
        return MediaRecord(
            id=new_id(),
            project_id=project.id,
            organization_id=project.organization_id,
            kind=MediaKind(prepared.kind).value,
            file_name=prepared.file_name,
            original_file_name=prepared.original_file_name,
            mime_type=prepared.mime_type,
            size_bytes=prepared.size_bytes,
            source=prepared.source or "api-upload",
            raw_storage_bucket=prepared.storage_ref.bucket if prepared.storage_ref else None,
            raw_storage_key=prepared.storage_ref.key if prepared.storage_ref else None,
            normalized_payload_present=prepared.payload is not None,
            conversion=dict(prepared.conversion),
            status=status.value,
            status_message=status_message(status),
            upload_key=prepared.upload_key,
            attempt_epoch=prepared.attempt_epoch,
            retry_of_id=prepared.retry_of_id,
            created_at=now,
            updated_at=now,
        )

    def _stage(self, uow: UnitOfWork, prepared: PreparedMedia, project_id: str,
               status: MediaStatus, error: Optional[str] = None) -> MediaRecord:
        project = uow.projects.get(project_id)
        if project is None:
            raise ProjectNotFound(f"Project {project_id} not found")

        record = self._build_record(prepared, project, MediaStatus.QUEUED)
        uow.media.add(record)
        if prepared.payload is not None:
            uow.media.add_payload(record.id, prepared.payload, prepared.mime_type)
        uow.media.add_status_event(record.id, MediaStatus.PENDING.value, "upload received")
        uow.media.add_status_event(record.id, MediaStatus.QUEUED.value)

        if status != MediaStatus.QUEUED:
            record.status = status.value
            record.status_message = status_message(status)
            record.error = error
            uow.media.add_status_event(record.id, status.value, error)

        uow.projects.touch(project_id, record.created_at)
        uow.media.flush()
        return record

    def _run(self, prepared: PreparedMedia, project_id: str, status: MediaStatus,
             error: Optional[str] = None) -> PersistOutcome:
        try:
            with self._uow_factory() as uow:
                existing = uow.media.find_by_upload_key(project_id, prepared.upload_key)
                if existing is not None:
                    logger.info(f"Upload {prepared.upload_key} already recorded as media {existing.id}")
                    return PersistOutcome(existing, True)
                record = self._stage(uow, prepared, project_id, status, error)
        except IntegrityError as e:
            # a concurrent attempt of the same upload committed first
            winner = self.find(project_id, prepared.upload_key)
            if winner is None:
                logger.exception(f"Persisting media for project {project_id} violated a constraint")
                raise PersistenceFailed(f"Media record could not be saved: {e.orig}") from e
            logger.info(f"Upload {prepared.upload_key} lost insert race to media {winner.id}")
            return PersistOutcome(winner, True)
        except SQLAlchemyError as e:
            logger.exception(f"Persisting media for project {project_id} failed")
            raise PersistenceFailed(f"Media record could not be saved: {e}") from e

        logger.info(f"Media {record.id} persisted for project {project_id} ({record.kind}, {record.status})")
        return PersistOutcome(record, False)

    def find(self, project_id: str, upload_key: str) -> Optional[MediaRecord]:
        try:
            with self._uow_factory() as uow:
                return uow.media.find_by_upload_key(project_id, upload_key)
        except SQLAlchemyError as e:
            raise PersistenceFailed(f"Media record lookup failed: {e}") from e

    def persist(self, prepared: PreparedMedia, project_id: str) -> PersistOutcome:
        """Record an accepted upload as queued, touching the parent project."""
        return self._run(prepared, project_id, MediaStatus.QUEUED)

    def persist_rejected(self, prepared: PreparedMedia, project_id: str,
                         status: MediaStatus, error: str) -> PersistOutcome:
        """Record an upload the pipeline could not accept, already terminal."""
        status = MediaStatus(status)
        if status not in (MediaStatus.FAILED, MediaStatus.MANUAL_REQUIRED):
            raise ValueError(f"Rejected uploads are failed or manual-required, not {status.value}")
        return self._run(prepared, project_id, status, error)

    def persist_successor(self, media_id: str) -> PersistOutcome:
        """
        Create the next attempt of a terminal record for operator re-dispatch.

        The terminal record is left untouched; the successor carries
        attempt_epoch + 1, points back through retry_of_id and copies the
        normalized payload. An existing successor is returned as-is. A record
        rejected before its payload was stored has nothing to send again.
        """
        try:
            with self._uow_factory() as uow:
                original = uow.media.get(media_id)
                if original is None:
                    raise MediaNotFound(f"Media {media_id} not found")

                successor = uow.media.find_successor(media_id)
                if successor is not None:
                    return PersistOutcome(successor, True)

                if MediaStatus(original.status) not in (MediaStatus.FAILED, MediaStatus.MANUAL_REQUIRED):
                    raise InvalidTransition(media_id, original.status, "redispatch")

                payload = uow.media.get_payload(media_id)
                if payload is None and not original.storage_ref:
                    raise RedispatchUnavailable(media_id)

                epoch = original.attempt_epoch + 1
                prepared = PreparedMedia(
                    kind=MediaKind(original.kind),
                    file_name=original.file_name,
                    original_file_name=original.original_file_name,
                    mime_type=original.mime_type,
                    size_bytes=original.size_bytes,
                    upload_key=successor_upload_key(original.id, epoch),
                    source=original.source,
                    storage_ref=StorageRef(**original.storage_ref) if original.storage_ref else None,
                    payload=payload.data if payload is not None else None,
                    conversion=dict(original.conversion or {}),
                    attempt_epoch=epoch,
                    retry_of_id=original.id,
                )
                record = self._stage(uow, prepared, original.project_id, MediaStatus.QUEUED)
        except IntegrityError as e:
            # concurrent re-dispatch of the same record
            try:
                with self._uow_factory() as uow:
                    winner = uow.media.find_successor(media_id)
            except SQLAlchemyError as lookup_error:
                raise PersistenceFailed(f"Media record lookup failed: {lookup_error}") from lookup_error
            if winner is None:
                raise PersistenceFailed(f"Successor record could not be saved: {e.orig}") from e
            return PersistOutcome(winner, True)
        except SQLAlchemyError as e:
            logger.exception(f"Persisting successor of media {media_id} failed")
            raise PersistenceFailed(f"Successor record could not be saved: {e}") from e

        logger.info(f"Media {record.id} created as attempt {record.attempt_epoch} of {media_id}")
        return PersistOutcome(record, False)


def successor_upload_key(media_id: str, attempt_epoch: int) -> str:
    digest = hashlib.sha256(f"{media_id}:{attempt_epoch}".encode("utf-8")).hexdigest()
    return f"retry-{digest[:48]}"
