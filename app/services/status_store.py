# services/status_store.py
"""
Processing Status Store

Authoritative lifecycle state of every media record:

    pending    -> queued            normalization + persistence succeeded
    queued     -> failed            dispatch failed
    queued     -> processing        worker claimed the job
    processing -> completed         worker reported success
    processing -> failed            worker reported an error
    queued | processing -> manual-required   raw format undecodable

completed, failed and manual-required are terminal. Transitions are applied
with a guarded UPDATE so concurrent callbacks cannot move a record backwards,
and each committed transition is the only thing that publishes a realtime
notification.
"""

from typing import Any, Dict, List, Optional

from core.exceptions import InvalidTransition, MediaNotFound
from core.logger import logger
from models.media import (
    IN_FLIGHT_STATUSES,
    TERMINAL_STATUSES,
    MediaPayload,
    as_utc,
    MediaRecord,
    MediaStatus,
    utcnow,
)
from schemas.request_models import CallbackOutcome, CompletionCallback
from services.unit_of_work import UnitOfWorkFactory
from utils.log_events import log_transition

ALLOWED_TRANSITIONS: Dict[MediaStatus, frozenset] = {
    MediaStatus.QUEUED: frozenset({MediaStatus.PENDING}),
    MediaStatus.PROCESSING: frozenset({MediaStatus.QUEUED}),
    MediaStatus.COMPLETED: frozenset({MediaStatus.PROCESSING}),
    MediaStatus.FAILED: frozenset({MediaStatus.QUEUED, MediaStatus.PROCESSING}),
    MediaStatus.MANUAL_REQUIRED: frozenset({MediaStatus.QUEUED, MediaStatus.PROCESSING}),
}

UNSUPPORTED_FORMAT_CODE = "unsupported_format"


def can_transition(current: MediaStatus, target: MediaStatus) -> bool:
    return current in ALLOWED_TRANSITIONS.get(target, frozenset())


def status_message(status: MediaStatus, item_count: Optional[int] = None) -> str:
    if status == MediaStatus.PENDING:
        return "Ready for analysis"
    if status == MediaStatus.QUEUED:
        return "Analysis queued"
    if status == MediaStatus.PROCESSING:
        return "Analyzing with AI"
    if status == MediaStatus.COMPLETED:
        count = item_count or 0
        return f"Complete - {count} item{'' if count == 1 else 's'} found"
    if status == MediaStatus.FAILED:
        return "Analysis failed"
    if status == MediaStatus.MANUAL_REQUIRED:
        return "Manual processing required"
    return "Unknown status"


def processing_item(record: MediaRecord) -> Dict[str, Any]:
    """Notifier item describing one in-flight record."""
    return {
        "id": record.id,
        "kind": record.kind,
        "name": record.original_file_name,
        "status": record.status_message or status_message(MediaStatus(record.status)),
        "source": record.source,
    }


class ProcessingStatusStore:
    def __init__(self, uow_factory: UnitOfWorkFactory, notifier=None):
        self._uow_factory = uow_factory
        self.notifier = notifier

    # ========================================================================
    # READS
    # ========================================================================

    def get(self, media_id: str) -> MediaRecord:
        with self._uow_factory() as uow:
            record = uow.media.get(media_id)
        if record is None:
            raise MediaNotFound(f"Media {media_id} not found")
        return record

    def get_payload(self, media_id: str) -> Optional[MediaPayload]:
        with self._uow_factory() as uow:
            return uow.media.get_payload(media_id)

    def list_in_flight(self, project_id: str) -> List[MediaRecord]:
        with self._uow_factory() as uow:
            return uow.media.list_in_flight(project_id)

    def in_flight_items(self, project_id: str) -> List[Dict[str, Any]]:
        """Rebuild function handed to the realtime notifier."""
        items = []
        for record in self.list_in_flight(project_id):
            item = processing_item(record)
            item["startedAt"] = as_utc(record.created_at).timestamp()
            items.append(item)
        return items

    def list_by_status(self, statuses, limit: int = 100) -> List[MediaRecord]:
        with self._uow_factory() as uow:
            return uow.media.list_by_status([MediaStatus(s).value for s in statuses], limit)

    def history(self, media_id: str) -> List[str]:
        with self._uow_factory() as uow:
            return uow.media.status_history(media_id)

    # ========================================================================
    # TRANSITIONS
    # ========================================================================

    def transition(
        self,
        media_id: str,
        target: MediaStatus,
        *,
        error: Optional[str] = None,
        result: Optional[Dict[str, Any]] = None,
        detail: Optional[str] = None,
    ) -> MediaRecord:
        target = MediaStatus(target)

        with self._uow_factory() as uow:
            record = uow.media.get(media_id)
            if record is None:
                raise MediaNotFound(f"Media {media_id} not found")

            current = MediaStatus(record.status)
            if current == target:
                # redelivered callback or retried request
                logger.debug(f"Media {media_id} already {target.value}, transition skipped")
                return record

            if not can_transition(current, target):
                raise InvalidTransition(media_id, current.value, target.value)

            item_count = (result or {}).get("itemsCount")
            values: Dict[str, Any] = {
                "status": target.value,
                "status_message": status_message(target, item_count),
                "updated_at": utcnow(),
            }
            if error is not None:
                values["error"] = error
            if target == MediaStatus.COMPLETED:
                values["analysis_result"] = result or {}

            allowed_from = [s.value for s in ALLOWED_TRANSITIONS[target]]
            if not uow.media.compare_and_set_status(media_id, allowed_from, values):
                # lost a race against another transition
                raise InvalidTransition(media_id, current.value, target.value)

            uow.media.add_status_event(media_id, target.value, detail or error)
            uow.media.flush()
            record = uow.media.refresh(record)

        log_transition(media_id, record.project_id, current.value, target.value, detail or error)
        self.publish(record)
        return record

    def mark_processing(self, media_id: str) -> MediaRecord:
        return self.transition(media_id, MediaStatus.PROCESSING, detail="worker claimed job")

    def complete(self, media_id: str, result: Optional[Dict[str, Any]] = None) -> MediaRecord:
        return self.transition(media_id, MediaStatus.COMPLETED, result=result or {})

    def fail(self, media_id: str, error: str) -> MediaRecord:
        return self.transition(media_id, MediaStatus.FAILED, error=error)

    def require_manual(self, media_id: str, error: str) -> MediaRecord:
        return self.transition(media_id, MediaStatus.MANUAL_REQUIRED, error=error)

    def apply_callback(self, callback: CompletionCallback) -> MediaRecord:
        """Apply a worker completion callback."""
        record = self.get(callback.mediaId)

        if callback.outcome == CallbackOutcome.SUCCESS:
            # workers may report without an explicit claim
            if record.status == MediaStatus.QUEUED.value:
                self.mark_processing(record.id)
            return self.complete(record.id, callback.result.model_dump())

        error = callback.error or "Analysis worker reported an error"
        if callback.errorCode == UNSUPPORTED_FORMAT_CODE:
            return self.require_manual(record.id, error)

        if record.status == MediaStatus.QUEUED.value:
            self.mark_processing(record.id)
        return self.fail(record.id, error)

    # ========================================================================
    # NOTIFICATIONS
    # ========================================================================

    def publish(self, record: MediaRecord) -> None:
        """Mirror a committed status onto the realtime notifier."""
        if self.notifier is None:
            return
        status = MediaStatus(record.status)
        if status in IN_FLIGHT_STATUSES:
            self.notifier.track(record.project_id, processing_item(record))
        elif status in TERMINAL_STATUSES:
            self.notifier.complete(record.project_id, record.id, outcome=status.value)
