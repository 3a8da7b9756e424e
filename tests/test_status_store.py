import pytest

from core.exceptions import InvalidTransition, MediaNotFound
from models.media import MediaKind, MediaStatus
from schemas.request_models import CompletionCallback
from services.media_persister import PreparedMedia
from services.status_store import can_transition, status_message

from conftest import PROJECT_ID


def queued_record(persister, upload_key="upload-1"):
    prepared = PreparedMedia(
        kind=MediaKind.IMAGE,
        file_name="kitchen.jpg",
        original_file_name="kitchen.jpg",
        mime_type="image/jpeg",
        size_bytes=4,
        upload_key=upload_key,
        payload=b"jpeg",
    )
    return persister.persist(prepared, PROJECT_ID).record


@pytest.mark.parametrize(
    "current, target, allowed",
    [
        (MediaStatus.PENDING, MediaStatus.QUEUED, True),
        (MediaStatus.QUEUED, MediaStatus.PROCESSING, True),
        (MediaStatus.QUEUED, MediaStatus.FAILED, True),
        (MediaStatus.QUEUED, MediaStatus.MANUAL_REQUIRED, True),
        (MediaStatus.QUEUED, MediaStatus.COMPLETED, False),
        (MediaStatus.PROCESSING, MediaStatus.COMPLETED, True),
        (MediaStatus.COMPLETED, MediaStatus.PROCESSING, False),
        (MediaStatus.FAILED, MediaStatus.QUEUED, False),
        (MediaStatus.MANUAL_REQUIRED, MediaStatus.FAILED, False),
    ],
)
def test_can_transition(current, target, allowed):
    assert can_transition(current, target) is allowed


def test_status_messages():
    assert status_message(MediaStatus.COMPLETED, 3) == "Complete - 3 items found"
    assert status_message(MediaStatus.COMPLETED, 1) == "Complete - 1 item found"
    assert status_message(MediaStatus.COMPLETED) == "Complete - 0 items found"
    assert status_message(MediaStatus.QUEUED) == "Analysis queued"


def test_full_lifecycle_is_recorded(persister, status_store, project):
    record = queued_record(persister)

    status_store.mark_processing(record.id)
    done = status_store.complete(record.id, {"itemsCount": 3, "summary": "sofa, lamp, rug"})

    assert done.status == "completed"
    assert done.status_message == "Complete - 3 items found"
    assert done.analysis_result["summary"] == "sofa, lamp, rug"
    assert status_store.history(record.id) == ["pending", "queued", "processing", "completed"]


def test_terminal_status_never_moves_backwards(persister, status_store, project):
    record = queued_record(persister)
    status_store.fail(record.id, "worker crashed")

    with pytest.raises(InvalidTransition) as exc_info:
        status_store.mark_processing(record.id)

    assert exc_info.value.current == "failed"
    assert exc_info.value.target == "processing"
    assert status_store.get(record.id).status == "failed"
    assert status_store.history(record.id) == ["pending", "queued", "failed"]


def test_repeated_transition_is_a_no_op(persister, status_store, project):
    record = queued_record(persister)

    status_store.mark_processing(record.id)
    status_store.mark_processing(record.id)

    assert status_store.history(record.id) == ["pending", "queued", "processing"]


def test_unknown_media(status_store, project):
    with pytest.raises(MediaNotFound):
        status_store.get("missing")
    with pytest.raises(MediaNotFound):
        status_store.fail("missing", "nope")


def test_success_callback_claims_a_queued_record(persister, status_store, project):
    record = queued_record(persister)

    done = status_store.apply_callback(CompletionCallback(
        mediaId=record.id,
        outcome="success",
        result={"itemsCount": 1, "summary": "armchair"},
    ))

    assert done.status == "completed"
    assert done.status_message == "Complete - 1 item found"
    assert status_store.history(record.id) == ["pending", "queued", "processing", "completed"]


def test_unsupported_format_callback_requires_manual_processing(persister, status_store, project):
    record = queued_record(persister)

    result = status_store.apply_callback(CompletionCallback(
        mediaId=record.id,
        outcome="failure",
        error="decoder does not handle this HEIC variant",
        errorCode="unsupported_format",
    ))

    assert result.status == "manual-required"
    assert result.error == "decoder does not handle this HEIC variant"


def test_failure_callback_after_claim(persister, status_store, project):
    record = queued_record(persister)
    status_store.mark_processing(record.id)

    result = status_store.apply_callback(CompletionCallback(mediaId=record.id, outcome="failure"))

    assert result.status == "failed"
    assert result.error == "Analysis worker reported an error"


def test_transitions_drive_the_notifier(persister, status_store, notifier, project):
    record = queued_record(persister)
    events = []
    notifier.subscribe(PROJECT_ID, events.append)

    status_store.publish(record)
    status_store.mark_processing(record.id)
    status_store.complete(record.id, {"itemsCount": 2})

    assert [e["type"] for e in events] == ["processing-added", "processing-completed"]
    assert events[-1]["outcome"] == "completed"
    assert events[-1]["processingItems"] == []
    assert notifier.snapshot(PROJECT_ID) == []


def test_in_flight_items_rebuild(persister, status_store, project):
    first = queued_record(persister, "upload-1")
    second = queued_record(persister, "upload-2")
    status_store.fail(second.id, "queue unavailable")

    items = status_store.in_flight_items(PROJECT_ID)

    assert [item["id"] for item in items] == [first.id]
    assert items[0]["name"] == "kitchen.jpg"
    assert items[0]["startedAt"] > 0


def test_list_by_status(persister, status_store, project):
    first = queued_record(persister, "upload-1")
    second = queued_record(persister, "upload-2")
    status_store.fail(first.id, "queue unavailable")
    status_store.require_manual(second.id, "undecodable")

    assert [r.id for r in status_store.list_by_status(["failed"])] == [first.id]
    assert {r.id for r in status_store.list_by_status(["failed", "manual-required"])} == {first.id, second.id}
