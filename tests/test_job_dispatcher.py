import pytest

from core.exceptions import DispatchFailed
from integrations.sqs_client import TransientPublishError
from models.media import MediaKind
from schemas.request_models import StorageRef
from schemas.sqs_models import derive_job_id
from services.job_dispatcher import DISPATCH_FAILED_ERROR, JobDispatcher, build_job
from services.media_persister import PreparedMedia

from conftest import BrokenPublisher, FakePublisher, PROJECT_ID, UnavailableRedis


def queued_record(persister, **overrides):
    values = dict(
        kind=MediaKind.IMAGE,
        file_name="IMG_0001.jpg",
        original_file_name="IMG_0001.HEIC",
        mime_type="image/jpeg",
        size_bytes=4,
        upload_key="upload-1",
        payload=b"jpeg",
    )
    values.update(overrides)
    return persister.persist(PreparedMedia(**values), PROJECT_ID).record


def make_dispatcher(publisher, status_store, uow_factory, redis_client=None, **kwargs):
    delays = []
    dispatcher = JobDispatcher(
        publisher,
        status_store,
        uow_factory,
        redis_client=redis_client,
        enabled=True,
        max_attempts=kwargs.pop("max_attempts", 3),
        backoff_base=0.01,
        sleep=delays.append,
        **kwargs,
    )
    return dispatcher, delays


def test_job_id_is_stable_per_attempt():
    assert derive_job_id("abc", 0) == derive_job_id("abc", 0)
    assert derive_job_id("abc", 0) != derive_job_id("abc", 1)
    assert derive_job_id("abc", 0) != derive_job_id("abd", 0)
    assert derive_job_id("abc").startswith("media-")


def test_build_job_points_at_the_normalized_payload(persister, project):
    record = queued_record(persister)

    job = build_job(record)

    assert job.jobId == derive_job_id(record.id, 0)
    assert job.mediaId == record.id
    assert job.projectId == PROJECT_ID
    assert job.normalizedPayloadRef.endswith(f"/media/{record.id}/payload")
    assert job.storageRef is None


def test_build_job_for_a_video_reference(persister, project):
    record = queued_record(
        persister,
        kind=MediaKind.VIDEO,
        file_name="walkthrough.mov",
        original_file_name="walkthrough.mov",
        mime_type="video/quicktime",
        payload=None,
        storage_ref=StorageRef(bucket="raw", key="p1/walkthrough.mov"),
    )

    job = build_job(record)

    assert job.kind == "video"
    assert job.normalizedPayloadRef is None
    assert job.storageRef == StorageRef(bucket="raw", key="p1/walkthrough.mov")


def test_dispatch_publishes_once_and_records_job_id(persister, status_store, uow_factory, fake_redis, project):
    publisher = FakePublisher()
    dispatcher, _ = make_dispatcher(publisher, status_store, uow_factory, fake_redis)
    record = queued_record(persister)

    job_id = dispatcher.dispatch(record)
    again = dispatcher.dispatch(record)

    assert job_id == again == derive_job_id(record.id, 0)
    assert publisher.calls == 1
    sent = publisher.sent[0]
    assert sent["dedupe_id"] == job_id
    assert sent["group_id"] == PROJECT_ID
    assert sent["envelope"]["mediaId"] == record.id
    assert sent["attributes"]["job_id"] == job_id
    assert status_store.get(record.id).job_id == job_id
    assert status_store.get(record.id).status == "queued"


def test_transient_errors_are_retried(persister, status_store, uow_factory, fake_redis, project):
    publisher = FakePublisher(failures=[TransientPublishError("throttled"), TransientPublishError("503")])
    dispatcher, delays = make_dispatcher(publisher, status_store, uow_factory, fake_redis)
    record = queued_record(persister)

    job_id = dispatcher.dispatch(record)

    assert publisher.calls == 3
    assert len(publisher.sent) == 1
    assert len(delays) == 2
    assert 0.01 <= delays[0] <= 0.02 <= delays[1] <= 0.03
    assert status_store.get(record.id).job_id == job_id


def test_permanent_error_marks_the_record_failed(persister, status_store, uow_factory, fake_redis, project):
    publisher = BrokenPublisher()
    dispatcher, delays = make_dispatcher(publisher, status_store, uow_factory, fake_redis)
    record = queued_record(persister)

    with pytest.raises(DispatchFailed):
        dispatcher.dispatch(record)

    assert publisher.calls == 1
    assert delays == []
    stored = status_store.get(record.id)
    assert stored.status == "failed"
    assert stored.error == DISPATCH_FAILED_ERROR
    assert stored.job_id is None
    assert fake_redis.store == {}


def test_exhausted_transient_errors_mark_the_record_failed(persister, status_store, uow_factory, fake_redis, project):
    publisher = FakePublisher(failures=[TransientPublishError("503")] * 2)
    dispatcher, delays = make_dispatcher(publisher, status_store, uow_factory, fake_redis, max_attempts=2)
    record = queued_record(persister)

    with pytest.raises(DispatchFailed):
        dispatcher.dispatch(record)

    assert publisher.calls == 2
    assert len(delays) == 1
    assert status_store.get(record.id).status == "failed"


def test_disabled_publishing_fails_the_record(persister, status_store, uow_factory, project):
    publisher = FakePublisher()
    dispatcher, _ = make_dispatcher(publisher, status_store, uow_factory)
    dispatcher.enabled = False
    record = queued_record(persister)

    with pytest.raises(DispatchFailed):
        dispatcher.dispatch(record)

    assert publisher.calls == 0
    assert status_store.get(record.id).status == "failed"


def test_unavailable_redis_still_publishes(persister, status_store, uow_factory, project):
    publisher = FakePublisher()
    dispatcher, _ = make_dispatcher(publisher, status_store, uow_factory, UnavailableRedis())
    record = queued_record(persister)

    dispatcher.dispatch(record)

    assert publisher.calls == 1


def test_record_finished_before_dispatch_failure_keeps_its_status(persister, status_store, uow_factory, project):
    record = queued_record(persister)

    def worker_finishes_first(envelope):
        status_store.mark_processing(envelope["mediaId"])
        status_store.complete(envelope["mediaId"], {"itemsCount": 1})
        raise TransientPublishError("connection reset after send")

    publisher = FakePublisher(on_publish=worker_finishes_first)
    dispatcher, _ = make_dispatcher(publisher, status_store, uow_factory, max_attempts=1)

    with pytest.raises(DispatchFailed):
        dispatcher.dispatch(record)

    assert status_store.get(record.id).status == "completed"


def test_record_without_content_fails_instead_of_staying_queued(persister, status_store, uow_factory, fake_redis, project):
    publisher = FakePublisher()
    dispatcher, _ = make_dispatcher(publisher, status_store, uow_factory, fake_redis)
    record = queued_record(persister, payload=None)

    with pytest.raises(DispatchFailed, match="invalid job"):
        dispatcher.dispatch(record)

    assert publisher.calls == 0
    stored = status_store.get(record.id)
    assert stored.status == "failed"
    assert stored.job_id is None
    assert fake_redis.store == {}
