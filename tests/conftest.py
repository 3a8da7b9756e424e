import io
import threading
from typing import List, Optional

import boto3
import pytest
import redis
from botocore.stub import Stubber
from PIL import Image

from core.database import build_engine, build_session_factory, init_db
from core.lifespan import build_services
from integrations.sqs_client import PublishError
from models.media import Project
from services.format_normalizer import ConversionStrategy, FormatNormalizer
from services.media_persister import MediaPersister
from services.realtime_notifier import RealtimeNotifier
from services.status_store import ProcessingStatusStore
from services.unit_of_work import sqlalchemy_uow_factory

PROJECT_ID = "project-1"
ORGANIZATION_ID = "org-1"


def make_image(fmt: str = "JPEG", size=(64, 48), color=(200, 30, 30)) -> bytes:
    out = io.BytesIO()
    Image.new("RGB", size, color).save(out, format=fmt)
    return out.getvalue()


class FakeRedis:
    """SET NX EX / DELETE / PING, enough for dispatch markers."""

    def __init__(self):
        self.store = {}
        self.ttls = {}
        self._lock = threading.Lock()

    def set(self, key, value, nx=False, ex=None):
        with self._lock:
            if nx and key in self.store:
                return None
            self.store[key] = value
            self.ttls[key] = ex
            return True

    def delete(self, *keys):
        with self._lock:
            return sum(1 for key in keys if self.store.pop(key, None) is not None)

    def ping(self):
        return True


class UnavailableRedis:
    def set(self, *args, **kwargs):
        raise redis.ConnectionError("connection refused")

    def delete(self, *keys):
        raise redis.ConnectionError("connection refused")


class FakePublisher:
    """Records published envelopes; raises queued failures first."""

    def __init__(self, failures: Optional[List[Exception]] = None, on_publish=None):
        self.failures = list(failures or [])
        self.on_publish = on_publish
        self.sent = []
        self.calls = 0

    def publish_json(self, envelope, *, dedupe_id, group_id=None, attributes=None):
        self.calls += 1
        if self.failures:
            raise self.failures.pop(0)
        if self.on_publish is not None:
            self.on_publish(envelope)
        self.sent.append({"envelope": envelope, "dedupe_id": dedupe_id, "group_id": group_id,
                          "attributes": attributes})
        return f"msg-{len(self.sent)}"

    def check_queue(self):
        return None


class BrokenPublisher(FakePublisher):
    def publish_json(self, envelope, *, dedupe_id, group_id=None, attributes=None):
        self.calls += 1
        raise PublishError("SQS send failed: AWS.SimpleQueueService.NonExistentQueue")


class FakeStrategy(ConversionStrategy):
    def __init__(self, name: str, result: Optional[bytes] = None, error: Optional[Exception] = None):
        self.name = name
        self.result = result
        self.error = error
        self.calls = 0

    def convert(self, data: bytes, quality: int) -> bytes:
        self.calls += 1
        if self.error is not None:
            raise self.error
        return self.result


@pytest.fixture
def engine(tmp_path):
    # file-backed so worker threads share one database
    engine = build_engine(f"sqlite:///{tmp_path / 'media.db'}")
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture
def uow_factory(session_factory):
    return sqlalchemy_uow_factory(session_factory)


@pytest.fixture
def project(session_factory):
    with session_factory.begin() as session:
        session.add(Project(id=PROJECT_ID, organization_id=ORGANIZATION_ID, name="Test move"))
    with session_factory() as session:
        return session.get(Project, PROJECT_ID)


@pytest.fixture
def notifier():
    return RealtimeNotifier()


@pytest.fixture
def status_store(uow_factory, notifier):
    return ProcessingStatusStore(uow_factory, notifier=notifier)


@pytest.fixture
def persister(uow_factory):
    return MediaPersister(uow_factory)


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def publisher():
    return FakePublisher()


@pytest.fixture
def s3_client():
    return boto3.client(
        "s3",
        region_name="us-east-1",
        aws_access_key_id="testing",
        aws_secret_access_key="testing",
    )


@pytest.fixture
def s3_stub(s3_client):
    with Stubber(s3_client) as stubber:
        yield stubber


@pytest.fixture
def normalizer():
    return FormatNormalizer(max_bytes=14 * 1024 * 1024, force_jpeg=False)


@pytest.fixture
def services(engine, project, s3_client, fake_redis, publisher, normalizer):
    services = build_services(
        engine=engine,
        s3_client=s3_client,
        redis_client=fake_redis,
        normalizer=normalizer,
        publisher=publisher,
        dispatch_sleep=lambda delay: None,
    )
    services.resolver.backoff_base = 0
    services.dispatcher.enabled = True
    yield services
    services.ingestion.shutdown()
