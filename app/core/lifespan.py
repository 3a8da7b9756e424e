import asyncio
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Optional

from fastapi import FastAPI
from fastapi.concurrency import run_in_threadpool
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker

from core.config import settings
from core.database import build_engine, build_session_factory, init_db
from core.logger import logger
from integrations.s3_client import StorageResolver
from integrations.sqs_client import QueuePublisher
from services.format_normalizer import FormatNormalizer
from services.ingestion_service import IngestionService
from services.job_dispatcher import JobDispatcher
from services.media_persister import MediaPersister
from services.realtime_notifier import RealtimeNotifier
from services.status_store import ProcessingStatusStore
from services.unit_of_work import sqlalchemy_uow_factory

STALE_SWEEP_INTERVAL_SECS = 60


@dataclass
class Services:
    """Process-wide service graph, stored on app.state.services."""

    engine: Engine
    session_factory: sessionmaker
    notifier: RealtimeNotifier
    status_store: ProcessingStatusStore
    persister: MediaPersister
    resolver: StorageResolver
    publisher: QueuePublisher
    dispatcher: JobDispatcher
    ingestion: IngestionService
    redis: Optional[object] = None

    def close(self) -> None:
        self.ingestion.shutdown()
        self.engine.dispose()
        if self.redis is not None:
            self.redis.close()


def build_services(
    engine: Optional[Engine] = None,
    s3_client=None,
    sqs_client=None,
    redis_client=None,
    normalizer: Optional[FormatNormalizer] = None,
    publisher: Optional[QueuePublisher] = None,
    dispatch_sleep=None,
) -> Services:
    engine = engine or build_engine()
    init_db(engine)
    session_factory = build_session_factory(engine)
    uow_factory = sqlalchemy_uow_factory(session_factory)

    status_store = ProcessingStatusStore(uow_factory)
    notifier = RealtimeNotifier(rebuild=status_store.in_flight_items)
    status_store.notifier = notifier

    if redis_client is None and settings.DISPATCH_DEDUPE_ENABLED:
        from core.redis_client import build_redis
        redis_client = build_redis()

    resolver = StorageResolver(s3_client=s3_client)
    publisher = publisher or QueuePublisher(sqs_client=sqs_client)
    persister = MediaPersister(uow_factory)
    dispatcher = JobDispatcher(publisher, status_store, uow_factory, redis_client=redis_client, sleep=dispatch_sleep)
    ingestion = IngestionService(
        normalizer=normalizer or FormatNormalizer(),
        resolver=resolver,
        persister=persister,
        dispatcher=dispatcher,
        status_store=status_store,
    )
    return Services(
        engine=engine,
        session_factory=session_factory,
        notifier=notifier,
        status_store=status_store,
        persister=persister,
        resolver=resolver,
        publisher=publisher,
        dispatcher=dispatcher,
        ingestion=ingestion,
        redis=redis_client,
    )


async def sweep_stale_items(notifier: RealtimeNotifier, interval: float = STALE_SWEEP_INTERVAL_SECS):
    while True:
        await asyncio.sleep(interval)
        try:
            await run_in_threadpool(notifier.cleanup)
        except Exception:
            logger.exception("Stale processing item sweep failed")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Builds the service graph unless one was injected, and runs the stale
    processing item sweep in the background. An injected graph is left open.
    """
    services = getattr(app.state, "services", None)
    owned = services is None
    if owned:
        from core.aws_client import validate_aws_credentials
        validate_aws_credentials()
        services = build_services()
        app.state.services = services

    sweeper = asyncio.create_task(sweep_stale_items(services.notifier))
    logger.info("Lifespan startup: Ready to serve requests.")
    yield
    sweeper.cancel()
    if owned:
        services.close()
    logger.info("Lifespan shutdown.")
