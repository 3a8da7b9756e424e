# core/database.py
"""
SQLAlchemy engine and session factory for the record store.

Sessions are never handed to request handlers directly; writes go through
services.unit_of_work so every multi-row change commits or rolls back as one.
"""
from typing import Optional

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, sessionmaker

from core.config import settings
from core.logger import logger


class Base(DeclarativeBase):
    pass


def build_engine(url: Optional[str] = None, **kwargs) -> Engine:
    url = url or settings.DATABASE_URL
    options = {
        "echo": settings.DATABASE_ECHO,
        "pool_pre_ping": settings.DATABASE_POOL_PRE_PING,
    }
    if url.startswith("sqlite"):
        # SQLite connections are shared with the request threadpool
        options["connect_args"] = {"check_same_thread": False, "timeout": 30}
    options.update(kwargs)
    engine = create_engine(url, **options)

    if url.startswith("sqlite"):
        @event.listens_for(engine, "connect")
        def _sqlite_pragmas(dbapi_connection, connection_record):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

    return engine


def build_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


def init_db(engine: Engine) -> None:
    # registers the mapped classes on Base.metadata
    import models.media  # noqa: F401

    Base.metadata.create_all(bind=engine)
    logger.info("Database schema ready")
