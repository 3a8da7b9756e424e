# services/unit_of_work.py
"""
Unit of work over the record store.

    with uow_factory() as uow:       # begin
        uow.media.add(record)        # stage writes
        uow.projects.touch(...)
                                     # commit on clean exit, rollback on error

Callers only ever see the repositories, never the store's session object,
so the same contract can sit on any transactional store.
"""

import abc
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional

from sqlalchemy import select, update
from sqlalchemy.orm import Session, sessionmaker

from models.media import (
    IN_FLIGHT_STATUSES,
    MediaPayload,
    MediaRecord,
    MediaStatusEvent,
    Project,
    utcnow,
)


class ProjectRepository:
    def __init__(self, session: Session):
        self.session = session

    def get(self, project_id: str) -> Optional[Project]:
        return self.session.get(Project, project_id)

    def add(self, project: Project) -> Project:
        self.session.add(project)
        return project

    def touch(self, project_id: str, when: Optional[datetime] = None) -> bool:
        result = self.session.execute(
            update(Project)
            .where(Project.id == project_id)
            .values(updated_at=when or utcnow())
        )
        return result.rowcount == 1


class MediaRepository:
    def __init__(self, session: Session):
        self.session = session

    def add(self, record: MediaRecord) -> MediaRecord:
        self.session.add(record)
        return record

    def add_payload(self, media_id: str, data: bytes, mime_type: str) -> None:
        self.session.add(MediaPayload(media_id=media_id, data=data, mime_type=mime_type))

    def add_status_event(self, media_id: str, status: str, detail: Optional[str] = None) -> None:
        self.session.add(MediaStatusEvent(media_id=media_id, status=status, detail=detail))

    def flush(self) -> None:
        self.session.flush()

    def get(self, media_id: str) -> Optional[MediaRecord]:
        return self.session.get(MediaRecord, media_id)

    def refresh(self, record: MediaRecord) -> MediaRecord:
        self.session.refresh(record)
        return record

    def get_payload(self, media_id: str) -> Optional[MediaPayload]:
        return self.session.get(MediaPayload, media_id)

    def find_by_upload_key(self, project_id: str, upload_key: str) -> Optional[MediaRecord]:
        return self.session.scalars(
            select(MediaRecord).where(
                MediaRecord.project_id == project_id,
                MediaRecord.upload_key == upload_key,
            )
        ).first()

    def find_successor(self, media_id: str) -> Optional[MediaRecord]:
        return self.session.scalars(
            select(MediaRecord).where(MediaRecord.retry_of_id == media_id)
        ).first()

    def compare_and_set_status(
        self,
        media_id: str,
        allowed_from: Iterable[str],
        values: Dict[str, Any],
    ) -> bool:
        """Conditional UPDATE; False when the record is not in an allowed status."""
        result = self.session.execute(
            update(MediaRecord)
            .where(MediaRecord.id == media_id, MediaRecord.status.in_(list(allowed_from)))
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def set_job_id(self, media_id: str, job_id: str) -> None:
        self.session.execute(
            update(MediaRecord)
            .where(MediaRecord.id == media_id)
            .values(job_id=job_id)
            .execution_options(synchronize_session=False)
        )

    def list_in_flight(self, project_id: str) -> List[MediaRecord]:
        return list(self.session.scalars(
            select(MediaRecord)
            .where(
                MediaRecord.project_id == project_id,
                MediaRecord.status.in_([s.value for s in IN_FLIGHT_STATUSES]),
            )
            .order_by(MediaRecord.created_at)
        ))

    def list_by_status(self, statuses: Iterable[str], limit: int = 100) -> List[MediaRecord]:
        return list(self.session.scalars(
            select(MediaRecord)
            .where(MediaRecord.status.in_(list(statuses)))
            .order_by(MediaRecord.created_at)
            .limit(limit)
        ))

    def status_history(self, media_id: str) -> List[str]:
        return list(self.session.scalars(
            select(MediaStatusEvent.status)
            .where(MediaStatusEvent.media_id == media_id)
            .order_by(MediaStatusEvent.id)
        ))


class UnitOfWork(abc.ABC):
    """begin -> stage writes -> commit | rollback"""

    media: MediaRepository
    projects: ProjectRepository

    def __enter__(self) -> "UnitOfWork":
        self.begin()
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        if exc_type is None:
            self.commit()
        else:
            self.rollback()
        return False

    @abc.abstractmethod
    def begin(self) -> None:
        ...

    @abc.abstractmethod
    def commit(self) -> None:
        ...

    @abc.abstractmethod
    def rollback(self) -> None:
        ...


class SqlAlchemyUnitOfWork(UnitOfWork):
    """Unit of work on the store's native transaction (Session.begin)."""

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory
        self.session: Optional[Session] = None

    def begin(self) -> None:
        self.session = self.session_factory()
        self.session.begin()
        self.media = MediaRepository(self.session)
        self.projects = ProjectRepository(self.session)

    def commit(self) -> None:
        try:
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise
        finally:
            self.session.close()

    def rollback(self) -> None:
        try:
            self.session.rollback()
        finally:
            self.session.close()


UnitOfWorkFactory = Callable[[], UnitOfWork]


def sqlalchemy_uow_factory(session_factory: sessionmaker) -> UnitOfWorkFactory:
    return lambda: SqlAlchemyUnitOfWork(session_factory)
