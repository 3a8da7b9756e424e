# models/media.py
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from sqlalchemy import (
    JSON,
    DateTime,
    ForeignKey,
    Integer,
    LargeBinary,
    String,
    Text,
    UniqueConstraint,
    Boolean,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from core.database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """SQLite hands back naive datetimes; they are stored as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def new_id() -> str:
    return uuid.uuid4().hex


class MediaKind(str, Enum):
    IMAGE = "image"
    VIDEO = "video"


class MediaStatus(str, Enum):
    """Lifecycle of a single media record"""
    PENDING = "pending"
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    MANUAL_REQUIRED = "manual-required"


TERMINAL_STATUSES = frozenset({
    MediaStatus.COMPLETED,
    MediaStatus.FAILED,
    MediaStatus.MANUAL_REQUIRED,
})

IN_FLIGHT_STATUSES = frozenset({MediaStatus.QUEUED, MediaStatus.PROCESSING})


class Project(Base):
    """Parent aggregate of media records."""

    __tablename__ = "projects"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=new_id)
    organization_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)
    name: Mapped[str] = mapped_column(String(255), default="")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)


class MediaRecord(Base):
    __tablename__ = "media_records"
    __table_args__ = (
        UniqueConstraint("project_id", "upload_key", name="uq_media_project_upload_key"),
    )

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=new_id)
    project_id: Mapped[str] = mapped_column(ForeignKey("projects.id"), index=True)
    organization_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)
    kind: Mapped[str] = mapped_column(String(16))

    file_name: Mapped[str] = mapped_column(String(512))
    original_file_name: Mapped[str] = mapped_column(String(512))
    mime_type: Mapped[str] = mapped_column(String(128))
    size_bytes: Mapped[int] = mapped_column(Integer, default=0)
    source: Mapped[str] = mapped_column(String(64), default="api-upload")

    raw_storage_bucket: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    raw_storage_key: Mapped[Optional[str]] = mapped_column(String(1024), nullable=True)
    normalized_payload_present: Mapped[bool] = mapped_column(Boolean, default=False)
    conversion: Mapped[Dict[str, Any]] = mapped_column(JSON, default=dict)

    status: Mapped[str] = mapped_column(String(32), default=MediaStatus.PENDING.value, index=True)
    status_message: Mapped[str] = mapped_column(String(255), default="")
    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    analysis_result: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSON, nullable=True)

    upload_key: Mapped[str] = mapped_column(String(128))
    attempt_epoch: Mapped[int] = mapped_column(Integer, default=0)
    retry_of_id: Mapped[Optional[str]] = mapped_column(
        ForeignKey("media_records.id"), nullable=True, unique=True
    )
    job_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    payload: Mapped[Optional["MediaPayload"]] = relationship(
        back_populates="record", uselist=False, cascade="all, delete-orphan"
    )

    @property
    def storage_ref(self) -> Optional[Dict[str, str]]:
        if self.raw_storage_bucket and self.raw_storage_key:
            return {"bucket": self.raw_storage_bucket, "key": self.raw_storage_key}
        return None

    @property
    def is_terminal(self) -> bool:
        return MediaStatus(self.status) in TERMINAL_STATUSES

    def __repr__(self) -> str:
        return f"<MediaRecord {self.id} {self.kind} {self.status}>"


class MediaPayload(Base):
    """Normalized, size-bounded bytes handed to the analysis worker."""

    __tablename__ = "media_payloads"

    media_id: Mapped[str] = mapped_column(ForeignKey("media_records.id"), primary_key=True)
    mime_type: Mapped[str] = mapped_column(String(128))
    data: Mapped[bytes] = mapped_column(LargeBinary)

    record: Mapped[MediaRecord] = relationship(back_populates="payload")


class MediaStatusEvent(Base):
    """Append-only history of the statuses a record has entered."""

    __tablename__ = "media_status_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    media_id: Mapped[str] = mapped_column(ForeignKey("media_records.id"), index=True)
    status: Mapped[str] = mapped_column(String(32))
    detail: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
