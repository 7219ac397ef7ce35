"""Database models backing the SQL persistence collaborators."""

from __future__ import annotations

from datetime import UTC, datetime

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
)

from libra.db import Base


def _utcnow() -> datetime:
    """Return a timezone-aware UTC timestamp for ORM defaults."""

    return datetime.now(UTC)


class JobRecord(Base):
    __tablename__ = "jobs"
    __table_args__ = (Index("ix_jobs_queue_status", "queue_name", "status"),)

    id = Column(String(36), primary_key=True)
    queue_name = Column(String(128), nullable=False, index=True)
    status = Column(String(32), nullable=False, default="backlog", index=True)
    payload = Column(JSON, nullable=True)
    options = Column(JSON, nullable=False, default=dict)
    retry_count = Column(Integer, nullable=False, default=0)
    result = Column(JSON, nullable=True)
    error = Column(JSON, nullable=True)
    progress = Column(JSON, nullable=True)
    queue = Column(String(128), nullable=True)
    origin = Column(String(32), nullable=True)
    entity_id = Column(String(64), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)
    finished_at = Column(DateTime(timezone=True), nullable=True)


class MangaRecord(Base):
    __tablename__ = "mangas"
    __table_args__ = (UniqueConstraint("slug", "start_year", name="uq_mangas_slug_year"),)

    id = Column(String(36), primary_key=True)
    slug = Column(String(512), nullable=False, index=True)
    start_year = Column(Integer, nullable=True)
    monitored = Column(Boolean, nullable=False, default=False)
    data = Column(JSON, nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)


class ChapterRecord(Base):
    __tablename__ = "chapters"
    __table_args__ = (UniqueConstraint("manga_id", "number", name="uq_chapters_manga_number"),)

    id = Column(String(36), primary_key=True)
    manga_id = Column(String(36), ForeignKey("mangas.id", ondelete="CASCADE"), nullable=False)
    number = Column(Float, nullable=False)
    state = Column(Integer, nullable=False, default=0)
    data = Column(JSON, nullable=False, default=dict)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)


class EntityJobRecord(Base):
    __tablename__ = "entity_jobs"
    __table_args__ = (
        UniqueConstraint("entity_id", "entity_type", "job_id", name="uq_entity_jobs_link"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    entity_id = Column(String(64), nullable=False, index=True)
    entity_type = Column(String(32), nullable=False)
    job_id = Column(String(36), nullable=True, index=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)


class ReadStatusRecord(Base):
    __tablename__ = "read_statuses"

    id = Column(Integer, primary_key=True, autoincrement=True)
    manga_slug = Column(String(512), nullable=False, index=True)
    chapter_number = Column(Float, nullable=False)
    page_number = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)


class StorageRecord(Base):
    __tablename__ = "storage"
    __table_args__ = (UniqueConstraint("caller_id", "type", "key", name="uq_storage_key"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    caller_id = Column(String(64), nullable=False)
    type = Column(String(32), nullable=False)
    key = Column(String(128), nullable=False)
    value = Column(JSON, nullable=True)
    ttl = Column(Integer, nullable=True)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)


__all__ = [
    "JobRecord",
    "MangaRecord",
    "ChapterRecord",
    "EntityJobRecord",
    "ReadStatusRecord",
    "StorageRecord",
]
