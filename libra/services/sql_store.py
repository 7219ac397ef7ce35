"""SQLAlchemy implementations of the persistence collaborators."""

from __future__ import annotations

from collections.abc import Iterable, Mapping, Sequence
from datetime import datetime
from typing import Any
import uuid

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from libra.db import SessionFactory, run_session
from libra.errors import NotFoundError
from libra.models import (
    ChapterRecord,
    EntityJobRecord,
    JobRecord,
    MangaRecord,
    ReadStatusRecord,
    StorageRecord,
)
from libra.services.stores import (
    CHAPTER_STATE_IDLE,
    ENTITY_CHAPTER,
    ENTITY_MANGA,
    DuplicateEntityJobError,
)
from libra.utils.time import ensure_utc, now_utc

_JOB_COLUMNS = (
    "queue_name",
    "status",
    "payload",
    "options",
    "retry_count",
    "result",
    "error",
    "progress",
    "queue",
    "origin",
    "entity_id",
    "created_at",
    "updated_at",
    "finished_at",
)
_DATETIME_COLUMNS = ("created_at", "updated_at", "finished_at")
# manga keys promoted to columns; everything else lives in ``data``
_MANGA_COLUMNS = ("id", "slug", "startYear", "monitored", "createdAt", "updatedAt")


def _utc(value: datetime | None) -> datetime | None:
    return ensure_utc(value) if isinstance(value, datetime) else value


def _job_to_dict(record: JobRecord) -> dict[str, Any]:
    payload: dict[str, Any] = {"id": record.id}
    for column in _JOB_COLUMNS:
        value = getattr(record, column)
        payload[column] = _utc(value) if column in _DATETIME_COLUMNS else value
    return payload


def _manga_to_dict(record: MangaRecord) -> dict[str, Any]:
    payload = dict(record.data or {})
    payload.update(
        {
            "id": record.id,
            "slug": record.slug,
            "startYear": record.start_year,
            "monitored": bool(record.monitored),
            "createdAt": _utc(record.created_at),
            "updatedAt": _utc(record.updated_at),
        }
    )
    return payload


def _chapter_to_dict(record: ChapterRecord) -> dict[str, Any]:
    payload = dict(record.data or {})
    payload.update(
        {
            "id": record.id,
            "mangaId": record.manga_id,
            "number": record.number,
            "state": record.state,
            "updatedAt": _utc(record.updated_at),
        }
    )
    return payload


def _read_status_to_dict(record: ReadStatusRecord) -> dict[str, Any]:
    return {
        "id": record.id,
        "mangaSlug": record.manga_slug,
        "chapterNumber": record.chapter_number,
        "pageNumber": record.page_number,
        "createdAt": _utc(record.created_at),
    }


def _link_to_dict(record: EntityJobRecord) -> dict[str, Any]:
    return {
        "id": record.id,
        "entity_id": record.entity_id,
        "entity_type": record.entity_type,
        "job_id": record.job_id,
        "created_at": _utc(record.created_at),
    }


class _SqlStore:
    def __init__(self, *, session_factory: SessionFactory | None = None) -> None:
        self._session_factory = session_factory

    async def _run(self, func: Any) -> Any:
        return await run_session(func, factory=self._session_factory)


class SqlJobStore(_SqlStore):
    async def create(self, record: Mapping[str, Any]) -> None:
        values = {column: record.get(column) for column in _JOB_COLUMNS if column in record}

        def _create(session: Session) -> None:
            session.add(JobRecord(id=str(record["id"]), **values))

        await self._run(_create)

    async def update(self, job_id: str, changes: Mapping[str, Any]) -> None:
        def _update(session: Session) -> None:
            record = session.get(JobRecord, job_id)
            if record is None:
                raise NotFoundError("job", job_id)
            for column in _JOB_COLUMNS:
                if column in changes:
                    setattr(record, column, changes[column])

        await self._run(_update)

    async def get(self, job_id: str) -> dict[str, Any] | None:
        def _get(session: Session) -> dict[str, Any] | None:
            record = session.get(JobRecord, job_id)
            return _job_to_dict(record) if record is not None else None

        return await self._run(_get)

    async def delete(self, job_id: str) -> bool:
        def _delete(session: Session) -> bool:
            record = session.get(JobRecord, job_id)
            if record is None:
                return False
            session.delete(record)
            return True

        return await self._run(_delete)

    async def list_jobs(
        self,
        *,
        statuses: Sequence[str] | None = None,
        queue_name: str | None = None,
        since: datetime | None = None,
    ) -> list[dict[str, Any]]:
        def _list(session: Session) -> list[dict[str, Any]]:
            query = select(JobRecord)
            if statuses:
                query = query.where(JobRecord.status.in_(tuple(statuses)))
            if queue_name is not None:
                query = query.where(JobRecord.queue_name == queue_name)
            if since is not None:
                query = query.where(JobRecord.created_at >= since)
            query = query.order_by(JobRecord.created_at.asc())
            return [_job_to_dict(record) for record in session.scalars(query)]

        return await self._run(_list)


class SqlEntityStore(_SqlStore):
    async def create_manga(
        self, data: Mapping[str, Any], *, monitored: bool = False
    ) -> dict[str, Any]:
        manga_id = str(data.get("id") or uuid.uuid4())
        body = {key: value for key, value in data.items() if key not in _MANGA_COLUMNS}

        def _create(session: Session) -> dict[str, Any]:
            now = now_utc()
            record = MangaRecord(
                id=manga_id,
                slug=str(data.get("slug") or ""),
                start_year=data.get("startYear"),
                monitored=monitored,
                data=body,
                created_at=now,
                updated_at=now,
            )
            session.add(record)
            session.flush()
            return _manga_to_dict(record)

        return await self._run(_create)

    async def get_manga(self, manga_id: str) -> dict[str, Any] | None:
        def _get(session: Session) -> dict[str, Any] | None:
            record = session.get(MangaRecord, manga_id)
            return _manga_to_dict(record) if record is not None else None

        return await self._run(_get)

    async def find_manga(self, slug: str, start_year: int | None) -> dict[str, Any] | None:
        def _find(session: Session) -> dict[str, Any] | None:
            query = select(MangaRecord).where(MangaRecord.slug == slug)
            if start_year is None:
                query = query.where(MangaRecord.start_year.is_(None))
            else:
                query = query.where(MangaRecord.start_year == start_year)
            record = session.scalars(query.limit(1)).first()
            return _manga_to_dict(record) if record is not None else None

        return await self._run(_find)

    async def update_manga(self, manga_id: str, changes: Mapping[str, Any]) -> dict[str, Any]:
        def _update(session: Session) -> dict[str, Any]:
            record = session.get(MangaRecord, manga_id)
            if record is None:
                raise NotFoundError("manga", manga_id)
            body = dict(record.data or {})
            for key, value in changes.items():
                if key == "slug":
                    record.slug = str(value or "")
                elif key == "startYear":
                    record.start_year = value
                elif key == "monitored":
                    record.monitored = bool(value)
                elif key not in _MANGA_COLUMNS:
                    body[key] = value
            record.data = body
            record.updated_at = now_utc()
            session.flush()
            return _manga_to_dict(record)

        return await self._run(_update)

    async def delete_manga(self, manga_id: str) -> bool:
        def _delete(session: Session) -> bool:
            session.execute(delete(ChapterRecord).where(ChapterRecord.manga_id == manga_id))
            record = session.get(MangaRecord, manga_id)
            if record is None:
                return False
            session.delete(record)
            return True

        return await self._run(_delete)

    async def list_mangas(
        self, *, monitored_only: bool = False, updated_before: datetime | None = None
    ) -> list[dict[str, Any]]:
        def _list(session: Session) -> list[dict[str, Any]]:
            query = select(MangaRecord)
            if monitored_only:
                query = query.where(MangaRecord.monitored.is_(True))
            records = [_manga_to_dict(record) for record in session.scalars(query)]
            if updated_before is None:
                return records
            cutoff = ensure_utc(updated_before)
            return [record for record in records if record["updatedAt"] < cutoff]

        return await self._run(_list)

    async def existing_ids(self, entity_type: str, ids: Iterable[str]) -> set[str]:
        wanted = tuple({str(item) for item in ids})
        if not wanted:
            return set()
        if entity_type == ENTITY_MANGA:
            model: Any = MangaRecord
        elif entity_type == ENTITY_CHAPTER:
            model = ChapterRecord
        else:
            return set()

        def _existing(session: Session) -> set[str]:
            return set(session.scalars(select(model.id).where(model.id.in_(wanted))))

        return await self._run(_existing)

    async def upsert_chapters(
        self, manga_id: str, chapters: Sequence[Mapping[str, Any]]
    ) -> int:
        def _upsert(session: Session) -> int:
            existing = {
                record.number: record
                for record in session.scalars(
                    select(ChapterRecord).where(ChapterRecord.manga_id == manga_id)
                )
            }
            now = now_utc()
            for chapter in chapters:
                number = float(chapter["number"])
                body = {
                    key: value
                    for key, value in chapter.items()
                    if key not in {"id", "mangaId", "number", "state", "updatedAt"}
                }
                record = existing.get(number)
                if record is None:
                    record = ChapterRecord(
                        id=str(chapter.get("id") or uuid.uuid4()),
                        manga_id=manga_id,
                        number=number,
                        state=int(chapter.get("state") or CHAPTER_STATE_IDLE),
                        data=body,
                        updated_at=now,
                    )
                    session.add(record)
                    existing[number] = record
                else:
                    record.data = body
                    record.updated_at = now
            return len(chapters)

        return await self._run(_upsert)

    async def list_chapters(self, manga_id: str) -> list[dict[str, Any]]:
        def _list(session: Session) -> list[dict[str, Any]]:
            query = (
                select(ChapterRecord)
                .where(ChapterRecord.manga_id == manga_id)
                .order_by(ChapterRecord.number.asc())
            )
            return [_chapter_to_dict(record) for record in session.scalars(query)]

        return await self._run(_list)

    async def get_chapter(self, chapter_id: str) -> dict[str, Any] | None:
        def _get(session: Session) -> dict[str, Any] | None:
            record = session.get(ChapterRecord, chapter_id)
            return _chapter_to_dict(record) if record is not None else None

        return await self._run(_get)

    async def set_chapter_state(self, chapter_id: str, state: int) -> bool:
        def _set(session: Session) -> bool:
            record = session.get(ChapterRecord, chapter_id)
            if record is None:
                return False
            record.state = state
            record.updated_at = now_utc()
            return True

        return await self._run(_set)

    async def reset_stale_chapters(self, states: Sequence[int], older_than: datetime) -> int:
        cutoff = ensure_utc(older_than)

        def _reset(session: Session) -> int:
            query = select(ChapterRecord).where(ChapterRecord.state.in_(tuple(states)))
            reset = 0
            now = now_utc()
            for record in session.scalars(query):
                if ensure_utc(record.updated_at) >= cutoff:
                    continue
                record.state = CHAPTER_STATE_IDLE
                record.updated_at = now
                reset += 1
            return reset

        return await self._run(_reset)

    async def set_read_progress(self, entity_type: str, entity_id: str, percent: int) -> bool:
        model = {ENTITY_MANGA: MangaRecord, ENTITY_CHAPTER: ChapterRecord}.get(entity_type)
        if model is None:
            return False

        def _set(session: Session) -> bool:
            record = session.get(model, entity_id)
            if record is None:
                return False
            record.data = {**(record.data or {}), "readProgress": percent}
            return True

        return await self._run(_set)

    async def record_read_status(
        self, manga_slug: str, chapter_number: float, page_number: int
    ) -> dict[str, Any]:
        def _record(session: Session) -> dict[str, Any]:
            record = ReadStatusRecord(
                manga_slug=manga_slug,
                chapter_number=float(chapter_number),
                page_number=int(page_number),
                created_at=now_utc(),
            )
            session.add(record)
            session.flush()
            return _read_status_to_dict(record)

        return await self._run(_record)

    async def list_read_statuses(self) -> list[dict[str, Any]]:
        def _list(session: Session) -> list[dict[str, Any]]:
            query = select(ReadStatusRecord).order_by(ReadStatusRecord.id.asc())
            return [_read_status_to_dict(record) for record in session.scalars(query)]

        return await self._run(_list)


class SqlEntityJobStore(_SqlStore):
    async def link(self, entity_id: str, entity_type: str, job_id: str | None) -> dict[str, Any]:
        def _link(session: Session) -> dict[str, Any]:
            query = select(EntityJobRecord).where(
                EntityJobRecord.entity_id == entity_id,
                EntityJobRecord.entity_type == entity_type,
            )
            if job_id is None:
                query = query.where(EntityJobRecord.job_id.is_(None))
            else:
                query = query.where(EntityJobRecord.job_id == job_id)
            if session.scalars(query.limit(1)).first() is not None:
                raise DuplicateEntityJobError(entity_id, entity_type, job_id)
            record = EntityJobRecord(
                entity_id=entity_id,
                entity_type=entity_type,
                job_id=job_id,
                created_at=now_utc(),
            )
            session.add(record)
            try:
                session.flush()
            except IntegrityError as exc:
                raise DuplicateEntityJobError(entity_id, entity_type, job_id) from exc
            return _link_to_dict(record)

        return await self._run(_link)

    async def get_link(self, link_id: int) -> dict[str, Any] | None:
        def _get(session: Session) -> dict[str, Any] | None:
            record = session.get(EntityJobRecord, link_id)
            return _link_to_dict(record) if record is not None else None

        return await self._run(_get)

    async def links_for_entity(
        self, entity_id: str, entity_type: str | None = None
    ) -> list[dict[str, Any]]:
        def _links(session: Session) -> list[dict[str, Any]]:
            query = select(EntityJobRecord).where(EntityJobRecord.entity_id == entity_id)
            if entity_type is not None:
                query = query.where(EntityJobRecord.entity_type == entity_type)
            query = query.order_by(EntityJobRecord.id.asc())
            return [_link_to_dict(record) for record in session.scalars(query)]

        return await self._run(_links)

    async def list_links(self) -> list[dict[str, Any]]:
        def _list(session: Session) -> list[dict[str, Any]]:
            query = select(EntityJobRecord).order_by(EntityJobRecord.id.asc())
            return [_link_to_dict(record) for record in session.scalars(query)]

        return await self._run(_list)

    async def update_link(self, link_id: int, changes: Mapping[str, Any]) -> dict[str, Any] | None:
        def _update(session: Session) -> dict[str, Any] | None:
            record = session.get(EntityJobRecord, link_id)
            if record is None:
                return None
            for key in ("entity_id", "entity_type", "job_id"):
                if key in changes:
                    setattr(record, key, changes[key])
            session.flush()
            return _link_to_dict(record)

        return await self._run(_update)

    async def delete_link(self, link_id: int) -> bool:
        return bool(await self.delete_links([link_id]))

    async def delete_links(self, link_ids: Iterable[int]) -> int:
        targets = tuple(link_ids)
        if not targets:
            return 0

        def _delete(session: Session) -> int:
            result = session.execute(delete(EntityJobRecord).where(EntityJobRecord.id.in_(targets)))
            return int(result.rowcount or 0)

        return await self._run(_delete)

    async def delete_links_for_jobs(self, job_ids: Iterable[str]) -> int:
        targets = tuple(job_ids)
        if not targets:
            return 0

        def _delete(session: Session) -> int:
            result = session.execute(
                delete(EntityJobRecord).where(EntityJobRecord.job_id.in_(targets))
            )
            return int(result.rowcount or 0)

        return await self._run(_delete)


class SqlCacheStore(_SqlStore):
    async def get(self, caller_id: str, type_: str, key: str) -> dict[str, Any] | None:
        def _get(session: Session) -> dict[str, Any] | None:
            query = select(StorageRecord).where(
                StorageRecord.caller_id == caller_id,
                StorageRecord.type == type_,
                StorageRecord.key == key,
            )
            record = session.scalars(query.limit(1)).first()
            if record is None:
                return None
            return {
                "value": record.value,
                "ttl": record.ttl,
                "updated_at": _utc(record.updated_at),
            }

        return await self._run(_get)

    async def upsert(
        self, caller_id: str, type_: str, key: str, value: Any, ttl: int | None
    ) -> None:
        def _upsert(session: Session) -> None:
            query = select(StorageRecord).where(
                StorageRecord.caller_id == caller_id,
                StorageRecord.type == type_,
                StorageRecord.key == key,
            )
            record = session.scalars(query.limit(1)).first()
            if record is None:
                record = StorageRecord(caller_id=caller_id, type=type_, key=key)
                session.add(record)
            record.value = value
            record.ttl = ttl
            record.updated_at = now_utc()

        await self._run(_upsert)


class SqlStores:
    """All SQL collaborators bound to one session factory."""

    def __init__(self, *, session_factory: SessionFactory | None = None) -> None:
        self.jobs = SqlJobStore(session_factory=session_factory)
        self.entities = SqlEntityStore(session_factory=session_factory)
        self.entity_jobs = SqlEntityJobStore(session_factory=session_factory)
        self.cache = SqlCacheStore(session_factory=session_factory)


__all__ = [
    "SqlCacheStore",
    "SqlEntityJobStore",
    "SqlEntityStore",
    "SqlJobStore",
    "SqlStores",
]
