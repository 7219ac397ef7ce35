"""In-memory persistence collaborators for tests and ephemeral runtimes."""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Iterable, Mapping, Sequence
import copy
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any
import uuid

from libra.errors import NotFoundError
from libra.services.stores import (
    CHAPTER_STATE_IDLE,
    ENTITY_CHAPTER,
    ENTITY_MANGA,
    DuplicateEntityJobError,
)
from libra.utils.time import ensure_utc, now_utc

Clock = Callable[[], datetime]


@dataclass
class InMemoryJobStore:
    clock: Clock = now_utc
    records: dict[str, dict[str, Any]] = field(default_factory=dict)

    async def create(self, record: Mapping[str, Any]) -> None:
        self.records[str(record["id"])] = copy.deepcopy(dict(record))

    async def update(self, job_id: str, changes: Mapping[str, Any]) -> None:
        record = self.records.get(job_id)
        if record is None:
            raise NotFoundError("job", job_id)
        record.update(copy.deepcopy(dict(changes)))
        record.setdefault("updated_at", self.clock())

    async def get(self, job_id: str) -> dict[str, Any] | None:
        record = self.records.get(job_id)
        return copy.deepcopy(record) if record is not None else None

    async def delete(self, job_id: str) -> bool:
        return self.records.pop(job_id, None) is not None

    async def list_jobs(
        self,
        *,
        statuses: Sequence[str] | None = None,
        queue_name: str | None = None,
        since: datetime | None = None,
    ) -> list[dict[str, Any]]:
        wanted = set(statuses) if statuses else None
        results = []
        for record in self.records.values():
            if wanted is not None and record.get("status") not in wanted:
                continue
            if queue_name is not None and record.get("queue_name") != queue_name:
                continue
            created = record.get("created_at")
            if since is not None and (
                not isinstance(created, datetime) or ensure_utc(created) < ensure_utc(since)
            ):
                continue
            results.append(copy.deepcopy(record))
        results.sort(key=lambda item: item.get("created_at") or datetime.min)
        return results


@dataclass
class InMemoryEntityStore:
    clock: Clock = now_utc
    mangas: dict[str, dict[str, Any]] = field(default_factory=dict)
    chapters: dict[str, dict[float, dict[str, Any]]] = field(default_factory=dict)
    read_statuses: list[dict[str, Any]] = field(default_factory=list)

    async def create_manga(
        self, data: Mapping[str, Any], *, monitored: bool = False
    ) -> dict[str, Any]:
        manga_id = str(data.get("id") or uuid.uuid4())
        now = self.clock()
        record = copy.deepcopy(dict(data))
        record.update(
            {"id": manga_id, "monitored": monitored, "createdAt": now, "updatedAt": now}
        )
        self.mangas[manga_id] = record
        return copy.deepcopy(record)

    async def get_manga(self, manga_id: str) -> dict[str, Any] | None:
        record = self.mangas.get(manga_id)
        return copy.deepcopy(record) if record is not None else None

    async def find_manga(self, slug: str, start_year: int | None) -> dict[str, Any] | None:
        for record in self.mangas.values():
            if record.get("slug") == slug and record.get("startYear") == start_year:
                return copy.deepcopy(record)
        return None

    async def update_manga(self, manga_id: str, changes: Mapping[str, Any]) -> dict[str, Any]:
        record = self.mangas.get(manga_id)
        if record is None:
            raise NotFoundError("manga", manga_id)
        record.update(copy.deepcopy(dict(changes)))
        record["id"] = manga_id
        record["updatedAt"] = self.clock()
        return copy.deepcopy(record)

    async def delete_manga(self, manga_id: str) -> bool:
        self.chapters.pop(manga_id, None)
        return self.mangas.pop(manga_id, None) is not None

    async def list_mangas(
        self, *, monitored_only: bool = False, updated_before: datetime | None = None
    ) -> list[dict[str, Any]]:
        results = []
        for record in self.mangas.values():
            if monitored_only and not record.get("monitored"):
                continue
            if updated_before is not None and ensure_utc(record["updatedAt"]) >= ensure_utc(
                updated_before
            ):
                continue
            results.append(copy.deepcopy(record))
        return results

    async def existing_ids(self, entity_type: str, ids: Iterable[str]) -> set[str]:
        wanted = {str(item) for item in ids}
        if entity_type == ENTITY_MANGA:
            return wanted & set(self.mangas)
        if entity_type == ENTITY_CHAPTER:
            known = {
                str(chapter["id"])
                for chapters in self.chapters.values()
                for chapter in chapters.values()
            }
            return wanted & known
        return set()

    async def upsert_chapters(
        self, manga_id: str, chapters: Sequence[Mapping[str, Any]]
    ) -> int:
        stored = self.chapters.setdefault(manga_id, {})
        now = self.clock()
        for chapter in chapters:
            number = float(chapter["number"])
            existing = stored.get(number)
            record = copy.deepcopy(dict(chapter))
            record["mangaId"] = manga_id
            if existing is not None:
                record["id"] = existing["id"]
                record["state"] = existing.get("state", CHAPTER_STATE_IDLE)
            else:
                record.setdefault("id", str(uuid.uuid4()))
                record.setdefault("state", CHAPTER_STATE_IDLE)
            record["updatedAt"] = now
            stored[number] = record
        return len(chapters)

    async def list_chapters(self, manga_id: str) -> list[dict[str, Any]]:
        stored = self.chapters.get(manga_id, {})
        return [copy.deepcopy(stored[number]) for number in sorted(stored)]

    async def get_chapter(self, chapter_id: str) -> dict[str, Any] | None:
        for chapters in self.chapters.values():
            for chapter in chapters.values():
                if chapter["id"] == chapter_id:
                    return copy.deepcopy(chapter)
        return None

    async def set_chapter_state(self, chapter_id: str, state: int) -> bool:
        for chapters in self.chapters.values():
            for chapter in chapters.values():
                if chapter["id"] == chapter_id:
                    chapter["state"] = state
                    chapter["updatedAt"] = self.clock()
                    return True
        return False

    async def reset_stale_chapters(self, states: Sequence[int], older_than: datetime) -> int:
        reset = 0
        for chapters in self.chapters.values():
            for chapter in chapters.values():
                if chapter.get("state") not in states:
                    continue
                if ensure_utc(chapter["updatedAt"]) >= ensure_utc(older_than):
                    continue
                chapter["state"] = CHAPTER_STATE_IDLE
                chapter["updatedAt"] = self.clock()
                reset += 1
        return reset

    async def set_read_progress(self, entity_type: str, entity_id: str, percent: int) -> bool:
        if entity_type == ENTITY_MANGA:
            record = self.mangas.get(entity_id)
            if record is None:
                return False
            record["readProgress"] = percent
            return True
        if entity_type == ENTITY_CHAPTER:
            for chapters in self.chapters.values():
                for chapter in chapters.values():
                    if chapter["id"] == entity_id:
                        chapter["readProgress"] = percent
                        return True
        return False

    async def record_read_status(
        self, manga_slug: str, chapter_number: float, page_number: int
    ) -> dict[str, Any]:
        status = {
            "id": len(self.read_statuses) + 1,
            "mangaSlug": manga_slug,
            "chapterNumber": float(chapter_number),
            "pageNumber": int(page_number),
            "createdAt": self.clock(),
        }
        self.read_statuses.append(status)
        return dict(status)

    async def list_read_statuses(self) -> list[dict[str, Any]]:
        return [dict(status) for status in self.read_statuses]


@dataclass
class InMemoryEntityJobStore:
    clock: Clock = now_utc
    links: dict[int, dict[str, Any]] = field(default_factory=dict)
    _next_id: int = 1

    async def link(self, entity_id: str, entity_type: str, job_id: str | None) -> dict[str, Any]:
        for existing in self.links.values():
            if (
                existing["entity_id"] == entity_id
                and existing["entity_type"] == entity_type
                and existing["job_id"] == job_id
            ):
                raise DuplicateEntityJobError(entity_id, entity_type, job_id)
        record = {
            "id": self._next_id,
            "entity_id": entity_id,
            "entity_type": entity_type,
            "job_id": job_id,
            "created_at": self.clock(),
        }
        self.links[self._next_id] = record
        self._next_id += 1
        return dict(record)

    async def get_link(self, link_id: int) -> dict[str, Any] | None:
        record = self.links.get(link_id)
        return dict(record) if record is not None else None

    async def links_for_entity(
        self, entity_id: str, entity_type: str | None = None
    ) -> list[dict[str, Any]]:
        return [
            dict(record)
            for record in self.links.values()
            if record["entity_id"] == entity_id
            and (entity_type is None or record["entity_type"] == entity_type)
        ]

    async def list_links(self) -> list[dict[str, Any]]:
        return [dict(record) for record in self.links.values()]

    async def update_link(self, link_id: int, changes: Mapping[str, Any]) -> dict[str, Any] | None:
        record = self.links.get(link_id)
        if record is None:
            return None
        for key in ("entity_id", "entity_type", "job_id"):
            if key in changes:
                record[key] = changes[key]
        return dict(record)

    async def delete_link(self, link_id: int) -> bool:
        return self.links.pop(link_id, None) is not None

    async def delete_links(self, link_ids: Iterable[int]) -> int:
        return sum(1 for link_id in list(link_ids) if self.links.pop(link_id, None) is not None)

    async def delete_links_for_jobs(self, job_ids: Iterable[str]) -> int:
        targets = set(job_ids)
        doomed = [link_id for link_id, record in self.links.items() if record["job_id"] in targets]
        for link_id in doomed:
            del self.links[link_id]
        return len(doomed)


@dataclass
class InMemoryCacheStore:
    clock: Clock = now_utc
    entries: dict[tuple[str, str, str], dict[str, Any]] = field(default_factory=dict)
    _lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)

    async def get(self, caller_id: str, type_: str, key: str) -> dict[str, Any] | None:
        entry = self.entries.get((caller_id, type_, key))
        return copy.deepcopy(entry) if entry is not None else None

    async def upsert(
        self, caller_id: str, type_: str, key: str, value: Any, ttl: int | None
    ) -> None:
        async with self._lock:
            self.entries[(caller_id, type_, key)] = {
                "value": copy.deepcopy(value),
                "ttl": ttl,
                "updated_at": self.clock(),
            }


@dataclass
class InMemoryStores:
    """The full set of collaborators, sharing one clock."""

    clock: Clock = now_utc
    jobs: InMemoryJobStore = field(init=False)
    entities: InMemoryEntityStore = field(init=False)
    entity_jobs: InMemoryEntityJobStore = field(init=False)
    cache: InMemoryCacheStore = field(init=False)

    def __post_init__(self) -> None:
        self.jobs = InMemoryJobStore(self.clock)
        self.entities = InMemoryEntityStore(self.clock)
        self.entity_jobs = InMemoryEntityJobStore(self.clock)
        self.cache = InMemoryCacheStore(self.clock)


__all__ = [
    "InMemoryCacheStore",
    "InMemoryEntityJobStore",
    "InMemoryEntityStore",
    "InMemoryJobStore",
    "InMemoryStores",
]
