"""Persistence collaborator contracts consumed by the orchestrator and services."""

from __future__ import annotations

from collections.abc import Iterable, Mapping, Sequence
from datetime import datetime
from typing import Any, Protocol, runtime_checkable

from libra.errors import ErrorCode, LibraError

ENTITY_MANGA = "manga"
ENTITY_CHAPTER = "chapter"

CHAPTER_STATE_IDLE = 0
CHAPTER_STATE_QUEUED = 1
CHAPTER_STATE_DOWNLOADING = 2
CHAPTER_STATE_DOWNLOADED = 3


class DuplicateEntityJobError(LibraError):
    """An entity/job link with the same identity already exists."""

    def __init__(self, entity_id: str, entity_type: str, job_id: str | None) -> None:
        super().__init__(
            f"Entity {entity_type}:{entity_id} is already linked to job {job_id}",
            code=ErrorCode.DUPLICATE_NAME,
            meta={"entity_id": entity_id, "entity_type": entity_type, "job_id": job_id},
        )


@runtime_checkable
class JobStore(Protocol):
    async def create(self, record: Mapping[str, Any]) -> None: ...

    async def update(self, job_id: str, changes: Mapping[str, Any]) -> None: ...

    async def get(self, job_id: str) -> dict[str, Any] | None: ...

    async def delete(self, job_id: str) -> bool: ...

    async def list_jobs(
        self,
        *,
        statuses: Sequence[str] | None = None,
        queue_name: str | None = None,
        since: datetime | None = None,
    ) -> list[dict[str, Any]]: ...


@runtime_checkable
class EntityStore(Protocol):
    async def create_manga(
        self, data: Mapping[str, Any], *, monitored: bool = False
    ) -> dict[str, Any]: ...

    async def get_manga(self, manga_id: str) -> dict[str, Any] | None: ...

    async def find_manga(self, slug: str, start_year: int | None) -> dict[str, Any] | None: ...

    async def update_manga(self, manga_id: str, changes: Mapping[str, Any]) -> dict[str, Any]: ...

    async def delete_manga(self, manga_id: str) -> bool: ...

    async def list_mangas(
        self, *, monitored_only: bool = False, updated_before: datetime | None = None
    ) -> list[dict[str, Any]]: ...

    async def existing_ids(self, entity_type: str, ids: Iterable[str]) -> set[str]: ...

    async def upsert_chapters(
        self, manga_id: str, chapters: Sequence[Mapping[str, Any]]
    ) -> int: ...

    async def list_chapters(self, manga_id: str) -> list[dict[str, Any]]: ...

    async def get_chapter(self, chapter_id: str) -> dict[str, Any] | None: ...

    async def set_chapter_state(self, chapter_id: str, state: int) -> bool: ...

    async def reset_stale_chapters(
        self, states: Sequence[int], older_than: datetime
    ) -> int: ...

    async def set_read_progress(self, entity_type: str, entity_id: str, percent: int) -> bool:
        """Store ``readProgress`` without bumping ``updatedAt``."""
        ...

    async def record_read_status(
        self, manga_slug: str, chapter_number: float, page_number: int
    ) -> dict[str, Any]: ...

    async def list_read_statuses(self) -> list[dict[str, Any]]: ...


@runtime_checkable
class EntityJobStore(Protocol):
    """Append-only join table between library entities and jobs."""

    async def link(
        self, entity_id: str, entity_type: str, job_id: str | None
    ) -> dict[str, Any]: ...

    async def get_link(self, link_id: int) -> dict[str, Any] | None: ...

    async def links_for_entity(
        self, entity_id: str, entity_type: str | None = None
    ) -> list[dict[str, Any]]: ...

    async def list_links(self) -> list[dict[str, Any]]: ...

    async def update_link(
        self, link_id: int, changes: Mapping[str, Any]
    ) -> dict[str, Any] | None: ...

    async def delete_link(self, link_id: int) -> bool: ...

    async def delete_links(self, link_ids: Iterable[int]) -> int: ...

    async def delete_links_for_jobs(self, job_ids: Iterable[str]) -> int: ...


@runtime_checkable
class CacheStore(Protocol):
    async def get(self, caller_id: str, type_: str, key: str) -> dict[str, Any] | None: ...

    async def upsert(
        self, caller_id: str, type_: str, key: str, value: Any, ttl: int | None
    ) -> None: ...


__all__ = [
    "ENTITY_MANGA",
    "ENTITY_CHAPTER",
    "CHAPTER_STATE_IDLE",
    "CHAPTER_STATE_QUEUED",
    "CHAPTER_STATE_DOWNLOADING",
    "CHAPTER_STATE_DOWNLOADED",
    "DuplicateEntityJobError",
    "JobStore",
    "EntityStore",
    "EntityJobStore",
    "CacheStore",
]
