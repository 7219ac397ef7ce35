"""Bookkeeping of which jobs touched which library entities."""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from datetime import UTC, datetime
from typing import Any

from libra.logging import get_logger
from libra.services.stores import (
    ENTITY_CHAPTER,
    ENTITY_MANGA,
    DuplicateEntityJobError,
    EntityJobStore,
    EntityStore,
    JobStore,
)
from libra.utils.time import ensure_utc

logger = get_logger(__name__)

ANY_STATUS = "any"


class EntityJobService:
    """Links jobs to mangas and chapters and keeps those links tidy."""

    def __init__(
        self,
        *,
        jobs: JobStore,
        links: EntityJobStore,
        entities: EntityStore,
    ) -> None:
        self._jobs = jobs
        self._links = links
        self._entities = entities

    async def create_entity_job(
        self, entity_id: str, entity_type: str, job_id: str | None
    ) -> dict[str, Any] | None:
        try:
            return await self._links.link(str(entity_id), entity_type, job_id)
        except DuplicateEntityJobError:
            logger.warning(
                "EntityJob already exists for entity %s %s and job %s",
                entity_type,
                entity_id,
                job_id,
            )
            return None

    async def _with_job(self, link: Mapping[str, Any]) -> dict[str, Any]:
        job_id = link.get("job_id")
        job = await self._jobs.get(job_id) if job_id else None
        return {**link, "job": job}

    async def get_all_jobs_with_entity(
        self, limit: int = 100, offset: int = 0
    ) -> dict[str, Any]:
        """Every link joined with its job, newest job first."""

        joined = [await self._with_job(link) for link in await self._links.list_links()]
        joined.sort(key=_job_created_at, reverse=True)
        start = max(0, offset)
        return {"count": len(joined), "rows": joined[start : start + max(0, limit)]}

    async def get_jobs_for_entity(
        self, entity_id: str, entity_type: str
    ) -> list[dict[str, Any]]:
        links = await self._links.links_for_entity(str(entity_id), entity_type)
        return [await self._with_job(link) for link in links]

    async def update_entity_job(
        self, entity_job_id: int, updates: Mapping[str, Any]
    ) -> dict[str, Any] | None:
        return await self._links.update_link(entity_job_id, updates)

    async def delete_entity_job(self, entity_job_id: int) -> bool:
        return await self._links.delete_link(entity_job_id)

    async def get_last_job_with_entity(
        self, entity_id: str, entity_type: str
    ) -> dict[str, Any] | None:
        links = await self._links.links_for_entity(str(entity_id), entity_type)
        if not links:
            return None
        job_id = links[-1].get("job_id")
        return await self._jobs.get(job_id) if job_id else None

    async def delete_orphan_entity_jobs(self) -> int:
        """Drop links without a job, links to vanished jobs and links to vanished entities."""

        links = await self._links.list_links()
        orphans: set[int] = set()
        for link in links:
            job_id = link.get("job_id")
            if not job_id or await self._jobs.get(job_id) is None:
                orphans.add(link["id"])

        remaining = [link for link in links if link["id"] not in orphans]
        for entity_type in (ENTITY_MANGA, ENTITY_CHAPTER):
            typed = [link for link in remaining if link["entity_type"] == entity_type]
            if not typed:
                continue
            existing = await self._entities.existing_ids(
                entity_type, (link["entity_id"] for link in typed)
            )
            orphans.update(link["id"] for link in typed if link["entity_id"] not in existing)

        deleted = await self._links.delete_links(sorted(orphans)) if orphans else 0
        if deleted:
            logger.info("Deleted %d orphan entity job link(s)", deleted)
        return deleted

    async def delete_all_jobs(
        self,
        status: str = ANY_STATUS,
        since: datetime | None = None,
        *,
        keep: Iterable[str] = (),
    ) -> int:
        """Delete job records (and their links) by status and creation date."""

        statuses = None if status == ANY_STATUS else [status]
        records = await self._jobs.list_jobs(statuses=statuses, since=since)
        kept = set(keep)
        job_ids = [str(record["id"]) for record in records if str(record["id"]) not in kept]
        if not job_ids:
            return 0
        await self._links.delete_links_for_jobs(job_ids)
        for job_id in job_ids:
            await self._jobs.delete(job_id)
        logger.info("Deleted %d job(s) with status %s", len(job_ids), status)
        return len(job_ids)

    async def delete_one_job(self, job_id: str) -> bool:
        await self._links.delete_links_for_jobs([job_id])
        return await self._jobs.delete(job_id)


def _job_created_at(row: Mapping[str, Any]) -> datetime:
    job = row.get("job") or {}
    created = job.get("created_at")
    if isinstance(created, datetime):
        return ensure_utc(created)
    return datetime.min.replace(tzinfo=UTC)


__all__ = ["ANY_STATUS", "EntityJobService"]
