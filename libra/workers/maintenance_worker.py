"""Periodic housekeeping of job records and stale chapter states."""

from __future__ import annotations

from collections.abc import Callable, Iterable
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any

from libra.logging import get_logger
from libra.logging_events import log_event
from libra.services.entity_jobs import EntityJobService
from libra.services.stores import (
    CHAPTER_STATE_DOWNLOADING,
    CHAPTER_STATE_QUEUED,
    EntityStore,
)
from libra.utils.time import now_utc
from libra.workers.base import Worker

if TYPE_CHECKING:
    from libra.orchestrator.job import Job

logger = get_logger(__name__)

STALE_CHAPTER_MINUTES = 10
_UNFINISHED = ("pending", "processing", "backlog")


class MaintenanceWorker(Worker):
    def __init__(
        self,
        entity_jobs: EntityJobService,
        entities: EntityStore,
        name: str = "maintenance",
        *,
        clock: Callable[[], datetime] = now_utc,
        live_jobs: Callable[[], Iterable[str]] | None = None,
    ) -> None:
        super().__init__(name)
        self._live_jobs = live_jobs
        self._entity_jobs = entity_jobs
        self._entities = entities
        self._clock = clock

    async def process_job(self, job: Job) -> Any:
        logger.info("Processing maintenance job")
        orphans = await self._entity_jobs.delete_orphan_entity_jobs()
        keep = [job.id]
        if self._live_jobs is not None:
            keep.extend(self._live_jobs())
        deleted = 0
        for status in _UNFINISHED:
            deleted += await self._entity_jobs.delete_all_jobs(status, keep=keep)

        cutoff = self._clock() - timedelta(minutes=STALE_CHAPTER_MINUTES)
        reset = await self._entities.reset_stale_chapters(
            (CHAPTER_STATE_QUEUED, CHAPTER_STATE_DOWNLOADING), cutoff
        )
        if reset:
            logger.info("Reset %d stale chapter(s)", reset)
        log_event(
            logger,
            "maintenance.sweep",
            component="maintenance",
            status="ok",
            orphans=orphans,
            jobs=deleted,
            chapters=reset,
        )
        return {"orphans": orphans, "jobs": deleted, "chapters": reset}


__all__ = ["MaintenanceWorker", "STALE_CHAPTER_MINUTES"]
