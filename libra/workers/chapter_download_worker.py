"""Worker resolving the pages of one chapter and handing them to storage."""

from __future__ import annotations

from collections.abc import Callable, Mapping, Sequence
from datetime import datetime
from typing import TYPE_CHECKING, Any, Protocol

from libra.errors import JobValidationError, NotFoundError
from libra.integrations.agents_manager import AgentsManager
from libra.logging import get_logger
from libra.reconciliation.strategies import parse_date
from libra.services.entity_jobs import EntityJobService
from libra.services.stores import (
    CHAPTER_STATE_DOWNLOADED,
    CHAPTER_STATE_DOWNLOADING,
    CHAPTER_STATE_QUEUED,
    ENTITY_CHAPTER,
    EntityStore,
)
from libra.utils.time import now_utc
from libra.workers.base import Worker

if TYPE_CHECKING:
    from libra.orchestrator.job import Job

logger = get_logger(__name__)


class PageSink(Protocol):
    async def store(
        self, chapter: Mapping[str, Any], pages: Sequence[Mapping[str, Any]]
    ) -> str | None:
        """Persist the pages of ``chapter``; returns where they ended up."""


def source_score(source: Mapping[str, Any], now: datetime) -> float:
    """Version plus votes, the votes spread over the days since the last update."""

    try:
        score = float(source.get("version") or 0)
    except (TypeError, ValueError):
        score = 0.0
    votes = source.get("votes") or 0
    updated = parse_date(source.get("lastUpdated"))
    if votes and updated is not None:
        days = (now - updated).total_seconds() / 86_400
        return score + (votes / days if days > 0 else 0)
    return score + float(votes)


def choose_best_source(
    sources: Sequence[Mapping[str, Any]],
    languages: Sequence[str] = (),
    source_id: str | None = None,
    *,
    now: datetime | None = None,
) -> Mapping[str, Any] | None:
    """Pick the source to download from, preferring ``languages`` in order."""

    if source_id:
        return next((item for item in sources if item.get("id") == source_id), None)
    moment = now or now_utc()
    for lang in languages or (None,):
        candidates = [item for item in sources if lang is None or item.get("lang") == lang]
        best: Mapping[str, Any] | None = None
        best_score = -1.0
        for candidate in candidates:
            score = source_score(candidate, moment)
            if score > best_score:
                best, best_score = candidate, score
        if best is not None:
            return best
    return None


class ChapterDownloadWorker(Worker):
    def __init__(
        self,
        agents: AgentsManager,
        entities: EntityStore,
        entity_jobs: EntityJobService,
        sink: PageSink,
        name: str = "chapter-download",
        *,
        languages: Sequence[str] = (),
        clock: Callable[[], datetime] = now_utc,
    ) -> None:
        super().__init__(name)
        self._agents = agents
        self._entities = entities
        self._entity_jobs = entity_jobs
        self._sink = sink
        self._languages = tuple(languages)
        self._clock = clock

    async def process_job(self, job: Job) -> Any:
        payload = job.payload if isinstance(job.payload, Mapping) else {}
        chapter_id = payload.get("id")
        if not chapter_id:
            raise JobValidationError("Chapter download needs a chapter id", meta={"job_id": job.id})
        try:
            return await self._download(job, str(chapter_id), payload.get("source"))
        except Exception:
            await self._entities.set_chapter_state(str(chapter_id), CHAPTER_STATE_QUEUED)
            logger.exception("Chapter download job %s failed", job.id)
            await job.report_progress({"value": 0, "msg": "failed."})
            raise

    async def _download(self, job: Job, chapter_id: str, source_id: str | None) -> Any:
        await self._entity_jobs.create_entity_job(chapter_id, ENTITY_CHAPTER, job.id)
        await job.report_progress({"value": 0, "msg": "Checking data..."})
        chapter = await self._entities.get_chapter(chapter_id)
        if chapter is None:
            raise NotFoundError("chapter", chapter_id)

        await self._entities.set_chapter_state(chapter_id, CHAPTER_STATE_DOWNLOADING)
        await job.report_progress({"value": 0, "msg": "Choosing best source..."})
        best = choose_best_source(
            chapter.get("metadata") or [], self._languages, source_id, now=self._clock()
        )
        if best is None:
            raise NotFoundError("chapter source", chapter_id)

        await job.report_progress({"value": 1, "msg": "retrieving pages.."})
        pages = await self._agents.grab_chapter_by_id(str(best.get("id")), str(best.get("source")))
        if not pages:
            raise NotFoundError("chapter pages", chapter_id)

        location = await self._sink.store(chapter, pages)
        await self._entities.set_chapter_state(chapter_id, CHAPTER_STATE_DOWNLOADED)
        await job.report_progress({"value": 100, "msg": "done."})
        return {
            "chapterId": chapter_id,
            "source": best.get("source"),
            "pages": len(pages),
            "location": location,
        }


__all__ = ["ChapterDownloadWorker", "PageSink", "choose_best_source", "source_score"]
