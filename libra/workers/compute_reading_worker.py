"""Worker recomputing chapter and manga reading progress from read statuses."""

from __future__ import annotations

from collections import defaultdict
from typing import TYPE_CHECKING, Any

from libra.logging import get_logger
from libra.logging_events import log_event
from libra.services.stores import ENTITY_CHAPTER, ENTITY_MANGA, EntityStore
from libra.workers.base import Worker

if TYPE_CHECKING:
    from libra.orchestrator.job import Job

logger = get_logger(__name__)

# readers rarely turn the credits pages
READ_THRESHOLD = 94


def progress_percent(progress: float, total: float) -> int:
    """Whole percentage of ``progress`` over ``total``, snapped to 100 near the end."""

    if total <= 0:
        return 0
    percent = int(progress / total * 100 + 0.5)
    return 100 if percent >= READ_THRESHOLD else percent


class ComputeReadingWorker(Worker):
    def __init__(self, entities: EntityStore, name: str = "compute-reading") -> None:
        super().__init__(name)
        self._entities = entities

    async def process_job(self, job: Job) -> Any:
        mangas = await self._entities.list_mangas()
        furthest = await self._furthest_pages()
        chapters_updated = 0
        for manga in mangas:
            chapters_updated += await self._compute_manga(manga, furthest)
        log_event(
            logger,
            "library.reading",
            component="compute_reading",
            status="ok",
            mangas=len(mangas),
            chapters=chapters_updated,
        )
        return {"success": True, "mangas": len(mangas), "chapters": chapters_updated}

    async def _furthest_pages(self) -> dict[tuple[str, float], int]:
        """Highest page reached per ``(manga slug, chapter number)``."""

        furthest: dict[tuple[str, float], int] = defaultdict(int)
        for status in await self._entities.list_read_statuses():
            key = (str(status["mangaSlug"]), float(status["chapterNumber"]))
            furthest[key] = max(furthest[key], int(status.get("pageNumber") or 0))
        return furthest

    async def _compute_manga(
        self, manga: dict[str, Any], furthest: dict[tuple[str, float], int]
    ) -> int:
        chapters = await self._entities.list_chapters(manga["id"])
        if not chapters:
            return 0
        updated = 0
        total = 0
        for chapter in chapters:
            page = furthest.get((str(manga.get("slug")), float(chapter["number"])), 0)
            pages = chapter.get("pages") or 0
            percent = chapter.get("readProgress") or 0
            if page > 0 and pages > 0:
                percent = progress_percent(page, pages)
                await self._entities.set_read_progress(ENTITY_CHAPTER, chapter["id"], percent)
                updated += 1
            total += percent
        await self._entities.set_read_progress(
            ENTITY_MANGA, manga["id"], progress_percent(total, len(chapters) * 100)
        )
        return updated


__all__ = ["ComputeReadingWorker", "READ_THRESHOLD", "progress_percent"]
