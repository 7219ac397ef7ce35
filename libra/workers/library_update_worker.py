"""Worker refreshing the monitored part of the library."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from libra.logging import get_logger
from libra.services.library import LibraryService
from libra.workers.base import Worker

if TYPE_CHECKING:
    from libra.orchestrator.job import Job

logger = get_logger(__name__)


class LibraryUpdateWorker(Worker):
    def __init__(self, library: LibraryService, name: str = "library-update") -> None:
        super().__init__(name)
        self._library = library

    async def process_job(self, job: Job) -> Any:
        summary = await self._library.update_library()
        logger.info(
            "Library update finished: %d updated, %d skipped",
            summary["updated"],
            summary["skipped"],
        )
        return {"success": True, **summary}


__all__ = ["LibraryUpdateWorker"]
