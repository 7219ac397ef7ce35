"""Worker importing one manga into the library."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from libra.errors import JobValidationError
from libra.logging import get_logger
from libra.services.library import LibraryService
from libra.workers.base import Worker

if TYPE_CHECKING:
    from libra.orchestrator.job import Job

logger = get_logger(__name__)


class ImportPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    title: str = Field(min_length=1)
    year: int | None = None
    external_ids: dict[str, Any] = Field(default_factory=dict, alias="externalIds")
    tracking: dict[str, Any] | None = None
    monitor: bool = False


class MangaImportWorker(Worker):
    def __init__(self, library: LibraryService, name: str = "manga-import") -> None:
        super().__init__(name)
        self._library = library

    async def process_job(self, job: Job) -> Any:
        try:
            payload = ImportPayload.model_validate(job.payload)
        except ValidationError as exc:
            raise JobValidationError(
                "Invalid manga import payload", meta={"job_id": job.id}
            ) from exc

        logger.info("Processing manga import job for '%s'", payload.title)
        try:
            manga = await self._library.import_or_create_manga(
                job.id,
                payload.title,
                payload.year,
                payload.external_ids,
                payload.tracking,
                payload.monitor,
            )
        except Exception:
            logger.exception("Manga import job %s failed", job.id)
            await job.report_progress({"value": 0, "msg": "failed."})
            raise
        return {"success": True, "mangaId": manga.get("id")}


__all__ = ["ImportPayload", "MangaImportWorker"]
