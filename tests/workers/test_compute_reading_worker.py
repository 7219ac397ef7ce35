from __future__ import annotations

import pytest

from libra.orchestrator.job import Job
from libra.services.memory_store import InMemoryEntityStore
from libra.workers.compute_reading_worker import ComputeReadingWorker, progress_percent


def _job() -> Job:
    return Job({"for": "compute-reading", "payload": {"task": "compute-reading"}})


@pytest.mark.parametrize(
    ("progress", "total", "expected"),
    [(5, 20, 25), (1, 3, 33), (19, 20, 100), (93, 100, 93), (3, 0, 0)],
)
def test_progress_percent_rounds_and_snaps_to_complete(progress, total, expected) -> None:
    assert progress_percent(progress, total) == expected


@pytest.mark.asyncio
async def test_worker_recomputes_chapter_and_manga_progress() -> None:
    entities = InMemoryEntityStore()
    manga = await entities.create_manga({"slug": "blue-period", "title": "Blue Period"})
    await entities.create_manga({"slug": "empty", "title": "Empty"})
    await entities.upsert_chapters(
        manga["id"],
        [
            {"number": 1, "pages": 20},
            {"number": 2, "pages": 20},
            {"number": 3, "pages": 20},
        ],
    )
    await entities.record_read_status("blue-period", 1, 10)
    await entities.record_read_status("blue-period", 1, 19)
    await entities.record_read_status("blue-period", 2, 5)
    await entities.record_read_status("other-manga", 3, 20)
    before = (await entities.get_manga(manga["id"]))["updatedAt"]

    result = await ComputeReadingWorker(entities).process_job(_job())

    assert result == {"success": True, "mangas": 2, "chapters": 2}
    chapters = await entities.list_chapters(manga["id"])
    assert [chapter.get("readProgress") for chapter in chapters] == [100, 25, None]
    stored = await entities.get_manga(manga["id"])
    assert stored["readProgress"] == 42
    assert stored["updatedAt"] == before


@pytest.mark.asyncio
async def test_worker_without_read_statuses_marks_mangas_unread() -> None:
    entities = InMemoryEntityStore()
    manga = await entities.create_manga({"slug": "frieren", "title": "Frieren"})
    await entities.upsert_chapters(manga["id"], [{"number": 1, "pages": 30}])

    result = await ComputeReadingWorker(entities).process_job(_job())

    assert result == {"success": True, "mangas": 1, "chapters": 0}
    assert (await entities.get_manga(manga["id"]))["readProgress"] == 0
