from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest

from libra.config import FanoutConfig
from libra.errors import JobValidationError, NotFoundError
from libra.integrations.agents_manager import AgentsManager
from libra.orchestrator.job import Job
from libra.services.entity_jobs import EntityJobService
from libra.services.memory_store import InMemoryStores
from libra.services.stores import (
    CHAPTER_STATE_DOWNLOADED,
    CHAPTER_STATE_QUEUED,
    ENTITY_CHAPTER,
)
from libra.workers.chapter_download_worker import (
    ChapterDownloadWorker,
    choose_best_source,
    source_score,
)
from tests.support.fakes import FakeAgent, MemoryPageSink

NOW = datetime(2024, 3, 1, tzinfo=UTC)

SOURCES = [
    {"source": "fake", "id": "p1", "lang": "en", "version": 1, "votes": 0},
    {
        "source": "other",
        "id": "p2",
        "lang": "en",
        "version": 1,
        "votes": 20,
        "lastUpdated": (NOW - timedelta(days=10)).isoformat(),
    },
    {"source": "fake", "id": "p3", "lang": "fr", "version": 5, "votes": 0},
]


def test_source_score_spreads_votes_over_age() -> None:
    assert source_score(SOURCES[1], NOW) == pytest.approx(3.0)
    assert source_score({"version": "2", "votes": 4}, NOW) == 6.0
    assert source_score({"version": "v2"}, NOW) == 0.0


def test_best_source_prefers_languages_in_order() -> None:
    assert choose_best_source(SOURCES, ["de", "en"], now=NOW)["id"] == "p2"
    assert choose_best_source(SOURCES, ["fr"], now=NOW)["id"] == "p3"
    assert choose_best_source(SOURCES, now=NOW)["id"] == "p3"
    assert choose_best_source(SOURCES, ["de"], now=NOW) is None


def test_explicit_source_id_wins() -> None:
    assert choose_best_source(SOURCES, ["fr"], "p1")["id"] == "p1"
    assert choose_best_source(SOURCES, (), "nope") is None


async def _setup(pages: dict | None = None):
    stores = InMemoryStores()
    manga = await stores.entities.create_manga({"slug": "foo"})
    await stores.entities.upsert_chapters(
        manga["id"], [{"id": "ch-1", "number": 1, "metadata": SOURCES[:1]}]
    )
    agents = AgentsManager(FanoutConfig(retry_delay_ms=0))
    agents.register(FakeAgent("fake", pages=pages or {}))
    sink = MemoryPageSink()
    worker = ChapterDownloadWorker(
        agents,
        stores.entities,
        EntityJobService(jobs=stores.jobs, links=stores.entity_jobs, entities=stores.entities),
        sink,
        languages=["en"],
        clock=lambda: NOW,
    )
    return stores, sink, worker


def _job(payload) -> Job:
    return Job({"for": "chapter-download", "payload": payload})


@pytest.mark.asyncio
async def test_download_stores_pages_and_marks_chapter() -> None:
    pages = {"p1": [{"page": 1, "url": "https://x/1.jpg"}, {"page": 2, "url": "https://x/2.jpg"}]}
    stores, sink, worker = await _setup(pages)
    job = _job({"id": "ch-1"})

    result = await worker.process_job(job)

    assert result == {
        "chapterId": "ch-1",
        "source": "fake",
        "pages": 2,
        "location": "memory://ch-1",
    }
    assert sink.stored == [("ch-1", 2)]
    chapter = await stores.entities.get_chapter("ch-1")
    assert chapter is not None and chapter["state"] == CHAPTER_STATE_DOWNLOADED
    links = await stores.entity_jobs.links_for_entity("ch-1", ENTITY_CHAPTER)
    assert [link["job_id"] for link in links] == [job.id]
    assert job.progress == {"value": 100, "msg": "done."}


@pytest.mark.asyncio
async def test_missing_pages_requeue_the_chapter() -> None:
    stores, sink, worker = await _setup()
    job = _job({"id": "ch-1"})

    with pytest.raises(NotFoundError):
        await worker.process_job(job)

    chapter = await stores.entities.get_chapter("ch-1")
    assert chapter is not None and chapter["state"] == CHAPTER_STATE_QUEUED
    assert sink.stored == []
    assert job.progress == {"value": 0, "msg": "failed."}


@pytest.mark.asyncio
async def test_unknown_chapter_fails() -> None:
    _, _, worker = await _setup()

    with pytest.raises(NotFoundError):
        await worker.process_job(_job({"id": "ch-404"}))


@pytest.mark.asyncio
async def test_payload_without_chapter_id_is_invalid() -> None:
    _, _, worker = await _setup()

    with pytest.raises(JobValidationError):
        await worker.process_job(_job({"source": "p1"}))
