from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest

from libra.db import init_db
from libra.errors import NotFoundError
from libra.services.memory_store import InMemoryStores
from libra.services.sql_store import SqlStores
from libra.services.stores import (
    CHAPTER_STATE_DOWNLOADING,
    CHAPTER_STATE_IDLE,
    ENTITY_CHAPTER,
    ENTITY_MANGA,
    DuplicateEntityJobError,
)


@pytest.fixture(params=["memory", "sql"])
def stores(request):
    if request.param == "sql":
        init_db()
        return SqlStores()
    return InMemoryStores()


def _job(job_id: str, status: str = "backlog", *, queue_name: str = "imports") -> dict:
    moment = datetime(2024, 1, 1, tzinfo=UTC)
    return {
        "id": job_id,
        "queue_name": queue_name,
        "status": status,
        "payload": {"title": job_id},
        "options": {"max_retries": 1},
        "retry_count": 0,
        "created_at": moment,
        "updated_at": moment,
    }


@pytest.mark.asyncio
async def test_job_records_round_trip(stores) -> None:
    await stores.jobs.create(_job("a"))
    await stores.jobs.update("a", {"status": "completed", "result": {"ok": True}})

    record = await stores.jobs.get("a")

    assert record is not None
    assert record["status"] == "completed"
    assert record["result"] == {"ok": True}
    assert record["payload"] == {"title": "a"}
    assert record["created_at"].tzinfo is not None
    with pytest.raises(NotFoundError):
        await stores.jobs.update("missing", {"status": "failed"})


@pytest.mark.asyncio
async def test_list_jobs_filters_by_status_and_queue(stores) -> None:
    await stores.jobs.create(_job("a", "backlog"))
    await stores.jobs.create(_job("b", "failed"))
    await stores.jobs.create(_job("c", "failed", queue_name="downloads"))

    failed = await stores.jobs.list_jobs(statuses=["failed"])
    imports = await stores.jobs.list_jobs(queue_name="imports")

    assert sorted(record["id"] for record in failed) == ["b", "c"]
    assert sorted(record["id"] for record in imports) == ["a", "b"]
    assert await stores.jobs.delete("a") is True
    assert await stores.jobs.delete("a") is False


@pytest.mark.asyncio
async def test_manga_lookup_by_slug_and_year(stores) -> None:
    created = await stores.entities.create_manga(
        {"slug": "foo", "startYear": 2001, "canonicalTitle": "Foo"}, monitored=True
    )

    found = await stores.entities.find_manga("foo", 2001)

    assert found is not None and found["id"] == created["id"]
    assert found["monitored"] is True
    assert found["canonicalTitle"] == "Foo"
    assert await stores.entities.find_manga("foo", 2002) is None
    assert await stores.entities.find_manga("foo", None) is None


@pytest.mark.asyncio
async def test_update_manga_keeps_id_and_stores_body(stores) -> None:
    created = await stores.entities.create_manga({"slug": "foo", "startYear": None})

    updated = await stores.entities.update_manga(
        created["id"], {"id": "other", "genres": ["Action"], "monitored": True}
    )

    assert updated["id"] == created["id"]
    assert updated["genres"] == ["Action"]
    assert updated["monitored"] is True
    with pytest.raises(NotFoundError):
        await stores.entities.update_manga("missing", {"genres": []})


@pytest.mark.asyncio
async def test_list_mangas_only_monitored(stores) -> None:
    await stores.entities.create_manga({"slug": "a"}, monitored=True)
    await stores.entities.create_manga({"slug": "b"})

    monitored = await stores.entities.list_mangas(monitored_only=True)

    assert [manga["slug"] for manga in monitored] == ["a"]
    assert len(await stores.entities.list_mangas()) == 2


@pytest.mark.asyncio
async def test_chapter_upsert_is_keyed_by_number(stores) -> None:
    manga = await stores.entities.create_manga({"slug": "foo"})
    manga_id = manga["id"]

    await stores.entities.upsert_chapters(
        manga_id, [{"number": 2, "title": "Two"}, {"number": 1, "title": "One"}]
    )
    [first, second] = await stores.entities.list_chapters(manga_id)
    await stores.entities.set_chapter_state(first["id"], CHAPTER_STATE_DOWNLOADING)
    await stores.entities.upsert_chapters(manga_id, [{"number": 1.0, "title": "One (v2)"}])

    chapters = await stores.entities.list_chapters(manga_id)

    assert [chapter["number"] for chapter in chapters] == [1.0, 2.0]
    assert chapters[0]["id"] == first["id"]
    assert chapters[0]["title"] == "One (v2)"
    assert chapters[0]["state"] == CHAPTER_STATE_DOWNLOADING
    assert chapters[1]["state"] == CHAPTER_STATE_IDLE
    fetched = await stores.entities.get_chapter(second["id"])
    assert fetched is not None and fetched["title"] == "Two"


@pytest.mark.asyncio
async def test_reset_stale_chapters(stores) -> None:
    manga = await stores.entities.create_manga({"slug": "foo"})
    await stores.entities.upsert_chapters(manga["id"], [{"number": 1}, {"number": 2}])
    [first, _] = await stores.entities.list_chapters(manga["id"])
    await stores.entities.set_chapter_state(first["id"], CHAPTER_STATE_DOWNLOADING)

    future = datetime.now(UTC) + timedelta(hours=1)
    past = datetime.now(UTC) - timedelta(hours=1)

    assert await stores.entities.reset_stale_chapters([CHAPTER_STATE_DOWNLOADING], past) == 0
    assert await stores.entities.reset_stale_chapters([CHAPTER_STATE_DOWNLOADING], future) == 1
    chapter = await stores.entities.get_chapter(first["id"])
    assert chapter is not None and chapter["state"] == CHAPTER_STATE_IDLE


@pytest.mark.asyncio
async def test_existing_ids_per_entity_type(stores) -> None:
    manga = await stores.entities.create_manga({"slug": "foo"})
    await stores.entities.upsert_chapters(manga["id"], [{"number": 1, "id": "ch-1"}])

    assert await stores.entities.existing_ids(ENTITY_MANGA, [manga["id"], "gone"]) == {
        manga["id"]
    }
    assert await stores.entities.existing_ids(ENTITY_CHAPTER, ["ch-1", "ch-2"]) == {"ch-1"}
    assert await stores.entities.existing_ids("volume", ["ch-1"]) == set()


@pytest.mark.asyncio
async def test_delete_manga_drops_its_chapters(stores) -> None:
    manga = await stores.entities.create_manga({"slug": "foo"})
    await stores.entities.upsert_chapters(manga["id"], [{"number": 1}])

    assert await stores.entities.delete_manga(manga["id"]) is True
    assert await stores.entities.list_chapters(manga["id"]) == []
    assert await stores.entities.delete_manga(manga["id"]) is False


@pytest.mark.asyncio
async def test_read_statuses_and_progress(stores) -> None:
    manga = await stores.entities.create_manga({"slug": "foo"})
    await stores.entities.upsert_chapters(manga["id"], [{"number": 1, "pages": 12}])
    [chapter] = await stores.entities.list_chapters(manga["id"])

    await stores.entities.record_read_status("foo", 1, 4)
    await stores.entities.record_read_status("foo", 1.5, 9)
    statuses = await stores.entities.list_read_statuses()

    assert [(s["mangaSlug"], s["chapterNumber"], s["pageNumber"]) for s in statuses] == [
        ("foo", 1.0, 4),
        ("foo", 1.5, 9),
    ]
    assert await stores.entities.set_read_progress(ENTITY_CHAPTER, chapter["id"], 33) is True
    assert await stores.entities.set_read_progress(ENTITY_MANGA, manga["id"], 33) is True
    assert await stores.entities.set_read_progress(ENTITY_MANGA, "gone", 10) is False
    assert await stores.entities.set_read_progress("volume", manga["id"], 10) is False
    stored = await stores.entities.get_manga(manga["id"])
    assert stored["readProgress"] == 33
    assert stored["updatedAt"] == manga["updatedAt"]
    [chapter] = await stores.entities.list_chapters(manga["id"])
    assert chapter["readProgress"] == 33
    assert chapter["pages"] == 12


@pytest.mark.asyncio
async def test_entity_job_links_are_unique(stores) -> None:
    link = await stores.entity_jobs.link("m-1", ENTITY_MANGA, "job-1")

    with pytest.raises(DuplicateEntityJobError):
        await stores.entity_jobs.link("m-1", ENTITY_MANGA, "job-1")

    other = await stores.entity_jobs.link("m-1", ENTITY_MANGA, "job-2")
    assert other["id"] != link["id"]
    assert [row["job_id"] for row in await stores.entity_jobs.links_for_entity("m-1")] == [
        "job-1",
        "job-2",
    ]
    assert await stores.entity_jobs.delete_links_for_jobs(["job-1"]) == 1
    assert await stores.entity_jobs.get_link(link["id"]) is None


@pytest.mark.asyncio
async def test_cache_upsert_replaces_value(stores) -> None:
    await stores.cache.upsert("kitsu", "lookup", "k", {"v": 1}, 60)
    await stores.cache.upsert("kitsu", "lookup", "k", {"v": 2}, 30)

    entry = await stores.cache.get("kitsu", "lookup", "k")

    assert entry is not None
    assert entry["value"] == {"v": 2}
    assert entry["ttl"] == 30
    assert entry["updated_at"].tzinfo is not None
    assert await stores.cache.get("mangadex", "lookup", "k") is None


@pytest.mark.asyncio
async def test_memory_job_store_filters_by_creation_date() -> None:
    stores = InMemoryStores()
    old = _job("old")
    new = _job("new")
    new["created_at"] = datetime(2024, 6, 1, tzinfo=UTC)
    await stores.jobs.create(old)
    await stores.jobs.create(new)

    recent = await stores.jobs.list_jobs(since=datetime(2024, 3, 1, tzinfo=UTC))

    assert [record["id"] for record in recent] == ["new"]
