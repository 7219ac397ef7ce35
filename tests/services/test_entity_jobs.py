from __future__ import annotations

from datetime import UTC, datetime

import pytest

from libra.services.entity_jobs import EntityJobService
from libra.services.memory_store import InMemoryStores
from libra.services.stores import ENTITY_CHAPTER, ENTITY_MANGA


def _job(job_id: str, status: str, day: int) -> dict:
    moment = datetime(2024, 1, day, tzinfo=UTC)
    return {
        "id": job_id,
        "queue_name": "imports",
        "status": status,
        "payload": {"title": job_id},
        "options": {},
        "retry_count": 0,
        "created_at": moment,
        "updated_at": moment,
    }


@pytest.fixture
def stores() -> InMemoryStores:
    return InMemoryStores()


@pytest.fixture
def service(stores: InMemoryStores) -> EntityJobService:
    return EntityJobService(jobs=stores.jobs, links=stores.entity_jobs, entities=stores.entities)


@pytest.mark.asyncio
async def test_duplicate_link_is_reported_not_raised(service: EntityJobService) -> None:
    first = await service.create_entity_job("m-1", ENTITY_MANGA, "job-1")

    assert first is not None and first["entity_id"] == "m-1"
    assert await service.create_entity_job("m-1", ENTITY_MANGA, "job-1") is None


@pytest.mark.asyncio
async def test_all_jobs_are_listed_newest_first(
    stores: InMemoryStores, service: EntityJobService
) -> None:
    for job_id, day in (("old", 1), ("new", 3), ("mid", 2)):
        await stores.jobs.create(_job(job_id, "completed", day))
        await service.create_entity_job("m-1", ENTITY_MANGA, job_id)

    page = await service.get_all_jobs_with_entity(limit=2)

    assert page["count"] == 3
    assert [row["job"]["id"] for row in page["rows"]] == ["new", "mid"]
    rest = await service.get_all_jobs_with_entity(limit=2, offset=2)
    assert [row["job_id"] for row in rest["rows"]] == ["old"]


@pytest.mark.asyncio
async def test_last_job_for_entity(stores: InMemoryStores, service: EntityJobService) -> None:
    await stores.jobs.create(_job("first", "completed", 1))
    await stores.jobs.create(_job("second", "failed", 2))
    await service.create_entity_job("m-1", ENTITY_MANGA, "first")
    await service.create_entity_job("m-1", ENTITY_MANGA, "second")

    last = await service.get_last_job_with_entity("m-1", ENTITY_MANGA)
    jobs = await service.get_jobs_for_entity("m-1", ENTITY_MANGA)

    assert last is not None and last["id"] == "second"
    assert [row["job"]["status"] for row in jobs] == ["completed", "failed"]
    assert await service.get_last_job_with_entity("m-2", ENTITY_MANGA) is None


@pytest.mark.asyncio
async def test_update_and_delete_single_link(service: EntityJobService) -> None:
    link = await service.create_entity_job("m-1", ENTITY_MANGA, "job-1")
    assert link is not None

    updated = await service.update_entity_job(link["id"], {"job_id": "job-2"})

    assert updated is not None and updated["job_id"] == "job-2"
    assert await service.delete_entity_job(link["id"]) is True
    assert await service.update_entity_job(link["id"], {"job_id": "job-3"}) is None


@pytest.mark.asyncio
async def test_orphan_links_are_removed(stores: InMemoryStores, service: EntityJobService) -> None:
    manga = await stores.entities.create_manga({"slug": "foo"})
    await stores.entities.upsert_chapters(manga["id"], [{"number": 1, "id": "ch-1"}])
    await stores.jobs.create(_job("alive", "completed", 1))

    await service.create_entity_job(manga["id"], ENTITY_MANGA, "alive")
    await service.create_entity_job("ch-1", ENTITY_CHAPTER, "alive")
    await service.create_entity_job(manga["id"], ENTITY_MANGA, None)
    await service.create_entity_job(manga["id"], ENTITY_MANGA, "vanished")
    await service.create_entity_job("gone-manga", ENTITY_MANGA, "alive")
    await service.create_entity_job("gone-chapter", ENTITY_CHAPTER, "alive")

    deleted = await service.delete_orphan_entity_jobs()

    assert deleted == 4
    remaining = await stores.entity_jobs.list_links()
    assert sorted(link["entity_id"] for link in remaining) == sorted([manga["id"], "ch-1"])


@pytest.mark.asyncio
async def test_delete_all_jobs_by_status_keeps_active(
    stores: InMemoryStores, service: EntityJobService
) -> None:
    await stores.jobs.create(_job("done-1", "completed", 1))
    await stores.jobs.create(_job("done-2", "completed", 2))
    await stores.jobs.create(_job("broken", "failed", 3))
    await service.create_entity_job("m-1", ENTITY_MANGA, "done-1")

    deleted = await service.delete_all_jobs("completed", keep=["done-2"])

    assert deleted == 1
    assert await stores.jobs.get("done-1") is None
    assert await stores.jobs.get("done-2") is not None
    assert await stores.entity_jobs.list_links() == []

    assert await service.delete_all_jobs() == 2
    assert await service.delete_all_jobs() == 0


@pytest.mark.asyncio
async def test_delete_all_jobs_since_date(
    stores: InMemoryStores, service: EntityJobService
) -> None:
    await stores.jobs.create(_job("old", "completed", 1))
    await stores.jobs.create(_job("new", "completed", 20))

    deleted = await service.delete_all_jobs(since=datetime(2024, 1, 10, tzinfo=UTC))

    assert deleted == 1
    assert await stores.jobs.get("old") is not None


@pytest.mark.asyncio
async def test_delete_one_job_drops_links(
    stores: InMemoryStores, service: EntityJobService
) -> None:
    await stores.jobs.create(_job("job-1", "completed", 1))
    await service.create_entity_job("m-1", ENTITY_MANGA, "job-1")

    assert await service.delete_one_job("job-1") is True
    assert await stores.entity_jobs.list_links() == []
    assert await service.delete_one_job("job-1") is False
