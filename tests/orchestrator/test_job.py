from __future__ import annotations

import asyncio
from datetime import UTC, datetime

import pytest

from libra.errors import JobValidationError
from libra.orchestrator.job import (
    TIMEOUT_MESSAGE,
    Job,
    JobOptions,
    JobStateError,
    JobStatus,
    validate_job_data,
)
from libra.orchestrator.timer import RetryTimer
from libra.services.memory_store import InMemoryJobStore


def _job(**overrides) -> Job:
    data = {"for": "importQueue", "payload": {"title": "Foo"}}
    data.update(overrides.pop("data", {}))
    return Job(data, **overrides)


@pytest.mark.parametrize(
    "data",
    [
        None,
        "not-a-mapping",
        {"payload": {"title": "Foo"}},
        {"for": 12, "payload": {"title": "Foo"}},
        {"for": "   ", "payload": {"title": "Foo"}},
        {"for": "importQueue"},
        {"for": "importQueue", "payload": None},
        {"for": "importQueue", "payload": {}},
        {"for": "importQueue", "payload": ""},
    ],
)
def test_invalid_descriptors_fail_fast(data) -> None:
    with pytest.raises(JobValidationError):
        validate_job_data(data)


def test_descriptor_accepts_entity_id_and_options() -> None:
    descriptor = validate_job_data(
        {"for": " importQueue ", "payload": [1], "entityId": 42, "options": {"timeout": 10}}
    )

    assert descriptor.for_ == "importQueue"
    assert descriptor.entity_id == "42"
    assert descriptor.options == {"timeout": 10}


def test_job_options_accept_camel_and_snake_case() -> None:
    options = JobOptions.from_mapping({"maxRetries": 2, "retry_interval_ms": 100, "timeout": 50})

    assert options == JobOptions(max_retries=2, retry_interval_ms=100, timeout_ms=50)


def test_job_options_fall_back_to_defaults() -> None:
    defaults = JobOptions(max_retries=7, retry_interval_ms=1, timeout_ms=2)

    assert JobOptions.from_mapping({}, defaults=defaults) == defaults
    assert JobOptions.from_mapping({"maxRetries": None}, defaults=defaults).max_retries == 7


def test_job_options_reject_non_integer_values() -> None:
    with pytest.raises(JobValidationError):
        JobOptions.from_mapping({"timeout": "soon"})


def test_new_job_starts_in_backlog() -> None:
    job = _job()

    assert job.status is JobStatus.BACKLOG
    assert job.retry_count == 0
    assert job.queue_name == "importQueue"
    assert job.created_at.tzinfo is not None


@pytest.mark.asyncio
async def test_lifecycle_writes_through_to_store() -> None:
    store = InMemoryJobStore()
    job = _job(store=store)

    await job.initialize()
    await job.pick_up("importQueue")
    await job.start_processing()
    await job.report_progress({"value": 50})
    await job.complete({"ok": True})

    record = await store.get(job.id)
    assert record is not None
    assert record["status"] == "completed"
    assert record["progress"] == {"value": 50}
    assert record["result"] == {"ok": True}
    assert isinstance(record["finished_at"], datetime)


@pytest.mark.asyncio
async def test_non_persistent_job_never_touches_store() -> None:
    store = InMemoryJobStore()
    job = _job(store=store, persist=False)

    await job.initialize()
    await job.pick_up("importQueue")

    assert store.records == {}


@pytest.mark.asyncio
async def test_illegal_transition_is_rejected() -> None:
    job = _job()

    with pytest.raises(JobStateError):
        await job.complete("too early")

    assert job.status is JobStatus.BACKLOG


@pytest.mark.asyncio
async def test_failure_with_retries_left_recycles_to_backlog() -> None:
    timer = RetryTimer()
    job = _job(data={"options": {"maxRetries": 2, "retryInterval": 0}}, retry_timer=timer)
    await job.pick_up("importQueue")
    await job.start_processing()

    scheduled = await job.fail(RuntimeError("boom"))
    assert scheduled is True
    assert job.status is JobStatus.FAILED
    assert job.error == {"message": "boom"}

    await timer.join()

    assert job.status is JobStatus.BACKLOG
    assert job.retry_count == 1


@pytest.mark.asyncio
async def test_exhausted_job_stays_failed() -> None:
    timer = RetryTimer()
    job = _job(data={"options": {"maxRetries": 0}}, retry_timer=timer)
    await job.pick_up("importQueue")
    await job.start_processing()

    assert await job.fail("nope") is False
    assert timer.pending == 0
    assert job.status is JobStatus.FAILED


@pytest.mark.asyncio
async def test_delay_marks_timeout_without_touching_retry_count() -> None:
    job = _job()
    await job.pick_up("importQueue")
    await job.start_processing()

    await job.delay()

    assert job.status is JobStatus.DELAYED
    assert job.retry_count == 0
    assert job.error == {"message": TIMEOUT_MESSAGE}


@pytest.mark.asyncio
async def test_failed_job_without_timer_does_not_retry() -> None:
    job = _job(data={"options": {"maxRetries": 3}})
    await job.pick_up("importQueue")
    await job.start_processing()

    assert await job.fail(ValueError()) is False
    assert job.error == {"message": "ValueError"}


@pytest.mark.asyncio
async def test_from_record_restores_snapshot() -> None:
    store = InMemoryJobStore()
    original = _job(data={"entityId": "m-1", "options": {"maxRetries": 1}}, store=store)
    await original.initialize()
    await original.pick_up("importQueue")

    record = await store.get(original.id)
    assert record is not None
    restored = Job.from_record(record, store=store)

    assert restored.id == original.id
    assert restored.status is JobStatus.PENDING
    assert restored.entity_id == "m-1"
    assert restored.options.max_retries == 1
    assert restored.created_at == original.created_at


@pytest.mark.asyncio
async def test_store_failures_propagate() -> None:
    class BrokenStore(InMemoryJobStore):
        async def update(self, job_id, changes):
            raise RuntimeError("disk full")

    job = _job(store=BrokenStore())
    await job.initialize()

    with pytest.raises(RuntimeError):
        await job.pick_up("importQueue")
    assert job.status is JobStatus.BACKLOG


def test_clock_is_injectable() -> None:
    moment = datetime(2024, 5, 1, tzinfo=UTC)
    job = _job(clock=lambda: moment)

    assert job.created_at == moment
    assert job.updated_at == moment


@pytest.mark.asyncio
async def test_progress_is_reported_while_processing() -> None:
    job = _job()
    await job.pick_up("importQueue")
    await job.start_processing()

    await asyncio.gather(job.report_progress(1), job.report_progress(2))

    assert job.progress == 2
    assert job.status is JobStatus.PROCESSING
