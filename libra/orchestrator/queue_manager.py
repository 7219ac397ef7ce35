"""Registry of named queues plus helpers wiring them to schedulers."""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from typing import Any

from libra.config import QueueConfig
from libra.errors import DuplicateNameError, NotFoundError
from libra.logging import get_logger
from libra.orchestrator.job import Job, JobOptions, JobStatus, validate_job_data
from libra.orchestrator.queue import Queue, QueueMode
from libra.orchestrator.scheduler import Scheduler, SchedulerEvent, SchedulerManager
from libra.orchestrator.timer import RetryTimer
from libra.services.stores import JobStore
from libra.workers.base import Worker

logger = get_logger(__name__)

_INTERRUPTED = (JobStatus.PENDING, JobStatus.PROCESSING)
_RESTORABLE = ("backlog", "pending", "processing", "failed")


class QueueManager:
    """Creates, looks up and wires queues.

    Every job built here shares the manager's :class:`RetryTimer` and
    :class:`JobStore`, so retries and write-through behave the same whether a
    job came from a scheduler, ``inject_jobs`` or ``run_immediate_job``.
    """

    def __init__(
        self,
        *,
        scheduler_manager: SchedulerManager | None = None,
        job_store: JobStore | None = None,
        retry_timer: RetryTimer | None = None,
        config: QueueConfig | None = None,
    ) -> None:
        self._config = config or QueueConfig()
        self._scheduler_manager = scheduler_manager or SchedulerManager()
        self._job_store = job_store
        self._retry_timer = retry_timer or RetryTimer()
        self._queues: dict[str, Queue] = {}

    @property
    def scheduler_manager(self) -> SchedulerManager:
        return self._scheduler_manager

    @property
    def retry_timer(self) -> RetryTimer:
        return self._retry_timer

    @property
    def job_defaults(self) -> JobOptions:
        return JobOptions(
            max_retries=self._config.max_retries,
            retry_interval_ms=self._config.retry_interval_ms,
            timeout_ms=self._config.timeout_ms,
        )

    def create_queue(
        self,
        name: str,
        mode: QueueMode = QueueMode.CALLED,
        *,
        workers: Iterable[Worker] = (),
    ) -> Queue:
        if name in self._queues:
            raise DuplicateNameError("queue", name)
        queue = Queue(
            name,
            mode,
            tick_interval_s=self._config.tick_interval_s,
            retry_timer=self._retry_timer,
            shutdown_grace_ms=self._config.shutdown_grace_ms,
        )
        for worker in workers:
            queue.add_worker(worker)
        self._queues[queue.name] = queue
        return queue

    def get_queue(self, name: str) -> Queue:
        queue = self._queues.get(name)
        if queue is None:
            raise NotFoundError("queue", name)
        return queue

    async def remove_queue(self, name: str) -> None:
        queue = self.get_queue(name)
        await queue.stop()
        del self._queues[name]

    def list_queues(self) -> list[str]:
        return list(self._queues)

    def active_job_ids(self) -> set[str]:
        """Ids of jobs a queue still holds in an unfinished lane."""

        finished = (JobStatus.COMPLETED, JobStatus.FAILED)
        return {
            job.id
            for queue in self._queues.values()
            for job in queue.jobs()
            if job.status not in finished
        }

    def build_job(self, data: Mapping[str, Any], *, persist: bool = True) -> Job:
        return Job(
            data,
            store=self._job_store,
            retry_timer=self._retry_timer,
            persist=persist,
            defaults=self.job_defaults,
        )

    async def add_job(
        self, queue_name: str, data: Mapping[str, Any], *, persist: bool = True
    ) -> Job:
        queue = self.get_queue(queue_name)
        job = self.build_job(data, persist=persist)
        await job.initialize()
        await queue.add_job(job)
        return job

    async def run_immediate_job(self, queue_name: str, data: Mapping[str, Any]) -> Any:
        """Validate, persist and run a single job on ``queue_name`` right away."""

        queue = self.get_queue(queue_name)
        job = self.build_job(data)
        await job.initialize()
        return await queue.run_immediate(job)

    async def inject_jobs(
        self, queue_name: str, descriptors: Iterable[Mapping[str, Any]]
    ) -> list[Job]:
        queue = self.get_queue(queue_name)
        jobs = [self.build_job(descriptor) for descriptor in descriptors]
        for job in jobs:
            await job.initialize()
            await queue.add_job(job)
        return jobs

    def setup_queue_with_scheduler(
        self,
        queue_name: str,
        worker: Worker,
        scheduler_name: str,
        cron: str,
        *,
        mode: QueueMode = QueueMode.IMMEDIATE,
    ) -> tuple[Queue, Scheduler]:
        """Create a queue whose scheduler drains pending jobs on every trigger."""

        queue = self.create_queue(queue_name, mode, workers=[worker])
        scheduler = self._scheduler_manager.create_scheduler(scheduler_name, cron)
        scheduler.attach_queue(queue)

        async def _on_trigger(_: Scheduler) -> None:
            await queue.process_queue()

        scheduler.on(SchedulerEvent.TRIGGER, _on_trigger)
        return queue, scheduler

    def setup_queue_with_scheduler_with_job(
        self,
        queue_name: str,
        worker: Worker,
        scheduler_name: str,
        cron: str,
        job_data: Mapping[str, Any],
        *,
        mode: QueueMode = QueueMode.CALLED,
        persist: bool = False,
    ) -> tuple[Queue, Scheduler]:
        """Create a queue whose scheduler submits a fresh job on every trigger."""

        template = {"for": queue_name, **dict(job_data)}
        validate_job_data(template)
        queue = self.create_queue(queue_name, mode, workers=[worker])
        scheduler = self._scheduler_manager.create_scheduler(scheduler_name, cron)
        scheduler.attach_queue(queue)

        async def _on_trigger(_: Scheduler) -> None:
            job = self.build_job(template, persist=persist)
            await job.initialize()
            await queue.add_job(job)
            await queue.tick()
            await queue.process_queue()

        scheduler.on(SchedulerEvent.TRIGGER, _on_trigger)
        return queue, scheduler

    async def restore_jobs(self, queue_name: str) -> int:
        """Reload unfinished jobs of ``queue_name`` from the job store.

        Jobs interrupted while pending or processing go back to the backlog;
        failed jobs with retries left get their recycle scheduled again.
        """

        if self._job_store is None:
            return 0
        queue = self.get_queue(queue_name)
        records = await self._job_store.list_jobs(statuses=_RESTORABLE, queue_name=queue_name)
        restored = 0
        for record in records:
            if queue.get_job(str(record["id"])) is not None:
                continue
            job = Job.from_record(record, store=self._job_store, retry_timer=self._retry_timer)
            if job.status is JobStatus.FAILED and not job.retries_left:
                continue
            if job.status in _INTERRUPTED:
                await job.reset_to_backlog()
            await queue.add_job(job)
            if job.status is JobStatus.FAILED:
                job.schedule_retry()
            restored += 1
        if restored:
            await queue.reconcile_lanes()
            logger.info("Restored %d job(s) on queue %s", restored, queue_name)
        return restored

    def start(self) -> None:
        self._retry_timer.reset()
        for queue in self._queues.values():
            queue.start()

    async def stop(self) -> None:
        for queue in self._queues.values():
            await queue.stop()
        await self._retry_timer.stop()


__all__ = ["QueueManager"]
