"""Named queue with a lane engine, a worker pool and timeout-raced dispatch."""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import Mapping
from dataclasses import dataclass
from enum import Enum
from time import perf_counter
from typing import Any

from libra.errors import ConfigurationError
from libra.logging import get_logger
from libra.orchestrator.errors import JobTimeoutError, NoAvailableWorkerError
from libra.orchestrator.events import emit_dispatch_event, emit_lane_event
from libra.orchestrator.job import Job, JobStatus
from libra.orchestrator.timer import RetryTimer
from libra.workers.base import Worker

logger = get_logger(__name__)


class QueueMode(str, Enum):
    CALLED = "called"
    IMMEDIATE = "immediate"


BACKLOG = "backlog"
PENDING = "pending"
PROCESSING = "processing"
DELAYED = "delayed"
COMPLETED = "completed"
ERRORS = "errors"

LANES: tuple[str, ...] = (BACKLOG, PENDING, PROCESSING, DELAYED, COMPLETED, ERRORS)

_STATUS_LANE: Mapping[JobStatus, str] = {
    JobStatus.BACKLOG: BACKLOG,
    JobStatus.PENDING: PENDING,
    JobStatus.PROCESSING: PROCESSING,
    JobStatus.DELAYED: DELAYED,
    JobStatus.COMPLETED: COMPLETED,
    JobStatus.FAILED: ERRORS,
}


def lane_for_status(status: JobStatus) -> str:
    return _STATUS_LANE[status]


@dataclass(slots=True, frozen=True)
class QueueStats:
    name: str
    mode: str
    lanes: Mapping[str, int]
    workers: int
    busy_workers: int
    count_jobs: int
    count_errors: int
    count_timeouts: int
    running: bool


class Queue:
    """Six-lane job queue.

    Lanes are projections of each job's status. They may drift between
    ticks (a job fails while sitting in ``processing``); :meth:`reconcile_lanes`
    brings every job back to the lane matching its status.
    """

    def __init__(
        self,
        name: str,
        mode: QueueMode = QueueMode.CALLED,
        *,
        tick_interval_s: float = 5.0,
        retry_timer: RetryTimer | None = None,
        shutdown_grace_ms: int = 2_000,
    ) -> None:
        if not isinstance(name, str) or not name.strip():
            raise ConfigurationError("Queue name is required")
        self.name = name.strip()
        self.mode = QueueMode(mode)
        self._tick_interval = max(0.0, float(tick_interval_s))
        self._shutdown_grace = max(0.0, shutdown_grace_ms / 1000.0)
        self._owns_timer = retry_timer is None
        self._retry_timer = retry_timer or RetryTimer()
        self._lanes: dict[str, list[Job]] = {lane: [] for lane in LANES}
        self._workers: list[Worker] = []
        self._draining = False
        self._tick_lock = asyncio.Lock()
        self._dispatches: set[asyncio.Task[Any]] = set()
        self._orphans: set[asyncio.Task[Any]] = set()
        self._stop_event = asyncio.Event()
        self._task: asyncio.Task[None] | None = None
        self.count_jobs = 0
        self.count_errors = 0
        self.count_timeouts = 0
        self.last_processed_result: Any = None

    # -- workers ---------------------------------------------------------

    @property
    def workers(self) -> tuple[Worker, ...]:
        return tuple(self._workers)

    def add_worker(self, worker: Worker) -> None:
        if any(existing is worker for existing in self._workers):
            return
        self._workers.append(worker)

    def _acquire_worker(self) -> Worker:
        for worker in self._workers:
            if not worker.is_busy:
                worker.set_busy(True)
                return worker
        raise NoAvailableWorkerError(self.name)

    # -- lanes -----------------------------------------------------------

    @property
    def retry_timer(self) -> RetryTimer:
        return self._retry_timer

    @property
    def is_processing(self) -> bool:
        return self._draining

    @property
    def is_running(self) -> bool:
        task = self._task
        return bool(task and not task.done())

    def lane(self, name: str) -> tuple[Job, ...]:
        return tuple(self._lanes[name])

    def lane_sizes(self) -> dict[str, int]:
        return {lane: len(jobs) for lane, jobs in self._lanes.items()}

    def jobs(self) -> list[Job]:
        return [job for lane in LANES for job in self._lanes[lane]]

    def get_job(self, job_id: str) -> Job | None:
        for job in self.jobs():
            if job.id == job_id:
                return job
        return None

    def lane_of(self, job_id: str) -> str | None:
        for lane, jobs in self._lanes.items():
            if any(job.id == job_id for job in jobs):
                return lane
        return None

    async def add_job(self, job: Job) -> None:
        """Append ``job`` to the backlog lane."""

        if self.get_job(job.id) is not None:
            logger.warning("Job %s already belongs to queue %s", job.id, self.name)
            return
        job.bind(retry_timer=self._retry_timer)
        self._lanes[BACKLOG].append(job)
        if self.mode is QueueMode.IMMEDIATE and not self._draining:
            await self.process_queue()

    async def tick(self) -> None:
        """Run one lane-engine cycle: promote at most one job, then reconcile."""

        async with self._tick_lock:
            promoted: str | None = None
            if not self._lanes[PENDING]:
                candidate = next(
                    (job for job in self._lanes[BACKLOG] if job.status is JobStatus.BACKLOG),
                    None,
                )
                if candidate is not None:
                    await candidate.pick_up(self.name)
                    promoted = candidate.id
            moved = await self.reconcile_lanes()
            emit_lane_event(
                logger,
                queue_name=self.name,
                lanes=self.lane_sizes(),
                promoted=promoted,
                moved=moved,
            )
        if self.mode is QueueMode.IMMEDIATE and self._lanes[PENDING] and not self._draining:
            await self.process_queue()

    async def reconcile_lanes(self) -> int:
        """Move every job into the lane matching its status; returns the number moved."""

        moved: list[tuple[Job, str, str]] = []
        for lane in LANES:
            keep: list[Job] = []
            for job in self._lanes[lane]:
                target = lane_for_status(job.status)
                if target == lane:
                    keep.append(job)
                else:
                    moved.append((job, lane, target))
            self._lanes[lane] = keep
        for job, _, target in moved:
            self._lanes[target].append(job)
        for job, origin, _ in moved:
            await job.set_origin(origin)
        return len(moved)

    def get_next_job(self) -> Job | None:
        """Take the oldest pending job and move it to the processing lane."""

        pending = self._lanes[PENDING]
        if not pending:
            return None
        job = min(pending, key=lambda item: item.created_at)
        pending.remove(job)
        self._lanes[PROCESSING].append(job)
        return job

    # -- dispatch --------------------------------------------------------

    async def process_queue(self) -> int:
        """Dispatch pending jobs to free workers; returns the number dispatched."""

        if self._draining:
            return 0
        self._draining = True
        dispatched = 0
        try:
            while self._lanes[PENDING]:
                try:
                    worker = self._acquire_worker()
                except NoAvailableWorkerError as exc:
                    logger.warning("%s", exc.message)
                    break
                job = self.get_next_job()
                if job is None:
                    worker.set_busy(False)
                    break
                task = asyncio.create_task(
                    self._dispatch(job, worker), name=f"dispatch-{self.name}-{job.id}"
                )
                self._dispatches.add(task)
                task.add_done_callback(self._dispatches.discard)
                dispatched += 1
        finally:
            self._draining = False
        return dispatched

    async def join(self) -> None:
        """Wait for every in-flight dispatch to finish."""

        while self._dispatches:
            await asyncio.gather(*list(self._dispatches), return_exceptions=True)

    async def run_immediate(self, job: Job) -> Any:
        """Run ``job`` right away on a free worker and return its result."""

        if self.get_job(job.id) is None:
            job.bind(retry_timer=self._retry_timer)
            self._lanes[BACKLOG].append(job)
        worker = self._acquire_worker()
        try:
            if job.status is JobStatus.BACKLOG:
                await job.pick_up(self.name)
            await self.reconcile_lanes()
            pending = self._lanes[PENDING]
            if job in pending:
                pending.remove(job)
                self._lanes[PROCESSING].append(job)
        except Exception:
            worker.set_busy(False)
            raise
        return await self.assign_job_to_worker(job, worker=worker)

    async def assign_job_to_worker(self, job: Job, worker: Worker | None = None) -> Any:
        """Race ``job`` on a worker against its timeout.

        On timeout the job is marked delayed and :class:`JobTimeoutError` is
        raised; the worker coroutine is left running and its late outcome is
        discarded. Ordinary failures mark the job failed (possibly scheduling a
        retry) and return ``None``.
        """

        if worker is None:
            worker = self._acquire_worker()
        started = perf_counter()
        try:
            await job.start_processing()
            emit_dispatch_event(
                logger, job_id=job.id, queue_name=self.name, status="started", worker=worker.name
            )
            task = asyncio.ensure_future(worker.process_job(job))
            done, _ = await asyncio.wait({task}, timeout=job.timeout_s)
            duration_ms = int((perf_counter() - started) * 1000)
            if not done:
                self.count_timeouts += 1
                self._abandon(job, task)
                await job.delay()
                emit_dispatch_event(
                    logger,
                    job_id=job.id,
                    queue_name=self.name,
                    status="timeout",
                    worker=worker.name,
                    duration_ms=duration_ms,
                )
                raise JobTimeoutError(job.id, job.options.timeout_ms)
            try:
                result = task.result()
            except Exception as exc:
                self.count_errors += 1
                await job.fail(exc)
                emit_dispatch_event(
                    logger,
                    job_id=job.id,
                    queue_name=self.name,
                    status="failed",
                    worker=worker.name,
                    duration_ms=duration_ms,
                    error=str(exc) or exc.__class__.__name__,
                )
                return None
            self.count_jobs += 1
            self.last_processed_result = result
            await job.complete(result)
            emit_dispatch_event(
                logger,
                job_id=job.id,
                queue_name=self.name,
                status="completed",
                worker=worker.name,
                duration_ms=duration_ms,
            )
            return result
        finally:
            worker.set_busy(False)

    async def _dispatch(self, job: Job, worker: Worker) -> None:
        try:
            await self.assign_job_to_worker(job, worker=worker)
        except NoAvailableWorkerError as exc:
            logger.warning("%s", exc.message)
        except JobTimeoutError as exc:
            logger.warning("%s", exc.message)
        except Exception:
            logger.exception("Dispatch of job %s on queue %s failed", job.id, self.name)

    def _abandon(self, job: Job, task: asyncio.Future[Any]) -> None:
        self._orphans.add(task)  # type: ignore[arg-type]

        def _on_done(future: asyncio.Future[Any]) -> None:
            self._orphans.discard(future)  # type: ignore[arg-type]
            if future.cancelled():
                outcome = "cancelled"
            elif future.exception() is not None:
                outcome = "failed"
            else:
                outcome = "completed"
            emit_dispatch_event(
                logger,
                job_id=job.id,
                queue_name=self.name,
                status=f"orphan_{outcome}",
            )

        task.add_done_callback(_on_done)

    # -- lifecycle -------------------------------------------------------

    def start(self) -> bool:
        if self.is_running:
            return False
        if self._owns_timer:
            self._retry_timer.reset()
        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self._run(), name=f"queue-{self.name}")
        return True

    async def stop(self) -> None:
        """Stop ticking. In-flight dispatches keep running."""

        self._stop_event.set()
        task = self._task
        if task is not None:
            try:
                await asyncio.wait_for(asyncio.shield(task), timeout=self._shutdown_grace)
            except TimeoutError:
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task
            finally:
                self._task = None
        if self._owns_timer:
            await self._retry_timer.stop()

    async def _run(self) -> None:
        while not self._stop_event.is_set():
            try:
                await self.tick()
            except Exception:
                logger.exception("Tick of queue %s failed", self.name)
            if self._stop_event.is_set():
                break
            await self._sleep_until_next()

    async def _sleep_until_next(self) -> None:
        if self._tick_interval <= 0:
            await asyncio.sleep(0)
            return
        with contextlib.suppress(TimeoutError):
            await asyncio.wait_for(self._stop_event.wait(), timeout=self._tick_interval)

    def stats(self) -> QueueStats:
        return QueueStats(
            name=self.name,
            mode=self.mode.value,
            lanes=self.lane_sizes(),
            workers=len(self._workers),
            busy_workers=sum(1 for worker in self._workers if worker.is_busy),
            count_jobs=self.count_jobs,
            count_errors=self.count_errors,
            count_timeouts=self.count_timeouts,
            running=self.is_running,
        )


__all__ = [
    "LANES",
    "BACKLOG",
    "PENDING",
    "PROCESSING",
    "DELAYED",
    "COMPLETED",
    "ERRORS",
    "QueueMode",
    "QueueStats",
    "Queue",
    "lane_for_status",
]
