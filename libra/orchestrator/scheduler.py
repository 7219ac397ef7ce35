"""Cron-driven schedulers that trigger queue draining or job creation."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
import contextlib
from datetime import datetime
from enum import Enum
import inspect
from typing import TYPE_CHECKING, Any

from croniter import croniter

from libra.errors import ConfigurationError, DuplicateNameError, NotFoundError
from libra.logging import get_logger
from libra.orchestrator.events import emit_scheduler_event
from libra.utils.time import ensure_utc, now_utc

if TYPE_CHECKING:
    from libra.orchestrator.queue import Queue

logger = get_logger(__name__)

Listener = Callable[..., Awaitable[None] | None]


class SchedulerEvent(str, Enum):
    TRIGGER = "trigger"
    STARTED = "started"
    STOPPED = "stopped"
    DESTROYED = "destroyed"
    ERROR = "error"


def _field_count(pattern: str) -> int:
    return len(pattern.split())


def validate_cron(pattern: str) -> bool:
    """Return ``True`` when ``pattern`` has seconds first (six fields).

    Raises :class:`ConfigurationError` for anything croniter rejects.
    """

    if not isinstance(pattern, str) or not pattern.strip():
        raise ConfigurationError("Cron pattern is required")
    fields = _field_count(pattern)
    if fields not in (5, 6):
        raise ConfigurationError(f"Invalid cron pattern '{pattern}'", meta={"pattern": pattern})
    seconds_first = fields == 6
    try:
        croniter(pattern, now_utc(), second_at_beginning=seconds_first)
    except (ValueError, KeyError) as exc:
        raise ConfigurationError(
            f"Invalid cron pattern '{pattern}'", meta={"pattern": pattern}
        ) from exc
    return seconds_first


class Scheduler:
    """Fires ``trigger`` listeners on every cron match until stopped."""

    def __init__(
        self,
        name: str,
        cron_pattern: str,
        *,
        clock: Callable[[], datetime] = now_utc,
        shutdown_grace_ms: int = 2_000,
    ) -> None:
        if not isinstance(name, str) or not name.strip():
            raise ConfigurationError("Scheduler name is required")
        self._shutdown_grace = max(0.0, shutdown_grace_ms / 1000.0)
        self.name = name.strip()
        self.cron_pattern = cron_pattern.strip() if isinstance(cron_pattern, str) else cron_pattern
        self._seconds_first = validate_cron(self.cron_pattern)
        self._clock = clock
        self._listeners: dict[SchedulerEvent, list[Listener]] = {
            event: [] for event in SchedulerEvent
        }
        self._queues: list[Queue] = []
        self._last_run: datetime | None = None
        self._stop_event = asyncio.Event()
        self._task: asyncio.Task[None] | None = None
        self._destroyed = False

    @property
    def queues(self) -> tuple[Queue, ...]:
        return tuple(self._queues)

    @property
    def is_running(self) -> bool:
        task = self._task
        return bool(task and not task.done())

    def on(self, event: SchedulerEvent | str, callback: Listener) -> None:
        self._listeners[SchedulerEvent(event)].append(callback)

    def attach_queue(self, queue: Queue) -> None:
        if queue not in self._queues:
            self._queues.append(queue)

    def get_last_run(self) -> datetime | None:
        return self._last_run

    def get_next_run(self, after: datetime | None = None) -> datetime:
        base = ensure_utc(after or self._clock())
        return croniter(
            self.cron_pattern, base, second_at_beginning=self._seconds_first
        ).get_next(datetime)

    def start(self) -> bool:
        if self._destroyed:
            raise ConfigurationError(f"Scheduler '{self.name}' has been destroyed")
        if self.is_running:
            return False
        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self._run(), name=f"scheduler-{self.name}")
        emit_scheduler_event(
            logger, scheduler=self.name, status="started", next_run=self.get_next_run()
        )
        self._notify_sync(SchedulerEvent.STARTED)
        return True

    async def stop(self) -> None:
        """Disarm the timer. Jobs already in flight are left alone."""

        was_running = self.is_running
        self._stop_event.set()
        task = self._task
        self._task = None
        if task is not None:
            try:
                await asyncio.wait_for(asyncio.shield(task), timeout=self._shutdown_grace)
            except TimeoutError:
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task
        if was_running:
            emit_scheduler_event(logger, scheduler=self.name, status="stopped")
            await self._emit(SchedulerEvent.STOPPED)

    async def destroy(self) -> None:
        await self.stop()
        self._destroyed = True
        emit_scheduler_event(logger, scheduler=self.name, status="destroyed")
        await self._emit(SchedulerEvent.DESTROYED)
        for listeners in self._listeners.values():
            listeners.clear()
        self._queues.clear()

    async def fire(self) -> None:
        """Run one trigger immediately."""

        self._last_run = self._clock()
        emit_scheduler_event(logger, scheduler=self.name, status="trigger")
        await self._emit(SchedulerEvent.TRIGGER, self)

    async def _run(self) -> None:
        next_run = self.get_next_run()
        while not self._stop_event.is_set():
            delay = max(0.0, (next_run - ensure_utc(self._clock())).total_seconds())
            with contextlib.suppress(TimeoutError):
                await asyncio.wait_for(self._stop_event.wait(), timeout=delay)
            if self._stop_event.is_set():
                break
            await self.fire()
            # an early wakeup must not fire the same boundary again
            next_run = self.get_next_run(after=max(next_run, ensure_utc(self._clock())))

    async def _emit(self, event: SchedulerEvent, *args: Any) -> None:
        for callback in list(self._listeners[event]):
            try:
                outcome = callback(*args)
                if inspect.isawaitable(outcome):
                    await outcome
            except Exception as exc:
                logger.exception("Scheduler %s listener for %s failed", self.name, event.value)
                emit_scheduler_event(logger, scheduler=self.name, status="error", error=str(exc))
                if event is not SchedulerEvent.ERROR:
                    await self._emit(SchedulerEvent.ERROR, exc)

    def _notify_sync(self, event: SchedulerEvent) -> None:
        for callback in list(self._listeners[event]):
            try:
                outcome = callback()
            except Exception:
                logger.exception("Scheduler %s listener for %s failed", self.name, event.value)
                continue
            if inspect.isawaitable(outcome):
                asyncio.ensure_future(outcome)


class SchedulerManager:
    """Registry of named schedulers."""

    def __init__(self) -> None:
        self._schedulers: dict[str, Scheduler] = {}

    def create_scheduler(self, name: str, cron_pattern: str, **kwargs: Any) -> Scheduler:
        if name in self._schedulers:
            raise DuplicateNameError("scheduler", name)
        scheduler = Scheduler(name, cron_pattern, **kwargs)
        self._schedulers[scheduler.name] = scheduler
        return scheduler

    def get_scheduler(self, name: str) -> Scheduler:
        scheduler = self._schedulers.get(name)
        if scheduler is None:
            raise NotFoundError("scheduler", name)
        return scheduler

    async def remove_scheduler(self, name: str) -> None:
        scheduler = self.get_scheduler(name)
        await scheduler.destroy()
        del self._schedulers[name]

    def start_scheduler(self, name: str) -> bool:
        return self.get_scheduler(name).start()

    async def stop_scheduler(self, name: str) -> None:
        await self.get_scheduler(name).stop()

    def list_schedulers(self) -> list[str]:
        return list(self._schedulers)

    def start_all(self) -> None:
        for scheduler in self._schedulers.values():
            scheduler.start()

    async def stop_all(self) -> None:
        for scheduler in self._schedulers.values():
            await scheduler.stop()


__all__ = [
    "SchedulerEvent",
    "Scheduler",
    "SchedulerManager",
    "validate_cron",
]
