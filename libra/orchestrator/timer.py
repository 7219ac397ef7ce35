"""Delayed re-submission of failed jobs."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
import contextlib

from libra.logging import get_logger
from libra.orchestrator.events import emit_timer_event

logger = get_logger(__name__)

SleepFn = Callable[[float], Awaitable[None]]
RetryCallback = Callable[[], Awaitable[None]]


class RetryTimer:
    """Track deferred callbacks keyed by job id.

    Scheduling the same key again replaces the earlier callback. ``stop``
    cancels everything still waiting; callbacks that already started are
    allowed to finish.
    """

    def __init__(self, *, sleep: SleepFn | None = None) -> None:
        self._sleep = sleep or asyncio.sleep
        self._tasks: dict[str, asyncio.Task[None]] = {}
        self._running: set[str] = set()
        self._stopped = False

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def is_scheduled(self, key: str) -> bool:
        return key in self._tasks

    def schedule(self, key: str, delay_ms: int, callback: RetryCallback) -> asyncio.Task[None]:
        if self._stopped:
            raise RuntimeError("RetryTimer has been stopped")
        existing = self._tasks.pop(key, None)
        if existing is not None and key not in self._running:
            existing.cancel()
        delay_ms = max(0, int(delay_ms))
        task = asyncio.create_task(self._run(key, delay_ms, callback), name=f"retry-{key}")
        self._tasks[key] = task
        emit_timer_event(logger, job_id=key, status="scheduled", delay_ms=delay_ms)
        return task

    async def join(self) -> None:
        """Wait until every scheduled callback has run."""

        while self._tasks:
            await asyncio.gather(*list(self._tasks.values()), return_exceptions=True)

    async def stop(self) -> None:
        self._stopped = True
        tasks = [task for key, task in self._tasks.items() if key not in self._running]
        for task in tasks:
            task.cancel()
        for task in tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        await self.join()

    def reset(self) -> None:
        self._stopped = False

    async def _run(self, key: str, delay_ms: int, callback: RetryCallback) -> None:
        current = asyncio.current_task()
        try:
            await self._sleep(delay_ms / 1000.0)
            self._running.add(key)
            try:
                await callback()
            except Exception as exc:
                logger.exception("Retry callback for %s failed", key)
                emit_timer_event(logger, job_id=key, status="failed", error=str(exc))
            else:
                emit_timer_event(logger, job_id=key, status="fired")
        except asyncio.CancelledError:
            emit_timer_event(logger, job_id=key, status="cancelled")
            raise
        finally:
            self._running.discard(key)
            if self._tasks.get(key) is current:
                del self._tasks[key]


__all__ = ["RetryTimer"]
