"""Per-agent concurrency and spacing limiter."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
import time
from typing import Any, TypeVar

T = TypeVar("T")


class AgentRateLimiter:
    """Bound concurrent calls and space call starts by ``min_interval_ms``.

    ``max_concurrent=None`` disables the concurrency bound. Spacing is
    measured between call *starts*, so a slow provider call does not delay the
    next slot beyond the configured interval.
    """

    def __init__(
        self,
        max_concurrent: int | None = None,
        min_interval_ms: int = 0,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] | None = None,
    ) -> None:
        self.max_concurrent = max_concurrent if max_concurrent and max_concurrent > 0 else None
        self.min_interval_ms = max(0, int(min_interval_ms))
        self._semaphore = (
            asyncio.Semaphore(self.max_concurrent) if self.max_concurrent is not None else None
        )
        self._lock = asyncio.Lock()
        self._next_slot = 0.0
        self._clock = clock
        self._sleep = sleep or asyncio.sleep
        self._active = 0

    @property
    def active(self) -> int:
        return self._active

    async def schedule(self, fn: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any) -> T:
        if self._semaphore is None:
            return await self._run(fn, *args, **kwargs)
        async with self._semaphore:
            return await self._run(fn, *args, **kwargs)

    async def _run(self, fn: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any) -> T:
        await self._wait_for_slot()
        self._active += 1
        try:
            return await fn(*args, **kwargs)
        finally:
            self._active -= 1

    async def _wait_for_slot(self) -> None:
        if self.min_interval_ms <= 0:
            return
        interval = self.min_interval_ms / 1000.0
        async with self._lock:
            now = self._clock()
            start = max(now, self._next_slot)
            self._next_slot = start + interval
        delay = start - now
        if delay > 0:
            await self._sleep(delay)


__all__ = ["AgentRateLimiter"]
