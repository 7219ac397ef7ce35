"""Worker synchronising reading progress with scrobbler agents."""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING, Any

from libra.integrations.agents_manager import AgentsManager
from libra.logging import get_logger
from libra.workers.base import Worker

if TYPE_CHECKING:
    from libra.orchestrator.job import Job

logger = get_logger(__name__)

SyncFn = Callable[[], Awaitable[Any]]


class ScrobblersWorker(Worker):
    """Runs ``sync``; by default a pull from every active scrobbler agent."""

    def __init__(
        self,
        agents: AgentsManager,
        name: str = "scrobblers",
        *,
        sync: SyncFn | None = None,
    ) -> None:
        super().__init__(name)
        self._agents = agents
        self._sync = sync or self._pull_all

    async def _pull_all(self) -> dict[str, Any]:
        response = await self._agents.scrobbler_pull()
        for source, error in response.errors.items():
            logger.warning("Scrobbler pull from %s failed: %s", source, error)
        entries = {
            result.source: len(result.result or [])
            for result in response.successes
        }
        return {"status": response.status, "entries": entries}

    async def process_job(self, job: Job) -> Any:
        outcome = await self._sync()
        return {"success": True, "sync": outcome}


__all__ = ["ScrobblersWorker"]
