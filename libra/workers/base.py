"""Worker base class used by every queue."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any

from libra.errors import ConfigurationError

if TYPE_CHECKING:
    from libra.orchestrator.job import Job


class Worker(ABC):
    """A named executor that processes one job at a time."""

    def __init__(self, name: str) -> None:
        if not isinstance(name, str) or not name.strip():
            raise ConfigurationError("Worker name is required")
        self.name = name.strip()
        self._busy = False

    @property
    def is_busy(self) -> bool:
        return self._busy

    def set_busy(self, busy: bool = True) -> None:
        self._busy = busy

    @abstractmethod
    async def process_job(self, job: Job) -> Any:
        """Execute ``job`` and return its result."""

    def __repr__(self) -> str:  # pragma: no cover - debugging helper
        return f"{self.__class__.__name__}(name={self.name!r}, busy={self._busy})"


__all__ = ["Worker"]
