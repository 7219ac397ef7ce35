"""Contracts shared by agents and the fan-out orchestrator."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from enum import Flag, auto
from typing import Any


class AgentCapability(Flag):
    """What an agent can be asked to do."""

    NONE = 0
    MANGA_CROSS_LOOKUP = auto()
    MANGA_METADATA_FETCH = auto()
    CHAPTER_FETCH = auto()
    MANGA_BASIC_RECOMMENDATIONS = auto()
    MANGA_ADVANCED_RECOMMENDATIONS = auto()
    OPT_AUTH = auto()
    SCROBBLER = auto()

    def names(self) -> list[str]:
        return [member.name for member in AgentCapability if member and member in self]


class AgentError(RuntimeError):
    """Base class for agent level failures."""

    def __init__(
        self,
        agent: str,
        message: str,
        *,
        status_code: int | None = None,
        cause: Exception | None = None,
    ) -> None:
        super().__init__(message)
        self.agent = agent
        self.status_code = status_code
        self.cause = cause


class AgentTimeoutError(AgentError):
    def __init__(self, agent: str, timeout_ms: int, *, cause: Exception | None = None) -> None:
        super().__init__(agent, f"{agent} timed out after {timeout_ms}ms", cause=cause)
        self.timeout_ms = timeout_ms


class AgentRateLimitedError(AgentError):
    def __init__(
        self,
        agent: str,
        *,
        retry_after_ms: int | None = None,
        status_code: int | None = 429,
        cause: Exception | None = None,
    ) -> None:
        super().__init__(
            agent, f"{agent} rate limited the request", status_code=status_code, cause=cause
        )
        self.retry_after_ms = retry_after_ms


class AgentNotFoundError(AgentError):
    """The provider does not know the requested resource. Never retried."""

    def __init__(
        self, agent: str, *, status_code: int | None = 404, cause: Exception | None = None
    ) -> None:
        super().__init__(
            agent, f"{agent} returned no results", status_code=status_code, cause=cause
        )


class AgentValidationError(AgentError):
    """The provider rejected the request or answered with a malformed payload."""

    def __init__(
        self,
        agent: str,
        message: str | None = None,
        *,
        status_code: int | None = None,
        cause: Exception | None = None,
    ) -> None:
        super().__init__(
            agent,
            message or f"{agent} rejected the request",
            status_code=status_code,
            cause=cause,
        )


class AgentDependencyError(AgentError):
    def __init__(
        self, agent: str, *, status_code: int | None = None, cause: Exception | None = None
    ) -> None:
        super().__init__(
            agent, f"{agent} dependency failure", status_code=status_code, cause=cause
        )


class AgentInternalError(AgentError):
    pass


def is_transient(error: BaseException) -> bool:
    """Return ``True`` for failures that may succeed when retried later."""

    return isinstance(
        error,
        (AgentTimeoutError, AgentRateLimitedError, AgentDependencyError, TimeoutError),
    )


def normalise_error(agent: str, error: Exception) -> AgentError:
    if isinstance(error, AgentError):
        return error
    if isinstance(error, TimeoutError):
        return AgentTimeoutError(agent, 0, cause=error)
    return AgentInternalError(agent, str(error) or error.__class__.__name__, cause=error)


@dataclass(slots=True, frozen=True)
class AgentResult:
    """One agent's contribution to a fan-out call."""

    source: str
    result: Any
    error: AgentError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass(slots=True, frozen=True)
class AgentFanoutResponse:
    """Aggregated outcome of a fan-out call across several agents."""

    results: tuple[AgentResult, ...]
    skipped: tuple[str, ...] = ()

    @property
    def successes(self) -> tuple[AgentResult, ...]:
        return tuple(result for result in self.results if result.ok)

    @property
    def errors(self) -> Mapping[str, AgentError]:
        failures: dict[str, AgentError] = {}
        for result in self.results:
            if result.error is not None:
                failures[result.source] = result.error
        return failures

    @property
    def status(self) -> str:
        if not self.results:
            return "ok"
        successes = sum(1 for result in self.results if result.ok)
        if successes == len(self.results):
            return "ok"
        if successes == 0:
            return "failed"
        return "partial"

    def values(self) -> list[Any]:
        """Return the non-empty payloads of successful agents."""

        return [result.result for result in self.successes if result.result not in (None, [], {})]


@dataclass(slots=True, frozen=True)
class AgentSchemas:
    """Field-mapping schemas an agent declares per entity type."""

    lookup: Mapping[str, Any] | None = None
    manga: Mapping[str, Any] | None = None
    chapter: Mapping[str, Any] | None = None
    character: Mapping[str, Any] | None = None
    page: Mapping[str, Any] | None = None
    recommendation: Mapping[str, Any] | None = None
    scrobbler: Mapping[str, Any] | None = None

    def items(self) -> list[tuple[str, Mapping[str, Any]]]:
        pairs: list[tuple[str, Mapping[str, Any]]] = []
        for name in (
            "lookup",
            "manga",
            "chapter",
            "character",
            "page",
            "recommendation",
            "scrobbler",
        ):
            schema = getattr(self, name)
            if schema is not None:
                pairs.append((name, schema))
        return pairs


__all__ = [
    "AgentCapability",
    "AgentError",
    "AgentTimeoutError",
    "AgentRateLimitedError",
    "AgentNotFoundError",
    "AgentValidationError",
    "AgentDependencyError",
    "AgentInternalError",
    "AgentResult",
    "AgentFanoutResponse",
    "AgentSchemas",
    "is_transient",
    "normalise_error",
]
