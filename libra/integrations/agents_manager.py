"""Agent registry and concurrent fan-out across agents."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Iterable, Mapping, Sequence
from time import perf_counter
from typing import Any

from libra.config import FanoutConfig
from libra.errors import ConfigurationError, DuplicateNameError, NotFoundError
from libra.integrations.agent import Agent, SCHEMAS_BY_CAPABILITY
from libra.integrations.contracts import (
    AgentCapability,
    AgentFanoutResponse,
    AgentNotFoundError,
    AgentResult,
    normalise_error,
)
from libra.integrations.schema_mapping import validate_schema
from libra.logging import get_logger
from libra.logging_events import log_event
from libra.reconciliation.strategies import defaults_deep
from libra.services.stores import CacheStore
from libra.utils.text import sanitize_title

logger = get_logger(__name__)

AgentCall = Callable[[Agent], Awaitable[Any]]


class AgentsManager:
    """Holds the registered agents and fans requests out to them.

    Every per-agent call that raises is retried exactly once after
    ``retry_delay_ms`` regardless of the error type, not-found excepted. This
    includes non-idempotent operations such as scrobbler pushes.
    """

    def __init__(
        self,
        config: FanoutConfig | None = None,
        *,
        sleep: Callable[[float], Awaitable[Any]] | None = None,
    ) -> None:
        self._config = config or FanoutConfig()
        self._sleep = sleep or asyncio.sleep
        self._agents: dict[str, Agent] = {}

    # -- registry --------------------------------------------------------

    def register(self, agent: Agent) -> Agent:
        if agent.id in self._agents:
            raise DuplicateNameError("agent", agent.id)
        missing = agent.missing_hooks()
        if missing:
            raise ConfigurationError(
                f"Agent '{agent.id}' declares capabilities without hooks: {', '.join(missing)}",
                meta={"agent": agent.id, "missing": missing},
            )
        self._validate_schemas(agent)
        self._agents[agent.id] = agent
        logger.info(
            "Registered agent %s (%s)", agent.id, ", ".join(agent.capabilities.names()) or "none"
        )
        return agent

    def _validate_schemas(self, agent: Agent) -> None:
        declared = dict(agent.schemas.items())
        for capability, kinds in SCHEMAS_BY_CAPABILITY.items():
            if capability not in agent.capabilities:
                continue
            for kind in kinds:
                if kind not in declared:
                    logger.warning(
                        "Agent %s declares %s without a %s schema",
                        agent.id,
                        capability.name,
                        kind,
                    )
        for kind, schema in declared.items():
            validation = validate_schema(kind, schema)
            if not validation.success:
                logger.warning(
                    "Agent %s %s schema does not match the reference: %s",
                    agent.id,
                    kind,
                    "; ".join(validation.errors),
                )

    def agent(self, agent_id: str) -> Agent:
        try:
            return self._agents[agent_id]
        except KeyError as exc:
            raise NotFoundError("agent", agent_id) from exc

    @property
    def agents(self) -> list[Agent]:
        return sorted(self._agents.values(), key=lambda agent: agent.priority)

    def get_agents(self, capabilities: AgentCapability = AgentCapability.NONE) -> list[Agent]:
        """Agents holding *all* of ``capabilities``, by ascending priority."""

        if not capabilities:
            return self.agents
        return [agent for agent in self.agents if capabilities in agent.capabilities]

    def set_cache_mode(self, active: bool, store: CacheStore | None = None) -> None:
        for agent in self._agents.values():
            if store is not None:
                agent.cache.attach_store(store)
            agent.cache.set_enabled(active)

    def get_cover_priority(self, exclude: Iterable[str] = ()) -> list[tuple[str, int]]:
        """``(agent_id, cover_priority)`` pairs; excluded agents rank last (999)."""

        excluded = set(exclude)
        ranking = [
            (agent.id, 999 if agent.id in excluded else agent.cover_priority)
            for agent in self._agents.values()
        ]
        return sorted(ranking, key=lambda item: item[1])

    # -- fan-out core ----------------------------------------------------

    def _eligible(
        self,
        capability: AgentCapability,
        allowed: Sequence[str] | None,
        ids: Mapping[str, Any] | None = None,
    ) -> tuple[list[Agent], list[str]]:
        eligible: list[Agent] = []
        skipped: list[str] = []
        for agent in self.get_agents(capability):
            if allowed and agent.id not in allowed:
                continue
            if ids is not None and not ids.get(agent.id):
                continue
            if not agent.is_active:
                skipped.append(agent.id)
                continue
            eligible.append(agent)
        return eligible, skipped

    async def _call_with_retry(self, operation: str, agent: Agent, call: AgentCall) -> AgentResult:
        attempts = 0
        while True:
            attempts += 1
            try:
                return AgentResult(source=agent.id, result=await call(agent))
            except AgentNotFoundError:
                return AgentResult(source=agent.id, result=None)
            except Exception as exc:
                if attempts >= 2:
                    error = normalise_error(agent.id, exc)
                    return AgentResult(source=agent.id, result=None, error=error)
                logger.debug("%s %s failed, retrying once: %s", agent.id, operation, exc)
                await self._sleep(self._config.retry_delay_ms / 1000)

    async def _fanout(
        self,
        operation: str,
        agents: Sequence[Agent],
        call: AgentCall,
        *,
        skipped: Sequence[str] = (),
    ) -> AgentFanoutResponse:
        started = perf_counter()
        gathered = await asyncio.gather(
            *(self._call_with_retry(operation, agent, call) for agent in agents),
            return_exceptions=True,
        )
        results: list[AgentResult] = []
        for agent, item in zip(agents, gathered):
            if isinstance(item, AgentResult):
                results.append(item)
                continue
            if not isinstance(item, Exception):
                raise item
            logger.error("Agent task %s/%s failed", agent.id, operation, exc_info=item)
            results.append(
                AgentResult(source=agent.id, result=None, error=normalise_error(agent.id, item))
            )
        response = AgentFanoutResponse(results=tuple(results), skipped=tuple(skipped))
        log_event(
            logger,
            "agents.fanout",
            component="agents_manager",
            operation=operation,
            status=response.status,
            agents=len(agents),
            failed=len(response.errors),
            skipped=len(response.skipped),
            duration_ms=int((perf_counter() - started) * 1000),
            meta={"errors": {name: type(err).__name__ for name, err in response.errors.items()}},
        )
        return response

    # -- operations ------------------------------------------------------

    async def search_manga(
        self, ids: Mapping[str, Any], agents: Sequence[str] | None = None
    ) -> AgentFanoutResponse:
        """Fetch full metadata from every agent for which an external id is known."""

        eligible, skipped = self._eligible(AgentCapability.MANGA_METADATA_FETCH, agents, ids)
        resolved: dict[str, str] = {}
        callable_agents: list[Agent] = []
        for agent in eligible:
            ident = str(ids[agent.id])
            if agent.requires_canonical_id:
                canonical = await agent.canonical_id(ident)
                if not canonical:
                    logger.info("Skipping %s: no canonical id for %s", agent.id, ident)
                    continue
                ident = canonical
            resolved[agent.id] = ident
            callable_agents.append(agent)
        return await self._fanout(
            "search_manga",
            callable_agents,
            lambda agent: agent.fetch_manga_by_id(resolved[agent.id]),
            skipped=skipped,
        )

    async def search_manga_chapters(
        self,
        ids: Mapping[str, Any],
        agents: Sequence[str] | None = None,
        lang: str | None = None,
    ) -> AgentFanoutResponse:
        eligible, skipped = self._eligible(AgentCapability.CHAPTER_FETCH, agents, ids)
        return await self._fanout(
            "search_manga_chapters",
            eligible,
            lambda agent: agent.fetch_chapters(str(ids[agent.id]), lang),
            skipped=skipped,
        )

    async def grab_chapter_by_id(self, chapter_id: str, agent_id: str) -> list[dict[str, Any]]:
        """Page list of one chapter from one agent; ``[]`` when unavailable."""

        try:
            agent = self.agent(agent_id)
        except NotFoundError:
            logger.error("Agent with id %s not found", agent_id)
            return []
        if not agent.is_active:
            return []
        response = await self._fanout(
            "grab_chapter_by_id", [agent], lambda item: item.fetch_pages(chapter_id)
        )
        values = response.values()
        return values[0] if values else []

    async def search_manga_by_title_year_authors(
        self,
        title: str,
        alt_titles: Sequence[str] = (),
        year: int | None = None,
        authors: Sequence[str] = (),
        agents: Sequence[str] | None = None,
    ) -> dict[str, Any] | None:
        """Fuse every agent's best match for a title into one record."""

        if not title:
            return None
        sanitised = sanitize_title(title)
        eligible, skipped = self._eligible(AgentCapability.MANGA_CROSS_LOOKUP, agents)
        response = await self._fanout(
            "search_manga_by_title_year_authors",
            eligible,
            lambda agent: agent.get_manga_by_name(sanitised, alt_titles, year, authors),
            skipped=skipped,
        )
        unified: dict[str, Any] = {}
        for value in response.values():
            unified = defaults_deep(unified, value)
        return unified or None

    async def search_manga_based_recommendations(
        self, ids: Mapping[str, Any], agents: Sequence[str] | None = None
    ) -> AgentFanoutResponse:
        eligible, skipped = self._eligible(
            AgentCapability.MANGA_ADVANCED_RECOMMENDATIONS, agents, ids
        )
        return await self._fanout(
            "search_manga_based_recommendations",
            eligible,
            lambda agent: agent.fetch_manga_based_recommendations(str(ids[agent.id])),
            skipped=skipped,
        )

    async def search_recommendations(
        self, ask: Mapping[str, Any], agents: Sequence[str] | None = None, limit: int = 20
    ) -> AgentFanoutResponse:
        eligible, skipped = self._eligible(AgentCapability.MANGA_BASIC_RECOMMENDATIONS, agents)
        return await self._fanout(
            "search_recommendations",
            eligible,
            lambda agent: agent.fetch_recommendations(ask, limit),
            skipped=skipped,
        )

    async def search_mangas(
        self, term: str, agents: Sequence[str] | None = None
    ) -> AgentFanoutResponse:
        eligible, skipped = self._eligible(AgentCapability.MANGA_CROSS_LOOKUP, agents)
        return await self._fanout(
            "search_mangas",
            eligible,
            lambda agent: agent.fetch_search(term),
            skipped=skipped,
        )

    async def scrobbler_push(self, agent_id: str, entry: Mapping[str, Any]) -> AgentResult:
        agent = self.agent(agent_id)
        if not agent.has_capability(AgentCapability.SCROBBLER):
            raise ConfigurationError(f"Agent '{agent_id}' is not a scrobbler")
        response = await self._fanout(
            "scrobbler_push", [agent], lambda item: item.scrobbler_push(entry)
        )
        return response.results[0]

    async def scrobbler_pull(self, agents: Sequence[str] | None = None) -> AgentFanoutResponse:
        eligible, skipped = self._eligible(AgentCapability.SCROBBLER, agents)
        return await self._fanout(
            "scrobbler_pull",
            eligible,
            lambda agent: agent.fetch_scrobbler_entries(),
            skipped=skipped,
        )

    async def agents_login(self) -> dict[str, bool]:
        outcome: dict[str, bool] = {}
        for agent in self.get_agents(AgentCapability.OPT_AUTH):
            try:
                outcome[agent.id] = bool(await agent.login())
            except Exception:
                logger.exception("Login failed for agent %s", agent.id)
                outcome[agent.id] = False
        return outcome


__all__ = ["AgentsManager"]
