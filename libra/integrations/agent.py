"""Agent base class: the single pluggable surface for metadata providers.

Subclasses declare their capabilities and schemas as class attributes and
override the raw-fetch hook of every capability they declare. Everything
else (rate limiting, caching, circuit breaking, mapping, fuzzy filtering,
pagination and error handling) lives here.

Two layers are exposed:

* ``fetch_*`` methods are strict: errors propagate after being counted
  against the circuit breaker (not-found excepted);
* the public operations (``search_mangas``, ``get_manga_by_id``, ...) never
  raise and return ``[]`` or ``None`` on failure. ``scrobbler_push`` is the
  exception since callers must know whether a push landed.
"""

from __future__ import annotations

from collections.abc import AsyncIterator, Awaitable, Callable, Mapping, Sequence
from contextlib import asynccontextmanager
import logging
from time import perf_counter
from typing import Any, ClassVar

from libra.config import AgentPolicyConfig
from libra.integrations.cache import AgentCache
from libra.integrations.circuit_breaker import CircuitBreaker
from libra.integrations.contracts import (
    AgentCapability,
    AgentError,
    AgentNotFoundError,
    AgentSchemas,
    normalise_error,
)
from libra.integrations.matching import (
    DEFAULT_THRESHOLD,
    DEFAULT_YEAR_TOLERANCE,
    filter_by_authors,
    filter_by_query,
    filter_by_year,
)
from libra.integrations.rate_limit import AgentRateLimiter
from libra.integrations.schema_mapping import map_record, map_records
from libra.logging import get_logger
from libra.logging_events import log_event
from libra.utils.metrics import counter
from libra.utils.text import normalize_text

logger = get_logger(__name__)

Ids = Mapping[str, Any] | str | int | None

HOOKS_BY_CAPABILITY: Mapping[AgentCapability, tuple[str, ...]] = {
    AgentCapability.MANGA_CROSS_LOOKUP: ("fetch_lookup_page",),
    AgentCapability.MANGA_METADATA_FETCH: ("fetch_manga",),
    AgentCapability.CHAPTER_FETCH: ("fetch_chapters_page", "fetch_chapter_pages"),
    AgentCapability.MANGA_BASIC_RECOMMENDATIONS: ("fetch_recommendations_page",),
    AgentCapability.MANGA_ADVANCED_RECOMMENDATIONS: ("fetch_manga_recommendations",),
    AgentCapability.OPT_AUTH: ("login",),
    AgentCapability.SCROBBLER: ("scrobbler_pull_page", "scrobbler_push_entry"),
}

SCHEMAS_BY_CAPABILITY: Mapping[AgentCapability, tuple[str, ...]] = {
    AgentCapability.MANGA_CROSS_LOOKUP: ("lookup",),
    AgentCapability.MANGA_METADATA_FETCH: ("manga",),
    AgentCapability.CHAPTER_FETCH: ("chapter", "page"),
    AgentCapability.MANGA_BASIC_RECOMMENDATIONS: ("recommendation",),
    AgentCapability.MANGA_ADVANCED_RECOMMENDATIONS: ("recommendation",),
    AgentCapability.SCROBBLER: ("scrobbler",),
}

MAX_CHAPTER_PAGES = 200


class Agent:
    id: ClassVar[str] = ""
    label: ClassVar[str] = ""
    capabilities: ClassVar[AgentCapability] = AgentCapability.NONE
    priority: ClassVar[int] = 50
    cover_priority: ClassVar[int] = 0
    host: ClassVar[str | None] = None
    source_url: ClassVar[str | None] = None
    supports_pagination: ClassVar[bool] = False
    max_pages: ClassVar[int] = 3
    offset_inc: ClassVar[int] = 100
    requires_canonical_id: ClassVar[bool] = False
    schemas: ClassVar[AgentSchemas] = AgentSchemas()
    rate_limit_max_concurrent: ClassVar[int | None] = None
    rate_limit_min_interval_ms: ClassVar[int] = 0

    def __init__(
        self,
        *,
        policy: AgentPolicyConfig | None = None,
        limiter: AgentRateLimiter | None = None,
        breaker: CircuitBreaker | None = None,
        cache: AgentCache | None = None,
        fuzzy_threshold: float = DEFAULT_THRESHOLD,
        year_tolerance: int = DEFAULT_YEAR_TOLERANCE,
    ) -> None:
        if not self.id:
            raise TypeError(f"{type(self).__name__} must define an id")
        policy = policy or AgentPolicyConfig()
        self.limiter = limiter or AgentRateLimiter(
            self.rate_limit_max_concurrent, self.rate_limit_min_interval_ms
        )
        self.breaker = breaker or CircuitBreaker(
            self.id,
            max_errors=policy.max_errors,
            window_s=policy.error_window_s,
            cooldown_s=policy.cooldown_s,
        )
        self.cache = cache or AgentCache(
            self.id, enabled=policy.cache_enabled, default_ttl_s=policy.cache_ttl_s
        )
        self.fuzzy_threshold = fuzzy_threshold
        self.year_tolerance = year_tolerance

    # -- introspection ---------------------------------------------------

    @property
    def is_active(self) -> bool:
        return self.breaker.is_active

    def has_capability(self, capability: AgentCapability) -> bool:
        return bool(capability) and capability in self.capabilities

    def missing_hooks(self) -> list[str]:
        """Hooks required by declared capabilities that the subclass did not override."""

        missing: list[str] = []
        for capability, hooks in HOOKS_BY_CAPABILITY.items():
            if capability not in self.capabilities:
                continue
            for hook in hooks:
                if getattr(type(self), hook) is getattr(Agent, hook):
                    missing.append(hook)
        if self.requires_canonical_id and (
            type(self).resolve_canonical_id is Agent.resolve_canonical_id
        ):
            missing.append("resolve_canonical_id")
        return missing

    def external_id(self, ids: Ids) -> str | None:
        if ids is None:
            return None
        if isinstance(ids, Mapping):
            value = ids.get(self.id)
            return str(value) if value not in (None, "") else None
        text = str(ids).strip()
        return text or None

    def get_source_url(self, ident: str) -> str | None:
        if not self.source_url:
            return None
        return self.source_url.replace("[id]", str(ident))

    # -- raw hooks (override per capability) -----------------------------

    async def fetch_lookup_page(self, host: str | None, query: str, offset: int, page: int) -> Any:
        raise NotImplementedError

    async def fetch_manga(self, host: str | None, manga_id: str) -> Any:
        raise NotImplementedError

    async def fetch_chapters_page(
        self, host: str | None, manga_id: str, offset: int, page: int, lang: str | None
    ) -> Any:
        raise NotImplementedError

    async def fetch_chapter_pages(self, host: str | None, chapter_id: str) -> Any:
        raise NotImplementedError

    async def fetch_characters_page(
        self, host: str | None, manga_id: str, offset: int, page: int
    ) -> Any:
        raise NotImplementedError

    async def fetch_recommendations_page(
        self, host: str | None, ask: Mapping[str, Any], offset: int, page: int
    ) -> Any:
        raise NotImplementedError

    async def fetch_manga_recommendations(
        self, host: str | None, manga_id: str, offset: int, page: int
    ) -> Any:
        raise NotImplementedError

    async def scrobbler_pull_page(self, host: str | None, offset: int, page: int) -> Any:
        raise NotImplementedError

    async def scrobbler_push_entry(self, host: str | None, entry: Mapping[str, Any]) -> Any:
        raise NotImplementedError

    async def resolve_canonical_id(self, host: str | None, value: str) -> str:
        raise NotImplementedError

    async def login(self) -> bool:
        raise NotImplementedError

    # -- payload hooks ---------------------------------------------------

    def extract_records(self, entity: str, payload: Any) -> list[Mapping[str, Any]]:
        """Turn a raw provider payload into a list of source records."""

        if payload is None:
            return []
        if isinstance(payload, Mapping):
            data = payload.get("data")
            if isinstance(data, list):
                return [item for item in data if isinstance(item, Mapping)]
            if isinstance(data, Mapping):
                return [data]
            return [payload]
        if isinstance(payload, Sequence) and not isinstance(payload, (str, bytes)):
            return [item for item in payload if isinstance(item, Mapping)]
        return []

    def post_lookup(self, records: list[dict[str, Any]]) -> list[dict[str, Any]]:
        return records

    def post_manga(self, record: dict[str, Any]) -> dict[str, Any]:
        return record

    def post_chapters(self, records: list[dict[str, Any]]) -> list[dict[str, Any]]:
        return records

    def pre_pages(self, payload: Any) -> Any:
        return payload

    def pre_recommendations(self, payload: Any) -> Any:
        return payload

    # -- strict layer ----------------------------------------------------

    @asynccontextmanager
    async def _track(self, operation: str) -> AsyncIterator[None]:
        started = perf_counter()
        try:
            yield
        except AgentNotFoundError:
            self._log_call(operation, "not_found", started)
            raise
        except Exception as exc:
            self.breaker.record_error()
            self._log_call(operation, "error", started, error=exc)
            raise
        else:
            self._log_call(operation, "ok", started)

    async def _call(self, operation: str, hook: Callable[..., Awaitable[Any]], *args: Any) -> Any:
        async with self._track(operation):
            return await self.limiter.schedule(hook, *args)

    async def _collect_pages(
        self,
        operation: str,
        entity: str,
        fetch: Callable[[int, int], Awaitable[Any]],
        *,
        until_empty: bool = False,
        transform: Callable[[Any], Any] | None = None,
    ) -> list[Mapping[str, Any]]:
        records: list[Mapping[str, Any]] = []
        page, offset = 1, 0
        limit = MAX_CHAPTER_PAGES if until_empty else self.max_pages
        while True:
            payload = await self._call(operation, fetch, offset, page)
            if transform is not None:
                payload = transform(payload)
            batch = self.extract_records(entity, payload)
            if not batch:
                break
            records.extend(batch)
            if not self.supports_pagination or page >= limit:
                break
            page += 1
            offset += self.offset_inc
        return records

    def _schema(self, name: str) -> Mapping[str, Any]:
        schema = getattr(self.schemas, name)
        if schema is None:
            raise AgentError(self.id, f"{self.id} declares no {name} schema")
        return schema

    def _stamp(self, records: list[dict[str, Any]]) -> list[dict[str, Any]]:
        for record in records:
            record["source"] = self.id
        return records

    async def fetch_lookup(self, query: str) -> list[dict[str, Any]]:
        raw = await self._collect_pages(
            "lookup",
            "lookup",
            lambda offset, page: self.fetch_lookup_page(self.host, query, offset, page),
        )
        mapped = map_records(self._schema("lookup"), raw, dedupe_key="id")
        return self._stamp(self.post_lookup(mapped))

    async def fetch_manga_by_id(self, ids: Ids) -> dict[str, Any] | None:
        ident = self.external_id(ids)
        if ident is None:
            return None
        query = {"id": ident}
        cached = await self.cache.get("manga", query)
        if cached is not None:
            return cached
        payload = await self._call("manga", self.fetch_manga, self.host, ident)
        records = self.extract_records("manga", payload)
        if not records:
            raise AgentNotFoundError(self.id, status_code=None)
        mapped = self.post_manga(map_record(self._schema("manga"), records[0]))
        mapped["source"] = self.id
        await self.cache.set("manga", query, mapped)
        return mapped

    async def fetch_chapters(self, ids: Ids, lang: str | None = None) -> list[dict[str, Any]]:
        ident = self.external_id(ids)
        if ident is None:
            return []
        raw = await self._collect_pages(
            "chapters",
            "chapter",
            lambda offset, page: self.fetch_chapters_page(self.host, ident, offset, page, lang),
            until_empty=True,
        )
        mapped = map_records(self._schema("chapter"), raw, dedupe_key="id")
        if lang:
            mapped = [record for record in mapped if record.get("lang") in (None, lang)]
        return self._stamp(self.post_chapters(mapped))

    async def fetch_pages(self, chapter_id: str) -> list[dict[str, Any]]:
        payload = await self._call("pages", self.fetch_chapter_pages, self.host, chapter_id)
        records = self.extract_records("page", self.pre_pages(payload))
        return map_records(self._schema("page"), records)

    async def fetch_characters(self, manga_id: str) -> list[dict[str, Any]]:
        raw = await self._collect_pages(
            "characters",
            "character",
            lambda offset, page: self.fetch_characters_page(self.host, manga_id, offset, page),
        )
        return map_records(self._schema("character"), raw, dedupe_key="id")

    async def fetch_recommendations(
        self, ask: Mapping[str, Any], limit: int | None = None
    ) -> list[dict[str, Any]]:
        raw = await self._collect_pages(
            "recommendations",
            "recommendation",
            lambda offset, page: self.fetch_recommendations_page(self.host, ask, offset, page),
            transform=self.pre_recommendations,
        )
        mapped = self._stamp(map_records(self._schema("recommendation"), raw, dedupe_key="id"))
        return mapped[:limit] if limit else mapped

    async def fetch_manga_based_recommendations(
        self, manga_id: str, limit: int | None = None
    ) -> list[dict[str, Any]]:
        raw = await self._collect_pages(
            "manga_recommendations",
            "recommendation",
            lambda offset, page: self.fetch_manga_recommendations(
                self.host, manga_id, offset, page
            ),
            transform=self.pre_recommendations,
        )
        mapped = self._stamp(map_records(self._schema("recommendation"), raw, dedupe_key="id"))
        return mapped[:limit] if limit else mapped

    async def fetch_search(self, query: str) -> list[dict[str, Any]]:
        results = await self.fetch_lookup(query)
        return filter_by_query(
            query, results, ("title", "altTitles"), threshold=self.fuzzy_threshold
        )

    async def fetch_scrobbler_entries(self) -> list[dict[str, Any]]:
        raw = await self._collect_pages(
            "scrobbler_pull",
            "scrobbler",
            lambda offset, page: self.scrobbler_pull_page(self.host, offset, page),
        )
        return self._stamp(map_records(self._schema("scrobbler"), raw))

    async def resolve_id(self, value: str) -> str:
        if not self.requires_canonical_id:
            return value
        return await self._call("canonical_id", self.resolve_canonical_id, self.host, value)

    # -- safe public operations ------------------------------------------

    async def _safe(self, operation: str, call: Awaitable[Any], default: Any) -> Any:
        try:
            return await call
        except AgentNotFoundError:
            return default
        except Exception as exc:
            logger.debug("%s %s failed: %s", self.id, operation, exc)
            return default

    async def search_mangas(self, query: str) -> list[dict[str, Any]]:
        """Free-text search: fuzzy filtered on title and alternative titles."""

        return await self._safe("search", self.fetch_search(query), [])

    async def lookup_mangas(
        self, query: str, alt_titles: Sequence[str] = ()
    ) -> list[dict[str, Any]]:
        results = await self._safe("lookup", self.fetch_lookup(query), [])
        return filter_by_query(
            query,
            results,
            ("title", "altTitles"),
            threshold=self.fuzzy_threshold,
            alternates=alt_titles,
        )

    async def get_manga_by_id(self, ids: Ids) -> dict[str, Any] | None:
        ident = self.external_id(ids)
        if ident is None:
            return None
        return await self._safe("manga", self.fetch_manga_by_id(ident), None)

    async def get_manga_by_name(
        self,
        name: str,
        alt_titles: Sequence[str] = (),
        year: int | None = None,
        authors: Sequence[str] = (),
    ) -> dict[str, Any] | None:
        """Best single match for a title, disambiguated by year then authors."""

        query = {"name": name, "year": year}
        cached = await self.cache.get("manga_by_name", query)
        if cached is not None:
            return cached
        candidates = await self.lookup_mangas(name, alt_titles)
        if not candidates:
            return None
        narrowed = candidates
        if year is not None:
            narrowed = filter_by_year(candidates, year, tolerance=self.year_tolerance)
        if not narrowed and authors:
            narrowed = filter_by_authors(candidates, authors, threshold=self.fuzzy_threshold)
        if not narrowed:
            wanted = normalize_text(name)
            exact = [item for item in candidates if normalize_text(item.get("title")) == wanted]
            narrowed = exact if len(exact) == 1 else []
        if not narrowed:
            return None
        match = narrowed[0]
        if self.has_capability(AgentCapability.MANGA_METADATA_FETCH) and match.get("id"):
            full = await self.get_manga_by_id(str(match["id"]))
            if full is not None:
                match = full
        await self.cache.set("manga_by_name", query, match)
        return match

    async def lookup_chapters_by_manga_id(
        self, ids: Ids, lang: str | None = None
    ) -> list[dict[str, Any]]:
        return await self._safe("chapters", self.fetch_chapters(ids, lang), [])

    async def lookup_characters_by_manga_id(self, ids: Ids) -> list[dict[str, Any]]:
        ident = self.external_id(ids)
        if ident is None:
            return []
        return await self._safe("characters", self.fetch_characters(ident), [])

    async def grab_chapter_pages(self, chapter_id: str) -> list[dict[str, Any]]:
        return await self._safe("pages", self.fetch_pages(chapter_id), [])

    async def lookup_recommendations(
        self, ask: Mapping[str, Any], limit: int = 20
    ) -> list[dict[str, Any]]:
        return await self._safe("recommendations", self.fetch_recommendations(ask, limit), [])

    async def lookup_manga_based_recommendations(
        self, ids: Ids, limit: int = 20
    ) -> list[dict[str, Any]]:
        ident = self.external_id(ids)
        if ident is None:
            return []
        return await self._safe(
            "manga_recommendations", self.fetch_manga_based_recommendations(ident, limit), []
        )

    async def scrobbler_pull(self) -> list[dict[str, Any]]:
        return await self._safe("scrobbler_pull", self.fetch_scrobbler_entries(), [])

    async def scrobbler_push(self, entry: Mapping[str, Any]) -> Any:
        """Push one entry; unlike the lookups this raises on failure."""

        try:
            return await self._call("scrobbler_push", self.scrobbler_push_entry, self.host, entry)
        except Exception as exc:
            raise normalise_error(self.id, exc) from exc

    async def canonical_id(self, value: str) -> str | None:
        try:
            return await self.resolve_id(value)
        except Exception as exc:
            logger.warning("%s could not resolve canonical id for %s: %s", self.id, value, exc)
            return None

    # -- logging ---------------------------------------------------------

    def _log_call(
        self, operation: str, status: str, started: float, *, error: BaseException | None = None
    ) -> None:
        duration_ms = int((perf_counter() - started) * 1000)
        meta: dict[str, Any] = {"breaker_errors": self.breaker.error_count}
        if error is not None:
            meta["error"] = error.__class__.__name__
            status_code = getattr(error, "status_code", None)
            if status_code is not None:
                meta["status_code"] = status_code
        log_event(
            logger,
            "agent.call",
            level=logging.INFO if status != "ok" else logging.DEBUG,
            component="agent",
            dependency=self.id,
            operation=operation,
            status=status,
            duration_ms=duration_ms,
            meta=meta,
        )
        counter(
            "libra_agent_calls_total",
            "Agent raw calls grouped by agent, operation and outcome.",
            label_names=("agent", "operation", "status"),
        ).labels(agent=self.id, operation=operation, status=status).inc()


__all__ = [
    "Agent",
    "HOOKS_BY_CAPABILITY",
    "SCHEMAS_BY_CAPABILITY",
    "MAX_CHAPTER_PAGES",
]
