"""Free-text manga search across agents with de-duplication of the hits."""

from __future__ import annotations

from collections.abc import Iterable, Mapping, Sequence
from typing import Any

from libra.errors import NotFoundError
from libra.integrations.agents_manager import AgentsManager
from libra.logging import get_logger
from libra.utils.text import title_key

logger = get_logger(__name__)

CRITERIA_WEIGHTS: Mapping[str, int] = {"title": 2, "authors": 2, "year": 2, "genres": 1}
MERGE_THRESHOLD = 50.0
YEAR_DIFFERENCE = 2


def _shares_any(left: Any, right: Any) -> bool:
    if not isinstance(left, (list, tuple)) or not isinstance(right, (list, tuple)):
        return False
    return any(item in right for item in left)


def _is_blank(value: Any) -> bool:
    return value is None or value == ""


def _score_key(result: Mapping[str, Any]) -> float:
    try:
        return float(result.get("score") or 0)
    except (TypeError, ValueError):
        return 0.0


class SearchService:
    """Runs cross-lookup searches and folds duplicate hits together."""

    def __init__(self, agents: AgentsManager, *, year_difference: int = YEAR_DIFFERENCE) -> None:
        self._agents = agents
        self._year_difference = year_difference

    async def _same_canonical_id(
        self, manga: Mapping[str, Any], existing: Mapping[str, Any]
    ) -> bool:
        """Whether either hit carries the other's id for the other's source."""

        for candidate, other in ((manga, existing), (existing, manga)):
            source = candidate.get("source")
            foreign = (other.get("externalIds") or {}).get(source) if source else None
            if not foreign or other.get("source") == source:
                continue
            try:
                agent = self._agents.agent(source)
            except NotFoundError:
                continue
            resolved: Any = foreign
            if agent.requires_canonical_id:
                resolved = await agent.canonical_id(str(foreign))
            if resolved is not None and str(resolved) == str(candidate.get("id")):
                return True
        return False

    async def match_score(self, manga: Mapping[str, Any], existing: Mapping[str, Any]) -> float:
        """Weighted likeness of two hits as a percentage."""

        total = sum(CRITERIA_WEIGHTS.values())
        if await self._same_canonical_id(manga, existing):
            return 100.0
        score = 0
        title, other_title = manga.get("title"), existing.get("title")
        if isinstance(title, str) and isinstance(other_title, str):
            if title.lower() == other_title.lower():
                score += CRITERIA_WEIGHTS["title"]
        if _shares_any(manga.get("authors"), existing.get("authors")):
            score += CRITERIA_WEIGHTS["authors"]
        year, other_year = manga.get("startYear"), existing.get("startYear")
        if isinstance(year, int) and isinstance(other_year, int):
            if abs(year - other_year) <= self._year_difference:
                score += CRITERIA_WEIGHTS["year"]
        if _shares_any(manga.get("genres"), existing.get("genres")):
            score += CRITERIA_WEIGHTS["genres"]
        return score / total * 100

    def best_cover(self, left: Mapping[str, Any], right: Mapping[str, Any]) -> Any:
        priorities = dict(self._agents.get_cover_priority())
        left_priority = priorities.get(left.get("source"), 999)
        right_priority = priorities.get(right.get("source"), 999)
        if left_priority < right_priority:
            return left.get("cover") or right.get("cover")
        return right.get("cover") or left.get("cover")

    def merge(self, existing: Mapping[str, Any], manga: Mapping[str, Any]) -> dict[str, Any]:
        """Fill the blanks of ``existing`` from ``manga``; ids and links are unioned."""

        merged = dict(existing)
        for key, value in manga.items():
            if _is_blank(merged.get(key)):
                merged[key] = value
        merged["externalIds"] = {
            **(manga.get("externalIds") or {}),
            **{k: v for k, v in (existing.get("externalIds") or {}).items() if v},
        }
        merged["externalLinks"] = {
            **(manga.get("externalLinks") or {}),
            **(existing.get("externalLinks") or {}),
        }
        source = manga.get("source")
        if source and source != existing.get("source") and manga.get("id"):
            merged["externalIds"].setdefault(source, manga.get("id"))
        merged["cover"] = self.best_cover(existing, manga)
        return merged

    async def process_search_results(
        self,
        results: Iterable[Sequence[Mapping[str, Any]]],
        exclude_genres: Sequence[str] = (),
    ) -> list[dict[str, Any]]:
        unique: dict[str, dict[str, Any]] = {}
        extras: list[dict[str, Any]] = []
        for source_results in results:
            for manga in source_results or []:
                if not isinstance(manga, Mapping) or not manga.get("title"):
                    continue
                key = title_key(manga["title"])
                existing = unique.get(key)
                if existing is None:
                    unique[key] = dict(manga)
                elif await self.match_score(manga, existing) > MERGE_THRESHOLD:
                    unique[key] = self.merge(existing, manga)
                else:
                    extras.append(dict(manga))
        return filter_results([*unique.values(), *extras], exclude_genres)

    async def search_mangas_by_term(
        self,
        term: str,
        agents: Sequence[str] | None = None,
        exclude_genres: Sequence[str] = (),
        library_ids: Iterable[Mapping[str, Any]] = (),
    ) -> dict[str, Any]:
        """Search every cross-lookup agent and return de-duplicated hits.

        ``library_ids`` are the ``externalIds`` mappings of the mangas already
        in the library; hits matching one of them are flagged.
        """

        response = await self._agents.search_mangas(term, agents)
        for source, error in response.errors.items():
            logger.warning("Search on %s failed: %s", source, error)
        merged = await self.process_search_results(response.values(), exclude_genres)
        known = {str(value) for ids in library_ids for value in (ids or {}).values() if value}
        for result in merged:
            result["alreadyInLibrary"] = str(result.get("id")) in known
        merged.sort(key=_score_key, reverse=True)
        return {"results": merged, "status": response.status, "errors": sorted(response.errors)}

    def get_source_urls(self, manga: Mapping[str, Any]) -> list[dict[str, str]]:
        sources: list[dict[str, str]] = []
        for agent_id, ident in (manga.get("externalIds") or {}).items():
            if not ident:
                continue
            try:
                agent = self._agents.agent(agent_id)
            except NotFoundError:
                continue
            url = agent.get_source_url(str(ident))
            if url:
                sources.append({"name": agent.label, "url": url})
        return sorted(sources, key=lambda item: item["name"])


def filter_results(
    inputs: Iterable[Mapping[str, Any] | None], exclude_genres: Sequence[str] = ()
) -> list[dict[str, Any]]:
    """Keep hits with a cover and an unseen id that carry no excluded genre."""

    excluded = set(exclude_genres)
    seen: set[Any] = set()
    kept: list[dict[str, Any]] = []
    for item in inputs:
        if not item or not item.get("cover") or item.get("id") in seen:
            continue
        if excluded and any(genre in excluded for genre in item.get("genres") or []):
            continue
        seen.add(item.get("id"))
        kept.append(dict(item))
    return kept


__all__ = ["CRITERIA_WEIGHTS", "MERGE_THRESHOLD", "SearchService", "filter_results"]
