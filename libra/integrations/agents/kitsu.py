"""Kitsu agent (https://kitsu.io/api/edge)."""

from __future__ import annotations

from collections.abc import Mapping
import re
from typing import Any

from libra.integrations.agent import Agent
from libra.integrations.contracts import AgentCapability, AgentNotFoundError, AgentSchemas
from libra.integrations.http import AgentHttpClient
from libra.integrations.schema_mapping import FieldSpec

API_HOST = "https://kitsu.io/api/edge"
JSON_API_HEADERS = {
    "Accept": "application/vnd.api+json",
    "Content-Type": "application/vnd.api+json",
}

_HAS_LETTER = re.compile(r"[a-z]", re.IGNORECASE)

# ask["kind"] -> (path, params)
_RECOMMENDATION_QUERIES: Mapping[str, tuple[str, tuple[tuple[str, str], ...]]] = {
    "trending": ("/trending/manga", ()),
    "current": ("/manga", (("filter[status]", "current"), ("sort", "-user_count"))),
    "upcoming": ("/manga", (("filter[status]", "upcoming"), ("sort", "-user_count"))),
    "popular": ("/manga", (("sort", "-user_count"),)),
}


def _title(value: Any, _record: Mapping[str, Any]) -> str | None:
    if not isinstance(value, Mapping):
        return None
    return value.get("en") or value.get("en_jp") or value.get("en_us")


def _alt_titles(record: Mapping[str, Any]) -> list[str]:
    attributes = record.get("attributes") or {}
    titles = [title for title in (attributes.get("titles") or {}).values() if title]
    titles.extend(title for title in attributes.get("abbreviatedTitles") or [] if title)
    return list(dict.fromkeys(titles))


def _year(value: Any, _record: Mapping[str, Any]) -> int | None:
    if not value:
        return None
    try:
        return int(str(value)[:4])
    except ValueError:
        return None


def _score(value: Any, _record: Mapping[str, Any]) -> float | None:
    try:
        return round(float(value) / 10, 2) if value not in (None, "") else None
    except (TypeError, ValueError):
        return None


def _content_rating(value: Any, _record: Mapping[str, Any]) -> str | None:
    if not value:
        return None
    return "explicit" if value == "R18" or value == "R" else "safe"


_LOOKUP_SCHEMA = {
    "id": "id",
    "title": FieldSpec("attributes.titles", _title),
    "altTitles": _alt_titles,
    "synopsis": "attributes.synopsis",
    "status": "attributes.status",
    "startYear": FieldSpec("attributes.startDate", _year),
    "contentRating": FieldSpec("attributes.ageRating", _content_rating),
    "score": FieldSpec("attributes.averageRating", _score),
    "cover": "attributes.posterImage.original",
    "externalIds.kitsu": "id",
    "externalLinks.kitsu": "links.self",
}


class KitsuAgent(Agent):
    id = "kitsu"
    label = "Kitsu"
    capabilities = (
        AgentCapability.MANGA_CROSS_LOOKUP
        | AgentCapability.MANGA_METADATA_FETCH
        | AgentCapability.MANGA_BASIC_RECOMMENDATIONS
    )
    priority = 30
    cover_priority = 10
    host = API_HOST
    source_url = "https://kitsu.io/manga/[id]"
    supports_pagination = True
    max_pages = 3
    offset_inc = 20
    requires_canonical_id = True
    rate_limit_max_concurrent = 5
    rate_limit_min_interval_ms = 1000
    schemas = AgentSchemas(
        lookup=_LOOKUP_SCHEMA,
        recommendation=_LOOKUP_SCHEMA,
        manga={
            "id": "id",
            "type": "type",
            "canonicalTitle": "attributes.canonicalTitle",
            "titles.en_us": "attributes.titles.en_us",
            "titles.ja_jp": "attributes.titles.ja_jp",
            "altTitles": _alt_titles,
            "synopsis.en_us": "attributes.synopsis",
            "description.en_us": "attributes.description",
            "status": "attributes.status",
            "bannerImage.kitsu": "attributes.coverImage.original",
            "posterImage.kitsu": "attributes.posterImage.original",
            "coverImage.kitsu": "attributes.posterImage.original",
            "chapterCount": "attributes.chapterCount",
            "volumeCount": "attributes.volumeCount",
            "serialization": "attributes.serialization",
            "nextRelease": "attributes.nextRelease",
            "popularityRank": "attributes.popularityRank",
            "favoritesCount": "attributes.favoritesCount",
            "score": FieldSpec("attributes.averageRating", _score),
            "contentRating": FieldSpec("attributes.ageRating", _content_rating),
            "startYear": FieldSpec("attributes.startDate", _year),
            "endYear": FieldSpec("attributes.endDate", _year),
            "externalIds.kitsu": "id",
            "externalLinks.kitsu": "links.self",
        },
    )

    def __init__(self, *, http: AgentHttpClient | None = None, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self.http = http or AgentHttpClient(self.id, base_url=API_HOST, headers=JSON_API_HEADERS)

    async def fetch_lookup_page(self, host: str | None, query: str, offset: int, page: int) -> Any:
        params = {
            "filter[text]": query,
            "filter[subtype]": "manga",
            "page[limit]": self.offset_inc,
            "page[offset]": offset,
        }
        return await self.http.get_json("/manga", params=params)

    async def fetch_manga(self, host: str | None, manga_id: str) -> Any:
        if _HAS_LETTER.search(manga_id):
            raise AgentNotFoundError(self.id, status_code=None)
        return await self.http.get_json(f"/manga/{manga_id}")

    async def fetch_recommendations_page(
        self, host: str | None, ask: Mapping[str, Any], offset: int, page: int
    ) -> Any:
        if page > 1:
            return []
        path, extra = _RECOMMENDATION_QUERIES.get(
            str(ask.get("kind") or "popular"), _RECOMMENDATION_QUERIES["popular"]
        )
        params = dict(extra)
        params["page[limit]" if path == "/manga" else "limit"] = str(ask.get("limit") or 20)
        return await self.http.get_json(path, params=params)

    async def resolve_canonical_id(self, host: str | None, value: str) -> str:
        """Kitsu ids are numeric; anything with letters is treated as a slug."""

        if not _HAS_LETTER.search(value):
            return value
        payload = await self.http.get_json("/manga", params={"filter[slug]": value})
        records = self.extract_records("manga", payload)
        if not records or not records[0].get("id"):
            raise AgentNotFoundError(self.id, status_code=None)
        return str(records[0]["id"])


__all__ = ["KitsuAgent"]
