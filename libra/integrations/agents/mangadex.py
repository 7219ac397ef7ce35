"""MangaDex agent (https://api.mangadex.org)."""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from libra.config import get_env
from libra.integrations.agent import Agent
from libra.integrations.contracts import AgentCapability, AgentSchemas
from libra.integrations.http import AgentHttpClient
from libra.integrations.schema_mapping import FieldSpec
from libra.logging import get_logger
from libra.utils.locales import to_locale

logger = get_logger(__name__)

API_HOST = "https://api.mangadex.org"
COVERS_HOST = "https://uploads.mangadex.org/covers"

_CONTENT_RATINGS = ("safe", "suggestive", "erotica", "pornographic")


def _english_or_first(value: Any, _record: Mapping[str, Any]) -> str | None:
    if not isinstance(value, Mapping) or not value:
        return None
    return value.get("en") or next(iter(value.values()))


def _relationships(record: Mapping[str, Any], kind: str) -> list[Mapping[str, Any]]:
    relationships = record.get("relationships") or []
    return [rel for rel in relationships if isinstance(rel, Mapping) and rel.get("type") == kind]


def _tags(record: Mapping[str, Any], *, genres: bool) -> list[str]:
    tags = (record.get("attributes") or {}).get("tags") or []
    names: list[str] = []
    for tag in tags:
        attributes = tag.get("attributes") or {}
        if (attributes.get("group") == "genre") != genres:
            continue
        name = (attributes.get("name") or {}).get("en")
        if name:
            names.append(name)
    return names


def _genres(record: Mapping[str, Any]) -> list[str]:
    return _tags(record, genres=True)


def _other_tags(record: Mapping[str, Any]) -> list[str]:
    return _tags(record, genres=False)


def _cover_file(record: Mapping[str, Any]) -> str | None:
    for rel in _relationships(record, "cover_art"):
        file_name = (rel.get("attributes") or {}).get("fileName")
        if file_name:
            return file_name
    return None


def _authors(record: Mapping[str, Any]) -> list[str]:
    names: list[str] = []
    for kind in ("author", "artist"):
        for rel in _relationships(record, kind):
            name = (rel.get("attributes") or {}).get("name")
            if name and name not in names:
                names.append(name)
    return names


def _alt_titles(value: Any, _record: Mapping[str, Any]) -> list[str]:
    titles: list[str] = []
    for entry in value or []:
        if isinstance(entry, Mapping):
            titles.extend(title for title in entry.values() if isinstance(title, str))
    return titles


def _descriptions(value: Any, _record: Mapping[str, Any]) -> dict[str, str]:
    descriptions: dict[str, str] = {}
    for language, text in (value or {}).items():
        locale = to_locale(language)
        if locale and text:
            descriptions[locale] = text
    return descriptions


def _chapter_number(value: Any, _record: Mapping[str, Any]) -> float | None:
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _scanlation_group(record: Mapping[str, Any]) -> str | None:
    for rel in _relationships(record, "scanlation_group"):
        name = (rel.get("attributes") or {}).get("name")
        if name:
            return name
    return None


def _numeric(value: Any, _record: Mapping[str, Any]) -> float | None:
    try:
        return float(value) if value not in (None, "") else None
    except (TypeError, ValueError):
        return None


class MangaDexAgent(Agent):
    id = "mangadex"
    label = "MangaDex"
    capabilities = (
        AgentCapability.MANGA_CROSS_LOOKUP
        | AgentCapability.MANGA_METADATA_FETCH
        | AgentCapability.CHAPTER_FETCH
        | AgentCapability.OPT_AUTH
    )
    priority = 10
    cover_priority = 90
    host = API_HOST
    source_url = "https://mangadex.org/title/[id]"
    supports_pagination = True
    max_pages = 3
    offset_inc = 100
    rate_limit_max_concurrent = 2
    rate_limit_min_interval_ms = 900
    schemas = AgentSchemas(
        lookup={
            "id": "id",
            "title": FieldSpec("attributes.title", _english_or_first),
            "altTitles": FieldSpec("attributes.altTitles", _alt_titles),
            "synopsis": "attributes.description.en",
            "status": "attributes.status",
            "genres": _genres,
            "startYear": "attributes.year",
            "contentRating": "attributes.contentRating",
            "authors": _authors,
            "cover": _cover_file,
            "externalIds.mangadex": "id",
            "externalIds.anilist": "attributes.links.al",
            "externalIds.kitsu": "attributes.links.kt",
            "externalIds.mangaupdates": "attributes.links.mu",
            "externalIds.mal": "attributes.links.mal",
        },
        manga={
            "id": "id",
            "type": "type",
            "canonicalTitle": FieldSpec("attributes.title", _english_or_first),
            "titles.en_us": "attributes.title.en",
            "altTitles": FieldSpec("attributes.altTitles", _alt_titles),
            "publicationDemographics": "attributes.publicationDemographic",
            "genres": _genres,
            "tags": _other_tags,
            "description": FieldSpec("attributes.description", _descriptions),
            "status": "attributes.status",
            "coverImage.mangadex": _cover_file,
            "chapterCount": FieldSpec("attributes.lastChapter", _numeric),
            "volumeCount": FieldSpec("attributes.lastVolume", _numeric),
            "contentRating": "attributes.contentRating",
            "startYear": "attributes.year",
            "authors": _authors,
            "chapterNumbersResetOnNewVolume": "attributes.chapterNumbersResetOnNewVolume",
            "externalIds.mangadex": "id",
            "externalIds.anilist": "attributes.links.al",
            "externalIds.kitsu": "attributes.links.kt",
            "externalIds.mangaupdates": "attributes.links.mu",
            "externalIds.mal": "attributes.links.mal",
            "externalLinks.mangadex": "id",
        },
        chapter={
            "id": "id",
            "title": "attributes.title",
            "number": FieldSpec("attributes.chapter", _chapter_number),
            "volume": "attributes.volume",
            "lang": "attributes.translatedLanguage",
            "pages": "attributes.pages",
            "publishAt": "attributes.publishAt",
            "readableAt": "attributes.readableAt",
            "version": "attributes.version",
            "groupScan": _scanlation_group,
            "externalIds.mangadex": "id",
            "externalLinks.mangadex": "id",
        },
        page={"page": "page", "url": "url"},
    )

    def __init__(self, *, http: AgentHttpClient | None = None, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self.http = http or AgentHttpClient(self.id, base_url=API_HOST)
        self._session_token: str | None = None
        self._refresh_token: str | None = None

    def _auth_headers(self) -> dict[str, str] | None:
        if not self._session_token:
            return None
        return {"Authorization": f"Bearer {self._session_token}"}

    async def login(self) -> bool:
        username = get_env("MANGADEX_USERNAME")
        password = get_env("MANGADEX_PASSWORD")
        if not username or not password:
            logger.warning("MangaDex login skipped: no username or password configured")
            return False
        payload = await self.http.post_json(
            "/auth/login", {"username": username, "password": password}
        )
        token = (payload or {}).get("token") or {}
        self._session_token = token.get("session")
        self._refresh_token = token.get("refresh")
        logger.info("MangaDex logged in")
        return self._session_token is not None

    async def fetch_lookup_page(self, host: str | None, query: str, offset: int, page: int) -> Any:
        params: list[tuple[str, Any]] = [
            ("limit", self.offset_inc),
            ("offset", offset),
            ("includes[]", "cover_art"),
            ("includes[]", "author"),
        ]
        if query:
            params.append(("title", query))
        params.extend(("contentRating[]", rating) for rating in _CONTENT_RATINGS)
        return await self.http.get_json("/manga", params=params, headers=self._auth_headers())

    async def fetch_manga(self, host: str | None, manga_id: str) -> Any:
        params = [("includes[]", "author"), ("includes[]", "artist"), ("includes[]", "cover_art")]
        return await self.http.get_json(
            f"/manga/{manga_id}", params=params, headers=self._auth_headers()
        )

    async def fetch_chapters_page(
        self, host: str | None, manga_id: str, offset: int, page: int, lang: str | None
    ) -> Any:
        params: list[tuple[str, Any]] = [
            ("limit", self.offset_inc),
            ("offset", offset),
            ("includes[]", "scanlation_group"),
        ]
        params.extend(("contentRating[]", rating) for rating in _CONTENT_RATINGS)
        if lang:
            params.append(("translatedLanguage[]", lang))
        payload = await self.http.get_json(
            f"/manga/{manga_id}/feed", params=params, headers=self._auth_headers()
        )
        chapters = (payload or {}).get("data") or []
        # externally hosted chapters have no pages to grab
        return [
            chapter
            for chapter in chapters
            if (chapter.get("attributes") or {}).get("externalUrl") is None
        ]

    async def fetch_chapter_pages(self, host: str | None, chapter_id: str) -> Any:
        return await self.http.get_json(
            f"/at-home/server/{chapter_id}", headers=self._auth_headers()
        )

    def pre_pages(self, payload: Any) -> Any:
        if not isinstance(payload, Mapping):
            return []
        base_url = payload.get("baseUrl")
        chapter = payload.get("chapter") or {}
        chapter_hash = chapter.get("hash")
        if not base_url or not chapter_hash:
            return []
        return [
            {"page": index, "url": f"{base_url}/data/{chapter_hash}/{file_name}"}
            for index, file_name in enumerate(chapter.get("data") or [], start=1)
        ]

    def post_lookup(self, records: list[dict[str, Any]]) -> list[dict[str, Any]]:
        for record in records:
            if record.get("cover"):
                record["cover"] = f"{COVERS_HOST}/{record['id']}/{record['cover']}.256.jpg"
        return records

    def post_manga(self, record: dict[str, Any]) -> dict[str, Any]:
        covers = record.get("coverImage") or {}
        if covers.get("mangadex"):
            covers["mangadex"] = f"{COVERS_HOST}/{record['id']}/{covers['mangadex']}"
        return record


__all__ = ["MangaDexAgent"]
