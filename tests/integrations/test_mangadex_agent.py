from __future__ import annotations

import httpx
import pytest

from libra.config import override_runtime_env
from libra.integrations.agents.mangadex import API_HOST, MangaDexAgent
from libra.integrations.http import AgentHttpClient
from libra.integrations.rate_limit import AgentRateLimiter

MANGA = {
    "id": "md-1",
    "type": "manga",
    "attributes": {
        "title": {"en": "Foo"},
        "altTitles": [{"ja": "フー"}, {"en": "The Foo"}],
        "description": {"en": "A foo story", "fr": "Une histoire"},
        "status": "ongoing",
        "year": 1999,
        "contentRating": "safe",
        "publicationDemographic": "shounen",
        "lastChapter": "42",
        "tags": [
            {"attributes": {"group": "genre", "name": {"en": "Action"}}},
            {"attributes": {"group": "theme", "name": {"en": "School Life"}}},
        ],
        "links": {"al": "30013", "kt": "foo-slug"},
    },
    "relationships": [
        {"type": "author", "attributes": {"name": "Jane Doe"}},
        {"type": "artist", "attributes": {"name": "Jane Doe"}},
        {"type": "cover_art", "attributes": {"fileName": "cover.jpg"}},
    ],
}

CHAPTERS = [
    {
        "id": "ch-1",
        "attributes": {
            "title": "Start",
            "chapter": "1",
            "volume": "1",
            "translatedLanguage": "en",
            "pages": 20,
            "publishAt": "2024-01-01T00:00:00+00:00",
            "externalUrl": None,
        },
        "relationships": [{"type": "scanlation_group", "attributes": {"name": "Scans"}}],
    },
    {
        "id": "ch-ext",
        "attributes": {"chapter": "2", "translatedLanguage": "en", "externalUrl": "https://x"},
        "relationships": [],
    },
]


class FakeMangaDex:
    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        first_page = request.url.params.get("offset", "0") == "0"
        if path == "/manga":
            return httpx.Response(200, json={"data": [MANGA] if first_page else []})
        if path == "/manga/md-1":
            return httpx.Response(200, json={"result": "ok", "data": MANGA})
        if path == "/manga/md-1/feed":
            return httpx.Response(200, json={"data": CHAPTERS if first_page else []})
        if path == "/at-home/server/ch-1":
            return httpx.Response(
                200,
                json={
                    "baseUrl": "https://node.test",
                    "chapter": {"hash": "abc", "data": ["1.png", "2.png"]},
                },
            )
        if path == "/auth/login":
            return httpx.Response(200, json={"token": {"session": "sess", "refresh": "ref"}})
        return httpx.Response(404, json={"errors": []})


def _agent() -> tuple[MangaDexAgent, FakeMangaDex]:
    server = FakeMangaDex()
    client = httpx.AsyncClient(transport=httpx.MockTransport(server), base_url=API_HOST)
    http = AgentHttpClient("mangadex", base_url=API_HOST, client=client)
    return MangaDexAgent(http=http, limiter=AgentRateLimiter()), server


def test_agent_declares_every_hook() -> None:
    agent, _ = _agent()

    assert agent.missing_hooks() == []
    assert agent.get_source_url("md-1") == "https://mangadex.org/title/md-1"


@pytest.mark.asyncio
async def test_search_maps_lookup_records() -> None:
    agent, server = _agent()

    [result] = await agent.search_mangas("Foo")

    assert result["id"] == "md-1"
    assert result["title"] == "Foo"
    assert result["altTitles"] == ["フー", "The Foo"]
    assert result["genres"] == ["Action"]
    assert result["authors"] == ["Jane Doe"]
    assert result["startYear"] == 1999
    assert result["cover"] == "https://uploads.mangadex.org/covers/md-1/cover.jpg.256.jpg"
    assert result["externalIds"]["mangadex"] == "md-1"
    assert result["externalIds"]["anilist"] == "30013"
    assert result["source"] == "mangadex"

    first = server.requests[0].url.params
    assert first["title"] == "Foo"
    assert first.get_list("contentRating[]") == ["safe", "suggestive", "erotica", "pornographic"]
    # pagination stops at the first empty page
    assert len(server.requests) == 2


@pytest.mark.asyncio
async def test_manga_by_id_maps_full_record() -> None:
    agent, _ = _agent()

    manga = await agent.get_manga_by_id({"mangadex": "md-1"})

    assert manga is not None
    assert manga["canonicalTitle"] == "Foo"
    assert manga["titles"] == {"en_us": "Foo"}
    assert manga["description"] == {"en_us": "A foo story", "fr_fr": "Une histoire"}
    assert manga["tags"] == ["School Life"]
    assert manga["chapterCount"] == 42.0
    assert manga["publicationDemographics"] == "shounen"
    assert manga["coverImage"] == {
        "mangadex": "https://uploads.mangadex.org/covers/md-1/cover.jpg"
    }
    assert manga["externalIds"]["kitsu"] == "foo-slug"


@pytest.mark.asyncio
async def test_unknown_manga_is_none() -> None:
    agent, _ = _agent()

    assert await agent.get_manga_by_id("nope") is None
    assert agent.breaker.error_count == 0


@pytest.mark.asyncio
async def test_external_chapters_are_dropped() -> None:
    agent, server = _agent()

    chapters = await agent.lookup_chapters_by_manga_id("md-1", lang="en")

    assert [chapter["id"] for chapter in chapters] == ["ch-1"]
    assert chapters[0]["number"] == 1.0
    assert chapters[0]["groupScan"] == "Scans"
    assert server.requests[0].url.params["translatedLanguage[]"] == "en"


@pytest.mark.asyncio
async def test_pages_are_built_from_at_home_server() -> None:
    agent, _ = _agent()

    pages = await agent.grab_chapter_pages("ch-1")

    assert pages == [
        {"page": 1, "url": "https://node.test/data/abc/1.png"},
        {"page": 2, "url": "https://node.test/data/abc/2.png"},
    ]


@pytest.mark.asyncio
async def test_login_uses_configured_credentials() -> None:
    agent, server = _agent()

    assert await agent.login() is False
    assert server.requests == []

    override_runtime_env({"MANGADEX_USERNAME": "reader", "MANGADEX_PASSWORD": "secret"})
    assert await agent.login() is True

    await agent.get_manga_by_id("md-1")
    assert server.requests[-1].headers["Authorization"] == "Bearer sess"
