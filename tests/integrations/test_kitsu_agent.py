from __future__ import annotations

import httpx
import pytest

from libra.integrations.agents.kitsu import API_HOST, KitsuAgent
from libra.integrations.http import AgentHttpClient
from libra.integrations.rate_limit import AgentRateLimiter

KITSU_MANGA = {
    "id": "42",
    "type": "manga",
    "links": {"self": "https://kitsu.io/api/edge/manga/42"},
    "attributes": {
        "canonicalTitle": "Foo",
        "titles": {"en": "Foo", "en_us": "Foo", "ja_jp": "フー"},
        "abbreviatedTitles": ["FOO"],
        "synopsis": "A foo story",
        "description": "A foo story",
        "status": "finished",
        "startDate": "1999-04-01",
        "endDate": "2004-02-01",
        "averageRating": "81.5",
        "ageRating": "PG",
        "chapterCount": 120,
        "favoritesCount": 300,
        "posterImage": {"original": "https://media.kitsu.io/poster.jpg"},
        "coverImage": {"original": "https://media.kitsu.io/cover.jpg"},
    },
}


class FakeKitsu:
    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        params = request.url.params
        path = request.url.path.removeprefix("/api/edge")
        if path == "/manga" and "filter[slug]" in params:
            found = params["filter[slug]"] == "foo"
            return httpx.Response(200, json={"data": [KITSU_MANGA] if found else []})
        if path == "/manga" and "filter[text]" in params:
            first = params.get("page[offset]") == "0"
            return httpx.Response(200, json={"data": [KITSU_MANGA] if first else []})
        if path == "/manga/42":
            return httpx.Response(200, json={"data": KITSU_MANGA})
        if path == "/trending/manga":
            return httpx.Response(200, json={"data": [KITSU_MANGA]})
        return httpx.Response(404)


def _agent() -> tuple[KitsuAgent, FakeKitsu]:
    server = FakeKitsu()
    client = httpx.AsyncClient(transport=httpx.MockTransport(server), base_url=API_HOST)
    http = AgentHttpClient("kitsu", base_url=API_HOST, client=client)
    return KitsuAgent(http=http, limiter=AgentRateLimiter()), server


@pytest.mark.asyncio
async def test_lookup_maps_score_year_and_rating() -> None:
    agent, _ = _agent()

    [result] = await agent.search_mangas("foo")

    assert result["id"] == "42"
    assert result["title"] == "Foo"
    assert result["altTitles"] == ["Foo", "フー", "FOO"]
    assert result["startYear"] == 1999
    assert result["score"] == 8.15
    assert result["contentRating"] == "safe"
    assert result["externalIds"] == {"kitsu": "42"}


@pytest.mark.asyncio
async def test_slugs_are_resolved_to_numeric_ids() -> None:
    agent, server = _agent()

    assert await agent.canonical_id("42") == "42"
    assert server.requests == []
    assert await agent.canonical_id("foo") == "42"
    assert await agent.canonical_id("unknown") is None


@pytest.mark.asyncio
async def test_manga_by_id_rejects_slugs_without_a_request() -> None:
    agent, server = _agent()

    assert await agent.get_manga_by_id("foo") is None
    assert server.requests == []

    manga = await agent.get_manga_by_id("42")
    assert manga is not None
    assert manga["canonicalTitle"] == "Foo"
    assert manga["titles"] == {"en_us": "Foo", "ja_jp": "フー"}
    assert manga["posterImage"] == {"kitsu": "https://media.kitsu.io/poster.jpg"}
    assert manga["bannerImage"] == {"kitsu": "https://media.kitsu.io/cover.jpg"}
    assert manga["endYear"] == 2004


@pytest.mark.asyncio
async def test_trending_recommendations() -> None:
    agent, server = _agent()

    results = await agent.lookup_recommendations({"kind": "trending", "limit": 5})

    assert [item["id"] for item in results] == ["42"]
    assert server.requests[0].url.params["limit"] == "5"
