from __future__ import annotations

import pytest

from libra.integrations.agent import Agent
from libra.integrations.cache import AgentCache
from libra.integrations.contracts import (
    AgentCapability,
    AgentDependencyError,
    AgentInternalError,
    AgentNotFoundError,
)
from libra.services.memory_store import InMemoryCacheStore
from libra.utils.metrics import sample_value
from tests.support.fakes import FakeAgent

LOOKUPS = [
    {"id": "a", "title": "Foo", "year": 1999, "authors": ["Jane Doe"]},
    {"id": "b", "title": "Foo", "year": 2010, "authors": ["John Roe"]},
    {"id": "c", "title": "Completely Different", "year": 2010},
]

MANGAS = {
    "b": {"id": "b", "title": "Foo", "year": 2010, "genres": ["Action"], "authors": ["John Roe"]},
}


def test_declared_capabilities_require_hooks() -> None:
    class HalfAgent(Agent):
        id = "half"
        capabilities = AgentCapability.CHAPTER_FETCH | AgentCapability.MANGA_METADATA_FETCH

        async def fetch_manga(self, host, manga_id):
            return {}

    assert HalfAgent().missing_hooks() == ["fetch_chapters_page", "fetch_chapter_pages"]
    assert FakeAgent().missing_hooks() == []


def test_agent_without_id_is_rejected() -> None:
    class Anonymous(Agent):
        pass

    with pytest.raises(TypeError):
        Anonymous()


def test_external_id_and_source_url() -> None:
    agent = FakeAgent("fake")

    assert agent.external_id({"fake": 12, "other": "x"}) == "12"
    assert agent.external_id({"other": "x"}) is None
    assert agent.external_id("  ") is None
    assert agent.get_source_url("42") == "https://fake.example/42"


@pytest.mark.asyncio
async def test_search_maps_stamps_and_filters() -> None:
    agent = FakeAgent(lookups=LOOKUPS)

    results = await agent.search_mangas("foo")

    assert [record["id"] for record in results] == ["a", "b"]
    assert all(record["source"] == "fake" for record in results)
    assert results[0]["startYear"] == 1999


@pytest.mark.asyncio
async def test_strict_layer_raises_and_counts_breaker_errors() -> None:
    agent = FakeAgent(mangas=MANGAS, failures=1)

    with pytest.raises(AgentDependencyError):
        await agent.fetch_manga_by_id("b")

    assert agent.breaker.error_count == 1
    assert (
        sample_value(
            "libra_agent_calls_total", {"agent": "fake", "operation": "manga", "status": "error"}
        )
        == 1.0
    )
    manga = await agent.fetch_manga_by_id("b")
    assert manga is not None and manga["canonicalTitle"] == "Foo"


@pytest.mark.asyncio
async def test_not_found_is_not_a_breaker_error() -> None:
    agent = FakeAgent(mangas=MANGAS)

    with pytest.raises(AgentNotFoundError):
        await agent.fetch_manga_by_id("missing")

    assert agent.breaker.error_count == 0
    assert await agent.get_manga_by_id("missing") is None


@pytest.mark.asyncio
async def test_safe_layer_swallows_failures() -> None:
    agent = FakeAgent(lookups=LOOKUPS, mangas=MANGAS, failures=10)

    assert await agent.search_mangas("foo") == []
    assert await agent.get_manga_by_id("b") is None
    assert await agent.lookup_chapters_by_manga_id("b") == []
    assert await agent.grab_chapter_pages("c1") == []
    assert await agent.scrobbler_pull() == []
    assert await agent.lookup_characters_by_manga_id("b") == []
    assert await agent.lookup_manga_based_recommendations("b") == []


@pytest.mark.asyncio
async def test_unknown_ids_skip_the_provider() -> None:
    agent = FakeAgent(mangas=MANGAS)

    assert await agent.get_manga_by_id({"other": "b"}) is None
    assert await agent.lookup_characters_by_manga_id({"other": "b"}) == []
    assert await agent.lookup_manga_based_recommendations({"other": "b"}) == []
    assert agent.calls == []


@pytest.mark.asyncio
async def test_chapters_are_filtered_by_language() -> None:
    agent = FakeAgent(
        chapters={
            "m1": [
                {"id": "c1", "number": 1, "lang": "en"},
                {"id": "c2", "number": 1, "lang": "fr"},
                {"id": "c1", "number": 1, "lang": "en"},
            ]
        }
    )

    chapters = await agent.lookup_chapters_by_manga_id({"fake": "m1"}, lang="en")

    assert [chapter["id"] for chapter in chapters] == ["c1"]
    assert chapters[0]["source"] == "fake"


@pytest.mark.asyncio
async def test_manga_by_name_disambiguates_by_year() -> None:
    agent = FakeAgent(lookups=LOOKUPS, mangas=MANGAS)

    match = await agent.get_manga_by_name("Foo", year=2011)

    assert match is not None
    assert match["id"] == "b"
    assert match["genres"] == ["Action"]
    assert agent.calls_for("manga") == ["b"]


@pytest.mark.asyncio
async def test_manga_by_name_falls_back_to_authors_when_year_misses() -> None:
    agent = FakeAgent(lookups=LOOKUPS)

    match = await agent.get_manga_by_name("Foo", year=2015, authors=["Doe Jane"])

    assert match is not None and match["id"] == "a"


@pytest.mark.asyncio
async def test_manga_by_name_year_match_wins_over_authors() -> None:
    agent = FakeAgent(lookups=LOOKUPS)

    match = await agent.get_manga_by_name("Foo", year=1998, authors=["John Roe"])

    assert match is not None and match["id"] == "a"


@pytest.mark.asyncio
async def test_manga_by_name_without_year_takes_first_hit() -> None:
    agent = FakeAgent(lookups=LOOKUPS)

    match = await agent.get_manga_by_name("Foo", authors=["John Roe"])

    assert match is not None and match["id"] == "a"


@pytest.mark.asyncio
async def test_manga_by_name_gives_up_on_ambiguity() -> None:
    agent = FakeAgent(lookups=LOOKUPS)

    assert await agent.get_manga_by_name("Foo", year=1980) is None
    assert await agent.get_manga_by_name("Nothing like it") is None


@pytest.mark.asyncio
async def test_cached_manga_skips_provider() -> None:
    cache = AgentCache("fake", InMemoryCacheStore(), enabled=True)
    agent = FakeAgent(mangas=MANGAS, cache=cache)

    first = await agent.get_manga_by_id("b")
    second = await agent.get_manga_by_id("b")

    assert first == second
    assert agent.calls_for("manga") == ["b"]


@pytest.mark.asyncio
async def test_scrobbler_push_raises_normalised_errors() -> None:
    agent = FakeAgent(failures=1)

    with pytest.raises(AgentDependencyError):
        await agent.scrobbler_push({"id": "s1", "mangaId": "b", "progress": 3})

    agent = FakeAgent(failures=1, error=ValueError("bad entry"))
    with pytest.raises(AgentInternalError) as excinfo:
        await agent.scrobbler_push({"id": "s1"})
    assert isinstance(excinfo.value.cause, ValueError)

    assert await FakeAgent().scrobbler_push({"id": "s1"}) == {"ok": True}
