"""Manga import and refresh pipeline built on the agent fan-out."""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Mapping, Sequence
from datetime import datetime, timedelta
from typing import Any

from libra.errors import NotFoundError
from libra.integrations.agents_manager import AgentsManager
from libra.integrations.contracts import AgentCapability
from libra.logging import get_logger
from libra.logging_events import log_event
from libra.reconciliation.assets import DEFAULT_ASSETS, AssetDownloader, AssetSpec
from libra.reconciliation.assets import download_assets as download_manga_assets
from libra.reconciliation.chapters import (
    NO_INTERVAL,
    average_release_interval,
    chapters_to_unified,
)
from libra.reconciliation.manga import (
    compare_update_mangas,
    mangas_to_unified,
    validate_manga_data,
)
from libra.reconciliation.strategies import defaults_deep, parse_date
from libra.services.entity_jobs import EntityJobService
from libra.services.stores import ENTITY_MANGA, EntityStore
from libra.utils.text import slugify
from libra.utils.time import now_utc

logger = get_logger(__name__)

UPDATE_AFTER_MINUTES = 60
RELEASE_SAMPLES = 20


def _merge_descriptions(
    existing: Mapping[str, Any] | None, extra: Mapping[str, Any] | None
) -> dict[str, Any]:
    merged = dict(existing or {})
    for key, value in (extra or {}).items():
        if key in (None, "null") or value in (None, ""):
            continue
        merged.setdefault(str(key).lower(), value)
    return merged


class LibraryService:
    """Fetches, fuses and stores manga records and their chapters."""

    def __init__(
        self,
        *,
        agents: AgentsManager,
        entities: EntityStore,
        entity_jobs: EntityJobService,
        downloader: AssetDownloader | None = None,
        assets: Sequence[AssetSpec] = DEFAULT_ASSETS,
        chapter_lang: str | None = None,
        update_after_minutes: int = UPDATE_AFTER_MINUTES,
        clock: Callable[[], datetime] = now_utc,
    ) -> None:
        self._agents = agents
        self._entities = entities
        self._entity_jobs = entity_jobs
        self._downloader = downloader
        self._assets = tuple(assets)
        self._chapter_lang = chapter_lang
        self._update_after = timedelta(minutes=update_after_minutes)
        self._clock = clock

    def split_agents(self, external_ids: Mapping[str, Any]) -> tuple[list[str], list[str]]:
        """Metadata agents with a known id, and the rest."""

        known: list[str] = []
        extra: list[str] = []
        for agent in self._agents.get_agents(AgentCapability.MANGA_METADATA_FETCH):
            (known if external_ids.get(agent.id) else extra).append(agent.id)
        return known, extra

    async def fetch_manga_data(
        self, external_ids: Mapping[str, Any], agent_ids: Sequence[str] | None = None
    ) -> dict[str, Any] | None:
        response = await self._agents.search_manga(external_ids, agent_ids)
        unified = mangas_to_unified(response.results)
        if unified is not None:
            unified["externalIds"] = defaults_deep(
                unified.get("externalIds") or {},
                {key: value for key, value in external_ids.items() if value},
            )
        return unified

    async def fetch_extra_manga_data(
        self, manga: dict[str, Any], agent_ids: Sequence[str] | None = None
    ) -> dict[str, Any]:
        """Complete ``manga`` with what agents without a known id can add."""

        if agent_ids is None or agent_ids:
            extra = await self._agents.search_manga_by_title_year_authors(
                manga.get("canonicalTitle") or "",
                manga.get("altTitles") or [],
                manga.get("startYear"),
                manga.get("authors") or [],
                agent_ids,
            )
        else:
            extra = None

        if extra:
            external_ids = dict(manga.get("externalIds") or {})
            for agent_id, value in (extra.get("externalIds") or {}).items():
                if value and not external_ids.get(agent_id):
                    external_ids[agent_id] = value
            manga["externalIds"] = external_ids

            french = (extra.get("titles") or {}).get("fr_fr")
            if french:
                titles = dict(manga.get("titles") or {})
                titles.setdefault("fr_fr", french)
                manga["titles"] = titles
                alt_titles = list(manga.get("altTitles") or [])
                if french not in alt_titles:
                    alt_titles.append(french)
                manga["altTitles"] = alt_titles

            manga["description"] = _merge_descriptions(
                manga.get("description"), extra.get("description")
            )
            if manga.get("score") is None:
                manga["score"] = extra.get("score")
            favourites = extra.get("favoritesCount")
            if isinstance(favourites, (int, float)) and not isinstance(favourites, bool):
                manga["favoritesCount"] = (manga.get("favoritesCount") or 0) + favourites
            covers = dict(manga.get("coverImage") or {})
            for agent_id, url in (extra.get("coverImage") or {}).items():
                if url:
                    covers.setdefault(agent_id, url)
            manga["coverImage"] = covers

        return validate_manga_data(manga)

    async def fetch_manga_chapters(self, manga: dict[str, Any]) -> list[dict[str, Any]]:
        """Fan out for chapters, store them and derive release cadence fields."""

        response = await self._agents.search_manga_chapters(
            manga.get("externalIds") or {}, lang=self._chapter_lang
        )
        chapters = chapters_to_unified(manga.get("id"), response.results)
        if not chapters:
            logger.warning("No chapters found for manga %s", manga.get("id"))
            return []
        if manga.get("id"):
            await self._entities.upsert_chapters(str(manga["id"]), chapters)

        if not manga.get("chapterCount"):
            manga["chapterCount"] = len(chapters)
        interval = average_release_interval(chapters, RELEASE_SAMPLES, now=self._clock())
        manga["averageReleaseInterval"] = interval
        latest = chapters[-1]
        last_release = parse_date(latest.get("readableAt")) or parse_date(latest.get("publishAt"))
        manga["lastRelease"] = last_release
        if last_release is not None and interval != NO_INTERVAL:
            manga["nextRelease"] = last_release + timedelta(days=interval)
        else:
            manga["nextRelease"] = None
        return chapters

    async def download_assets(self, manga: Mapping[str, Any]) -> dict[str, dict[str, Any]]:
        if self._downloader is None:
            return {}
        return await download_manga_assets(manga, self._downloader, self._assets)

    async def upsert_manga(
        self, manga: Mapping[str, Any], *, monitored: bool = False
    ) -> tuple[dict[str, Any], bool]:
        """Find the stored manga by slug and start year or create it.

        Returns the stored record and whether it existed already.
        """

        slug = manga.get("slug") or slugify(manga.get("canonicalTitle"))
        existing = await self._entities.find_manga(slug, manga.get("startYear"))
        if existing is not None:
            return existing, True
        created = await self._entities.create_manga(
            {
                "slug": slug,
                "startYear": manga.get("startYear"),
                "canonicalTitle": manga.get("canonicalTitle") or slug,
            },
            monitored=monitored,
        )
        return created, False

    async def import_or_create_manga(
        self,
        job_id: str | None,
        title: str,
        year: int | None,
        external_ids: Mapping[str, Any],
        tracking: Mapping[str, Any] | None = None,
        monitor: bool = False,
    ) -> dict[str, Any]:
        known, extra = self.split_agents(external_ids)
        manga = await self.fetch_manga_data(external_ids, known)
        if manga is None:
            raise NotFoundError("manga metadata", title)
        if not manga.get("canonicalTitle"):
            manga["canonicalTitle"] = title
            manga["slug"] = slugify(title)
        if manga.get("startYear") is None:
            manga["startYear"] = year
        await self.fetch_extra_manga_data(manga, extra)

        stored, existed = await self.upsert_manga(manga, monitored=monitor)
        manga["id"] = stored["id"]
        await self._entity_jobs.create_entity_job(stored["id"], ENTITY_MANGA, job_id)

        assets, _ = await asyncio.gather(
            self.download_assets(manga), self.fetch_manga_chapters(manga)
        )
        if assets:
            manga["assets"] = assets
        if tracking:
            manga["scrobblersKey"] = dict(tracking)
        manga["monitored"] = bool(monitor or stored.get("monitored"))

        saved = await self._entities.update_manga(str(stored["id"]), manga)
        log_event(
            logger,
            "library.import",
            component="library",
            status="updated" if existed else "created",
            entity_id=str(stored["id"]),
            job_id=job_id,
            meta={"title": title, "agents": known + extra},
        )
        return saved

    async def update_library(self) -> dict[str, int]:
        """Refresh monitored mangas that were not updated recently."""

        cutoff = self._clock() - self._update_after
        updated = 0
        skipped = 0
        for manga in await self._entities.list_mangas(monitored_only=True):
            last_update = manga.get("updatedAt")
            if isinstance(last_update, datetime) and last_update > cutoff:
                logger.info(
                    "Skipping '%s' because it was recently updated", manga.get("canonicalTitle")
                )
                skipped += 1
                continue
            await self.refresh_manga(manga)
            updated += 1
        return {"updated": updated, "skipped": skipped}

    async def refresh_manga(self, manga: Mapping[str, Any]) -> dict[str, Any]:
        logger.info("Processing library update for '%s'", manga.get("canonicalTitle"))
        external_ids = manga.get("externalIds") or {}
        known, extra = self.split_agents(external_ids)
        data = await self.fetch_manga_data(external_ids, known)
        if data is None:
            logger.warning("No fresh metadata for manga %s", manga.get("id"))
            return dict(manga)
        data["id"] = manga["id"]
        await self.download_assets(data)
        await self.fetch_extra_manga_data(data, extra)

        changes = compare_update_mangas(manga, data)
        changes["externalIds"] = defaults_deep(
            changes.get("externalIds") or {}, manga.get("externalIds") or {}
        )
        changes["externalLinks"] = defaults_deep(
            data.get("externalLinks") or {}, manga.get("externalLinks") or {}
        )
        # chapters need the merged ids to reach every source
        target = {**manga, **changes}
        await self.fetch_manga_chapters(target)
        for key in ("chapterCount", "averageReleaseInterval", "lastRelease", "nextRelease"):
            if key in target:
                changes[key] = target[key]
        return await self._entities.update_manga(str(manga["id"]), changes)


__all__ = ["LibraryService", "RELEASE_SAMPLES", "UPDATE_AFTER_MINUTES"]
