"""Priority-ordered picking and downloading of manga artwork."""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from typing import Any, Protocol

from libra.logging import get_logger

logger = get_logger(__name__)

MAX_DOWNLOAD_ERRORS = 3


@dataclass(slots=True, frozen=True)
class AssetSpec:
    """An artwork type and the agents trusted for it, most trusted first."""

    type: str
    agents: tuple[str, ...]
    width: int
    height: int

    @property
    def field(self) -> str:
        return f"{self.type}Image"


DEFAULT_ASSETS: tuple[AssetSpec, ...] = (
    AssetSpec("cover", ("anilist", "kitsu", "mangadex", "bato", "mangaupdates"), 480, 720),
    AssetSpec("poster", ("mal", "kitsu", "mangaupdates"), 480, 720),
    AssetSpec("banner", ("anilist", "kitsu"), 1440, 403),
)


class AssetDownloader(Protocol):
    async def download(self, url: str, *, manga_id: Any, asset: AssetSpec) -> str | None:
        """Fetch ``url`` and store it; returns the stored location."""


def pick_asset_url(
    manga: Mapping[str, Any], spec: AssetSpec, exclude: Iterable[str] = ()
) -> tuple[str | None, str | None]:
    """First ``(url, agent)`` in the asset's trust order, skipping ``exclude``."""

    excluded = set(exclude)
    urls = manga.get(spec.field) or {}
    if not isinstance(urls, Mapping):
        return None, None
    for agent in spec.agents:
        if agent in excluded:
            continue
        url = urls.get(agent)
        if isinstance(url, str) and url:
            return url, agent
    return None, None


async def download_assets(
    manga: Mapping[str, Any],
    downloader: AssetDownloader,
    specs: Iterable[AssetSpec] = DEFAULT_ASSETS,
    *,
    max_errors: int = MAX_DOWNLOAD_ERRORS,
) -> dict[str, dict[str, Any]]:
    """Download each asset type, falling back to the next agent after a failure."""

    stored: dict[str, dict[str, Any]] = {}
    excluded: list[str] = []
    for spec in specs:
        errors = 0
        while errors < max_errors:
            url, source = pick_asset_url(manga, spec, excluded)
            if url is None or source is None:
                break
            try:
                location = await downloader.download(url, manga_id=manga.get("id"), asset=spec)
            except Exception:
                errors += 1
                excluded.append(source)
                logger.warning(
                    "Download of %s for manga %s from %s failed",
                    spec.type,
                    manga.get("id"),
                    source,
                    exc_info=True,
                )
                continue
            stored[spec.type] = {"url": url, "source": source, "location": location}
            break
    return stored


__all__ = [
    "AssetDownloader",
    "AssetSpec",
    "DEFAULT_ASSETS",
    "MAX_DOWNLOAD_ERRORS",
    "download_assets",
    "pick_asset_url",
]
