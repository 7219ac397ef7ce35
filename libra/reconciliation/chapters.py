"""Chapter unification across agents and release cadence estimation."""

from __future__ import annotations

from collections.abc import Iterable, Mapping, Sequence
from datetime import datetime, timedelta
import math
from typing import Any

from libra.logging import get_logger
from libra.reconciliation.strategies import (
    key_value_union,
    most_frequent_value,
    newest_date,
    oldest_date,
    parse_date,
)
from libra.services.stores import CHAPTER_STATE_IDLE
from libra.utils.time import now_utc

logger = get_logger(__name__)

NO_INTERVAL = -1


def _number(value: Any) -> float | None:
    if isinstance(value, bool) or value is None:
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return None if math.isnan(number) else number


def _flatten_results(results: Iterable[Any]) -> list[Mapping[str, Any]]:
    chapters: list[Mapping[str, Any]] = []
    for item in results:
        payload = getattr(item, "result", item)
        if isinstance(payload, Mapping):
            chapters.append(payload)
        elif isinstance(payload, Sequence) and not isinstance(payload, (str, bytes)):
            chapters.extend(entry for entry in payload if isinstance(entry, Mapping))
    return chapters


def chapters_to_unified(manga_id: Any, results: Iterable[Any]) -> list[dict[str, Any]]:
    """Build one chapter per number of the best-covered language.

    The language offering the most distinct chapter numbers drives the list;
    every source for a given number, whatever its language, contributes to
    the unified chapter.
    """

    chapters = _flatten_results(results)
    if not chapters:
        logger.warning("No chapters found for manga %s", manga_id)
        return []

    numbers_by_lang: dict[str, set[float]] = {}
    for chapter in chapters:
        number = _number(chapter.get("number"))
        lang = chapter.get("lang") or "unknown"
        numbers_by_lang.setdefault(lang, set()).add(number if number is not None else 0.0)

    selected = max(numbers_by_lang, key=lambda lang: len(numbers_by_lang[lang]))
    unified: list[dict[str, Any]] = []
    for number in sorted(numbers_by_lang[selected]):
        sources = [
            chapter
            for chapter in chapters
            if (_number(chapter.get("number")) or 0.0) == number
        ]
        languages = list(
            dict.fromkeys(chapter.get("lang") for chapter in sources if chapter.get("lang"))
        )
        metadata = [
            {
                "source": chapter.get("source"),
                "id": (chapter.get("externalIds") or {}).get(chapter.get("source"))
                or chapter.get("id"),
                "lang": chapter.get("lang"),
                "votes": chapter.get("votes") or 0,
                "version": chapter.get("version"),
                "groupScan": chapter.get("groupScan"),
                "lastUpdated": chapter.get("publishAt"),
                "pages": chapter.get("pages"),
                "title": chapter.get("title"),
            }
            for chapter in sources
        ]
        titles: dict[str, str] = {}
        for entry in metadata:
            title = entry["title"]
            if isinstance(title, str) and len(title) > 3 and entry["lang"]:
                titles.setdefault(entry["lang"], title)
        unified.append(
            {
                "mangaId": manga_id,
                "number": number,
                "titles": titles,
                "langAvailable": languages,
                "volume": most_frequent_value(sources, "volume"),
                "pages": most_frequent_value(sources, "pages"),
                "publishAt": newest_date(sources, "publishAt")
                or oldest_date(sources, "readableAt"),
                "readableAt": oldest_date(sources, "readableAt")
                or newest_date(sources, "publishAt"),
                "externalIds": key_value_union(sources, "externalIds"),
                "externalLinks": key_value_union(sources, "externalLinks"),
                "metadata": metadata,
                "state": CHAPTER_STATE_IDLE,
            }
        )
    return unified


def _bucket(days: int) -> int:
    if days < 7:
        return days
    if days < 30:
        return 7
    if days < 60:
        return 30
    if days < 90:
        return 60
    return days


def average_release_interval(
    chapters: Iterable[Mapping[str, Any]],
    max_samples: int = 12,
    now: datetime | None = None,
) -> int:
    """Typical gap in days between recent releases, or ``-1`` if unknown."""

    horizon = (now or now_utc()) - timedelta(days=365)
    dated: list[tuple[float, datetime]] = []
    for chapter in chapters:
        released = parse_date(chapter.get("readableAt")) or parse_date(chapter.get("publishAt"))
        if released is None or released <= horizon:
            continue
        dated.append((_number(chapter.get("number")) or 0.0, released))
    dated.sort(key=lambda item: item[0], reverse=True)
    dates = [released for _, released in dated[: max(0, max_samples)]]

    intervals: list[int] = []
    for current, previous in zip(dates, dates[1:]):
        days = math.ceil(abs((current - previous).total_seconds()) / 86_400)
        if days >= 7:
            intervals.append(days)
    if not intervals:
        return NO_INTERVAL
    return _bucket(round(sum(intervals) / len(intervals)))


__all__ = ["NO_INTERVAL", "average_release_interval", "chapters_to_unified"]
