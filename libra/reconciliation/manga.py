"""Fusion of per-agent manga records into one unified manga."""

from __future__ import annotations

from collections.abc import Iterable, Mapping, Sequence
from typing import Any

from libra.logging import get_logger
from libra.reconciliation.strategies import (
    Strategy,
    aggregate_unique_values,
    highest_non_empty_numeric,
    key_value_union,
    merge_records,
    most_frequent_value,
    per_language_merge,
    union_without_duplicates,
)
from libra.utils.text import slugify

logger = get_logger(__name__)

GENERAL_GENRES = frozenset(
    {
        "action",
        "adventure",
        "comedy",
        "drama",
        "fantasy",
        "gender bender",
        "harem",
        "historical",
        "horror",
        "josei",
        "martial arts",
        "mecha",
        "mystery",
        "psychological",
        "romance",
        "school life",
        "sci-fi",
        "seinen",
        "shoujo",
        "shoujo ai",
        "shounen",
        "shounen ai",
        "slice of life",
        "sports",
        "supernatural",
        "tragedy",
    }
)

SENSITIVE_GENRES = frozenset(
    {"adult", "doujinshi", "ecchi", "hentai", "lolicon", "mature", "smut", "yaoi", "yuri"}
)

PUBLICATION_DEMOGRAPHICS = frozenset(
    {
        "shonen",
        "shounen",
        "shoujo",
        "seinen",
        "josei",
        "kodomomuke",
        "sunjeong",
        "sungnyung",
        "shaonian",
        "shaonv",
        "qingnian",
        "zhenren",
    }
)

# genre -> demographic, checked in order
_DEMOGRAPHIC_FROM_GENRE = (
    ("shounen", "shounen"),
    ("shoujo", "shoujo"),
    ("seinen", "seinen"),
    ("josei", "josei"),
)

UPDATABLE_FIELDS: tuple[str, ...] = (
    "chapterCount",
    "lastChapter",
    "volumeCount",
    "lastRelease",
    "nextRelease",
    "popularityRank",
    "favoritesCount",
    "score",
    "startYear",
    "endYear",
    "authors",
    "publishers",
    "externalIds",
    "coverImage",
    "bannerImage",
    "posterImage",
    "publicationDemographics",
    "tags",
    "synopsis",
    "serialization",
    "contentRating",
)


def _lower(strategy: Strategy) -> Strategy:
    def wrapper(records: Sequence[Mapping[str, Any]], field: str) -> Any:
        value = strategy(records, field)
        return value.lower() if isinstance(value, str) else value

    return wrapper


def _flag(strategy: Strategy) -> Strategy:
    def wrapper(records: Sequence[Mapping[str, Any]], field: str) -> Any:
        return bool(strategy(records, field))

    return wrapper


UNIFIED_MANGA_PLAN: Mapping[str, Strategy | tuple[Strategy, str]] = {
    "type": _lower(most_frequent_value),
    "publicationDemographics": _lower(most_frequent_value),
    "genres": union_without_duplicates,
    "tags": union_without_duplicates,
    "canonicalTitle": most_frequent_value,
    "titles": per_language_merge,
    "altTitles": aggregate_unique_values,
    "primaryAltTitle": most_frequent_value,
    "synopsis": per_language_merge,
    "description": per_language_merge,
    "status": _lower(most_frequent_value),
    "isLicensed": most_frequent_value,
    "bannerImage": key_value_union,
    "posterImage": key_value_union,
    "coverImage": key_value_union,
    "color": most_frequent_value,
    "chapterCount": highest_non_empty_numeric,
    "lastChapter": highest_non_empty_numeric,
    "volumeCount": highest_non_empty_numeric,
    "serialization": most_frequent_value,
    "lastRelease": most_frequent_value,
    "nextRelease": most_frequent_value,
    "popularityRank": highest_non_empty_numeric,
    "favoritesCount": highest_non_empty_numeric,
    "score": highest_non_empty_numeric,
    "contentRating": most_frequent_value,
    "startYear": most_frequent_value,
    "endYear": most_frequent_value,
    "authors": union_without_duplicates,
    "publishers": union_without_duplicates,
    "chapterNumbersResetOnNewVolume": _flag(most_frequent_value),
    "externalIds": key_value_union,
    "externalLinks": key_value_union,
}


def _flatten(items: Iterable[Any]) -> list[Any]:
    flat: list[Any] = []
    for item in items:
        if isinstance(item, (list, tuple)):
            flat.extend(_flatten(item))
        elif isinstance(item, Mapping):
            flat.extend(_flatten(item.values()))
        elif item not in (None, ""):
            flat.append(item)
    return list(dict.fromkeys(flat))


def source_records(results: Iterable[Any]) -> list[Mapping[str, Any]]:
    """Unwrap fan-out results (``AgentResult`` or plain mappings)."""

    records: list[Mapping[str, Any]] = []
    for item in results:
        record = getattr(item, "result", item)
        if isinstance(record, Mapping) and record:
            records.append(record)
    return records


def mangas_to_unified(results: Iterable[Any]) -> dict[str, Any] | None:
    records = source_records(results)
    if not records:
        logger.warning("No source records to unify")
        return None
    unified = merge_records(records, UNIFIED_MANGA_PLAN)
    unified["altTitles"] = _flatten(unified.get("altTitles") or [])
    unified["slug"] = slugify(unified.get("canonicalTitle"))
    return unified


def validate_manga_data(manga: dict[str, Any]) -> dict[str, Any]:
    """Whitelist genres, derive content rating and infer the demographic."""

    demographic = manga.get("publicationDemographics")
    if isinstance(demographic, str):
        demographic = demographic.lower()
        manga["publicationDemographics"] = (
            demographic if demographic in PUBLICATION_DEMOGRAPHICS else None
        )
    elif isinstance(demographic, list):
        kept = [item.lower() for item in demographic if isinstance(item, str)]
        kept = [item for item in kept if item in PUBLICATION_DEMOGRAPHICS]
        manga["publicationDemographics"] = kept[0] if kept else None

    genres = manga.get("genres")
    if isinstance(genres, list):
        normalised = [genre.lower() for genre in genres if isinstance(genre, str)]
        manga["genres"] = [
            genre
            for genre in dict.fromkeys(normalised)
            if genre in GENERAL_GENRES or genre in SENSITIVE_GENRES
        ]
        if any(genre in SENSITIVE_GENRES for genre in manga["genres"]):
            manga["contentRating"] = "explicit"
        else:
            manga["contentRating"] = "safe"

    if not manga.get("publicationDemographics") and manga.get("genres"):
        for genre, inferred in _DEMOGRAPHIC_FROM_GENRE:
            if genre in manga["genres"]:
                manga["publicationDemographics"] = inferred
                break
    return manga


def compare_update_mangas(
    manga: Mapping[str, Any], updated: Mapping[str, Any]
) -> dict[str, Any]:
    """Fields of ``updated`` worth writing back onto ``manga``."""

    changes: dict[str, Any] = {}
    for field in UPDATABLE_FIELDS:
        value = updated.get(field)
        if value in (None, "", [], {}):
            continue
        if value != manga.get(field):
            changes[field] = value
    return changes


__all__ = [
    "GENERAL_GENRES",
    "SENSITIVE_GENRES",
    "PUBLICATION_DEMOGRAPHICS",
    "UNIFIED_MANGA_PLAN",
    "UPDATABLE_FIELDS",
    "compare_update_mangas",
    "mangas_to_unified",
    "source_records",
    "validate_manga_data",
]
