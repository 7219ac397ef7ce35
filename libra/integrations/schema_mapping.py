"""Declarative field mapping from provider payloads to unified records.

A schema maps each unified field to one of:

* a dotted source path (``"attributes.title.en"``); ``""`` yields ``None``,
* a callable receiving the whole source record,
* a :class:`FieldSpec` combining a path with a transform ``fn(value, record)``,
* a nested mapping, producing a nested object from the same record.

Target keys may be dotted as well (``"externalIds.mangadex"``) in which case
the value lands in a nested dict.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any

__all__ = [
    "FieldSpec",
    "SchemaValidation",
    "get_path",
    "map_record",
    "map_records",
    "validate_schema",
    "REFERENCE_FIELDS",
    "REQUIRED_FIELDS",
]

_MISSING = object()


@dataclass(slots=True, frozen=True)
class FieldSpec:
    path: str
    fn: Callable[[Any, Mapping[str, Any]], Any]


@dataclass(slots=True, frozen=True)
class SchemaValidation:
    success: bool
    errors: tuple[str, ...] = field(default_factory=tuple)


def get_path(record: Any, path: str, default: Any = None) -> Any:
    """Resolve a dotted path; digit segments index into sequences."""

    if not path:
        return default
    current = record
    for segment in path.split("."):
        if isinstance(current, Mapping):
            current = current.get(segment, _MISSING)
        elif isinstance(current, Sequence) and not isinstance(current, (str, bytes)):
            if not segment.isdigit():
                return default
            index = int(segment)
            current = current[index] if index < len(current) else _MISSING
        else:
            return default
        if current is _MISSING:
            return default
    return current


def _resolve(spec: Any, record: Mapping[str, Any]) -> Any:
    if isinstance(spec, str):
        return get_path(record, spec) if spec else None
    if isinstance(spec, FieldSpec):
        return spec.fn(get_path(record, spec.path), record)
    if isinstance(spec, Mapping):
        return map_record(spec, record)
    if callable(spec):
        return spec(record)
    raise TypeError(f"Unsupported schema entry: {type(spec).__name__}")


def _assign(target: dict[str, Any], dotted_key: str, value: Any) -> None:
    parts = dotted_key.split(".")
    cursor = target
    for part in parts[:-1]:
        nested = cursor.get(part)
        if not isinstance(nested, dict):
            nested = {}
            cursor[part] = nested
        cursor = nested
    cursor[parts[-1]] = value


def map_record(schema: Mapping[str, Any], record: Mapping[str, Any]) -> dict[str, Any]:
    mapped: dict[str, Any] = {}
    for target, spec in schema.items():
        _assign(mapped, target, _resolve(spec, record))
    return mapped


def map_records(
    schema: Mapping[str, Any],
    records: Iterable[Mapping[str, Any]],
    *,
    dedupe_key: str | None = None,
) -> list[dict[str, Any]]:
    """Map every record, dropping later duplicates of ``dedupe_key`` when given."""

    results: list[dict[str, Any]] = []
    seen: set[Any] = set()
    for record in records:
        if not isinstance(record, Mapping):
            continue
        mapped = map_record(schema, record)
        if dedupe_key is not None:
            marker = get_path(mapped, dedupe_key)
            if marker is not None:
                if marker in seen:
                    continue
                seen.add(marker)
        results.append(mapped)
    return results


_LOOKUP = frozenset(
    {
        "id",
        "title",
        "altTitles",
        "synopsis",
        "startYear",
        "authors",
        "genres",
        "tags",
        "cover",
        "score",
        "type",
        "status",
        "contentRating",
        "externalIds",
        "externalLinks",
    }
)

_MANGA = frozenset(
    {
        "id",
        "type",
        "publicationDemographics",
        "genres",
        "tags",
        "canonicalTitle",
        "titles",
        "synopsis",
        "description",
        "altTitles",
        "primaryAltTitle",
        "status",
        "isLicensed",
        "bannerImage",
        "posterImage",
        "coverImage",
        "color",
        "chapterCount",
        "lastChapter",
        "volumeCount",
        "popularityRank",
        "favoritesCount",
        "score",
        "serialization",
        "lastRelease",
        "nextRelease",
        "contentRating",
        "startYear",
        "endYear",
        "authors",
        "publishers",
        "chapterNumbersResetOnNewVolume",
        "externalIds",
        "externalLinks",
    }
)

_CHAPTER = frozenset(
    {
        "id",
        "title",
        "number",
        "volume",
        "lang",
        "pages",
        "publishAt",
        "readableAt",
        "groupScan",
        "version",
        "votes",
        "lastUpdated",
        "externalIds",
        "externalLinks",
    }
)

_CHARACTER = frozenset({"id", "name", "role", "image", "description", "externalIds"})

_PAGE = frozenset({"page", "url", "headers"})

_SCROBBLER = frozenset(
    {"id", "mangaId", "status", "progress", "score", "startedAt", "updatedAt", "externalIds"}
)

REFERENCE_FIELDS: Mapping[str, frozenset[str]] = {
    "lookup": _LOOKUP,
    "manga": _MANGA,
    "chapter": _CHAPTER,
    "character": _CHARACTER,
    "page": _PAGE,
    "recommendation": _LOOKUP,
    "scrobbler": _SCROBBLER,
}

REQUIRED_FIELDS: Mapping[str, frozenset[str]] = {
    "lookup": frozenset({"id", "title"}),
    "manga": frozenset({"id", "canonicalTitle"}),
    "chapter": frozenset({"id", "number", "lang"}),
    "character": frozenset({"id", "name"}),
    "page": frozenset({"page", "url"}),
    "recommendation": frozenset({"id", "title"}),
    "scrobbler": frozenset({"id", "mangaId"}),
}


def validate_schema(kind: str, schema: Mapping[str, Any]) -> SchemaValidation:
    """Check a schema against the reference field list of ``kind``."""

    reference = REFERENCE_FIELDS.get(kind)
    if reference is None:
        return SchemaValidation(False, (f"unknown schema kind '{kind}'",))
    targets = {key.split(".", 1)[0] for key in schema}
    errors: list[str] = []
    for missing in sorted(REQUIRED_FIELDS[kind] - targets):
        errors.append(f"{kind}: missing required field '{missing}'")
    for unknown in sorted(targets - reference):
        errors.append(f"{kind}: unknown field '{unknown}'")
    for key, spec in schema.items():
        if not isinstance(spec, (str, FieldSpec, Mapping)) and not callable(spec):
            errors.append(f"{kind}: field '{key}' has an unsupported mapping")
    return SchemaValidation(not errors, tuple(errors))
