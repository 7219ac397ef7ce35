"""Fuzzy filtering of agent lookup results."""

from __future__ import annotations

from collections.abc import Iterable, Mapping, Sequence
from typing import Any

from libra.integrations.schema_mapping import get_path
from libra.utils.text import match_distance, normalize_text

DEFAULT_THRESHOLD = 0.3
DEFAULT_YEAR_TOLERANCE = 2


def _candidate_values(record: Mapping[str, Any], key: str) -> list[str]:
    value = get_path(record, key)
    if value is None:
        return []
    if isinstance(value, str):
        return [value]
    if isinstance(value, Mapping):
        return [item for item in value.values() if isinstance(item, str)]
    if isinstance(value, Iterable):
        values: list[str] = []
        for item in value:
            if isinstance(item, str):
                values.append(item)
            elif isinstance(item, Mapping):
                values.extend(entry for entry in item.values() if isinstance(entry, str))
        return values
    return [str(value)]


def best_distance(
    queries: Sequence[str], record: Mapping[str, Any], keys: Sequence[str]
) -> float:
    best = 1.0
    for key in keys:
        for candidate in _candidate_values(record, key):
            for query in queries:
                best = min(best, match_distance(query, candidate))
                if best == 0.0:
                    return best
    return best


def filter_by_query(
    query: str,
    records: Iterable[Mapping[str, Any]],
    keys: Sequence[str] = ("title",),
    *,
    threshold: float = DEFAULT_THRESHOLD,
    alternates: Iterable[str] = (),
    dedupe_key: str = "id",
) -> list[dict[str, Any]]:
    """Keep records whose best key matches any query within ``threshold``.

    Results are ordered by distance (best first); alternates only widen the
    net and never displace a better primary match.
    """

    queries = [q for q in [query, *alternates] if isinstance(q, str) and q.strip()]
    if not queries:
        return []
    scored: list[tuple[float, int, dict[str, Any]]] = []
    for index, record in enumerate(records):
        distance = best_distance(queries, record, keys)
        if distance <= threshold:
            scored.append((distance, index, dict(record)))
    scored.sort(key=lambda item: (item[0], item[1]))
    results: list[dict[str, Any]] = []
    seen: set[Any] = set()
    for _, _, record in scored:
        marker = record.get(dedupe_key)
        if marker is not None:
            if marker in seen:
                continue
            seen.add(marker)
        results.append(record)
    return results


def _year_of(record: Mapping[str, Any]) -> int | None:
    value = record.get("startYear")
    try:
        return int(value) if value is not None else None
    except (TypeError, ValueError):
        return None


def filter_by_year(
    records: Iterable[Mapping[str, Any]],
    year: int | None,
    *,
    tolerance: int = DEFAULT_YEAR_TOLERANCE,
) -> list[dict[str, Any]]:
    """Keep records whose ``startYear`` lies within ``tolerance`` of ``year``."""

    if year is None:
        return [dict(record) for record in records]
    kept: list[dict[str, Any]] = []
    for record in records:
        candidate = _year_of(record)
        if candidate is not None and abs(candidate - int(year)) <= tolerance:
            kept.append(dict(record))
    return kept


def _author_variants(name: str) -> list[str]:
    normalised = normalize_text(name)
    if not normalised:
        return []
    parts = normalised.split()
    variants = [normalised]
    if len(parts) > 1:
        variants.append(" ".join(reversed(parts)))
    return variants


def filter_by_authors(
    records: Iterable[Mapping[str, Any]],
    authors: Sequence[str] | None,
    *,
    threshold: float = DEFAULT_THRESHOLD,
) -> list[dict[str, Any]]:
    """Keep records credited to at least one of ``authors``.

    Names are also tried in reversed order so "Oda Eiichiro" matches
    "Eiichiro Oda".
    """

    wanted = [variant for author in authors or () for variant in _author_variants(author)]
    if not wanted:
        return [dict(record) for record in records]
    kept: list[dict[str, Any]] = []
    for record in records:
        if best_distance(wanted, record, ("authors",)) < threshold:
            kept.append(dict(record))
    return kept


__all__ = [
    "DEFAULT_THRESHOLD",
    "DEFAULT_YEAR_TOLERANCE",
    "best_distance",
    "filter_by_query",
    "filter_by_year",
    "filter_by_authors",
]
