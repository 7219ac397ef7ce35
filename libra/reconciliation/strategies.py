"""Field-level merge strategies used to fuse per-source records.

Every strategy takes the ordered list of source records and the field name
and returns the fused value. Source order matters only for tie-breaking
(first seen wins); repeated sources never change the outcome.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable, Mapping, Sequence
import copy
from datetime import datetime
import json
from numbers import Real
from typing import Any

from libra.utils.locales import TOP_LOCALES
from libra.utils.time import ensure_utc

__all__ = [
    "Strategy",
    "is_empty",
    "most_frequent_value",
    "highest_non_empty_numeric",
    "union_without_duplicates",
    "aggregate_unique_values",
    "per_language_merge",
    "key_value_union",
    "newest_date",
    "oldest_date",
    "parse_date",
    "defaults_deep",
    "merge_records",
]

Strategy = Callable[[Sequence[Mapping[str, Any]], str], Any]


def is_empty(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, (list, tuple, set, dict)):
        return not value
    return False


def _identity(value: Any) -> Any:
    """Hashable identity for values that may be lists or dicts."""

    if isinstance(value, (list, tuple, dict, set)):
        return json.dumps(value, sort_keys=True, default=str)
    return value


def _values(records: Iterable[Mapping[str, Any]], field: str) -> list[Any]:
    return [record.get(field) for record in records if isinstance(record, Mapping)]


def most_frequent_value(records: Sequence[Mapping[str, Any]], field: str) -> Any:
    """Majority vote; on a tie the value that first reached the top count wins."""

    counts: dict[Any, int] = {}
    best: Any = None
    best_count = 0
    for value in _values(records, field):
        if is_empty(value):
            continue
        key = _identity(value)
        counts[key] = counts.get(key, 0) + 1
        if counts[key] > best_count:
            best_count = counts[key]
            best = value
    return best


def _as_number(value: Any) -> float | int | None:
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, Real):
        return value
    if isinstance(value, str):
        try:
            number = float(value)
        except ValueError:
            return None
        return int(number) if number.is_integer() else number
    return None


def highest_non_empty_numeric(records: Sequence[Mapping[str, Any]], field: str) -> Any:
    highest: float | int | None = None
    for value in _values(records, field):
        number = _as_number(value)
        if number is None:
            continue
        if highest is None or number > highest:
            highest = number
    return highest


def union_without_duplicates(records: Sequence[Mapping[str, Any]], field: str) -> list[Any]:
    """Set union in first-seen order; list values are flattened one level."""

    seen: set[Any] = set()
    merged: list[Any] = []
    for value in _values(records, field):
        if is_empty(value):
            continue
        items = value if isinstance(value, (list, tuple, set)) else [value]
        for item in items:
            if is_empty(item):
                continue
            key = _identity(item)
            if key in seen:
                continue
            seen.add(key)
            merged.append(item)
    return merged


def aggregate_unique_values(records: Sequence[Mapping[str, Any]], field: str) -> list[Any]:
    seen: set[Any] = set()
    merged: list[Any] = []
    for value in _values(records, field):
        if is_empty(value):
            continue
        key = _identity(value)
        if key in seen:
            continue
        seen.add(key)
        merged.append(value)
    return merged


def per_language_merge(
    records: Sequence[Mapping[str, Any]],
    field: str,
    locales: Sequence[str] = TOP_LOCALES,
) -> dict[str, Any]:
    """Locale map restricted to ``locales``; the first source to supply a locale wins."""

    found: dict[str, Any] = {}
    for value in _values(records, field):
        if not isinstance(value, Mapping):
            continue
        for locale in locales:
            if locale in found:
                continue
            text = value.get(locale)
            if not is_empty(text):
                found[locale] = text
    return {locale: found[locale] for locale in locales if locale in found}


def key_value_union(records: Sequence[Mapping[str, Any]], field: str) -> dict[str, Any]:
    """Union of ``{agent_id: value}`` maps; existing keys are never overwritten."""

    merged: dict[str, Any] = {}
    for value in _values(records, field):
        if not isinstance(value, Mapping):
            continue
        for key, item in value.items():
            if key in merged or is_empty(item):
                continue
            merged[key] = item
    return merged


def parse_date(value: Any) -> datetime | None:
    if isinstance(value, datetime):
        return ensure_utc(value)
    if isinstance(value, str) and value.strip():
        try:
            return ensure_utc(datetime.fromisoformat(value.strip()))
        except ValueError:
            return None
    return None


def newest_date(records: Sequence[Mapping[str, Any]], field: str) -> datetime | None:
    dates = [date for date in map(parse_date, _values(records, field)) if date is not None]
    return max(dates) if dates else None


def oldest_date(records: Sequence[Mapping[str, Any]], field: str) -> datetime | None:
    dates = [date for date in map(parse_date, _values(records, field)) if date is not None]
    return min(dates) if dates else None


def defaults_deep(
    target: Mapping[str, Any] | None, *sources: Mapping[str, Any] | None
) -> dict[str, Any]:
    """Fill keys that are missing (or ``None``) in ``target`` from ``sources``.

    Nested mappings are filled recursively. Neither input is mutated.
    """

    result: dict[str, Any] = copy.deepcopy(dict(target or {}))
    for source in sources:
        if not source:
            continue
        for key, value in source.items():
            current = result.get(key)
            if current is None:
                result[key] = copy.deepcopy(value)
            elif isinstance(current, Mapping) and isinstance(value, Mapping):
                result[key] = defaults_deep(current, value)
    return result


def merge_records(
    records: Iterable[Mapping[str, Any] | None],
    plan: Mapping[str, Strategy | tuple[Strategy, str]],
) -> dict[str, Any]:
    """Apply a field -> strategy plan over the non-empty source records.

    A plan entry may be ``(strategy, source_field)`` when the unified field is
    read from a differently named source field.
    """

    sources = [record for record in records if isinstance(record, Mapping) and record]
    merged: dict[str, Any] = {}
    for field, entry in plan.items():
        if isinstance(entry, tuple):
            strategy, source_field = entry
        else:
            strategy, source_field = entry, field
        merged[field] = strategy(sources, source_field)
    return merged
