"""Timezone-aware time helpers."""

from __future__ import annotations

from datetime import UTC, datetime

__all__ = ["now_utc", "ensure_utc"]


def now_utc() -> datetime:
    """Return the current UTC time with timezone information."""

    return datetime.now(UTC)


def ensure_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)
