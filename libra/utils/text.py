"""Text normalisation and fuzzy comparison helpers for titles and names."""

from __future__ import annotations

from difflib import SequenceMatcher
import re
import unicodedata

__all__ = [
    "strip_accents",
    "normalize_text",
    "slugify",
    "sanitize_title",
    "title_key",
    "similarity",
    "match_distance",
]

_SLUG_INVALID = re.compile(r"[^a-z0-9]+")
_TITLE_PUNCTUATION = re.compile(r"[^\w\s!]")
_KEY_INVALID = re.compile(r"[^a-z0-9]+")


def strip_accents(value: str) -> str:
    return "".join(
        ch for ch in unicodedata.normalize("NFKD", value) if not unicodedata.combining(ch)
    )


def normalize_text(value: str | None) -> str:
    if not value:
        return ""
    normalised = unicodedata.normalize("NFKC", str(value))
    normalised = strip_accents(normalised).casefold()
    return " ".join(normalised.split())


def slugify(value: str | None) -> str:
    """Return a lowercase, dash separated ASCII slug for ``value``."""

    text = strip_accents(unicodedata.normalize("NFKC", str(value or ""))).lower()
    return _SLUG_INVALID.sub("-", text).strip("-")


def sanitize_title(value: str | None) -> str:
    """Drop punctuation (keeping ``!``) and collapse whitespace."""

    cleaned = _TITLE_PUNCTUATION.sub("", str(value or ""))
    return " ".join(cleaned.split())


def title_key(value: str | None) -> str:
    """Bucket key used to group search results that describe the same title."""

    lowered = strip_accents(str(value or "")).lower()
    return " ".join(_KEY_INVALID.sub(" ", lowered).split())


def _ratio(left: str, right: str) -> float:
    if not left or not right:
        return 0.0
    return SequenceMatcher(None, left, right).ratio()


def _partial_ratio(left: str, right: str) -> float:
    short, long = (left, right) if len(left) <= len(right) else (right, left)
    if not short:
        return 0.0
    if short in long:
        return 1.0
    window = len(short)
    best = 0.0
    for start in range(0, len(long) - window + 1):
        best = max(best, _ratio(short, long[start : start + window]))
        if best >= 1.0:
            break
    return best


def similarity(left: str | None, right: str | None) -> float:
    """Return a 0..1 similarity score between two strings (1 is identical).

    Whole-string similarity dominates; a substring match contributes at a
    discount so that "One Piece" still scores well against "One Piece Party".
    """

    a = normalize_text(left)
    b = normalize_text(right)
    if not a or not b:
        return 0.0
    if a == b:
        return 1.0
    return max(_ratio(a, b), _partial_ratio(a, b) * 0.9)


def match_distance(query: str | None, candidate: str | None) -> float:
    """Return a 0..1 distance where 0 is a perfect match."""

    return round(1.0 - similarity(query, candidate), 6)
