from __future__ import annotations

from datetime import UTC, datetime

from libra.reconciliation.manga import UNIFIED_MANGA_PLAN
from libra.reconciliation.strategies import (
    aggregate_unique_values,
    defaults_deep,
    highest_non_empty_numeric,
    key_value_union,
    merge_records,
    most_frequent_value,
    newest_date,
    oldest_date,
    parse_date,
    per_language_merge,
    union_without_duplicates,
)

PLAN = {
    "title": most_frequent_value,
    "year": most_frequent_value,
    "score": highest_non_empty_numeric,
    "genres": union_without_duplicates,
}


def test_two_sources_disagreeing_on_year() -> None:
    x = {"title": "Foo", "year": 1999, "score": 80}
    y = {"title": "Foo", "year": 2001, "score": None, "genres": ["action"]}

    merged = merge_records([x, y], PLAN)

    assert merged == {"title": "Foo", "year": 1999, "score": 80, "genres": ["action"]}


def test_repeating_sources_does_not_change_the_result() -> None:
    a = {
        "canonicalTitle": "Foo",
        "startYear": 1999,
        "score": 7.5,
        "genres": ["Action", "Drama"],
        "titles": {"en_us": "Foo"},
        "externalIds": {"mangadex": "md-1"},
        "altTitles": ["Fu"],
    }
    b = {
        "canonicalTitle": "Foo!",
        "startYear": 2000,
        "score": "8",
        "genres": ["Drama", "Comedy"],
        "titles": {"en_us": "FOO", "ja_jp": "フー"},
        "externalIds": {"kitsu": "42", "mangadex": "other"},
        "altTitles": ["Fu", "Foo?"],
    }

    once = merge_records([a, b], UNIFIED_MANGA_PLAN)
    twice = merge_records([a, b, a, b], UNIFIED_MANGA_PLAN)

    assert once == twice
    assert once["canonicalTitle"] == "Foo"
    assert once["score"] == 8
    assert once["genres"] == ["Action", "Drama", "Comedy"]
    assert once["titles"] == {"en_us": "Foo", "ja_jp": "フー"}


def test_external_ids_only_grow() -> None:
    sources = [
        {"externalIds": {"mangadex": "md-1", "mal": None}},
        {"externalIds": {"kitsu": "42"}},
        {"externalIds": {"anilist": "7", "kitsu": "43"}},
    ]

    merged = key_value_union(sources, "externalIds")

    assert merged == {"mangadex": "md-1", "kitsu": "42", "anilist": "7"}
    for source in sources:
        for key, value in source["externalIds"].items():
            if value is not None:
                assert key in merged


def test_most_frequent_value_prefers_majority_then_first() -> None:
    records = [{"v": "b"}, {"v": "a"}, {"v": "a"}, {"v": None}, {"v": "  "}]

    assert most_frequent_value(records, "v") == "a"
    assert most_frequent_value(records[:2], "v") == "b"
    assert most_frequent_value([{"v": ["x"]}, {"v": ["x"]}], "v") == ["x"]
    assert most_frequent_value([], "v") is None


def test_highest_numeric_ignores_junk() -> None:
    records = [{"n": "12"}, {"n": "n/a"}, {"n": True}, {"n": 10.5}, {}]

    assert highest_non_empty_numeric(records, "n") == 12
    assert highest_non_empty_numeric([{"n": None}], "n") is None


def test_unions_keep_first_seen_order() -> None:
    records = [{"v": ["a", "b"]}, {"v": "c"}, {"v": ["b", "", "d"]}]

    assert union_without_duplicates(records, "v") == ["a", "b", "c", "d"]
    assert aggregate_unique_values(records, "v") == [["a", "b"], "c", ["b", "", "d"]]


def test_per_language_merge_restricts_to_known_locales() -> None:
    records = [
        {"t": {"en_us": "Foo", "xx_yy": "???"}},
        {"t": {"en_us": "Other", "ja_jp": "フー", "fr_fr": ""}},
        {"t": "not a map"},
    ]

    assert per_language_merge(records, "t") == {"en_us": "Foo", "ja_jp": "フー"}


def test_date_strategies() -> None:
    records = [
        {"d": "2024-01-02T00:00:00+00:00"},
        {"d": datetime(2023, 5, 1, tzinfo=UTC)},
        {"d": "garbage"},
        {"d": None},
    ]

    assert newest_date(records, "d") == datetime(2024, 1, 2, tzinfo=UTC)
    assert oldest_date(records, "d") == datetime(2023, 5, 1, tzinfo=UTC)
    assert parse_date("2024-01-01").tzinfo is not None
    assert parse_date("") is None


def test_defaults_deep_fills_only_missing_values() -> None:
    target = {"id": "1", "score": None, "titles": {"en_us": "Foo"}}
    source = {"id": "2", "score": 8, "titles": {"en_us": "Bar", "ja_jp": "フー"}, "new": [1]}

    merged = defaults_deep(target, source)

    assert merged == {
        "id": "1",
        "score": 8,
        "titles": {"en_us": "Foo", "ja_jp": "フー"},
        "new": [1],
    }
    assert target["score"] is None
    merged["new"].append(2)
    assert source["new"] == [1]


def test_merge_records_reads_renamed_fields() -> None:
    merged = merge_records(
        [{"year": 1999}, None, {}], {"startYear": (most_frequent_value, "year")}
    )

    assert merged == {"startYear": 1999}
