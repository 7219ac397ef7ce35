from __future__ import annotations

from libra.integrations.schema_mapping import (
    FieldSpec,
    get_path,
    map_record,
    map_records,
    validate_schema,
)

PAYLOAD = {
    "id": "md-1",
    "attributes": {
        "title": {"en": "Foo"},
        "altTitles": [{"ja": "フー"}, {"en": "The Foo"}],
        "year": 1999,
    },
    "relationships": [{"type": "author", "name": "Jane Doe"}],
}


def test_get_path_walks_mappings_and_sequences() -> None:
    assert get_path(PAYLOAD, "attributes.title.en") == "Foo"
    assert get_path(PAYLOAD, "attributes.altTitles.1.en") == "The Foo"
    assert get_path(PAYLOAD, "relationships.5.name") is None
    assert get_path(PAYLOAD, "relationships.first") is None
    assert get_path(PAYLOAD, "attributes.year.value", "n/a") == "n/a"
    assert get_path(PAYLOAD, "") is None


def test_map_record_supports_every_entry_kind() -> None:
    schema = {
        "id": "id",
        "canonicalTitle": "attributes.title.en",
        "description": "",
        "startYear": FieldSpec("attributes.year", lambda value, record: value + 1),
        "authors": lambda record: [rel["name"] for rel in record["relationships"]],
        "externalIds.mangadex": "id",
        "titles": {"en": "attributes.title.en", "ja": "attributes.altTitles.0.ja"},
    }

    mapped = map_record(schema, PAYLOAD)

    assert mapped == {
        "id": "md-1",
        "canonicalTitle": "Foo",
        "description": None,
        "startYear": 2000,
        "authors": ["Jane Doe"],
        "externalIds": {"mangadex": "md-1"},
        "titles": {"en": "Foo", "ja": "フー"},
    }


def test_map_records_dedupes_and_skips_non_mappings() -> None:
    records = [{"id": "1", "t": "a"}, "garbage", {"id": "1", "t": "b"}, {"id": None, "t": "c"}]

    mapped = map_records({"id": "id", "title": "t"}, records, dedupe_key="id")

    assert [item["title"] for item in mapped] == ["a", "c"]


def test_validate_schema_reports_missing_and_unknown_fields() -> None:
    valid = validate_schema("lookup", {"id": "id", "title": "t", "externalIds.kitsu": "id"})
    assert valid.success and valid.errors == ()

    invalid = validate_schema("chapter", {"id": "id", "number": "n", "nonsense": "x", "lang": 3})

    assert invalid.success is False
    assert "chapter: unknown field 'nonsense'" in invalid.errors
    assert "chapter: field 'lang' has an unsupported mapping" in invalid.errors

    missing = validate_schema("page", {"page": "p"})
    assert missing.errors == ("page: missing required field 'url'",)

    assert validate_schema("bogus", {}).success is False
