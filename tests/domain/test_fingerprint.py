from __future__ import annotations

from runsql.domain.fingerprint import fingerprint, normalize_schema

SCHEMA = "Table users {\n  id integer [pk]\n  name varchar\n}"


def test_identical_inputs_share_a_fingerprint() -> None:
    data = {"users": [{"id": 1, "name": "a"}]}
    assert fingerprint(SCHEMA, data) == fingerprint(SCHEMA, {"users": [{"id": 1, "name": "a"}]})


def test_line_endings_and_trailing_whitespace_are_ignored() -> None:
    noisy = "\r\n" + SCHEMA.replace("\n", "   \r\n") + "\r\n\r\n"
    assert normalize_schema(noisy) == SCHEMA
    assert fingerprint(noisy, {}) == fingerprint(SCHEMA, {})


def test_row_key_order_is_ignored_but_row_order_is_not() -> None:
    first = {"users": [{"id": 1, "name": "a"}, {"id": 2, "name": "b"}]}
    reordered_keys = {"users": [{"name": "a", "id": 1}, {"name": "b", "id": 2}]}
    reordered_rows = {"users": [{"id": 2, "name": "b"}, {"id": 1, "name": "a"}]}

    assert fingerprint(SCHEMA, first) == fingerprint(SCHEMA, reordered_keys)
    assert fingerprint(SCHEMA, first) != fingerprint(SCHEMA, reordered_rows)


def test_schema_or_data_changes_produce_new_fingerprint() -> None:
    data = {"users": [{"id": 1, "name": "a"}]}
    base = fingerprint(SCHEMA, data)

    assert fingerprint(SCHEMA.replace("name varchar", "name text"), data) != base
    assert fingerprint(SCHEMA, {"users": [{"id": 1, "name": "b"}]}) != base
    assert fingerprint(SCHEMA, {"users": [{"id": 1, "name": "a"}], "orders": []}) != base
    # Leading indentation is significant text.
    assert fingerprint(SCHEMA.replace("  id", "    id"), data) != base
