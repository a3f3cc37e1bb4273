from __future__ import annotations

import pytest

from runsql.errors import SchemaParseError
from runsql.schema.dbml import map_type, parse_dbml, quote_identifier, translate

SHOP_SCHEMA = """
// storefront
Table users as U {
  id integer [pk, increment]
  email varchar(255) [not null, unique]
  active boolean [default: true]
  note_text text [note: 'free, text']
  created_at timestamp [default: `now()`]
}

/* orders reference users */
Table orders {
  id integer [pk]
  user_id integer [ref: > users.id]
  total decimal(10,2) [default: 0]
  status varchar [default: "it's new"]

  indexes {
    (user_id, status)
  }
}

Ref: orders.user_id > users.id
"""


def test_translate_emits_one_statement_per_table_in_declaration_order() -> None:
    statements = translate(SHOP_SCHEMA)

    assert len(statements) == 2
    assert statements[0].startswith('CREATE TABLE IF NOT EXISTS "users" (')
    assert statements[1].startswith('CREATE TABLE IF NOT EXISTS "orders" (')
    assert all(statement.endswith(");") for statement in statements)


def test_column_settings_render_as_constraints() -> None:
    users, orders = translate(SHOP_SCHEMA)

    assert '"id" INTEGER GENERATED BY DEFAULT AS IDENTITY PRIMARY KEY' in users
    assert '"email" VARCHAR(255) NOT NULL UNIQUE' in users
    assert '"active" BOOLEAN DEFAULT TRUE' in users
    assert '"note_text" TEXT' in users
    assert '"created_at" TIMESTAMP DEFAULT now()' in users
    assert '"total" NUMERIC(10,2) DEFAULT 0' in orders
    assert "\"status\" TEXT DEFAULT 'it''s new'" in orders
    assert "REFERENCES" not in orders


def test_parse_collects_relationships_and_ignores_comments_and_indexes() -> None:
    parsed = parse_dbml(SHOP_SCHEMA)

    assert [table.name for table in parsed.tables] == ["users", "orders"]
    assert [column.name for column in parsed.tables[1].columns] == ["id", "user_id", "total", "status"]
    assert parsed.tables[0].columns[3].note == "free, text"
    sources = {(ref.source, ref.target, ref.kind) for ref in parsed.relationships}
    assert ("orders.user_id", "users.id", "many-to-one") in sources


@pytest.mark.parametrize(
    ("dbml_type", "expected"),
    [
        ("int", "INTEGER"),
        ("bigint", "BIGINT"),
        ("varchar", "TEXT"),
        ("varchar(40)", "VARCHAR(40)"),
        ("char(2)", "TEXT"),
        ("float", "DOUBLE PRECISION"),
        ("numeric", "NUMERIC"),
        ("bool", "BOOLEAN"),
        ("date", "DATE"),
        ("datetime", "TIMESTAMP"),
        ("jsonb", "TEXT"),
    ],
)
def test_map_type(dbml_type: str, expected: str) -> None:
    assert map_type(dbml_type) == expected


def test_quote_identifier_folds_plain_names_and_keeps_reserved_words_usable() -> None:
    assert quote_identifier("Users") == '"users"'
    assert quote_identifier("order") == '"order"'
    assert quote_identifier("public.Users") == '"public"."users"'


def test_schema_without_tables_is_rejected() -> None:
    with pytest.raises(SchemaParseError, match="does not declare any tables"):
        translate("// nothing here\nEnum status { active }")
