"""Translate DBML schema descriptions into PostgreSQL ``CREATE TABLE`` statements."""

from __future__ import annotations

import re
from dataclasses import dataclass, field

from runsql.errors import SchemaParseError

_LINE_COMMENT = re.compile(r"//.*$", re.MULTILINE)
_BLOCK_COMMENT = re.compile(r"/\*.*?\*/", re.DOTALL)
_INDEXES_BLOCK = re.compile(r"\bindexes\s*\{[^{}]*\}", re.IGNORECASE)
_TABLE_BLOCK = re.compile(
    r"\bTable\s+([\w.]+)(?:\s+as\s+\w+)?\s*(?:\[[^\]]*\])?\s*\{([^{}]*)\}",
    re.IGNORECASE,
)
_COLUMN_LINE = re.compile(r"^(\w+)\s+(\w+(?:\s*\([^)]*\))?)\s*(?:\[([^\]]*)\])?")
_REF_LINE = re.compile(
    r"\bRef(?:\s+\w+)?\s*:\s*([\w.]+)\.(\w+)\s*(<>|>|<|-)\s*([\w.]+)\.(\w+)",
    re.IGNORECASE,
)
_INLINE_REF = re.compile(r"^ref\s*:\s*(<>|>|<|-)\s*([\w.]+)\.(\w+)$", re.IGNORECASE)
_SETTING_SPLIT = re.compile(r"(?:[^,'\"`]|'[^']*'|\"[^\"]*\"|`[^`]*`)+")
_PLAIN_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
_NUMERIC_LITERAL = re.compile(r"^-?\d+(?:\.\d+)?$")

_RELATION_KINDS = {
    ">": "many-to-one",
    "<": "one-to-many",
    "-": "one-to-one",
    "<>": "many-to-many",
}


@dataclass(frozen=True, slots=True)
class Column:
    name: str
    sql_type: str
    primary_key: bool = False
    not_null: bool = False
    unique: bool = False
    increment: bool = False
    default: str | None = None
    note: str | None = None


@dataclass(frozen=True, slots=True)
class Table:
    name: str
    columns: tuple[Column, ...]


@dataclass(frozen=True, slots=True)
class Relationship:
    source: str
    target: str
    kind: str = "many-to-one"


@dataclass(frozen=True, slots=True)
class ParsedSchema:
    tables: tuple[Table, ...]
    relationships: tuple[Relationship, ...] = field(default_factory=tuple)


def quote_identifier(name: str) -> str:
    """Quote a (possibly dotted) identifier the way an unquoted one would resolve.

    Plain identifiers are folded to lower case before quoting so ``Users`` and
    ``users`` name the same table while reserved words such as ``order`` stay
    usable as table or column names.
    """
    parts = name.split(".")
    quoted = []
    for part in parts:
        if not part:
            raise SchemaParseError(f"invalid identifier: {name!r}")
        resolved = part.lower() if _PLAIN_IDENTIFIER.match(part) else part
        quoted.append('"' + resolved.replace('"', '""') + '"')
    return ".".join(quoted)


def map_type(dbml_type: str) -> str:
    """Map a DBML column type onto a PostgreSQL type."""
    compact = re.sub(r"\s+", "", dbml_type.lower())
    base, _, rest = compact.partition("(")
    args = rest.rstrip(")") if rest else ""

    if base == "varchar":
        return f"VARCHAR({args})" if args.isdigit() else "TEXT"
    if "char" in base or base == "text":
        return "TEXT"
    if base in {"int", "integer", "int4"}:
        return "INTEGER"
    if base in {"bigint", "int8"}:
        return "BIGINT"
    if base in {"smallint", "int2"}:
        return "SMALLINT"
    if base == "serial":
        return "SERIAL"
    if base in {"real", "float", "double", "float8"}:
        return "DOUBLE PRECISION"
    if base in {"decimal", "numeric"}:
        return f"NUMERIC({args})" if args else "NUMERIC"
    if base in {"bool", "boolean"}:
        return "BOOLEAN"
    if base == "date":
        return "DATE"
    if base in {"datetime", "timestamp"}:
        return "TIMESTAMP"
    return "TEXT"


def parse_dbml(text: str) -> ParsedSchema:
    """Extract table definitions and references from DBML source."""
    cleaned = _BLOCK_COMMENT.sub("", _LINE_COMMENT.sub("", text))
    cleaned = _INDEXES_BLOCK.sub("", cleaned)

    tables: list[Table] = []
    relationships: list[Relationship] = []
    for match in _TABLE_BLOCK.finditer(cleaned):
        table_name, body = match.group(1), match.group(2)
        columns: list[Column] = []
        for raw_line in body.splitlines():
            line = raw_line.strip()
            if not line:
                continue
            column_match = _COLUMN_LINE.match(line)
            if column_match is None:
                continue
            name, dbml_type, settings = column_match.groups()
            column, inline_refs = _build_column(table_name, name, dbml_type, settings or "")
            columns.append(column)
            relationships.extend(inline_refs)
        if columns:
            tables.append(Table(name=table_name, columns=tuple(columns)))

    for ref in _REF_LINE.finditer(cleaned):
        source_table, source_column, operator, target_table, target_column = ref.groups()
        relationships.append(
            Relationship(
                source=f"{source_table}.{source_column}",
                target=f"{target_table}.{target_column}",
                kind=_RELATION_KINDS[operator],
            )
        )

    return ParsedSchema(tables=tuple(tables), relationships=tuple(relationships))


def _build_column(
    table_name: str,
    name: str,
    dbml_type: str,
    settings: str,
) -> tuple[Column, list[Relationship]]:
    primary_key = not_null = unique = increment = False
    default: str | None = None
    note: str | None = None
    refs: list[Relationship] = []

    for raw_setting in _SETTING_SPLIT.findall(settings):
        setting = raw_setting.strip()
        lowered = setting.lower()
        if lowered in {"pk", "primary key"}:
            primary_key = True
        elif lowered == "not null":
            not_null = True
        elif lowered == "unique":
            unique = True
        elif lowered == "increment":
            increment = True
        elif lowered.startswith("default:"):
            default = _default_literal(setting.split(":", 1)[1].strip())
        elif lowered.startswith("note:"):
            note = setting.split(":", 1)[1].strip().strip("'\"")
        else:
            inline = _INLINE_REF.match(setting)
            if inline is not None:
                operator, target_table, target_column = inline.groups()
                refs.append(
                    Relationship(
                        source=f"{table_name}.{name}",
                        target=f"{target_table}.{target_column}",
                        kind=_RELATION_KINDS[operator],
                    )
                )

    column = Column(
        name=name,
        sql_type=map_type(dbml_type),
        primary_key=primary_key,
        not_null=not_null,
        unique=unique,
        increment=increment,
        default=default,
        note=note,
    )
    return column, refs


def _default_literal(value: str) -> str:
    if value.startswith("`") and value.endswith("`") and len(value) >= 2:
        return value[1:-1]
    if len(value) >= 2 and value[0] == value[-1] and value[0] in {"'", '"'}:
        return "'" + value[1:-1].replace("'", "''") + "'"
    if _NUMERIC_LITERAL.match(value):
        return value
    if value.lower() in {"true", "false", "null"}:
        return value.upper()
    return "'" + value.replace("'", "''") + "'"


def generate_schema_statements(parsed: ParsedSchema) -> list[str]:
    """Render one ``CREATE TABLE IF NOT EXISTS`` statement per table, in declaration order."""
    statements: list[str] = []
    for table in parsed.tables:
        definitions = [_column_definition(column) for column in table.columns]
        body = ",\n  ".join(definitions)
        statements.append(f"CREATE TABLE IF NOT EXISTS {quote_identifier(table.name)} (\n  {body}\n);")
    return statements


def _column_definition(column: Column) -> str:
    parts = [quote_identifier(column.name), column.sql_type]
    if column.increment and column.sql_type in {"INTEGER", "BIGINT", "SMALLINT"}:
        parts.append("GENERATED BY DEFAULT AS IDENTITY")
    if column.primary_key:
        parts.append("PRIMARY KEY")
    if column.not_null and not column.primary_key:
        parts.append("NOT NULL")
    if column.unique and not column.primary_key:
        parts.append("UNIQUE")
    if column.default is not None:
        parts.append(f"DEFAULT {column.default}")
    return " ".join(parts)


def translate(text: str) -> list[str]:
    """Return the ordered schema-creation statements for ``text``."""
    parsed = parse_dbml(text)
    if not parsed.tables:
        raise SchemaParseError("schema does not declare any tables")
    return generate_schema_statements(parsed)


__all__ = [
    "Column",
    "ParsedSchema",
    "Relationship",
    "Table",
    "generate_schema_statements",
    "map_type",
    "parse_dbml",
    "quote_identifier",
    "translate",
]
