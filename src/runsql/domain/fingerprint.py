"""Content fingerprints used to decide whether a sandbox can be reused."""

from __future__ import annotations

import hashlib
import json
from collections.abc import Mapping, Sequence

from runsql.json_types import JsonObject


def normalize_schema(schema: str) -> str:
    """Drop formatting noise that cannot change the generated DDL.

    Line endings become ``\\n``, trailing whitespace is stripped from every line
    and leading/trailing blank lines are removed. Everything else is kept as is.
    """
    lines = [line.rstrip() for line in schema.replace("\r\n", "\n").replace("\r", "\n").split("\n")]
    return "\n".join(lines).strip("\n")


def fingerprint(schema: str, data: Mapping[str, Sequence[JsonObject]]) -> str:
    """Return a deterministic digest of a schema and its seed rows.

    Row order is significant; key order inside a row and table order are not,
    since neither changes what gets materialized.
    """
    document = {
        "schema": normalize_schema(schema),
        "data": {table: [dict(row) for row in rows] for table, rows in data.items()},
    }
    encoded = json.dumps(document, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(encoded.encode("utf-8")).hexdigest()


__all__ = ["fingerprint", "normalize_schema"]
