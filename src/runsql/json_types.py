"""Shared type aliases for JSON-compatible values.

Seed data and query results cross the HTTP boundary as JSON, so the application
layer models them with these aliases instead of pydantic types.
"""

from __future__ import annotations

from typing import TypeAlias

JsonPrimitive: TypeAlias = str | int | float | bool | None
JsonValue: TypeAlias = JsonPrimitive | list["JsonValue"] | dict[str, "JsonValue"]
JsonObject: TypeAlias = dict[str, JsonValue]
JsonArray: TypeAlias = list[JsonValue]

SeedRows: TypeAlias = list[JsonObject]
SeedData: TypeAlias = dict[str, SeedRows]

__all__ = [
    "JsonArray",
    "JsonObject",
    "JsonPrimitive",
    "JsonValue",
    "SeedData",
    "SeedRows",
]
