"""DTOs for the execute-query use case."""

from __future__ import annotations

from dataclasses import dataclass, field

from runsql.json_types import JsonObject, SeedData


@dataclass(frozen=True)
class ExecuteQueryRequest:
    """Input payload: schema, seed rows and one statement for a (possibly new) session."""

    schema: str
    query: str
    data: SeedData = field(default_factory=dict)
    session_id: str | None = None
    engine: str | None = None


@dataclass(frozen=True)
class ExecuteQueryResponse:
    """Outcome reported to callers; ``error`` is set only when ``success`` is false."""

    success: bool
    rows: list[JsonObject] | None = None
    columns: list[str] | None = None
    execution_time_ms: float | None = None
    error: str | None = None
    session_id: str | None = None
    engine: str | None = None


__all__ = ["ExecuteQueryRequest", "ExecuteQueryResponse"]
