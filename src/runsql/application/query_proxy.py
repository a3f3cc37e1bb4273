"""Runs one statement against a session's READY sandbox."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field

from opentelemetry import trace
from opentelemetry.trace import SpanKind

from runsql.application.ports.statement_runner import StatementRunnerPort
from runsql.application.registry import SandboxRegistry
from runsql.domain.sandbox import SandboxRecord
from runsql.errors import StatementFailure
from runsql.json_types import JsonObject

logger = logging.getLogger("runsql.query")


@dataclass(frozen=True, slots=True)
class QueryResult:
    rows: list[JsonObject] = field(default_factory=list)
    columns: list[str] = field(default_factory=list)
    elapsed_ms: float = 0.0


class QueryExecutionProxy:
    """Resolves the session's endpoint and hands the statement to the runner."""

    def __init__(self, registry: SandboxRegistry, runner: StatementRunnerPort) -> None:
        self._registry = registry
        self._runner = runner

    async def execute(self, session_key: str, statement: str) -> QueryResult:
        """Execute ``statement`` in the sandbox bound to ``session_key``.

        Raises ``SessionNotFound`` unless the sandbox is READY and
        ``StatementFailure`` when the SQL fails; the sandbox stays usable either way.
        The key stays locked until the statement finishes.
        """
        async with self._registry.ready(session_key) as record:
            return await self.execute_on(record, statement)

    async def execute_on(self, record: SandboxRecord, statement: str) -> QueryResult:
        """Run ``statement`` on a READY record whose key lock the caller holds."""
        start = time.perf_counter()
        session_key = record.session_key
        assert record.endpoint is not None

        tracer = trace.get_tracer("runsql.query")
        with tracer.start_as_current_span(
            "sandbox.execute",
            kind=SpanKind.CLIENT,
            attributes={"sandbox.engine": record.engine.value},
        ) as span:
            try:
                result = await self._runner.run(record.endpoint, statement)
            except StatementFailure:
                elapsed = round((time.perf_counter() - start) * 1000, 2)
                span.set_attribute("sandbox.elapsed_ms", elapsed)
                logger.info(
                    "statement failed",
                    exc_info=True,
                    extra={"data": {"session_key": session_key, "elapsed_ms": elapsed}},
                )
                self._registry.touch(session_key)
                raise
            elapsed = round((time.perf_counter() - start) * 1000, 2)
            span.set_attributes({"sandbox.elapsed_ms": elapsed, "sandbox.rows": len(result.rows)})

        self._registry.touch(session_key)
        logger.debug(
            "statement executed",
            extra={
                "data": {
                    "session_key": session_key,
                    "rows": len(result.rows),
                    "columns": result.columns,
                    "elapsed_ms": elapsed,
                }
            },
        )
        return QueryResult(rows=result.rows, columns=result.columns, elapsed_ms=elapsed)


__all__ = ["QueryExecutionProxy", "QueryResult"]
