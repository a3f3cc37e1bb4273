"""Execute-query use case: resolve the session, build or reuse its sandbox, run the SQL."""

from __future__ import annotations

import logging
import time

from runsql.application.dto.query import ExecuteQueryRequest, ExecuteQueryResponse
from runsql.application.query_proxy import QueryExecutionProxy
from runsql.application.registry import SandboxRegistry
from runsql.domain.sandbox import parse_engine
from runsql.errors import SandboxError

logger = logging.getLogger("runsql.execute")

GENERIC_ERROR_MESSAGE = "Unknown error occurred"


def validate_query(query: str) -> str | None:
    """Return an error message when ``query`` cannot be executed, else ``None``."""
    if not query or not query.strip():
        return "Query cannot be empty"
    return None


class ExecuteQuery:
    """Coordinates the registry and the query proxy for one request."""

    def __init__(self, registry: SandboxRegistry, proxy: QueryExecutionProxy) -> None:
        self._registry = registry
        self._proxy = proxy

    async def execute(self, request: ExecuteQueryRequest) -> ExecuteQueryResponse:
        start = time.perf_counter()
        session_key: str | None = None
        try:
            engine = parse_engine(request.engine)
            session_key = self._registry.resolve(request.session_id)
            # Provisioning and the statement share one hold of the key's lock.
            async with self._registry.provisioned(
                session_key,
                request.schema,
                request.data,
                engine,
            ) as record:
                result = await self._proxy.execute_on(record, request.query)
        except SandboxError as exc:
            return self._failure(str(exc), start, session_key)
        except Exception:
            logger.exception(
                "execute query failed unexpectedly",
                extra={"data": {"session_key": session_key}},
            )
            return self._failure(GENERIC_ERROR_MESSAGE, start, session_key)

        return ExecuteQueryResponse(
            success=True,
            rows=result.rows,
            columns=result.columns,
            execution_time_ms=_elapsed_ms(start),
            session_id=record.session_key,
            engine=record.engine.value,
        )

    def _failure(self, message: str, start: float, session_key: str | None) -> ExecuteQueryResponse:
        session_id = None
        if session_key is not None:
            try:
                session_id = self._registry.lookup_ready(session_key).session_key
            except LookupError:
                session_id = None
        return ExecuteQueryResponse(
            success=False,
            error=message,
            execution_time_ms=_elapsed_ms(start),
            session_id=session_id,
        )


def _elapsed_ms(start: float) -> float:
    return round((time.perf_counter() - start) * 1000, 2)


__all__ = ["ExecuteQuery", "GENERIC_ERROR_MESSAGE", "validate_query"]
