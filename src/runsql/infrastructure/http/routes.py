"""HTTP route definitions for the query API."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from fastapi import Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from runsql import __version__
from runsql.application.dto.query import ExecuteQueryRequest, ExecuteQueryResponse
from runsql.application.execute_query import ExecuteQuery, validate_query
from runsql.application.registry import SandboxRegistry
from runsql.infrastructure.http.schemas import (
    ErrorResponseDTO,
    ExecuteQueryRequestDTO,
    ExecuteQueryResponseDTO,
    HealthResponseDTO,
    ServiceInfoResponseDTO,
    SessionDeletedResponseDTO,
)

logger = logging.getLogger("runsql.http")

MISSING_FIELDS_MESSAGE = "Missing required fields: dbml and query are required"
INVALID_DATA_MESSAGE = "Data must be an object with table names as keys"
INTERNAL_ERROR_MESSAGE = "Internal server error"


@dataclass(frozen=True)
class QueryRouteDeps:
    execute_query: ExecuteQuery
    registry: SandboxRegistry


def add_query_routes(app: FastAPI, dependency_provider: Callable[[], QueryRouteDeps]) -> None:
    def get_dependencies() -> QueryRouteDeps:
        return dependency_provider()

    @app.exception_handler(RequestValidationError)
    async def invalid_body(_request: Request, exc: RequestValidationError) -> JSONResponse:
        logger.info("rejected malformed request body", extra={"data": {"errors": str(exc.errors())[:500]}})
        return _error(400, "Invalid request body")

    @app.get(
        "/",
        response_model=ServiceInfoResponseDTO,
        description="Return the service name and version.",
    )
    def service_info() -> ServiceInfoResponseDTO:
        return ServiceInfoResponseDTO(message="RunSQL Backend API", version=__version__)

    @app.post(
        "/api/execute-query",
        response_model=ExecuteQueryResponseDTO,
        responses={400: {"model": ExecuteQueryResponseDTO}, 500: {"model": ErrorResponseDTO}},
        description="Run one SQL statement against the session's sandbox, building it when needed.",
    )
    async def execute_query(
        payload: ExecuteQueryRequestDTO,
        deps: QueryRouteDeps = Depends(get_dependencies),  # noqa: B008
    ) -> JSONResponse:
        rejection = _validate_payload(payload)
        if rejection is not None:
            return _error(400, rejection)

        request = ExecuteQueryRequest(
            schema=payload.dbml or "",
            query=payload.query or "",
            data=payload.data,  # type: ignore[arg-type]
            session_id=payload.session_id,
            engine=payload.engine,
        )
        try:
            result = await deps.execute_query.execute(request)
        except Exception:
            logger.exception(
                "execute-query handler failed",
                extra={"data": {"session_id": payload.session_id}},
            )
            return _error(500, INTERNAL_ERROR_MESSAGE)

        body = _serialize_result(result)
        return JSONResponse(status_code=200 if result.success else 400, content=body.to_content())

    @app.get(
        "/api/health",
        response_model=HealthResponseDTO,
        description="Liveness probe with the number of live sandboxes.",
    )
    def health(
        deps: QueryRouteDeps = Depends(get_dependencies),  # noqa: B008
    ) -> HealthResponseDTO:
        return HealthResponseDTO(
            status="ok",
            message="SQL Executor API is running",
            active_sandboxes=deps.registry.count(),
        )

    @app.delete(
        "/api/session/{session_id}",
        response_model=SessionDeletedResponseDTO,
        responses={500: {"model": ErrorResponseDTO}},
        description="Destroy the session's sandbox. Unknown sessions succeed as well.",
    )
    async def delete_session(
        session_id: str,
        deps: QueryRouteDeps = Depends(get_dependencies),  # noqa: B008
    ) -> Any:
        try:
            await deps.registry.delete(session_id)
        except Exception:
            logger.exception("session delete failed", extra={"data": {"session_id": session_id}})
            return _error(500, INTERNAL_ERROR_MESSAGE)
        return SessionDeletedResponseDTO(success=True, message="Session deleted")


def _validate_payload(payload: ExecuteQueryRequestDTO) -> str | None:
    if not payload.dbml or not payload.query:
        return MISSING_FIELDS_MESSAGE
    if not isinstance(payload.data, dict):
        return INVALID_DATA_MESSAGE
    for table, rows in payload.data.items():
        if not isinstance(rows, list) or not all(isinstance(row, dict) for row in rows):
            return f"Data for table {table} must be a list of row objects"
    return validate_query(payload.query)


def _serialize_result(result: ExecuteQueryResponse) -> ExecuteQueryResponseDTO:
    return ExecuteQueryResponseDTO(
        success=result.success,
        rows=result.rows,
        columns=result.columns,
        execution_time_ms=result.execution_time_ms,
        error=result.error,
        session_id=result.session_id,
        engine=result.engine,
    )


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponseDTO(error=message).model_dump(mode="json"),
    )


__all__ = ["QueryRouteDeps", "add_query_routes"]
