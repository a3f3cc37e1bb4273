"""Pydantic request/response shapes for the HTTP API."""

from __future__ import annotations

from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field
from pydantic import JsonValue as PydanticJsonValue


class ExecuteQueryRequestDTO(BaseModel):
    """Raw request body; field presence and shapes are checked by the route."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    session_id: str | None = Field(default=None, alias="sessionId")
    engine: str | None = None
    dbml: str | None = Field(default=None, validation_alias=AliasChoices("dbml", "schema"))
    data: PydanticJsonValue = None
    query: str | None = None


class ExecuteQueryResponseDTO(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    success: bool
    rows: list[dict[str, PydanticJsonValue]] | None = None
    columns: list[str] | None = None
    execution_time_ms: float | None = Field(default=None, alias="executionTime_ms")
    error: str | None = None
    session_id: str | None = Field(default=None, alias="sessionId")
    engine: str | None = None

    def to_content(self) -> dict[str, Any]:
        """JSON body with unset top-level fields omitted; row values keep their nulls."""
        dumped = self.model_dump(mode="json", by_alias=True)
        return {key: value for key, value in dumped.items() if value is not None}


class ErrorResponseDTO(BaseModel):
    model_config = ConfigDict(frozen=True)

    success: bool = False
    error: str


class HealthResponseDTO(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    status: str
    message: str
    active_sandboxes: int = Field(alias="activeSandboxes", ge=0)


class SessionDeletedResponseDTO(BaseModel):
    model_config = ConfigDict(frozen=True)

    success: bool
    message: str


class ServiceInfoResponseDTO(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str
    version: str


__all__ = [
    "ErrorResponseDTO",
    "ExecuteQueryRequestDTO",
    "ExecuteQueryResponseDTO",
    "HealthResponseDTO",
    "ServiceInfoResponseDTO",
    "SessionDeletedResponseDTO",
]
