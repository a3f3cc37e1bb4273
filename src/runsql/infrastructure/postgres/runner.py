"""Single-statement execution against sandbox Postgres instances."""

from __future__ import annotations

import datetime as dt
import logging
import uuid
from collections.abc import Mapping
from decimal import Decimal
from typing import Any

import asyncpg

from runsql.application.ports.statement_runner import StatementResult, StatementRunnerPort
from runsql.domain.sandbox import SandboxEndpoint
from runsql.errors import StatementFailure
from runsql.infrastructure.postgres.client import (
    ConnectFactory,
    PostgresCredentials,
    close_quietly,
    open_connection,
)
from runsql.json_types import JsonValue

logger = logging.getLogger("runsql.postgres")


def to_json_value(value: Any) -> JsonValue:
    """Convert a driver value into something the HTTP layer can serialize."""
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, (dt.datetime, dt.date, dt.time)):
        return value.isoformat()
    if isinstance(value, dt.timedelta):
        return str(value)
    if isinstance(value, uuid.UUID):
        return str(value)
    if isinstance(value, (bytes, bytearray, memoryview)):
        return "\\x" + bytes(value).hex()
    if isinstance(value, Mapping):
        return {str(key): to_json_value(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_json_value(item) for item in value]
    return str(value)


def unique_column_names(names: list[str]) -> list[str]:
    """Suffix repeated result column names (``id``, ``id_1``) so each row key is distinct."""
    used: set[str] = set()
    unique: list[str] = []
    for name in names:
        candidate = name
        suffix = 0
        while candidate in used:
            suffix += 1
            candidate = f"{name}_{suffix}"
        used.add(candidate)
        unique.append(candidate)
    return unique


class AsyncpgStatementRunner(StatementRunnerPort):
    """Opens a fresh connection per statement and always closes it."""

    def __init__(
        self,
        credentials: PostgresCredentials,
        *,
        statement_timeout_seconds: float = 30.0,
        connect_timeout_seconds: float = 10.0,
        connect: ConnectFactory = asyncpg.connect,
    ) -> None:
        self._credentials = credentials
        self._statement_timeout = statement_timeout_seconds
        self._connect_timeout = connect_timeout_seconds
        self._connect = connect

    async def run(self, endpoint: SandboxEndpoint, statement: str) -> StatementResult:
        try:
            connection = await open_connection(
                endpoint,
                self._credentials,
                timeout=self._connect_timeout,
                connect=self._connect,
            )
        except (OSError, TimeoutError, asyncpg.PostgresError, asyncpg.InterfaceError) as exc:
            logger.warning(
                "sandbox connection failed",
                extra={"data": {"endpoint": str(endpoint), "error": str(exc)}},
            )
            raise StatementFailure(f"Could not connect to sandbox: {exc}") from exc

        try:
            # A prepared statement accepts exactly one command.
            prepared = await connection.prepare(statement, timeout=self._statement_timeout)
            columns = unique_column_names([attribute.name for attribute in prepared.get_attributes()])
            records = await prepared.fetch(timeout=self._statement_timeout)
        except TimeoutError as exc:
            raise StatementFailure(
                f"Statement timed out after {self._statement_timeout:g}s"
            ) from exc
        except (asyncpg.PostgresError, asyncpg.InterfaceError) as exc:
            raise StatementFailure(str(exc)) from exc
        finally:
            await close_quietly(connection)

        rows = [
            {column: to_json_value(record[index]) for index, column in enumerate(columns)}
            for record in records
        ]
        return StatementResult(rows=rows, columns=columns)


__all__ = ["AsyncpgStatementRunner", "to_json_value", "unique_column_names"]
