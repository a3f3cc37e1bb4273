"""asyncpg helpers for talking to sandbox Postgres instances."""

from __future__ import annotations

import asyncio
import json
import logging
import time
from collections.abc import Awaitable, Callable, Mapping, Sequence
from dataclasses import dataclass, field
from itertools import groupby
from typing import Any

import asyncpg

from runsql.domain.sandbox import SandboxEndpoint
from runsql.errors import MaterializationFailure, ProvisioningTimeout
from runsql.json_types import JsonObject
from runsql.schema.dbml import quote_identifier

logger = logging.getLogger("runsql.postgres")

ConnectFactory = Callable[..., Awaitable[Any]]

# Driver-level failures raised while opening or using a connection.
CONNECTION_ERRORS: tuple[type[BaseException], ...] = (
    OSError,
    TimeoutError,
    asyncpg.PostgresError,
    asyncpg.InterfaceError,
)


@dataclass(frozen=True)
class PostgresCredentials:
    """Fixed credentials baked into every sandbox; never leave the service."""

    username: str
    password: str = field(repr=False)
    database: str


async def open_connection(
    endpoint: SandboxEndpoint,
    credentials: PostgresCredentials,
    *,
    timeout: float,
    connect: ConnectFactory = asyncpg.connect,
) -> Any:
    return await connect(
        host=endpoint.host,
        port=endpoint.port,
        user=credentials.username,
        password=credentials.password,
        database=credentials.database,
        timeout=timeout,
    )


async def close_quietly(connection: Any) -> None:
    try:
        await connection.close()
    except Exception as exc:  # pragma: no cover - transport teardown
        logger.warning("closing sandbox connection failed (ignored): %s", exc)


async def await_ready(
    endpoint: SandboxEndpoint,
    credentials: PostgresCredentials,
    *,
    timeout_seconds: float,
    retry_delay_seconds: float,
    connect: ConnectFactory = asyncpg.connect,
) -> None:
    """Poll with real Postgres handshakes until one succeeds or the deadline passes."""
    deadline = time.monotonic() + timeout_seconds
    last_error: BaseException | None = None
    attempts = 0
    while True:
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            break
        attempts += 1
        try:
            connection = await open_connection(
                endpoint,
                credentials,
                timeout=max(0.1, min(remaining, max(retry_delay_seconds, 1.0))),
                connect=connect,
            )
        except CONNECTION_ERRORS as exc:
            last_error = exc
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                break
            await asyncio.sleep(min(retry_delay_seconds, remaining))
            continue
        await close_quietly(connection)
        logger.debug(
            "sandbox accepted connection",
            extra={"data": {"endpoint": str(endpoint), "attempts": attempts}},
        )
        return

    raise ProvisioningTimeout(
        f"Postgres sandbox failed to become ready within {timeout_seconds:g}s: {last_error}",
        last_error=last_error,
    )


def render_literal(value: object) -> str:
    """Render a seed value as an untyped SQL literal Postgres coerces to the column type."""
    if value is None:
        return "NULL"
    if isinstance(value, bool):
        text = "true" if value else "false"
    elif isinstance(value, (dict, list)):
        text = json.dumps(value, separators=(",", ":"))
    else:
        text = str(value)
    if "\x00" in text:
        raise ValueError("seed values may not contain NUL characters")
    return "'" + text.replace("'", "''") + "'"


def build_insert_statements(table: str, rows: Sequence[JsonObject]) -> list[str]:
    """One multi-row ``INSERT`` per run of consecutive rows sharing a column order."""
    statements: list[str] = []
    for columns, group in groupby(rows, key=lambda row: tuple(row.keys())):
        if not columns:
            continue
        column_list = ", ".join(quote_identifier(column) for column in columns)
        values = ",\n  ".join(
            "(" + ", ".join(render_literal(row[column]) for column in columns) + ")"
            for row in group
        )
        statements.append(f"INSERT INTO {quote_identifier(table)} ({column_list}) VALUES\n  {values}")
    return statements


async def materialize(
    connection: Any,
    statements: Sequence[str],
    data: Mapping[str, Sequence[JsonObject]],
    *,
    timeout: float | None = None,
) -> None:
    """Apply schema statements in order, then seed rows table by table.

    Stops at the first failing statement; the caller owns cleanup of the sandbox.
    """
    current = ""
    try:
        for statement in statements:
            current = statement
            await connection.execute(statement, timeout=timeout)
        for table, rows in data.items():
            if not rows:
                continue
            for statement in build_insert_statements(table, rows):
                current = statement
                await connection.execute(statement, timeout=timeout)
    except (*CONNECTION_ERRORS, ValueError) as exc:
        logger.warning(
            "sandbox materialization failed",
            extra={"data": {"statement": current[:200], "error": str(exc)}},
        )
        raise MaterializationFailure(f"Failed to initialize sandbox: {exc}") from exc


__all__ = [
    "CONNECTION_ERRORS",
    "ConnectFactory",
    "PostgresCredentials",
    "await_ready",
    "build_insert_statements",
    "close_quietly",
    "materialize",
    "open_connection",
    "render_literal",
]
