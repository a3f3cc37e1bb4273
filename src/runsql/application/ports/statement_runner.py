"""Port describing single-statement execution against a sandbox endpoint."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Protocol

from runsql.domain.sandbox import SandboxEndpoint
from runsql.json_types import JsonObject


@dataclass(frozen=True, slots=True)
class StatementResult:
    """Normalized result of one statement."""

    rows: list[JsonObject] = field(default_factory=list)
    columns: list[str] = field(default_factory=list)


class StatementRunnerPort(Protocol):
    async def run(self, endpoint: SandboxEndpoint, statement: str) -> StatementResult:
        """Open a connection, run ``statement`` and always close the connection.

        Raises ``StatementFailure`` when the statement itself fails.
        """


__all__ = ["StatementResult", "StatementRunnerPort"]
