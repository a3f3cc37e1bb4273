"""Port describing the backend that creates and destroys sandbox resources."""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import Protocol

from runsql.domain.sandbox import EngineKind, ResourceHandle, SandboxEndpoint
from runsql.json_types import JsonObject


@dataclass(frozen=True, slots=True)
class ProvisionedSandbox:
    """A running, reachable but not yet materialized sandbox."""

    endpoint: SandboxEndpoint
    resource: ResourceHandle


class SandboxProvisionerPort(Protocol):
    """Lifecycle backend responsible for isolated sandbox resources."""

    async def provision(self, engine: EngineKind, session_key: str) -> ProvisionedSandbox:
        """Start a sandbox and return once it accepts connections.

        Implementations release the resource themselves if it never becomes ready.
        """

    async def materialize(
        self,
        endpoint: SandboxEndpoint,
        statements: Sequence[str],
        data: Mapping[str, Sequence[JsonObject]],
    ) -> None:
        """Apply schema statements then seed rows; fail fast on the first error."""

    async def destroy(self, resource: ResourceHandle) -> None:
        """Release the resource. Never raises."""

    async def list_resources(self) -> list[str]:
        """Return identifiers of every sandbox resource the backend currently holds."""


__all__ = ["ProvisionedSandbox", "SandboxProvisionerPort"]
