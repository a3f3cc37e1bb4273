"""Sandbox lifecycle records and the state machine that governs them."""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from enum import Enum

from runsql.errors import UnsupportedEngine


class EngineKind(str, Enum):
    """Isolated-runtime backends a sandbox can run on."""

    POSTGRES = "postgres"


DEFAULT_ENGINE = EngineKind.POSTGRES


def parse_engine(value: str | EngineKind | None) -> EngineKind:
    """Return the engine named by ``value``; ``None`` selects the default engine."""
    if value is None:
        return DEFAULT_ENGINE
    if isinstance(value, EngineKind):
        return value
    try:
        return EngineKind(value.strip().lower())
    except ValueError as exc:
        raise UnsupportedEngine(f"Engine {value} is not supported yet") from exc


class SandboxState(str, Enum):
    """Lifecycle states for a session sandbox."""

    PROVISIONING = "provisioning"
    READY = "ready"
    REPLACING = "replacing"
    DESTROYING = "destroying"
    DESTROYED = "destroyed"


_ALLOWED_TRANSITIONS: frozenset[tuple[SandboxState, SandboxState]] = frozenset(
    {
        (SandboxState.PROVISIONING, SandboxState.READY),
        (SandboxState.PROVISIONING, SandboxState.DESTROYED),
        (SandboxState.READY, SandboxState.REPLACING),
        (SandboxState.READY, SandboxState.DESTROYING),
        (SandboxState.REPLACING, SandboxState.PROVISIONING),
        (SandboxState.REPLACING, SandboxState.DESTROYED),
        (SandboxState.DESTROYING, SandboxState.DESTROYED),
    }
)


def assert_sandbox_transition(
    current: SandboxState | None,
    target: SandboxState,
    *,
    reason: str,
) -> None:
    """Raise if moving from ``current`` to ``target`` is not a legal lifecycle step."""
    if current is None:
        if target is not SandboxState.PROVISIONING:
            raise RuntimeError(f"Illegal sandbox transition: <new> -> {target.value} ({reason})")
        return
    if (current, target) not in _ALLOWED_TRANSITIONS:
        raise RuntimeError(
            f"Illegal sandbox transition: {current.value} -> {target.value} ({reason})"
        )


@dataclass(frozen=True, slots=True)
class SandboxEndpoint:
    """Network address at which a sandbox accepts connections."""

    host: str
    port: int

    def __post_init__(self) -> None:
        if not 0 < self.port < 65536:
            raise ValueError("port must be between 1 and 65535")

    def __str__(self) -> str:
        return f"{self.host}:{self.port}"


@dataclass(frozen=True, slots=True)
class ResourceHandle:
    """Opaque reference to the container backing a sandbox."""

    identifier: str
    name: str


@dataclass(frozen=True, slots=True)
class SandboxRecord:
    """Registry entry describing one session's sandbox."""

    session_key: str
    engine: EngineKind
    state: SandboxState
    created_at: datetime
    last_accessed_at: datetime
    fingerprint: str | None = None
    endpoint: SandboxEndpoint | None = None
    resource: ResourceHandle | None = None

    @classmethod
    def provisioning(cls, session_key: str, engine: EngineKind, *, now: datetime) -> SandboxRecord:
        """Return a fresh record for a key whose first build is starting."""
        assert_sandbox_transition(None, SandboxState.PROVISIONING, reason="first build")
        return cls(
            session_key=session_key,
            engine=engine,
            state=SandboxState.PROVISIONING,
            created_at=now,
            last_accessed_at=now,
        )

    @property
    def is_ready(self) -> bool:
        return self.state is SandboxState.READY

    @property
    def is_live(self) -> bool:
        return self.state is not SandboxState.DESTROYED

    def mark_ready(
        self,
        *,
        endpoint: SandboxEndpoint,
        resource: ResourceHandle,
        fingerprint: str,
        now: datetime,
    ) -> SandboxRecord:
        """Install a freshly materialized sandbox and refresh the access time."""
        self._check(SandboxState.READY, reason="provisioning succeeded")
        return replace(
            self,
            state=SandboxState.READY,
            endpoint=endpoint,
            resource=resource,
            fingerprint=fingerprint,
            last_accessed_at=now,
        )

    def mark_replacing(self) -> SandboxRecord:
        self._check(SandboxState.REPLACING, reason="drift detected")
        return replace(self, state=SandboxState.REPLACING)

    def mark_reprovisioning(self, engine: EngineKind | None = None) -> SandboxRecord:
        """Forget the torn-down resource and start a new build under the same key."""
        self._check(SandboxState.PROVISIONING, reason="old resource destroyed")
        return replace(
            self,
            engine=engine or self.engine,
            state=SandboxState.PROVISIONING,
            endpoint=None,
            resource=None,
            fingerprint=None,
        )

    def mark_destroying(self) -> SandboxRecord:
        self._check(SandboxState.DESTROYING, reason="deletion requested")
        return replace(self, state=SandboxState.DESTROYING)

    def mark_destroyed(self) -> SandboxRecord:
        self._check(SandboxState.DESTROYED, reason="resource released")
        return replace(self, state=SandboxState.DESTROYED, endpoint=None, resource=None)

    def touch(self, now: datetime) -> SandboxRecord:
        """Return a copy with ``last_accessed_at`` moved to ``now``."""
        if self.state is not SandboxState.READY:
            raise RuntimeError(f"cannot touch sandbox in state {self.state.value}")
        return replace(self, last_accessed_at=max(now, self.last_accessed_at))

    def idle_for(self, now: datetime) -> timedelta:
        return now - self.last_accessed_at

    def is_expired(self, ttl: timedelta, now: datetime) -> bool:
        """True when a READY sandbox has been idle longer than ``ttl``."""
        return self.state is SandboxState.READY and self.idle_for(now) > ttl

    def _check(self, target: SandboxState, *, reason: str) -> None:
        assert_sandbox_transition(self.state, target, reason=f"{self.session_key}: {reason}")


__all__ = [
    "DEFAULT_ENGINE",
    "EngineKind",
    "ResourceHandle",
    "SandboxEndpoint",
    "SandboxRecord",
    "SandboxState",
    "assert_sandbox_transition",
    "parse_engine",
]
