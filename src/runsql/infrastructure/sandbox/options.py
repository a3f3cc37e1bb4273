"""Options for launching Postgres sandbox containers."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field

from runsql.config.sandbox import SandboxSettings
from runsql.infrastructure.postgres.client import PostgresCredentials

SANDBOX_LABEL = "runsql.sandbox"
SESSION_LABEL = "runsql.session"
POSTGRES_PORT = 5432


@dataclass(frozen=True, slots=True)
class ContainerLimits:
    """Resource caps applied to every sandbox container."""

    memory: str = "256m"
    cpus: str = "0.5"
    pids_limit: int = 128

    @property
    def extra_args(self) -> tuple[str, ...]:
        return (
            "--memory",
            self.memory,
            "--cpus",
            self.cpus,
            "--pids-limit",
            str(self.pids_limit),
            "--security-opt",
            "no-new-privileges",
        )


DEFAULT_LIMITS = ContainerLimits()


@dataclass(frozen=True)
class PostgresSandboxOptions:
    """Configuration shared by every Postgres sandbox the provisioner starts."""

    image: str
    credentials: PostgresCredentials
    pull_policy: str = "missing"
    host: str = "127.0.0.1"
    container_port: int = POSTGRES_PORT
    name_prefix: str = "runsql-sandbox"
    label_value: str = "runsql"
    stop_timeout_seconds: int | None = 5
    readiness_timeout_seconds: float = 60.0
    readiness_retry_delay_seconds: float = 2.0
    materialize_timeout_seconds: float | None = 60.0
    extra_env: Mapping[str, str] = field(default_factory=dict)
    extra_args: tuple[str, ...] = DEFAULT_LIMITS.extra_args

    @property
    def env(self) -> dict[str, str]:
        return {
            "POSTGRES_USER": self.credentials.username,
            "POSTGRES_PASSWORD": self.credentials.password,
            "POSTGRES_DB": self.credentials.database,
            **self.extra_env,
        }


def build_postgres_options(settings: SandboxSettings) -> PostgresSandboxOptions:
    """Build sandbox options from the resolved settings."""
    return PostgresSandboxOptions(
        image=settings.image,
        credentials=credentials_from_settings(settings),
        pull_policy=settings.pull_policy,
        host=settings.host,
        stop_timeout_seconds=settings.stop_timeout_seconds,
        readiness_timeout_seconds=settings.readiness_timeout_seconds,
        readiness_retry_delay_seconds=settings.readiness_retry_delay_seconds,
    )


def credentials_from_settings(settings: SandboxSettings) -> PostgresCredentials:
    return PostgresCredentials(
        username=settings.username,
        password=settings.password_value,
        database=settings.database,
    )


__all__ = [
    "DEFAULT_LIMITS",
    "POSTGRES_PORT",
    "SANDBOX_LABEL",
    "SESSION_LABEL",
    "ContainerLimits",
    "PostgresSandboxOptions",
    "build_postgres_options",
    "credentials_from_settings",
]
