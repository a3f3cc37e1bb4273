"""Sandbox configuration: container image, credentials, timeouts and expiry."""

from __future__ import annotations

from datetime import timedelta
from typing import Literal

from pydantic import Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict

SandboxPullPolicy = Literal["always", "missing", "never"]


class SandboxSettings(BaseSettings):
    """Docker sandbox settings and lifecycle budgets."""

    model_config = SettingsConfigDict(
        env_prefix="",
        extra="ignore",
        case_sensitive=False,
        frozen=True,
        env_file=".env",
        env_file_encoding="utf-8",
        populate_by_name=True,
    )

    image: str = Field(default="postgres:15-alpine", alias="RUNSQL_SANDBOX_IMAGE")
    pull_policy: SandboxPullPolicy = Field(default="missing", alias="RUNSQL_SANDBOX_PULL_POLICY")
    docker_binary: str = Field(default="docker", alias="RUNSQL_DOCKER_BINARY")
    host: str = Field(default="127.0.0.1", alias="RUNSQL_SANDBOX_HOST")

    username: str = Field(default="sandbox", alias="RUNSQL_SANDBOX_USER")
    password: SecretStr = Field(default=SecretStr("sandbox"), alias="RUNSQL_SANDBOX_PASSWORD")
    database: str = Field(default="sandbox", alias="RUNSQL_SANDBOX_DATABASE")

    ttl_seconds: float = Field(
        default=60 * 60,
        gt=0,
        alias="RUNSQL_SANDBOX_TTL_SECONDS",
        description="Idle time after which a sandbox is reclaimed.",
    )
    readiness_timeout_seconds: float = Field(
        default=60.0, gt=0, alias="RUNSQL_READINESS_TIMEOUT_SECONDS"
    )
    readiness_retry_delay_seconds: float = Field(
        default=2.0, gt=0, alias="RUNSQL_READINESS_RETRY_DELAY_SECONDS"
    )
    cleanup_interval_seconds: float = Field(
        default=5 * 60, gt=0, alias="RUNSQL_CLEANUP_INTERVAL_SECONDS"
    )
    stop_timeout_seconds: int = Field(default=5, ge=0, alias="RUNSQL_STOP_TIMEOUT_SECONDS")
    statement_timeout_seconds: float = Field(
        default=30.0, gt=0, alias="RUNSQL_STATEMENT_TIMEOUT_SECONDS"
    )
    reap_orphans_on_startup: bool = Field(default=True, alias="RUNSQL_REAP_ORPHANS_ON_STARTUP")

    @property
    def ttl(self) -> timedelta:
        return timedelta(seconds=self.ttl_seconds)

    @property
    def password_value(self) -> str:
        return self.password.get_secret_value()


__all__ = ["SandboxPullPolicy", "SandboxSettings"]
