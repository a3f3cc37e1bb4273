"""Configuration helpers for runtime wiring."""

from __future__ import annotations

import logging

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from runsql.config.observability import ObservabilitySettings
from runsql.config.sandbox import SandboxSettings


class Settings(BaseSettings):
    """Service configuration resolved from the environment.

    Internal defaults live next to the code that uses them; only genuinely
    configurable values appear here.
    """

    model_config = SettingsConfigDict(
        env_prefix="",
        extra="ignore",
        case_sensitive=False,
        frozen=True,
    )

    # --- Server ---
    listen_host: str = Field(default="0.0.0.0", alias="RUNSQL_HOST")  # noqa: S104
    port: int = Field(default=3001, ge=1, le=65535, alias="RUNSQL_PORT")
    shutdown_timeout_seconds: float = Field(default=30.0, gt=0, alias="RUNSQL_SHUTDOWN_TIMEOUT_SECONDS")

    # --- Component settings ---
    sandbox: SandboxSettings = Field(default_factory=SandboxSettings)
    observability: ObservabilitySettings = Field(default_factory=ObservabilitySettings)

    # --- Loader ---
    @classmethod
    def load(cls) -> Settings:
        instance = cls()
        logger = logging.getLogger("runsql.settings")
        logger.info("runsql settings loaded: %r", instance)
        return instance


__all__ = ["Settings"]
