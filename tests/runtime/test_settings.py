from __future__ import annotations

from datetime import timedelta

import pytest
from pydantic import ValidationError

from runsql.config.sandbox import SandboxSettings
from runsql.runtime.settings import Settings


@pytest.fixture(autouse=True)
def _isolate_env(monkeypatch: pytest.MonkeyPatch, tmp_path) -> None:
    # SandboxSettings also reads .env from the working directory.
    monkeypatch.chdir(tmp_path)


def test_defaults() -> None:
    settings = Settings()

    assert settings.port == 3001
    assert settings.sandbox.image == "postgres:15-alpine"
    assert settings.sandbox.pull_policy == "missing"
    assert settings.sandbox.ttl == timedelta(hours=1)
    assert settings.sandbox.cleanup_interval_seconds == 300
    assert settings.observability.enable_cloud_logging is False


def test_environment_overrides(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("RUNSQL_PORT", "8080")
    monkeypatch.setenv("RUNSQL_SANDBOX_IMAGE", "postgres:16")
    monkeypatch.setenv("RUNSQL_SANDBOX_TTL_SECONDS", "120")
    monkeypatch.setenv("RUNSQL_SANDBOX_PULL_POLICY", "never")
    monkeypatch.setenv("RUNSQL_REAP_ORPHANS_ON_STARTUP", "false")

    settings = Settings()

    assert settings.port == 8080
    assert settings.sandbox.image == "postgres:16"
    assert settings.sandbox.ttl == timedelta(seconds=120)
    assert settings.sandbox.pull_policy == "never"
    assert settings.sandbox.reap_orphans_on_startup is False


def test_sandbox_password_is_masked(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("RUNSQL_SANDBOX_PASSWORD", "hunter22")

    settings = Settings()

    assert settings.sandbox.password_value == "hunter22"
    assert "hunter22" not in repr(settings)


def test_invalid_values_are_rejected(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("RUNSQL_SANDBOX_PULL_POLICY", "sometimes")

    with pytest.raises(ValidationError):
        SandboxSettings()
