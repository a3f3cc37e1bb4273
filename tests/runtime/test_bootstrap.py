from __future__ import annotations

import pytest

from runsql.config.sandbox import SandboxSettings
from runsql.runtime.bootstrap import build_runtime, close_runtime_resources, start_runtime
from runsql.runtime.settings import Settings
from tests.fixtures.fakes import USERS_DATA, USERS_SCHEMA, FakeProvisioner, InMemoryStatementRunner

pytestmark = pytest.mark.anyio("asyncio")


def _runtime(*, reap_orphans: bool = True):
    provisioner = FakeProvisioner()
    settings = Settings(
        sandbox=SandboxSettings(
            reap_orphans_on_startup=reap_orphans,
            cleanup_interval_seconds=60,
        )
    )
    runtime = build_runtime(
        settings,
        provisioner=provisioner,
        statement_runner=InMemoryStatementRunner(provisioner),
    )
    return runtime, provisioner


async def test_runtime_shares_one_registry_across_components() -> None:
    runtime, _ = _runtime()

    deps = runtime.query_route_deps_provider()

    assert deps.registry is runtime.registry
    assert deps.execute_query is runtime.execute_query
    assert runtime.query_route_deps_provider() is deps


async def test_start_reaps_orphans_then_starts_collector() -> None:
    runtime, provisioner = _runtime()
    provisioner.adopt_orphan("leftover-1")

    await start_runtime(runtime)
    try:
        assert provisioner.destroyed == ["leftover-1"]
        assert runtime.garbage_collector.running is True
    finally:
        await close_runtime_resources(runtime, timeout=1.0)

    assert runtime.garbage_collector.running is False


async def test_orphan_reaping_can_be_disabled() -> None:
    runtime, provisioner = _runtime(reap_orphans=False)
    provisioner.adopt_orphan("leftover-1")

    await start_runtime(runtime)
    await close_runtime_resources(runtime, timeout=1.0)

    assert provisioner.destroyed == []


async def test_close_destroys_every_live_sandbox() -> None:
    runtime, provisioner = _runtime()
    await start_runtime(runtime)
    for _ in range(2):
        key = runtime.registry.resolve(None)
        await runtime.registry.get_or_provision(key, USERS_SCHEMA, USERS_DATA)

    await close_runtime_resources(runtime, timeout=1.0)

    assert runtime.registry.count() == 0
    assert await provisioner.list_resources() == []
