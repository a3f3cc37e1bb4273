from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest

from runsql.application.garbage_collector import SandboxGarbageCollector
from runsql.application.registry import SandboxRegistry
from tests.fixtures.fakes import (
    USERS_DATA,
    USERS_SCHEMA,
    USERS_SCHEMA_WITH_EMAIL,
    FakeClock,
    FakeProvisioner,
)

pytestmark = pytest.mark.anyio("asyncio")

TTL = timedelta(minutes=60)


async def _ready_registry() -> tuple[SandboxRegistry, FakeProvisioner, FakeClock, str]:
    provisioner = FakeProvisioner()
    clock = FakeClock()
    registry = SandboxRegistry(provisioner, clock=clock)
    key = registry.resolve(None)
    await registry.get_or_provision(key, USERS_SCHEMA, USERS_DATA)
    return registry, provisioner, clock, key


async def test_sweep_removes_only_idle_sandboxes() -> None:
    registry, provisioner, clock, key = await _ready_registry()
    collector = SandboxGarbageCollector(registry, ttl=TTL, interval_seconds=60, clock=clock)

    clock.advance(TTL.total_seconds())
    assert await collector.sweep() == []

    clock.advance(1)
    assert await collector.sweep() == [key]
    assert registry.count() == 0
    assert await provisioner.list_resources() == []
    assert registry.resolve(key) != key


async def test_recent_use_postpones_expiry() -> None:
    registry, _, clock, key = await _ready_registry()
    collector = SandboxGarbageCollector(registry, ttl=TTL, interval_seconds=60, clock=clock)

    clock.advance(TTL.total_seconds() - 10)
    registry.touch(key)
    clock.advance(20)

    assert await collector.sweep() == []
    assert registry.lookup_ready(key).session_key == key


async def test_background_loop_sweeps_until_stopped() -> None:
    registry, _, clock, _ = await _ready_registry()
    collector = SandboxGarbageCollector(registry, ttl=TTL, interval_seconds=0.01, clock=clock)
    clock.advance(TTL.total_seconds() + 1)

    collector.start()
    collector.start()
    assert collector.running
    for _ in range(200):
        if registry.count() == 0:
            break
        await asyncio.sleep(0.01)
    await collector.stop(timeout=1.0)

    assert registry.count() == 0
    assert not collector.running


def test_interval_must_be_positive() -> None:
    registry = SandboxRegistry(FakeProvisioner())
    with pytest.raises(ValueError):
        SandboxGarbageCollector(registry, ttl=TTL, interval_seconds=0)


async def test_sweep_skips_rebuilding_sandbox_and_waits_behind_its_lock() -> None:
    registry, provisioner, clock, key = await _ready_registry()
    collector = SandboxGarbageCollector(registry, ttl=TTL, interval_seconds=60, clock=clock)
    clock.advance(TTL.total_seconds() + 1)
    assert registry.expired_keys(TTL) == [key]

    provisioner.provision_gate = asyncio.Event()
    rebuild = asyncio.create_task(registry.get_or_provision(key, USERS_SCHEMA_WITH_EMAIL, USERS_DATA))
    for _ in range(5):
        await asyncio.sleep(0)

    assert await collector.sweep() == []
    expiring_delete = asyncio.create_task(registry.delete(key, expired_after=TTL))
    for _ in range(5):
        await asyncio.sleep(0)
    assert not expiring_delete.done()

    provisioner.provision_gate.set()
    rebuilt = await rebuild

    assert await expiring_delete is False
    assert provisioner.destroyed == ["container-1"]
    assert registry.lookup_ready(key) == rebuilt
    assert rebuilt.last_accessed_at == clock.now
