"""Session registry: the single owner of session key -> sandbox state.

Every mutation for a key runs under that key's ``asyncio.Lock``; distinct keys
never wait on each other. A record found while holding the lock is always READY
because each operation leaves its key either READY or removed.
"""

from __future__ import annotations

import asyncio
import logging
import secrets
import time
from collections.abc import AsyncIterator, Callable, Mapping, Sequence
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta

from opentelemetry import trace

from runsql.application.ports.provisioner import SandboxProvisionerPort
from runsql.domain.fingerprint import fingerprint
from runsql.domain.sandbox import EngineKind, ResourceHandle, SandboxRecord, parse_engine
from runsql.errors import SessionNotFound
from runsql.json_types import JsonObject
from runsql.schema.dbml import translate

logger = logging.getLogger("runsql.registry")

SchemaTranslator = Callable[[str], list[str]]
Clock = Callable[[], datetime]

SESSION_NOT_FOUND_MESSAGE = "Sandbox session not found or expired"


def generate_session_key() -> str:
    """Return ``sandbox_<epoch-ms>_<64 random bits>``."""
    return f"sandbox_{int(time.time() * 1000)}_{secrets.token_hex(8)}"


def _utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass(slots=True)
class _KeyLock:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    holders: int = 0


class SandboxRegistry:
    """Maps session keys to sandboxes and serializes work per key."""

    def __init__(
        self,
        provisioner: SandboxProvisionerPort,
        *,
        translator: SchemaTranslator = translate,
        clock: Clock = _utcnow,
        key_factory: Callable[[], str] = generate_session_key,
    ) -> None:
        self._provisioner = provisioner
        self._translator = translator
        self._clock = clock
        self._key_factory = key_factory
        self._records: dict[str, SandboxRecord] = {}
        self._reserved: set[str] = set()
        self._locks: dict[str, _KeyLock] = {}

    def resolve(self, candidate_key: str | None = None) -> str:
        """Return ``candidate_key`` when it is known, otherwise reserve a fresh key."""
        if candidate_key and self._is_known(candidate_key):
            return candidate_key
        key = self._key_factory()
        while self._is_known(key):
            key = self._key_factory()
        self._reserved.add(key)
        return key

    def release(self, session_key: str) -> None:
        """Drop a reservation made by ``resolve`` that will never be provisioned."""
        self._reserved.discard(session_key)

    async def get_or_provision(
        self,
        session_key: str,
        schema: str,
        data: Mapping[str, Sequence[JsonObject]],
        engine: EngineKind | str | None = None,
    ) -> SandboxRecord:
        """Return a READY sandbox for ``session_key`` holding exactly ``schema`` and ``data``.

        Reuses the current sandbox when the fingerprint matches, rebuilds it under
        the same key when it does not and provisions one when the key has none.
        Provisioning failures leave no record and no resource behind.
        """
        async with self.provisioned(session_key, schema, data, engine) as record:
            return record

    @asynccontextmanager
    async def provisioned(
        self,
        session_key: str,
        schema: str,
        data: Mapping[str, Sequence[JsonObject]],
        engine: EngineKind | str | None = None,
    ) -> AsyncIterator[SandboxRecord]:
        """Like ``get_or_provision`` but keeps the key locked while the caller uses the sandbox."""
        resolved_engine = parse_engine(engine)
        digest = fingerprint(schema, data)
        try:
            async with self._exclusive(session_key):
                record = await self._ensure(session_key, schema, data, resolved_engine, digest)
                yield record
        finally:
            self._reserved.discard(session_key)

    @asynccontextmanager
    async def ready(self, session_key: str) -> AsyncIterator[SandboxRecord]:
        """Hold the key's lock and yield its READY record.

        Keys that are not READY on arrival fail fast with ``SessionNotFound``
        instead of waiting behind a rebuild; the state is checked again once the
        lock is held.
        """
        self.lookup_ready(session_key)
        async with self._exclusive(session_key):
            yield self.lookup_ready(session_key)

    async def _ensure(
        self,
        session_key: str,
        schema: str,
        data: Mapping[str, Sequence[JsonObject]],
        engine: EngineKind,
        digest: str,
    ) -> SandboxRecord:
        record = self._records.get(session_key)
        if record is not None and not record.is_ready:
            raise RuntimeError(
                f"sandbox {session_key} found in state {record.state.value} under its lock"
            )
        if record is not None and record.fingerprint == digest and record.engine is engine:
            touched = record.touch(self._clock())
            self._records[session_key] = touched
            logger.debug(
                "sandbox reused",
                extra={"data": {"session_key": session_key, "fingerprint": digest}},
            )
            return touched

        statements = self._translator(schema)
        if record is None:
            pending = SandboxRecord.provisioning(session_key, engine, now=self._clock())
        else:
            pending = await self._teardown_for_rebuild(record, engine)
        return await self._build(pending, statements, data, digest)

    async def delete(self, session_key: str, *, expired_after: timedelta | None = None) -> bool:
        """Destroy and forget the sandbox for ``session_key``; idempotent.

        With ``expired_after`` the record is only removed if it is still idle past
        that TTL once the key's lock is held. Returns whether a record was removed.
        """
        async with self._exclusive(session_key):
            record = self._records.get(session_key)
            if record is None:
                return False
            if expired_after is not None and not record.is_expired(expired_after, self._clock()):
                return False
            destroying = record.mark_destroying()
            self._records[session_key] = destroying
            try:
                if destroying.resource is not None:
                    await self._provisioner.destroy(destroying.resource)
            finally:
                self._records.pop(session_key, None)
            logger.info(
                "sandbox destroyed",
                extra={
                    "data": {
                        "session_key": session_key,
                        "state": destroying.mark_destroyed().state.value,
                        "expired": expired_after is not None,
                    }
                },
            )
            return True

    def lookup_ready(self, session_key: str) -> SandboxRecord:
        """Return the READY record for ``session_key`` or raise ``SessionNotFound``."""
        record = self._records.get(session_key)
        if record is None or not record.is_ready:
            raise SessionNotFound(SESSION_NOT_FOUND_MESSAGE)
        return record

    def touch(self, session_key: str) -> None:
        record = self._records.get(session_key)
        if record is not None and record.is_ready:
            self._records[session_key] = record.touch(self._clock())

    def count(self) -> int:
        return sum(1 for record in self._records.values() if record.is_live)

    def snapshot(self) -> list[SandboxRecord]:
        return list(self._records.values())

    def expired_keys(self, ttl: timedelta, now: datetime | None = None) -> list[str]:
        """Keys of READY sandboxes idle for longer than ``ttl``."""
        moment = now or self._clock()
        return [key for key, record in self._records.items() if record.is_expired(ttl, moment)]

    async def close_all(self) -> None:
        """Destroy every sandbox; used on shutdown."""
        keys = list(self._records)
        if not keys:
            return
        results = await asyncio.gather(*(self.delete(key) for key in keys), return_exceptions=True)
        for key, result in zip(keys, results, strict=True):
            if isinstance(result, BaseException):
                logger.warning(
                    "sandbox shutdown cleanup failed",
                    exc_info=result,
                    extra={"data": {"session_key": key}},
                )

    async def reap_orphans(self) -> list[str]:
        """Destroy backend resources that no record owns, e.g. left over from a crash."""
        owned = {
            record.resource.identifier
            for record in self._records.values()
            if record.resource is not None
        }
        orphans = [
            identifier
            for identifier in await self._provisioner.list_resources()
            if identifier not in owned
        ]
        for identifier in orphans:
            await self._provisioner.destroy(ResourceHandle(identifier=identifier, name=identifier))
        if orphans:
            logger.warning(
                "removed orphaned sandbox resources",
                extra={"data": {"count": len(orphans), "resources": orphans}},
            )
        return orphans

    async def _teardown_for_rebuild(
        self,
        record: SandboxRecord,
        engine: EngineKind,
    ) -> SandboxRecord:
        replacing = record.mark_replacing()
        self._records[record.session_key] = replacing
        logger.info(
            "sandbox drift detected; rebuilding",
            extra={
                "data": {
                    "session_key": record.session_key,
                    "old_fingerprint": record.fingerprint,
                    "resource": replacing.resource.identifier if replacing.resource else None,
                }
            },
        )
        try:
            if replacing.resource is not None:
                await self._provisioner.destroy(replacing.resource)
        except BaseException:
            self._records.pop(record.session_key, None)
            raise
        pending = replacing.mark_reprovisioning(engine)
        self._records[record.session_key] = pending
        return pending

    async def _build(
        self,
        pending: SandboxRecord,
        statements: list[str],
        data: Mapping[str, Sequence[JsonObject]],
        digest: str,
    ) -> SandboxRecord:
        key = pending.session_key
        self._records[key] = pending
        tracer = trace.get_tracer("runsql.registry")
        start = time.perf_counter()
        try:
            with tracer.start_as_current_span(
                "sandbox.provision",
                attributes={"sandbox.engine": pending.engine.value, "sandbox.tables": len(data)},
            ):
                provisioned = await self._provisioner.provision(pending.engine, key)
                try:
                    await self._provisioner.materialize(provisioned.endpoint, statements, data)
                except BaseException:
                    await self._provisioner.destroy(provisioned.resource)
                    raise
        except BaseException:
            self._records.pop(key, None)
            logger.warning(
                "sandbox provisioning failed",
                exc_info=True,
                extra={
                    "data": {
                        "session_key": key,
                        "state": pending.mark_destroyed().state.value,
                        "elapsed_ms": round((time.perf_counter() - start) * 1000, 2),
                    }
                },
            )
            raise

        ready = pending.mark_ready(
            endpoint=provisioned.endpoint,
            resource=provisioned.resource,
            fingerprint=digest,
            now=self._clock(),
        )
        self._records[key] = ready
        logger.info(
            "sandbox ready",
            extra={
                "data": {
                    "session_key": key,
                    "engine": ready.engine.value,
                    "endpoint": str(ready.endpoint),
                    "resource": provisioned.resource.identifier,
                    "elapsed_ms": round((time.perf_counter() - start) * 1000, 2),
                }
            },
        )
        return ready

    def _is_known(self, key: str) -> bool:
        if key in self._reserved:
            return True
        record = self._records.get(key)
        return record is not None and record.is_live

    @asynccontextmanager
    async def _exclusive(self, session_key: str) -> AsyncIterator[None]:
        entry = self._locks.get(session_key)
        if entry is None:
            entry = _KeyLock()
            self._locks[session_key] = entry
        entry.holders += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.holders -= 1
            if entry.holders == 0 and self._locks.get(session_key) is entry:
                del self._locks[session_key]


__all__ = ["SESSION_NOT_FOUND_MESSAGE", "SandboxRegistry", "generate_session_key"]
