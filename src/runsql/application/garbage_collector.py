"""Background sweep that retires idle sandboxes."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Callable
from datetime import UTC, datetime, timedelta

from runsql.application.registry import SandboxRegistry

logger = logging.getLogger("runsql.gc")


class SandboxGarbageCollector:
    """Async worker that deletes sandboxes idle for longer than the TTL.

    Runs as an asyncio task on the server's event loop and removes sandboxes
    through ``SandboxRegistry.delete`` so expiry takes the same per-key lock as
    explicit deletion.
    """

    worker_name = "sandbox-garbage-collector"

    def __init__(
        self,
        registry: SandboxRegistry,
        *,
        ttl: timedelta,
        interval_seconds: float,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        self._registry = registry
        self._ttl = ttl
        self._interval = interval_seconds
        self._clock = clock or (lambda: datetime.now(UTC))
        self._stop = asyncio.Event()
        self._task: asyncio.Task[None] | None = None

    def start(self) -> None:
        """Start the sweep task (idempotent)."""
        if self._task is not None and not self._task.done():
            return
        self._stop = asyncio.Event()
        self._task = asyncio.create_task(self._run(), name=self.worker_name)

    async def stop(self, *, timeout: float = 5.0) -> None:
        """Request stop and wait for the current sweep to finish."""
        task = self._task
        if task is None:
            return
        self._stop.set()
        try:
            await asyncio.wait_for(task, timeout=timeout)
        except TimeoutError:
            logger.warning("garbage collector did not stop in time; cancelling")
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        finally:
            self._task = None

    @property
    def running(self) -> bool:
        task = self._task
        return bool(task is not None and not task.done())

    async def sweep(self, now: datetime | None = None) -> list[str]:
        """Run one collection cycle; returns the keys that were destroyed."""
        moment = now or self._clock()
        removed: list[str] = []
        for session_key in self._registry.expired_keys(self._ttl, moment):
            if await self._registry.delete(session_key, expired_after=self._ttl):
                removed.append(session_key)
        if removed:
            logger.info(
                "expired sandboxes removed",
                extra={"data": {"count": len(removed), "session_keys": removed}},
            )
        return removed

    async def _run(self) -> None:
        while not self._stop.is_set():
            with contextlib.suppress(TimeoutError):
                await asyncio.wait_for(self._stop.wait(), timeout=self._interval)
            if self._stop.is_set():
                break
            try:
                await self.sweep()
            except Exception:
                logger.exception("garbage collection sweep failed")


__all__ = ["SandboxGarbageCollector"]
