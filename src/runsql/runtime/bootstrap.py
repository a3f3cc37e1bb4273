"""Runtime wiring for the query service."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass

from runsql.application.execute_query import ExecuteQuery
from runsql.application.garbage_collector import SandboxGarbageCollector
from runsql.application.ports.provisioner import SandboxProvisionerPort
from runsql.application.ports.statement_runner import StatementRunnerPort
from runsql.application.query_proxy import QueryExecutionProxy
from runsql.application.registry import SandboxRegistry
from runsql.infrastructure.http.routes import QueryRouteDeps
from runsql.infrastructure.postgres.runner import AsyncpgStatementRunner
from runsql.infrastructure.sandbox.docker import DockerPostgresProvisioner
from runsql.infrastructure.sandbox.options import build_postgres_options, credentials_from_settings
from runsql.runtime.settings import Settings

logger = logging.getLogger("runsql.runtime")


@dataclass(frozen=True, slots=True)
class RuntimeContext:
    """Aggregated runtime components for the query service."""

    settings: Settings
    provisioner: SandboxProvisionerPort
    statement_runner: StatementRunnerPort
    registry: SandboxRegistry
    query_proxy: QueryExecutionProxy
    execute_query: ExecuteQuery
    garbage_collector: SandboxGarbageCollector
    query_route_deps_provider: Callable[[], QueryRouteDeps]


def build_runtime(
    settings: Settings | None = None,
    *,
    provisioner: SandboxProvisionerPort | None = None,
    statement_runner: StatementRunnerPort | None = None,
) -> RuntimeContext:
    """Construct the runtime context; nothing touches Docker until the server starts."""
    resolved = settings or Settings.load()
    sandbox = resolved.sandbox
    logger.info(
        "building runtime",
        extra={
            "data": {
                "image": sandbox.image,
                "ttl_seconds": sandbox.ttl_seconds,
                "cleanup_interval_seconds": sandbox.cleanup_interval_seconds,
            }
        },
    )

    resolved_provisioner = provisioner or DockerPostgresProvisioner(
        build_postgres_options(sandbox),
        docker_binary=sandbox.docker_binary,
    )
    resolved_runner = statement_runner or AsyncpgStatementRunner(
        credentials_from_settings(sandbox),
        statement_timeout_seconds=sandbox.statement_timeout_seconds,
    )
    registry = SandboxRegistry(resolved_provisioner)
    query_proxy = QueryExecutionProxy(registry, resolved_runner)
    execute_query = ExecuteQuery(registry, query_proxy)
    garbage_collector = SandboxGarbageCollector(
        registry,
        ttl=sandbox.ttl,
        interval_seconds=sandbox.cleanup_interval_seconds,
    )
    route_deps = QueryRouteDeps(execute_query=execute_query, registry=registry)

    return RuntimeContext(
        settings=resolved,
        provisioner=resolved_provisioner,
        statement_runner=resolved_runner,
        registry=registry,
        query_proxy=query_proxy,
        execute_query=execute_query,
        garbage_collector=garbage_collector,
        query_route_deps_provider=lambda: route_deps,
    )


async def start_runtime(runtime: RuntimeContext) -> None:
    """Reap leftovers from a previous process, then start the collector."""
    if runtime.settings.sandbox.reap_orphans_on_startup:
        try:
            await runtime.registry.reap_orphans()
        except Exception:
            logger.exception("orphan sandbox reaping failed; continuing startup")
    runtime.garbage_collector.start()


async def close_runtime_resources(runtime: RuntimeContext, *, timeout: float = 30.0) -> None:
    """Stop the collector and destroy every sandbox still registered."""
    await runtime.garbage_collector.stop(timeout=timeout)
    await runtime.registry.close_all()


__all__ = ["RuntimeContext", "build_runtime", "close_runtime_resources", "start_runtime"]
