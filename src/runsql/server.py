"""Entrypoint for running the query API under uvicorn."""

from __future__ import annotations

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI

from runsql import __version__
from runsql.infrastructure.http.middleware import request_logging_middleware
from runsql.infrastructure.http.routes import add_query_routes
from runsql.observability.logging import (
    configure_logging,
    enable_cloud_logging,
    init_logging,
    shutdown_logging,
)
from runsql.observability.tracing import configure_tracing
from runsql.runtime.bootstrap import (
    RuntimeContext,
    build_runtime,
    close_runtime_resources,
    start_runtime,
)
from runsql.runtime.settings import Settings

init_logging()
configure_tracing(service_name="runsql")
_settings = Settings.load()
if _settings.observability.enable_cloud_logging:
    gcp_project = _settings.observability.gcp_project_id
    if gcp_project is None:
        raise RuntimeError("Cloud logging enabled but no GCP project configured")
    enable_cloud_logging(gcp_project=gcp_project, cloud_log_labels={"service": "runsql"})
else:
    configure_logging(cloud_logging_enabled=False)

_runtime = build_runtime(_settings)


def create_app(runtime: RuntimeContext = _runtime) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        await start_runtime(runtime)
        yield
        await close_runtime_resources(runtime, timeout=runtime.settings.shutdown_timeout_seconds)
        shutdown_logging()

    app = FastAPI(title="RunSQL Backend API", version=__version__, lifespan=lifespan)
    app.middleware("http")(request_logging_middleware)
    add_query_routes(app, runtime.query_route_deps_provider)
    return app


app = create_app()


def main() -> None:
    import uvicorn

    uvicorn.run(
        app,
        host=_runtime.settings.listen_host,
        port=_runtime.settings.port,
        timeout_graceful_shutdown=int(_runtime.settings.shutdown_timeout_seconds),
        # logging already setup
        log_config=None,
    )


__all__ = ["app", "create_app", "main"]
