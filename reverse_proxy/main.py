"""Reverse proxy FastAPI application.

Creates the proxy app, wires the ingress middleware and routes, and runs it
under uvicorn with graceful shutdown on SIGTERM/SIGINT.
"""

from __future__ import annotations

from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI

from reverse_proxy.api.middleware import PreflightCORSMiddleware, RequestLogMiddleware, cors_options
from reverse_proxy.api.routes import router
from reverse_proxy.core.config import Settings, load_settings, settings
from reverse_proxy.core.logging import get_logger, setup_logging
from reverse_proxy.metrics.prometheus import metrics
from reverse_proxy.services.proxy import build_upstream_client

log = get_logger("Main")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan.

    Owns the app-scoped upstream HTTP client (connection pool) for as long as
    the app runs.
    """
    async with build_upstream_client(app.state.settings) as client:
        app.state.upstream = client
        yield
    app.state.upstream = None


def create_app(settings: Settings | None = None) -> FastAPI:
    """Build the proxy application for ``settings`` (environment settings by default)."""
    settings = settings or load_settings()
    # no docs routes: every path other than /health belongs to the upstream
    app = FastAPI(
        title="Reverse Proxy",
        version="0.1.0",
        lifespan=lifespan,
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
    )
    app.state.settings = settings

    if settings.metrics_path:
        app.add_api_route(settings.metrics_path, metrics, methods=["GET"], include_in_schema=False)
    app.include_router(router)

    # added last runs first: logging sees every request, preflights included
    app.add_middleware(PreflightCORSMiddleware, **cors_options(settings))
    app.add_middleware(RequestLogMiddleware)
    return app


app = create_app(settings)


def _banner(settings: Settings) -> None:
    line = "=" * 60
    log.info(line)
    log.info("Reverse Proxy Server Started")
    log.info(line)
    log.info("Local:            http://localhost:%d", settings.port)
    log.info("Network:          http://%s:%d", settings.host, settings.port)
    log.info("Target:           %s", settings.target)
    log.info("Host header:      %s", settings.header_policy.value)
    log.info(line)


def run() -> None:
    """Console entry point: load settings, serve until SIGTERM/SIGINT."""
    settings = load_settings()
    setup_logging(settings.log_level)
    app = create_app(settings)
    config = uvicorn.Config(
        app,
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
        timeout_graceful_shutdown=settings.shutdown_grace_s,
        log_config=None,
    )
    server = uvicorn.Server(config)
    _banner(settings)
    # uvicorn traps the signals: stop accepting, drain in-flight exchanges, exit.
    # A port that cannot be bound makes it exit with status 1.
    server.run()
    log.info("Server closed")


if __name__ == "__main__":
    run()
