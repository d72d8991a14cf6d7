"""API routes for the reverse proxy.

``/health`` is answered locally; every other path, HTTP or WebSocket, is
relayed to the configured upstream.
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

import httpx
from fastapi import APIRouter, Request, WebSocket
from fastapi.responses import JSONResponse

from reverse_proxy.core.config import Settings
from reverse_proxy.core.config import settings as default_settings
from reverse_proxy.core.logging import get_logger
from reverse_proxy.models.schemas import HealthResponse
from reverse_proxy.services.proxy import forward
from reverse_proxy.services.websocket import proxy_websocket

log = get_logger("API")
router = APIRouter()


def _get_settings(request: Request | WebSocket) -> Settings:
    return getattr(request.app.state, "settings", None) or default_settings


def _get_upstream_client(request: Request) -> Optional[httpx.AsyncClient]:
    """Return the app-scoped upstream client, if the lifespan created one.

    Without it (e.g. the app mounted without lifespan events) ``forward``
    builds a client for the single exchange.
    """
    return getattr(request.app.state, "upstream", None)


async def health_check(request: Request) -> JSONResponse:
    """Health check endpoint, any method. Never forwarded."""
    settings = _get_settings(request)
    body = HealthResponse(
        status="ok",
        target=settings.target,
        port=settings.port,
        timestamp=datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
    )
    return JSONResponse(body.model_dump())


async def forward_http(request: Request):
    return await forward(request, _get_settings(request), _get_upstream_client(request))


# plain routes with no method filter: every verb, WebDAV and custom ones included
router.add_route("/health", health_check, include_in_schema=False)
router.add_route("/{path:path}", forward_http, include_in_schema=False)


@router.websocket("/{path:path}")
async def forward_websocket(websocket: WebSocket):
    await proxy_websocket(websocket, _get_settings(websocket))
