"""Ingress middleware: request logging and CORS.

Both run before any route, so preflights and logging never depend on the
upstream being reachable.
"""
from __future__ import annotations

from starlette.datastructures import Headers
from starlette.middleware.cors import CORSMiddleware
from starlette.responses import PlainTextResponse, Response
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from reverse_proxy.core.config import Settings
from reverse_proxy.core.logging import get_logger

log = get_logger("Ingress")


class RequestLogMiddleware:
    """Logs method and path of every HTTP request and WebSocket handshake."""

    def __init__(self, app: ASGIApp) -> None:
        self.app = app

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] == "http":
            log.info("%s %s", scope["method"], scope["path"])
        elif scope["type"] == "websocket":
            log.info("WS %s", scope["path"])
        await self.app(scope, receive, send)


class PreflightCORSMiddleware(CORSMiddleware):
    """Starlette's CORS handling, adjusted for a transparent proxy.

    Any ``OPTIONS`` + ``Origin`` is a preflight and is answered locally with
    200; a disallowed origin simply gets no ``Access-Control-Allow-Origin``
    and the browser enforces the rest. On every other response the CORS
    headers only fill in what the upstream did not send, and they go in
    ahead of the proxy marker so the marker stays last.
    """

    def __init__(self, app: ASGIApp, marker_header: str | None = None, **kwargs) -> None:
        super().__init__(app, **kwargs)
        self.marker_header = marker_header.lower() if marker_header else None

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        headers = Headers(scope=scope)
        if scope["method"] == "OPTIONS" and "origin" in headers:
            response = self.preflight_response(request_headers=headers)
            await response(scope, receive, send)
            return

        await self.simple_response(scope, receive, send, request_headers=headers)

    def preflight_response(self, request_headers: Headers) -> Response:
        requested_origin = request_headers["origin"]
        requested_headers = request_headers.get("access-control-request-headers")

        headers = dict(self.preflight_headers)
        if self.is_allowed_origin(origin=requested_origin):
            if self.preflight_explicit_allow_origin:
                headers["Access-Control-Allow-Origin"] = requested_origin
        else:
            headers.pop("Access-Control-Allow-Origin", None)
            log.info("CORS preflight from unlisted origin %s", requested_origin)

        if self.allow_all_headers:
            headers["Access-Control-Allow-Headers"] = requested_headers or "*"

        return PlainTextResponse("OK", status_code=200, headers=headers)

    async def send(self, message: Message, send: Send, request_headers: Headers) -> None:
        origin = request_headers.get("origin")
        if message["type"] != "http.response.start" or origin is None:
            await send(message)
            return

        raw = list(message.get("headers", []))
        present = {k.lower() for k, _ in raw}
        extra = [
            (k.lower().encode("latin-1"), v.encode("latin-1"))
            for k, v in self.cors_headers(origin).items()
            if k.lower().encode("latin-1") not in present
        ]
        at = len(raw)
        if self.marker_header and raw and raw[-1][0].lower() == self.marker_header.encode("latin-1"):
            at -= 1
        message["headers"] = raw[:at] + extra + raw[at:]
        await send(message)

    def cors_headers(self, origin: str) -> dict[str, str]:
        """Simple-response CORS headers for a request from ``origin``."""
        headers = dict(self.simple_headers)
        if not self.is_allowed_origin(origin=origin):
            headers.pop("Access-Control-Allow-Origin", None)
            return headers
        if self.allow_credentials or not self.allow_all_origins:
            headers["Access-Control-Allow-Origin"] = origin
            headers["Vary"] = "Origin"
        return headers


def cors_options(settings: Settings) -> dict:
    """Keyword arguments for :class:`PreflightCORSMiddleware` from settings."""
    return {
        "allow_origins": list(settings.cors_allow_origins),
        "allow_methods": [m.upper() for m in settings.cors_allow_methods],
        "allow_headers": list(settings.cors_allow_headers),
        "expose_headers": list(settings.cors_expose_headers),
        "allow_credentials": settings.cors_allow_credentials,
        "marker_header": settings.marker_header,
    }
