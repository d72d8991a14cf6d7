"""WebSocket upgrade and relay.

The upstream handshake happens first; the client is only accepted once the
upstream has answered 101. Messages are then relayed unmodified in both
directions until either side closes.
"""
from __future__ import annotations

import asyncio
import ssl

from starlette.websockets import WebSocket, WebSocketState
from websockets.asyncio.client import ClientConnection, connect
from websockets.exceptions import ConnectionClosed, InvalidHandshake, InvalidURI
from websockets.frames import EXTERNAL_CLOSE_CODES

from reverse_proxy.core.config import Settings
from reverse_proxy.core.logging import get_logger
from reverse_proxy.metrics.prometheus import UPSTREAM_ERRORS, WS_SESSIONS
from reverse_proxy.services.headers import (
    WS_REQUEST_CHAIN,
    WS_RESPONSE_CHAIN,
    Exchange,
    HeaderList,
    apply_chain,
    encode_headers,
    raw_headers,
)
from reverse_proxy.services.proxy import proxy_error_response

log = get_logger("WebSocket")

HANDSHAKE_ERRORS = (OSError, TimeoutError, InvalidHandshake, InvalidURI)


def sendable_close_code(code: int | None, fallback: int = 1000) -> int:
    """Map a received close code to one that may be sent on the other side.

    1005/1006 and friends are reserved for local reporting only.
    """
    if code is not None and (code in EXTERNAL_CLOSE_CODES or 3000 <= code < 5000):
        return code
    return fallback


def _insecure_context() -> ssl.SSLContext:
    ctx = ssl.create_default_context()
    ctx.check_hostname = False
    ctx.verify_mode = ssl.CERT_NONE
    return ctx


def upstream_ws_target(settings: Settings, path: str, query: str, host_header: str | None) -> tuple[str, dict]:
    """Build the handshake URI and the TCP connection overrides.

    The URI's authority becomes the ``Host`` of the handshake, so a preserved
    client host goes into the URI while ``host``/``port`` still point the
    socket at the upstream.
    """
    target = settings.target_url
    secure = target.scheme == "https"
    upstream_host = (target.host or "").strip("[]")
    upstream_port = target.port or (443 if secure else 80)
    authority = host_header or target.host
    if not host_header and target.port:
        authority = f"{target.host}:{target.port}"
    base = (target.path or "").rstrip("/")
    path = path if path.startswith("/") else f"/{path}"
    uri = f"{'wss' if secure else 'ws'}://{authority}{base}{path}"
    if query:
        uri = f"{uri}?{query}"

    kwargs: dict = {"host": upstream_host, "port": upstream_port}
    if secure:
        kwargs["server_hostname"] = upstream_host
        if not settings.verify_tls:
            kwargs["ssl"] = _insecure_context()
    return uri, kwargs


async def open_upstream(websocket: WebSocket, ex: Exchange) -> ClientConnection:
    """Perform the upstream handshake for ``websocket`` using the forwarding rules."""
    headers = apply_chain(WS_REQUEST_CHAIN, raw_headers(websocket.headers.raw), ex)
    host_header = next((v for k, v in headers if k.lower() == "host"), None)
    headers = [(k, v) for k, v in headers if k.lower() != "host"]

    raw_path = websocket.scope.get("raw_path")
    path = raw_path.decode("latin-1") if raw_path else websocket.url.path
    uri, tcp = upstream_ws_target(ex.settings, path, websocket.url.query, host_header)
    subprotocols = websocket.scope.get("subprotocols") or None

    log.info("WebSocket upgrade request: %s -> %s", websocket.url.path, uri)
    log.debug("  Headers: %s", headers)
    return await connect(
        uri,
        additional_headers=headers,
        user_agent_header=None,
        subprotocols=subprotocols,
        open_timeout=ex.settings.connect_timeout_s,
        max_size=None,
        proxy=None,
        **tcp,
    )


class WebSocketRelay:
    """A client WebSocket paired with its upstream connection.

    The relay is the single owner of both ends: whichever side closes first,
    the relay closes the other, passing the close code along.
    """

    def __init__(self, client: WebSocket, upstream: ClientConnection):
        self.client = client
        self.upstream = upstream
        self._client_close_code: int | None = None

    async def run(self) -> None:
        pumps = [
            asyncio.create_task(self._client_to_upstream()),
            asyncio.create_task(self._upstream_to_client()),
        ]
        WS_SESSIONS.inc()
        try:
            done, _ = await asyncio.wait(pumps, return_when=asyncio.FIRST_COMPLETED)
            for task in done:
                if task.exception() is not None:
                    log.warning("WebSocket relay stopped on error: %r", task.exception())
        finally:
            for task in pumps:
                task.cancel()
            await asyncio.gather(*pumps, return_exceptions=True)
            await self._close_both()
            WS_SESSIONS.dec()

    async def _client_to_upstream(self) -> None:
        while True:
            message = await self.client.receive()
            if message["type"] == "websocket.disconnect":
                self._client_close_code = message.get("code", 1000)
                log.info("Client closed WebSocket %s (code %s)", self.client.url.path, self._client_close_code)
                return
            try:
                if message.get("text") is not None:
                    await self.upstream.send(message["text"])
                elif message.get("bytes") is not None:
                    await self.upstream.send(message["bytes"])
            except ConnectionClosed:
                return

    async def _upstream_to_client(self) -> None:
        try:
            async for message in self.upstream:
                if isinstance(message, str):
                    await self.client.send_text(message)
                else:
                    await self.client.send_bytes(message)
        except ConnectionClosed as e:
            # any code other than 1000/1001 lands here; it is passed on, not an error
            log.debug("Upstream WebSocket closed: %s", e)
        log.info("Upstream closed WebSocket %s (code %s)", self.client.url.path, self.upstream.close_code)

    async def _close_both(self) -> None:
        await self.upstream.close(code=sendable_close_code(self._client_close_code))
        if (
            self.client.client_state == WebSocketState.CONNECTED
            and self.client.application_state == WebSocketState.CONNECTED
        ):
            try:
                await self.client.close(code=sendable_close_code(self.upstream.close_code, fallback=1011))
            except (RuntimeError, OSError) as e:
                # the client vanished between the state check and the close frame
                log.debug("Client WebSocket already gone: %r", e)


async def reject(websocket: WebSocket, ex: Exchange, exc: Exception) -> None:
    """Abort an upgrade whose upstream handshake failed."""
    if "websocket.http.response" in websocket.scope.get("extensions", {}):
        await websocket.send_denial_response(proxy_error_response(ex, exc))
    else:
        await websocket.close(code=1011)


def accept_headers(upstream: ClientConnection, ex: Exchange) -> HeaderList:
    response_headers = list(upstream.response.headers.raw_items()) if upstream.response else []
    return apply_chain(WS_RESPONSE_CHAIN, response_headers, ex)


async def proxy_websocket(websocket: WebSocket, settings: Settings) -> None:
    """Upgrade ``websocket`` through the upstream and relay until either side closes."""
    ex = Exchange.from_connection(websocket, settings)
    try:
        upstream = await open_upstream(websocket, ex)
    except HANDSHAKE_ERRORS as e:
        UPSTREAM_ERRORS.labels(kind="websocket").inc()
        log.error("WebSocket handshake with upstream failed for %s: %r", websocket.url.path, e)
        await reject(websocket, ex, e)
        return

    try:
        await websocket.accept(
            subprotocol=upstream.subprotocol,
            headers=encode_headers(accept_headers(upstream, ex)),
        )
    except BaseException:
        await upstream.close()
        raise
    log.info("WebSocket upgraded: %s", websocket.url.path)
    await WebSocketRelay(websocket, upstream).run()
