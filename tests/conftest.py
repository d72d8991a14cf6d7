# tests/conftest.py
import asyncio
import socket
import threading
import time
from contextlib import closing
from dataclasses import dataclass

import httpx
import pytest
import uvicorn
from fastapi import FastAPI, Request, WebSocket
from fastapi.responses import JSONResponse, RedirectResponse, Response, StreamingResponse

from reverse_proxy.core.config import Settings
from reverse_proxy.main import create_app

# --- helpers ---------------------------------------------------------------

def _free_port() -> int:
    with closing(socket.socket(socket.AF_INET, socket.SOCK_STREAM)) as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]

class _BgServer:
    """Run a uvicorn server in a background thread; stop with should_exit=True."""
    def __init__(self, app, host: str, port: int):
        self.config = uvicorn.Config(app, host=host, port=port, log_level="error")
        self.server = uvicorn.Server(self.config)
        self.thread = threading.Thread(target=self.server.run, daemon=True)

    def start(self):
        self.thread.start()
        # Wait until port is accepting connections
        deadline = time.time() + 5
        while time.time() < deadline:
            try:
                with socket.create_connection((self.config.host, self.config.port), timeout=0.25):
                    return
            except OSError:
                time.sleep(0.05)
        raise RuntimeError("Server failed to start")

    def stop(self):
        self.server.should_exit = True
        self.thread.join(timeout=3)

class _CountRequests:
    """Counts every HTTP request reaching the mock upstream."""
    def __init__(self, app, state):
        self.app = app
        self.state = state

    async def __call__(self, scope, receive, send):
        if scope["type"] == "http":
            self.state.hits += 1
        await self.app(scope, receive, send)

# --- mock upstream ----------------------------------------------------------

def _make_upstream_app() -> FastAPI:
    app = FastAPI()
    app.state.hits = 0
    app.state.release = threading.Event()
    app.state.ws_handshakes = []
    app.state.ws_received = []
    app.state.ws_close_codes = []
    app.state.ws_closed = threading.Event()

    @app.api_route("/echo/{path:path}", methods=["GET", "POST", "PUT", "DELETE", "PATCH", "OPTIONS", "PROPFIND", "PURGE"])
    async def echo(request: Request, path: str):
        body = await request.body()
        return {
            "method": request.method,
            "path": request.url.path,
            "query": request.url.query,
            "headers": [[k, v] for k, v in request.headers.items()],
            "body": body.decode("utf-8"),
        }

    @app.get("/cookies")
    async def cookies():
        response = JSONResponse({"ok": True})
        response.set_cookie("session", "abc123", httponly=True)
        response.set_cookie("csrf", "tok-1", samesite="strict")
        response.raw_headers.append((b"set-cookie", b"theme=dark; Expires=Wed, 21 Oct 2026 07:28:00 GMT"))
        return response

    @app.get("/cors-owned")
    async def cors_owned():
        return Response(
            "mine",
            headers={"access-control-allow-origin": "https://only.example", "vary": "Accept"},
        )

    @app.get("/redirect")
    async def redirect():
        return RedirectResponse("/elsewhere", status_code=302)

    @app.get("/teapot")
    async def teapot():
        return Response("short and stout", status_code=418, headers={"x-upstream": "yes"})

    @app.get("/stream")
    async def stream():
        async def gen():
            yield b"first\n"
            for _ in range(500):
                if app.state.release.is_set():
                    break
                await asyncio.sleep(0.02)
            yield b"second\n"
            yield b"done\n"
        return StreamingResponse(gen(), media_type="text/plain")

    @app.websocket("/socket")
    async def socket_endpoint(ws: WebSocket):
        app.state.ws_handshakes.append([[k, v] for k, v in ws.headers.items()])
        offered = ws.scope.get("subprotocols") or []
        await ws.accept(subprotocol=offered[0] if offered else None, headers=[(b"set-cookie", b"ws=1")])
        await ws.send_text("hello from upstream")
        try:
            while True:
                msg = await ws.receive()
                if msg["type"] == "websocket.disconnect":
                    app.state.ws_close_codes.append(msg.get("code"))
                    break
                if msg.get("text") is not None:
                    app.state.ws_received.append(msg["text"])
                    await ws.send_text(msg["text"])
                elif msg.get("bytes") is not None:
                    app.state.ws_received.append(msg["bytes"])
                    await ws.send_bytes(msg["bytes"])
        finally:
            app.state.ws_closed.set()

    @app.websocket("/bye")
    async def bye(ws: WebSocket):
        await ws.accept()
        await ws.send_text("bye")
        await ws.close(code=4001)

    app.add_middleware(_CountRequests, state=app.state)
    return app

@dataclass
class Upstream:
    url: str
    port: int
    state: object

# --- fixtures ---------------------------------------------------------------

@pytest.fixture
def anyio_backend():
    return "asyncio"

@pytest.fixture
def upstream():
    app = _make_upstream_app()
    port = _free_port()
    server = _BgServer(app, "127.0.0.1", port)
    server.start()
    try:
        yield Upstream(url=f"http://127.0.0.1:{port}", port=port, state=app.state)
    finally:
        app.state.release.set()
        server.stop()

@pytest.fixture
def dead_target():
    """URL of a port nothing listens on."""
    return f"http://127.0.0.1:{_free_port()}"

@pytest.fixture
def asgi_client():
    """Build an in-process client for a proxy configured with ``Settings(**overrides)``.

    No lifespan runs, so the proxy opens one upstream client per exchange.
    """
    def make(**overrides) -> httpx.AsyncClient:
        settings = Settings(**overrides)
        transport = httpx.ASGITransport(app=create_app(settings))
        return httpx.AsyncClient(transport=transport, base_url="http://proxy.local")

    return make

@pytest.fixture
def proxy_server():
    """Start a real proxy server; returns (base_url, _BgServer)."""
    servers = []

    def start(**overrides):
        port = _free_port()
        settings = Settings(port=port, **overrides)
        server = _BgServer(create_app(settings), "127.0.0.1", port)
        server.start()
        servers.append(server)
        return f"http://127.0.0.1:{port}", server

    yield start
    for server in servers:
        server.stop()
