"""HTTP forwarding for the reverse proxy.

Provides a streaming forwarder that relays a client request to the configured
upstream and streams the upstream response back, headers and cookies intact.
"""
from __future__ import annotations

from http.cookiejar import DefaultCookiePolicy

import httpx
from fastapi import Request, Response
from fastapi.responses import JSONResponse, StreamingResponse
from starlette.types import Receive, Scope, Send

from reverse_proxy.core.config import Settings
from reverse_proxy.core.logging import get_logger
from reverse_proxy.metrics.prometheus import PROXY_REQUESTS, UPSTREAM_ERRORS, UPSTREAM_LATENCY
from reverse_proxy.models.schemas import ProxyErrorBody
from reverse_proxy.services.headers import (
    REQUEST_CHAIN,
    RESPONSE_CHAIN,
    Exchange,
    HeaderList,
    add_marker,
    apply_chain,
    encode_headers,
    raw_headers,
)

log = get_logger("Forward")


def build_upstream_client(settings: Settings) -> httpx.AsyncClient:
    """Create the HTTP client used to reach the upstream.

    Only connecting is time-bounded; reads may wait as long as the upstream
    keeps the exchange open (streaming, long-poll).
    """
    client = httpx.AsyncClient(
        timeout=httpx.Timeout(None, connect=settings.connect_timeout_s),
        follow_redirects=False,
        verify=settings.verify_tls,
        trust_env=False,
    )
    # upstream cookies belong to the clients, never to this shared client
    client.cookies.jar.set_policy(DefaultCookiePolicy(allowed_domains=[]))
    return client


def upstream_url(settings: Settings, path: str, query: str = "") -> str:
    """Join the configured target with the client's path and query."""
    path = path if path.startswith("/") else f"/{path}"
    url = f"{settings.target}{path}"
    return f"{url}?{query}" if query else url


def request_path(req: Request) -> str:
    """The path exactly as the client sent it, percent-encoding included."""
    raw = req.scope.get("raw_path")
    return raw.decode("latin-1") if raw else req.url.path


def proxy_error_response(ex: Exchange, exc: Exception) -> JSONResponse:
    """Synthesize the 502 answer for an exchange whose upstream is unreachable."""
    target = ex.settings.target
    body = ProxyErrorBody(
        message=str(exc) or exc.__class__.__name__,
        target=target,
        hint=f"Make sure the upstream server is running at {target}",
    )
    response = JSONResponse(body.model_dump(), status_code=502)
    marker = add_marker([], ex)
    response.raw_headers.extend(encode_headers(marker))
    return response


class UpstreamStreamingResponse(StreamingResponse):
    """Streams an httpx response to the client and always releases it.

    The upstream response (and a per-exchange client, if any) is closed when
    the body is done, when the client goes away, or when streaming fails.
    """

    def __init__(
        self,
        upstream: httpx.Response,
        headers: HeaderList,
        owned_client: httpx.AsyncClient | None = None,
    ) -> None:
        super().__init__(self._relay(upstream), status_code=upstream.status_code)
        self.raw_headers = encode_headers(headers)
        self._upstream = upstream
        self._owned_client = owned_client

    @staticmethod
    async def _relay(upstream: httpx.Response):
        try:
            # raw: Content-Encoding and Content-Length stay valid
            async for chunk in upstream.aiter_raw():
                yield chunk
        except httpx.HTTPError as e:
            UPSTREAM_ERRORS.labels(kind="stream").inc()
            log.error("Upstream stream for %s broke after headers were sent: %s", upstream.request.url, e)
            raise

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        try:
            await super().__call__(scope, receive, send)
        finally:
            await self._upstream.aclose()
            if self._owned_client is not None:
                await self._owned_client.aclose()


def _has_body(headers: HeaderList) -> bool:
    return any(k.lower() in ("content-length", "transfer-encoding") for k, _ in headers)


async def forward(req: Request, settings: Settings, client: httpx.AsyncClient | None = None) -> Response:
    """Forward ``req`` to the upstream at the identical path and stream the response back.

    When ``client`` is None a client is created for this exchange alone and
    closed with it.
    """
    ex = Exchange.from_connection(req, settings)
    target_url = upstream_url(settings, request_path(req), req.url.query)

    inbound = raw_headers(req.headers.raw)
    headers = apply_chain(REQUEST_CHAIN, inbound, ex)
    log.info("Proxying %s %s -> %s", req.method, req.url.path, target_url)
    log.debug("  Headers: %s", headers)

    owned_client = None
    if client is None:
        client = owned_client = build_upstream_client(settings)

    # built directly, not via client.build_request: no client default headers.
    # Bytes, so obs-text values (e.g. UTF-8 cookies) pass through untouched.
    upstream_request = httpx.Request(
        req.method,
        target_url,
        headers=encode_headers(headers),
        content=req.stream() if _has_body(inbound) else None,
    )
    PROXY_REQUESTS.labels(method=req.method).inc()
    try:
        with UPSTREAM_LATENCY.time():
            upstream_response = await client.send(upstream_request, stream=True)
    except httpx.RequestError as e:
        UPSTREAM_ERRORS.labels(kind="http").inc()
        log.error("Proxy Error: %s %s -> %s: %r", req.method, req.url.path, target_url, e)
        if owned_client is not None:
            await owned_client.aclose()
        return proxy_error_response(ex, e)
    except BaseException:
        # e.g. the client dropped mid-upload
        if owned_client is not None:
            await owned_client.aclose()
        raise

    log.info("Response from target: %s", upstream_response.status_code)
    resp_headers = apply_chain(RESPONSE_CHAIN, raw_headers(upstream_response.headers.raw), ex)
    log.debug("  Response Headers: %s", resp_headers)
    return UpstreamStreamingResponse(upstream_response, resp_headers, owned_client)
