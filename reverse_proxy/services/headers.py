"""Header forwarding rules.

Headers travel as ordered ``(name, value)`` lists so that repeated fields such
as ``Set-Cookie`` survive untouched. Every rule is a pure function
``(headers, exchange) -> headers``; a chain is a tuple of rules applied in
order by :func:`apply_chain`.
"""
from __future__ import annotations

from dataclasses import dataclass
from functools import reduce
from typing import Callable, Iterable

from starlette.requests import HTTPConnection

from reverse_proxy.core.config import HeaderPolicy, Settings

HeaderList = list[tuple[str, str]]
HeaderRule = Callable[[HeaderList, "Exchange"], HeaderList]

# RFC 9110 hop-by-hop headers (must not be forwarded)
HOP_BY_HOP = {
    "connection", "keep-alive", "proxy-authenticate", "proxy-authorization",
    "te", "trailers", "transfer-encoding", "upgrade",
}

# Owned by the WebSocket libraries on each side of the relay
WS_HANDSHAKE = {
    "connection", "upgrade", "sec-websocket-key", "sec-websocket-version",
    "sec-websocket-extensions", "sec-websocket-protocol", "sec-websocket-accept",
}


@dataclass(frozen=True)
class Exchange:
    """Read-only facts about one client exchange that header rules may use."""

    settings: Settings
    client_host: str | None
    client_ip: str
    scheme: str
    port: int

    @classmethod
    def from_connection(cls, conn: HTTPConnection, settings: Settings) -> "Exchange":
        scheme = conn.url.scheme
        secure = scheme in ("https", "wss")
        return cls(
            settings=settings,
            client_host=conn.headers.get("host"),
            client_ip=conn.client.host if conn.client else "unknown",
            scheme="https" if secure else "http",
            port=conn.url.port or (443 if secure else 80),
        )


def raw_headers(pairs: Iterable[tuple[bytes, bytes]]) -> HeaderList:
    return [(k.decode("latin-1"), v.decode("latin-1")) for k, v in pairs]


def encode_headers(headers: HeaderList) -> list[tuple[bytes, bytes]]:
    """Encode to the byte pairs ASGI and httpx take, names lower-cased."""
    return [(k.lower().encode("latin-1"), v.encode("latin-1")) for k, v in headers]


def _without(headers: HeaderList, names: set[str]) -> HeaderList:
    return [(k, v) for k, v in headers if k.lower() not in names]


def apply_host_policy(headers: HeaderList, ex: Exchange) -> HeaderList:
    """Keep the client's Host under PRESERVE_HOST, drop it under REWRITE_HOST.

    A dropped Host is filled in from the upstream URL by the HTTP client.
    """
    rest = _without(headers, {"host"})
    if ex.settings.header_policy is HeaderPolicy.PRESERVE_HOST and ex.client_host:
        return [("host", ex.client_host), *rest]
    return rest


def strip_request_framing(headers: HeaderList, ex: Exchange) -> HeaderList:
    # the upstream client re-frames the streamed body itself
    return _without(headers, {"transfer-encoding"})


def add_forwarded(headers: HeaderList, ex: Exchange) -> HeaderList:
    if not ex.settings.add_forwarded_headers:
        return headers
    prior = ", ".join(v for k, v in headers if k.lower() == "x-forwarded-for")
    out = _without(headers, {"x-forwarded-for"})
    out.append(("x-forwarded-for", f"{prior}, {ex.client_ip}" if prior else ex.client_ip))
    present = {k.lower() for k, _ in out}
    if "x-forwarded-proto" not in present:
        out.append(("x-forwarded-proto", ex.scheme))
    if "x-forwarded-host" not in present:
        out.append(("x-forwarded-host", ex.client_host or ""))
    if "x-forwarded-port" not in present:
        out.append(("x-forwarded-port", str(ex.port)))
    return out


def strip_hop_by_hop(headers: HeaderList, ex: Exchange) -> HeaderList:
    """Drop RFC 9110 hop-by-hop fields plus any named in ``Connection``."""
    named = {
        token.strip().lower()
        for k, v in headers if k.lower() == "connection"
        for token in v.split(",") if token.strip()
    }
    return _without(headers, HOP_BY_HOP | named)


def strip_ws_handshake(headers: HeaderList, ex: Exchange) -> HeaderList:
    return _without(headers, WS_HANDSHAKE)


def strip_ws_accept_owned(headers: HeaderList, ex: Exchange) -> HeaderList:
    # the client-side server writes its own Date/Server on the 101
    return _without(headers, WS_HANDSHAKE | {"date", "server", "content-length"})


def add_marker(headers: HeaderList, ex: Exchange) -> HeaderList:
    """Append the proxy marker. Always the final rule of a response chain."""
    return [*headers, (ex.settings.marker_header, ex.settings.marker_value)]


REQUEST_CHAIN: tuple[HeaderRule, ...] = (apply_host_policy, strip_request_framing, add_forwarded)
RESPONSE_CHAIN: tuple[HeaderRule, ...] = (strip_hop_by_hop, add_marker)
WS_REQUEST_CHAIN: tuple[HeaderRule, ...] = (apply_host_policy, strip_ws_handshake, strip_hop_by_hop, add_forwarded)
WS_RESPONSE_CHAIN: tuple[HeaderRule, ...] = (strip_ws_accept_owned, strip_hop_by_hop, add_marker)


def apply_chain(chain: Iterable[HeaderRule], headers: HeaderList, ex: Exchange) -> HeaderList:
    return reduce(lambda acc, rule: rule(acc, ex), chain, list(headers))
