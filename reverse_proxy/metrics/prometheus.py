"""Prometheus metrics for the proxy and their exposition endpoint."""
from fastapi import Response
from prometheus_client import CONTENT_TYPE_LATEST, Counter, Gauge, Histogram, generate_latest

PROXY_REQUESTS = Counter("proxy_requests_total", "Forwarded HTTP requests", ["method"])
UPSTREAM_ERRORS = Counter("proxy_upstream_errors_total", "Upstream failures by kind", ["kind"])
WS_SESSIONS = Gauge("proxy_websocket_sessions", "Active WebSocket relays")
UPSTREAM_LATENCY = Histogram("proxy_upstream_latency_seconds", "Time until upstream response headers")


async def metrics() -> Response:
    """Prometheus exposition endpoint for proxy process metrics."""
    data = generate_latest()
    return Response(content=data, media_type=CONTENT_TYPE_LATEST)
