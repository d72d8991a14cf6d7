from datetime import datetime

import pytest


@pytest.mark.anyio
@pytest.mark.parametrize("method", ["GET", "POST", "PUT", "DELETE", "PATCH"])
async def test_health_reports_active_config_for_any_method(asgi_client, dead_target, method):
    async with asgi_client(target_url=dead_target, port=7777) as client:
        resp = await client.request(method, "/health")
    assert resp.status_code == 200
    data = resp.json()
    assert data["status"] == "ok"
    assert data["target"] == dead_target
    assert data["port"] == 7777
    assert datetime.fromisoformat(data["timestamp"]).tzinfo is not None


@pytest.mark.anyio
async def test_health_is_never_forwarded(asgi_client, upstream):
    async with asgi_client(target_url=upstream.url) as client:
        resp = await client.get("/health")
    assert resp.status_code == 200
    assert "x-proxied-by" not in resp.headers
    assert upstream.state.hits == 0


@pytest.mark.anyio
async def test_health_answers_custom_methods_locally(asgi_client, upstream):
    async with asgi_client(target_url=upstream.url) as client:
        resp = await client.request("PROPFIND", "/health")
    assert resp.status_code == 200
    assert resp.json()["status"] == "ok"
    assert upstream.state.hits == 0
