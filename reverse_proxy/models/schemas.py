"""Pydantic models for the JSON bodies the proxy answers on its own."""
from __future__ import annotations

from pydantic import BaseModel


class HealthResponse(BaseModel):
    """Body of ``/health``."""

    status: str = "ok"
    target: str
    port: int
    timestamp: str


class ProxyErrorBody(BaseModel):
    """Synthesized body returned when the upstream cannot be reached."""

    error: str = "Proxy Error"
    message: str
    target: str
    hint: str | None = None
