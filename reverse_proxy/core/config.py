"""Configuration for the reverse proxy.

Provides strongly-typed, immutable settings using Pydantic and a loader from
environment variables with defaults suitable for local development.
"""

from __future__ import annotations

import os
from enum import Enum
from typing import cast

from pydantic import AnyHttpUrl, BaseModel, ConfigDict, ValidationError, field_validator


class HeaderPolicy(str, Enum):
    """How the ``Host`` header is treated when a request is forwarded."""

    PRESERVE_HOST = "preserve_host"
    REWRITE_HOST = "rewrite_host"


DEFAULT_METHODS = ("GET", "POST", "PUT", "DELETE", "OPTIONS", "PATCH", "HEAD")


class Settings(BaseModel):
    """Pydantic settings for the proxy. Frozen: built once, read everywhere."""

    model_config = ConfigDict(frozen=True)

    port: int = 6969
    host: str = "0.0.0.0"
    target_url: AnyHttpUrl = cast(AnyHttpUrl, "http://127.0.0.1:3845")
    header_policy: HeaderPolicy = HeaderPolicy.PRESERVE_HOST

    cors_allow_origins: tuple[str, ...] = ("*",)
    cors_allow_methods: tuple[str, ...] = DEFAULT_METHODS
    cors_allow_headers: tuple[str, ...] = ("*",)
    cors_expose_headers: tuple[str, ...] = ("*",)
    cors_allow_credentials: bool = True

    marker_header: str = "X-Proxied-By"
    marker_value: str = "MCP-Reverse-Proxy"

    connect_timeout_s: float = 10.0
    verify_tls: bool = False
    add_forwarded_headers: bool = False

    metrics_path: str = "/_proxy/metrics"
    shutdown_grace_s: float | None = None
    log_level: str = "INFO"

    @field_validator("port")
    @classmethod
    def _port_in_range(cls, v: int) -> int:
        if not 0 < v < 65536:
            raise ValueError(f"port out of range: {v}")
        return v

    @field_validator("metrics_path")
    @classmethod
    def _metrics_path_absolute(cls, v: str) -> str:
        if v and not v.startswith("/"):
            return f"/{v}"
        return v

    @property
    def target(self) -> str:
        """Upstream URL as configured, without a trailing slash."""
        return str(self.target_url).rstrip("/")


def _env_list(name: str, default: tuple[str, ...]) -> tuple[str, ...]:
    raw = os.getenv(name)
    if raw is None:
        return default
    return tuple(item.strip() for item in raw.split(",") if item.strip())


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _env_float(name: str) -> float | None:
    raw = os.getenv(name)
    return float(raw) if raw else None


def load_settings() -> Settings:
    """Load settings from environment variables and return a Settings object."""
    try:
        return Settings(
            port=int(os.getenv("PORT", "6969")),
            host=os.getenv("HOST", "0.0.0.0"),
            target_url=cast(AnyHttpUrl, os.getenv("TARGET_URL", "http://127.0.0.1:3845")),
            header_policy=HeaderPolicy(os.getenv("HEADER_POLICY", HeaderPolicy.PRESERVE_HOST.value).lower()),
            cors_allow_origins=_env_list("CORS_ALLOW_ORIGINS", ("*",)),
            cors_allow_methods=_env_list("CORS_ALLOW_METHODS", DEFAULT_METHODS),
            cors_allow_headers=_env_list("CORS_ALLOW_HEADERS", ("*",)),
            cors_expose_headers=_env_list("CORS_EXPOSE_HEADERS", ("*",)),
            cors_allow_credentials=_env_bool("CORS_ALLOW_CREDENTIALS", True),
            marker_header=os.getenv("MARKER_HEADER", "X-Proxied-By"),
            marker_value=os.getenv("MARKER_VALUE", "MCP-Reverse-Proxy"),
            connect_timeout_s=float(os.getenv("CONNECT_TIMEOUT_S", "10.0")),
            verify_tls=_env_bool("UPSTREAM_VERIFY_TLS", False),
            add_forwarded_headers=_env_bool("ADD_FORWARDED_HEADERS", False),
            metrics_path=os.getenv("METRICS_PATH", "/_proxy/metrics"),
            shutdown_grace_s=_env_float("SHUTDOWN_GRACE_S"),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        )
    except (ValidationError, ValueError) as e:
        raise RuntimeError(f"Invalid configuration: {e}") from e


settings = load_settings()
