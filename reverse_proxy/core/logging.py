"""Logging configuration utilities for the reverse proxy."""
import logging
import os

SERVICE_NAME = "Reverse-Proxy"


def setup_logging(level: str | None = None) -> None:
    """Configure root logging from ``level`` or the LOG_LEVEL environment variable."""
    level = (level or os.getenv("LOG_LEVEL", "INFO")).upper()
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s - %(message)s",
    )


def get_logger(component: str) -> logging.Logger:
    """Return the logger for one proxy component, e.g. ``Reverse-Proxy.Forward``."""
    return logging.getLogger(f"{SERVICE_NAME}.{component}")
