"""Logging configuration helpers for the short position harvester."""
from __future__ import annotations

import logging
import os

LOG_FORMAT = "%(asctime)s %(levelname)s [%(threadName)s] [%(name)s] %(message)s"


def _coerce_level(level: str | int) -> int:
    """Translate a user provided level into a numeric log level."""

    if isinstance(level, int):
        return level
    resolved = logging.getLevelName(level.strip().upper())
    if not isinstance(resolved, int):
        raise ValueError(f"Unknown log level: {level}")
    return resolved


def configure_logging(level: str | int | None = None, *, force: bool = False) -> None:
    """Configure the root logger for console output.

    Without an explicit ``level`` the ``SHORT_HARVEST_LOG_LEVEL`` environment variable
    is used, falling back to INFO when it is unset or not a valid level name. The
    thread name is part of the format because issuers are harvested in parallel.
    """

    try:
        resolved_level = _coerce_level(level if level is not None else os.getenv("SHORT_HARVEST_LOG_LEVEL", "INFO"))
    except ValueError:
        resolved_level = logging.INFO

    root_logger = logging.getLogger()
    if root_logger.handlers and not force:
        root_logger.setLevel(resolved_level)
        return

    logging.basicConfig(level=resolved_level, format=LOG_FORMAT, force=force)
    # urllib3 logs every retry and pool event at DEBUG.
    logging.getLogger("urllib3").setLevel(max(resolved_level, logging.INFO))


__all__ = ["configure_logging"]
