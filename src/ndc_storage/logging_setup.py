"""Loguru configuration for the connector process."""

from __future__ import annotations

import os
import sys

from loguru import logger

LOG_LEVEL_ENV = "HASURA_PLUGIN_LOG_LEVEL"

# Level names accepted in addition to loguru's own.
_LEVEL_ALIASES = {"WARN": "WARNING", "FATAL": "CRITICAL"}


def resolve_log_level(level: str | None = None) -> str:
    name = (level or os.environ.get(LOG_LEVEL_ENV) or "INFO").strip().upper()
    return _LEVEL_ALIASES.get(name, name)


def setup_logging(level: str | None = None) -> None:
    """Replace the default sink with one stderr sink at the requested level.

    Raises ValueError for a level name loguru does not know.
    """
    resolved = resolve_log_level(level)
    logger.level(resolved)
    logger.remove()
    logger.add(
        sys.stderr,
        level=resolved,
        format="<level>{level}</level>: {message}",
    )
