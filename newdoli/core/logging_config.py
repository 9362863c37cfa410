"""Logging configuration for the NewDoli core."""

from __future__ import annotations

import logging
import sys
from typing import Optional, Union

LOG_FORMAT = "%(asctime)s | %(name)s | %(levelname)s | %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

_NOISY_LOGGERS = ("httpx", "httpcore", "aiosqlite", "sqlalchemy.engine")


def setup_logging(level: Union[int, str, None] = None, stream=None) -> None:
    """
    Configure package-wide logging.

    Args:
        level: Logging level name or number (default: ``Settings.log_level``)
        stream: Target stream (default: stdout)
    """
    if level is None:
        from .config import get_settings

        level = get_settings().log_level
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO

    logging.basicConfig(
        level=level,
        format=LOG_FORMAT,
        datefmt=LOG_DATE_FORMAT,
        handlers=[logging.StreamHandler(stream or sys.stdout)],
        force=True,
    )

    # Reduce noise from third-party libraries
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    logging.getLogger("newdoli").info("Logging initialized")


def get_logger(name: Optional[str] = None) -> logging.Logger:
    """Return a logger under the ``newdoli`` namespace."""
    return logging.getLogger(name or "newdoli")
