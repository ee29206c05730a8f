"""Logging setup shared by the server and CLI entrypoints."""

from __future__ import annotations

import logging
import sys

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def configure_logging(level: str | int = "INFO") -> None:
    """Install a single stderr handler on the package logger.

    Safe to call more than once; later calls only change the level.
    """
    logger = logging.getLogger("billing_engine")
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
    logger.setLevel(level)

    if not any(getattr(h, "_billing_engine", False) for h in logger.handlers):
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        handler._billing_engine = True  # type: ignore[attr-defined]
        logger.addHandler(handler)
