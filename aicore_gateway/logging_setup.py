"""Logging configuration for the gateway."""

from __future__ import annotations

import logging
import sys
from typing import Optional

LOGGER_NAME = "aicore_gateway"


def setup_logging(level: str = "INFO") -> logging.Logger:
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(getattr(logging, str(level).upper(), logging.INFO))

    # Re-running setup (app reloads, tests) must not stack handlers.
    logger.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        logging.Formatter(
            "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
    )
    logger.addHandler(handler)
    logger.propagate = True
    return logger


def mask_secret(value: Optional[str]) -> str:
    """Mask a bearer token or API key for safe logging."""
    if not value:
        return "***"
    s = value.strip()
    if s.lower().startswith("bearer "):
        return "Bearer ***"
    return "***"
