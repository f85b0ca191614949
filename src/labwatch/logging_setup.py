"""Idempotent stderr logging setup."""

from __future__ import annotations

import logging
import sys

_CONFIGURED = False


def setup_logging(level: int = logging.INFO) -> None:
    """Configure labwatch logging to stderr. Safe to call multiple times."""
    global _CONFIGURED  # noqa: PLW0603
    if _CONFIGURED:
        return

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(
        logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s")
    )

    logger = logging.getLogger("labwatch")
    logger.setLevel(level)
    logger.addHandler(handler)
    logger.propagate = False

    # aiohttp connection noise stays at WARNING unless debugging
    if level > logging.DEBUG:
        logging.getLogger("aiohttp").setLevel(logging.WARNING)

    _CONFIGURED = True
