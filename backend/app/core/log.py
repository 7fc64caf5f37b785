from __future__ import annotations

import sys

from loguru import logger

_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | <level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>"
)


def configure_logging(level: str = "INFO", *, serialize: bool = False) -> None:
    """Replace loguru's default sink with a single stderr sink at ``level``."""

    logger.remove()
    logger.add(sys.stderr, level=level, format=_FORMAT, serialize=serialize, backtrace=False)
