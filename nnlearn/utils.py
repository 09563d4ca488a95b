"""Logging setup shared by the library and the command line."""

from __future__ import annotations

import sys
from pathlib import Path

from loguru import logger

LOG_FORMAT = "<green>{time:HH:mm:ss}</green> | <level>{level: <7}</level> | {message}"
FILE_FORMAT = "{time:YYYY-MM-DD HH:mm:ss} | {level} | {name}:{line} | {message}"


def configure_logging(level: str = "INFO", log_file: str | Path | None = None) -> None:
    """Replace loguru's default sink with a compact stderr sink.

    ``log_file`` adds a second, plain-text sink that always records DEBUG
    output, which is useful when a run is diagnosed after the fact.
    """

    logger.remove()
    logger.add(sys.stderr, level=level.upper(), format=LOG_FORMAT, colorize=None)
    if log_file is not None:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        logger.add(str(log_file), level="DEBUG", format=FILE_FORMAT, enqueue=True)


__all__ = ["configure_logging"]
