"""Logging setup for the hybrid memory system."""

from __future__ import annotations

import sys

from loguru import logger

LOG_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - "
    "<level>{message}</level>"
)


def configure_logging(level: str = "INFO", log_file: str | None = None) -> None:
    """Replace the default loguru sink.

    Args:
        level: Minimum level for the console sink
        log_file: Optional file path; rotated at 10 MB, kept for 30 days
    """
    logger.remove()
    logger.add(sys.stderr, level=level.upper(), format=LOG_FORMAT, colorize=True)
    if log_file:
        logger.add(
            log_file,
            level="DEBUG",
            format=LOG_FORMAT,
            rotation="10 MB",
            retention="30 days",
            enqueue=True,
        )
    logger.debug(f"Logging configured: level={level}, file={log_file}")
