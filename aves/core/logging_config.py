"""
Loguru sink configuration.

Every module logs through `from loguru import logger`; this only decides
where records go.
"""

from __future__ import annotations

import sys
from pathlib import Path

from loguru import logger

from config import Settings, get_settings

CONSOLE_FORMAT = (
    "<green>{time:HH:mm:ss}</green> | <level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{function}</cyan> - <level>{message}</level>"
)


def configure_logging(
    settings: Settings | None = None,
    level: str | None = None,
    log_file: str | None = None,
) -> None:
    """
    Install stderr and optional file sinks.

    Args:
        settings: Settings to read defaults from
        level: Override for the stderr level
        log_file: Override for the file sink path
    """
    settings = settings or get_settings()
    level = level or settings.log_level
    log_file = log_file if log_file is not None else settings.log_file

    logger.remove()
    logger.add(sys.stderr, level=level, format=CONSOLE_FORMAT)

    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        logger.add(
            log_file,
            level="DEBUG",
            rotation="10 MB",
            retention="14 days",
            enqueue=True,
        )
