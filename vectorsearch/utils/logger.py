"""Structured logging setup using Loguru."""
from __future__ import annotations

import sys
from pathlib import Path

from loguru import logger

from vectorsearch.settings import LoggingSettings

CONSOLE_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{line}</cyan> - "
    "<level>{message}</level>"
)
FILE_FORMAT = "{time:YYYY-MM-DD HH:mm:ss} | {level: <8} | {name}:{line} - {message}"


def setup_logger(settings: LoggingSettings | None = None, console_level: str | None = None) -> None:
    """
    Configure loguru sinks from the `logging` section of the config.

    - Console (stderr): coloured, human-readable.  The CLI lowers it to
      WARNING while streaming answers so log lines don't interleave.
    - File: rotating and compressed; JSON lines when `serialize` is set.
    """
    settings = settings or LoggingSettings()
    logger.remove()

    logger.add(
        sys.stderr,
        level=console_level or settings.level,
        format=CONSOLE_FORMAT,
        colorize=True,
    )

    if settings.file:
        log_path = Path(settings.file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        logger.add(
            str(log_path),
            level=settings.level,
            format=FILE_FORMAT,
            serialize=settings.serialize,
            rotation=settings.rotation,
            retention=settings.retention,
            compression="zip",
            enqueue=True,
        )

    logger.debug(f"Logger initialised | level={settings.level} | file={settings.file}")
