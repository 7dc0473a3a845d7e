"""Logging setup for the command line and long-running pipeline."""

from __future__ import annotations

import logging
import logging.handlers
from pathlib import Path
from typing import Optional

from rich.console import Console
from rich.logging import RichHandler

from mediashelf.config.models import LoggingSettings

PACKAGE_LOGGER = "mediashelf"
LOG_FILENAME = "mediashelf.log"
_FILE_FORMAT = "%(asctime)s %(levelname)-8s [%(threadName)s] %(name)s: %(message)s"


def configure_logging(
    settings: LoggingSettings,
    state_dir: Optional[Path] = None,
    *,
    console: Optional[Console] = None,
    verbose: bool = False,
) -> logging.Logger:
    """Install console and rotating file handlers on the package logger.

    Calling this again replaces the handlers installed by a previous call.

    Args:
        settings: Level and rotation settings.
        state_dir: Directory receiving ``mediashelf.log``; ``None`` disables the file.
        console: Rich console used for terminal output (stderr by default).
        verbose: Force ``DEBUG`` on the console regardless of ``settings.level``.

    Returns:
        logging.Logger: The configured package logger.
    """
    level = logging.DEBUG if verbose else logging.getLevelName(settings.level.upper())
    if not isinstance(level, int):
        level = logging.INFO

    logger = logging.getLogger(PACKAGE_LOGGER)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    logger.setLevel(level)
    logger.propagate = False

    rich_handler = RichHandler(
        console=console or Console(stderr=True),
        show_path=False,
        rich_tracebacks=True,
        markup=False,
    )
    rich_handler.setLevel(level)
    logger.addHandler(rich_handler)

    if state_dir is not None:
        directory = Path(state_dir).expanduser()
        directory.mkdir(parents=True, exist_ok=True)
        file_handler = logging.handlers.RotatingFileHandler(
            directory / LOG_FILENAME,
            maxBytes=max(1, settings.max_size_mb) * 1024 * 1024,
            backupCount=settings.backup_count,
            encoding="utf-8",
        )
        file_handler.setFormatter(logging.Formatter(_FILE_FORMAT))
        file_handler.setLevel(level)
        logger.addHandler(file_handler)

    return logger


__all__ = ["configure_logging", "LOG_FILENAME", "PACKAGE_LOGGER"]
