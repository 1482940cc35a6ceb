"""
Logging configuration for deployment runs.

Every event goes to the log file as ``[timestamp] level: message``. With
``verbose`` the same lines are echoed to stdout, coloured by level.
"""

from __future__ import annotations

import logging
import sys
from pathlib import Path
from typing import List, Optional

ROOT_LOGGER = "fleet_deploy"

LOG_FORMAT = "[%(asctime)s] %(levelname)s: %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# ANSI bold + colour per level
_COLORS = {
    logging.DEBUG: "\033[1;34m",     # blue
    logging.INFO: "\033[1;32m",      # green
    logging.WARNING: "\033[1;33m",   # yellow
    logging.ERROR: "\033[1;31m",     # red
    logging.CRITICAL: "\033[1;31m",
}
_RESET = "\033[0m"


class LevelFormatter(logging.Formatter):
    """Formatter that writes level names in lowercase (``info``, ``error``)."""

    def format(self, record: logging.LogRecord) -> str:
        original = record.levelname
        record.levelname = original.lower()
        try:
            return super().format(record)
        finally:
            record.levelname = original


class ColorFormatter(LevelFormatter):
    """Lowercase-level formatter that wraps each line in an ANSI colour."""

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        color = _COLORS.get(record.levelno)
        if color is None:
            return line
        return f"{color}{line}{_RESET}"


def configure_logging(
    log_file: Path,
    verbose: bool = False,
    stream=None,
    color: Optional[bool] = None,
) -> logging.Logger:
    """
    Attach a file handler (and, when *verbose*, a console handler) to the
    package logger. Calling it again replaces the handlers from the
    previous call.

    Returns the package logger.
    """
    logger = logging.getLogger(ROOT_LOGGER)
    reset_logging()

    log_file = Path(log_file)
    if log_file.parent and not log_file.parent.exists():
        log_file.parent.mkdir(parents=True, exist_ok=True)

    file_handler = logging.FileHandler(log_file, mode="a", encoding="utf-8")
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(LevelFormatter(LOG_FORMAT, datefmt=DATE_FORMAT))
    logger.addHandler(file_handler)

    if verbose:
        stream = stream if stream is not None else sys.stdout
        if color is None:
            color = hasattr(stream, "isatty") and stream.isatty()
        console = logging.StreamHandler(stream)
        console.setLevel(logging.DEBUG)
        formatter_cls = ColorFormatter if color else LevelFormatter
        console.setFormatter(formatter_cls(LOG_FORMAT, datefmt=DATE_FORMAT))
        logger.addHandler(console)

    logger.setLevel(logging.DEBUG)
    logger.propagate = False
    return logger


def reset_logging() -> None:
    """Detach and close every handler on the package logger."""
    logger = logging.getLogger(ROOT_LOGGER)
    handlers: List[logging.Handler] = list(logger.handlers)
    for handler in handlers:
        logger.removeHandler(handler)
        handler.close()
