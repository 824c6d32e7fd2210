"""Logging setup for sshjobs.

Console records go through ``rich``'s ``RichHandler`` on stderr so they do not
interleave with the result tables printed on stdout. An optional plain-text
file handler mirrors everything at the configured level.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

from rich.console import Console
from rich.logging import RichHandler

ROOT_LOGGER = "sshjobs"
FILE_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"

LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
    "critical": logging.CRITICAL,
}


def level_from_name(name: str) -> int:
    """Convert a level name (case-insensitive) into a ``logging`` level."""
    try:
        return LEVELS[name.strip().lower()]
    except KeyError:
        valid = ", ".join(LEVELS)
        raise ValueError(f"Invalid log level: {name}. Valid levels: {valid}") from None


def level_from_verbosity(verbose: int, base: int = logging.WARNING) -> int:
    """Each ``-v`` lowers the threshold by one step, never below DEBUG."""
    return max(logging.DEBUG, base - 10 * verbose)


def configure_logging(level: int = logging.WARNING, log_file: Optional[Path] = None) -> logging.Logger:
    """Install handlers on the ``sshjobs`` logger, replacing earlier ones."""
    logger = logging.getLogger(ROOT_LOGGER)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    console_handler = RichHandler(
        console=Console(stderr=True),
        show_path=False,
        rich_tracebacks=True,
    )
    console_handler.setLevel(level)
    logger.addHandler(console_handler)

    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setFormatter(logging.Formatter(FILE_FORMAT))
        file_handler.setLevel(level)
        logger.addHandler(file_handler)

    logger.setLevel(level)
    return logger
