"""Logging setup for the watchdog process."""

from __future__ import annotations

import logging
import os
from pathlib import Path

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def setup_logging(level: str | int = "INFO", log_file: str | None = None) -> None:
    """Configure root logging.

    Args:
        level: Level name ("DEBUG", "INFO", ...) or numeric level
        log_file: Optional file to mirror output to. Falls back to the
            WATCHDOG_LOG_FILE environment variable.
    """
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO

    handlers: list[logging.Handler] = [logging.StreamHandler()]

    log_file = log_file or os.environ.get("WATCHDOG_LOG_FILE")
    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_file))

    logging.basicConfig(
        level=level,
        format=LOG_FORMAT,
        datefmt=DATE_FORMAT,
        handlers=handlers,
        force=True,
    )

    # aiohttp access noise is not useful here
    logging.getLogger("aiohttp").setLevel(logging.WARNING)
