"""Logging configuration for Longbox.

Everything goes through the root logger:
- longbox.log in DATA_DIR, rotated at 10MB with 5 backups, at DEBUG
- a Rich console at the requested level (LONGBOX_LOG_LEVEL overrides it)

Scan jobs run on the queue worker thread, so file records carry the thread name.
"""

from __future__ import annotations

import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

from rich.console import Console
from rich.logging import RichHandler
from rich.theme import Theme


LOG_FILE_NAME = "longbox.log"
LOG_MAX_BYTES = 10 * 1024 * 1024
LOG_BACKUPS = 5
FILE_FORMAT = "%(asctime)s - %(levelname)-8s - %(threadName)s - %(name)s - %(message)s"

# Third-party loggers that are only interesting when something breaks
QUIET_LOGGERS = ("uvicorn.access", "PIL", "rarfile", "multipart")

_logging_initialized = False


def _get_data_dir() -> Path:
    """Return the data directory (same as config.DATA_DIR without circular import)."""
    env = os.environ.get("DATA_DIR")
    if env:
        return Path(env)
    if getattr(sys, "frozen", False):
        return Path(sys.executable).resolve().parent
    return Path(__file__).resolve().parents[1]


def _console_level(log_level: str) -> int:
    name = os.environ.get("LONGBOX_LOG_LEVEL", log_level).upper()
    return getattr(logging, name, logging.INFO)


def _file_handler(log_file: Path) -> logging.Handler:
    log_file.parent.mkdir(parents=True, exist_ok=True)
    handler = RotatingFileHandler(
        log_file, maxBytes=LOG_MAX_BYTES, backupCount=LOG_BACKUPS, encoding="utf-8"
    )
    handler.setLevel(logging.DEBUG)
    handler.setFormatter(logging.Formatter(FILE_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))
    return handler


def _console_handler(level: int) -> logging.Handler:
    console = Console(theme=Theme({"logging.level.info": "bold magenta"}))
    handler = RichHandler(console=console, rich_tracebacks=True, show_time=False, show_path=False)
    handler.setLevel(level)
    return handler


def setup_logging(log_level: str = "INFO", log_file: Optional[Path] = None) -> None:
    """Attach the file and console handlers once per process.

    Args:
        log_level: Console level (DEBUG, INFO, WARNING, ERROR)
        log_file: Log file location, defaults to DATA_DIR/longbox.log
    """
    global _logging_initialized

    if _logging_initialized:
        return

    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)
    root_logger.addHandler(_file_handler(log_file or _get_data_dir() / LOG_FILE_NAME))
    root_logger.addHandler(_console_handler(_console_level(log_level)))

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    # alembic's env.py installs its own handlers
    alembic_logger = logging.getLogger("alembic")
    alembic_logger.handlers = []
    alembic_logger.propagate = True

    _logging_initialized = True


def get_logger(name: str) -> logging.Logger:
    """Get a logger for the specified module (typically __name__)."""
    return logging.getLogger(name)
