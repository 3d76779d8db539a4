"""Logging configuration for the CLI and the background scheduler."""

from __future__ import annotations

import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path
import sys

LOG_FILE_NAME = "taskminder.log"


class _ConsoleNoiseFilter(logging.Filter):
    """
    Keep the terminal readable:
    - taskminder records pass at the handler level
    - captured Python warnings and third-party records only at ERROR+
    """

    def filter(self, record: logging.LogRecord) -> bool:
        if record.name == "taskminder" or record.name.startswith("taskminder."):
            return True
        return record.levelno >= logging.ERROR


def setup_logging(
    *,
    log_dir: str | Path,
    console: bool = True,
    console_level: int = logging.WARNING,
    file_level: int = logging.DEBUG,
    max_bytes: int = 10 * 1024 * 1024,
    backup_count: int = 5,
) -> Path:
    """
    Configure the root logger with:
    - optionally a stderr handler, filtered for interactive use
    - a rotating file handler with everything at ``file_level``

    Call once, before the first log record. Returns the log file path.
    """
    log_dir = Path(log_dir)
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / LOG_FILE_NAME

    root = logging.getLogger()
    root.setLevel(min(console_level, file_level))

    # Replace handlers from an earlier call; leave foreign handlers alone.
    for handler in list(root.handlers):
        if getattr(handler, "_taskminder", False):
            root.removeHandler(handler)
            handler.close()

    fmt = logging.Formatter(
        fmt="%(asctime)s.%(msecs)03d %(levelname)s %(threadName)s %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    if console:
        stream_handler = logging.StreamHandler(sys.stderr)
        stream_handler.setLevel(console_level)
        stream_handler.setFormatter(fmt)
        stream_handler.addFilter(_ConsoleNoiseFilter())
        stream_handler._taskminder = True
        root.addHandler(stream_handler)

    file_handler = RotatingFileHandler(
        str(log_file),
        maxBytes=max_bytes,
        backupCount=backup_count,
        encoding="utf-8",
    )
    file_handler.setLevel(file_level)
    file_handler.setFormatter(fmt)
    file_handler._taskminder = True
    root.addHandler(file_handler)

    # Route warnings.warn(...) into logging as 'py.warnings'.
    logging.captureWarnings(True)
    return log_file
