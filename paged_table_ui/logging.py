"""Logging helpers for the paged table service."""

from __future__ import annotations

import logging
import os
from pathlib import Path

from .config import PROJECT_ROOT

PACKAGE_LOGGER = "paged_table_ui"
STREAM_HANDLER_NAME = "paged_table_ui.stream"
FILE_HANDLER_NAME = "paged_table_ui.file"

# held at WARNING or above unless configured elsewhere
QUIET_LOGGERS = ("urllib3",)


def _level(name: str, default: int) -> int:
    value = os.getenv(name, "").strip().upper()
    return getattr(logging, value, default) if value else default


def configure_logging() -> logging.Logger:
    """Configure root handlers and the ``paged_table_ui`` logger.

    ``LOG_LEVEL`` sets the root level. ``TABLE_LOG_LEVEL`` sets the level of
    the table engine loggers only and falls back to the root level when unset.
    """
    root_level = _level("LOG_LEVEL", logging.INFO)
    formatter = logging.Formatter(
        "%(asctime)s %(levelname)s [%(name)s] %(message)s"
    )

    root = logging.getLogger()
    for handler in list(root.handlers):
        if handler.get_name() in {STREAM_HANDLER_NAME, FILE_HANDLER_NAME}:
            root.removeHandler(handler)
            handler.close()

    root.setLevel(root_level)
    stream_handler = logging.StreamHandler()
    stream_handler.set_name(STREAM_HANDLER_NAME)
    stream_handler.setFormatter(formatter)
    root.addHandler(stream_handler)

    log_file_env = os.getenv("LOG_FILE")
    log_file = (
        Path(log_file_env)
        if log_file_env
        else PROJECT_ROOT / "logs" / f"{PACKAGE_LOGGER}.log"
    )
    try:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.set_name(FILE_HANDLER_NAME)
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)
    except OSError as error:
        root.warning("Unable to open log file %s (%s)", log_file, error)

    for name in QUIET_LOGGERS:
        if logging.getLogger(name).level == logging.NOTSET:
            logging.getLogger(name).setLevel(max(root_level, logging.WARNING))

    package_logger = logging.getLogger(PACKAGE_LOGGER)
    package_logger.setLevel(_level("TABLE_LOG_LEVEL", logging.NOTSET))
    return package_logger
