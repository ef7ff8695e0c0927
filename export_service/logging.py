"""Logging helpers for the export service."""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Optional

from .config import PROJECT_ROOT

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"
PACKAGE_LOGGER = "export_service"


def _level_from_env(name: str, default: Optional[str] = None) -> Optional[int]:
    raw = (os.getenv(name) or default or "").strip().upper()
    if not raw:
        return None
    level = logging.getLevelName(raw)
    return level if isinstance(level, int) else None


def configure_logging() -> logging.Logger:
    """Configure root handlers and return the package logger.

    ``LOG_LEVEL`` sets the root level; ``EXPORT_LOG_LEVEL`` overrides it for
    the ``export_service`` loggers only, so export traffic can be traced at
    DEBUG without turning on every library's debug output.
    """
    root_level = _level_from_env("LOG_LEVEL", "INFO") or logging.INFO
    formatter = logging.Formatter(LOG_FORMAT)

    root = logging.getLogger()
    while root.handlers:
        root.handlers.pop()
    root.setLevel(root_level)

    stream_handler = logging.StreamHandler()
    stream_handler.setFormatter(formatter)
    root.addHandler(stream_handler)

    log_file_env = os.getenv("LOG_FILE")
    log_file = (
        Path(log_file_env) if log_file_env else PROJECT_ROOT / "logs" / "export_service.log"
    )
    try:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)
    except OSError as error:
        root.warning("Unable to open log file %s (%s)", log_file, error)

    # engine echo is noisy at DEBUG
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)

    package_logger = logging.getLogger(PACKAGE_LOGGER)
    package_logger.setLevel(_level_from_env("EXPORT_LOG_LEVEL") or logging.NOTSET)
    return package_logger
