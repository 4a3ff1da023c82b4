"""Process-wide logging setup: console plus optional rotating file."""

from __future__ import annotations

import logging
import os
from logging.handlers import RotatingFileHandler
from pathlib import Path

from config import clean_env_str, parse_int

LOG_FORMAT = "%(asctime)s %(levelname)s:%(name)s:%(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
DEFAULT_LOG_LEVEL = "INFO"
DEFAULT_LOG_MAX_BYTES = 10 * 1024 * 1024
DEFAULT_LOG_BACKUP_COUNT = 10
# Third-party loggers that are too chatty at INFO.
QUIET_LOGGERS = ("aiosqlite", "aiohttp.access")


def _build_file_handler(service_name: str) -> logging.Handler | None:
    """Return a rotating handler when LOG_DIR is set, None otherwise."""
    log_dir = clean_env_str(os.getenv("LOG_DIR"))
    if not log_dir:
        return None
    log_file_name = clean_env_str(os.getenv("LOG_FILE_NAME"), f"{service_name}.log") or f"{service_name}.log"
    max_bytes = parse_int(os.getenv("LOG_MAX_BYTES"), DEFAULT_LOG_MAX_BYTES)
    backup_count = parse_int(os.getenv("LOG_BACKUP_COUNT"), DEFAULT_LOG_BACKUP_COUNT)

    Path(log_dir).mkdir(parents=True, exist_ok=True)
    return RotatingFileHandler(
        Path(log_dir) / log_file_name,
        maxBytes=max_bytes,
        backupCount=backup_count,
        encoding="utf-8",
    )


def configure_logging(service_name: str) -> None:
    """Configure the root logger for the given service."""
    level_name = clean_env_str(os.getenv("LOG_LEVEL"), DEFAULT_LOG_LEVEL).upper() or DEFAULT_LOG_LEVEL
    level = getattr(logging, level_name, logging.INFO)

    handlers: list[logging.Handler] = [logging.StreamHandler()]
    file_error: Exception | None = None
    try:
        file_handler = _build_file_handler(service_name)
    except OSError as error:
        # Console logging still works when the log directory is not writable.
        file_handler = None
        file_error = error
    if file_handler is not None:
        handlers.append(file_handler)

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.setLevel(level)

    formatter = logging.Formatter(fmt=LOG_FORMAT, datefmt=LOG_DATE_FORMAT)
    for handler in handlers:
        handler.setLevel(level)
        handler.setFormatter(formatter)
        root_logger.addHandler(handler)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))

    if file_error is not None:
        logging.getLogger(__name__).warning("File logging disabled for %s: %s", service_name, file_error)
