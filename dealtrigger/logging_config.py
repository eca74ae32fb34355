from __future__ import annotations

import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path

from .runtime_paths import ensure_runtime_dirs

ROOT_LOGGER_NAME = ""
DATA_QUALITY_LOGGER_NAME = "dealtrigger.data_quality"

_LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"
_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
_MAX_BYTES = 10 * 1024 * 1024
_BACKUP_COUNT = 7

# logger name -> file it was pointed at
_streams: dict[str, Path] = {}


def _handler_name(logger_name: str) -> str:
    return f"dealtrigger.file:{logger_name or 'root'}"


def _attach_stream(logger_name: str, log_path: Path, *, propagate: bool) -> Path:
    if logger_name in _streams:
        return _streams[logger_name]

    log_path = log_path.resolve()
    logger = logging.getLogger(logger_name)
    name = _handler_name(logger_name)
    if all(handler.get_name() != name for handler in logger.handlers):
        handler = RotatingFileHandler(
            filename=log_path,
            maxBytes=_MAX_BYTES,
            backupCount=_BACKUP_COUNT,
            encoding="utf-8",
        )
        handler.set_name(name)
        handler.setLevel(logging.INFO)
        handler.setFormatter(logging.Formatter(fmt=_LOG_FORMAT, datefmt=_DATE_FORMAT))
        logger.addHandler(handler)
    if logger_name != ROOT_LOGGER_NAME:
        logger.propagate = propagate
    if logger.level == logging.NOTSET or logger.level > logging.INFO:
        logger.setLevel(logging.INFO)

    _streams[logger_name] = log_path
    logger.info("file logging for %s initialized at %s", logger_name or "root", log_path)
    return log_path


def configure_logging() -> Path:
    paths = ensure_runtime_dirs()
    return _attach_stream(ROOT_LOGGER_NAME, paths.log_path, propagate=True)


def configure_data_quality_logging() -> Path:
    """Route missing-stat signals to their own file, off the main log."""
    paths = ensure_runtime_dirs()
    return _attach_stream(DATA_QUALITY_LOGGER_NAME, paths.data_quality_log_path, propagate=False)
