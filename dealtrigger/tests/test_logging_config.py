from __future__ import annotations

import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path

from dealtrigger.logging_config import DATA_QUALITY_LOGGER_NAME, configure_data_quality_logging, configure_logging


def test_configure_logging_attaches_one_root_file_handler() -> None:
    first = configure_logging()
    second = configure_logging()
    assert first == second

    handlers = [h for h in logging.getLogger().handlers if h.get_name() == "dealtrigger.file:root"]
    assert len(handlers) == 1
    assert Path(handlers[0].baseFilename) == first


def test_data_quality_stream_is_separate_and_does_not_propagate() -> None:
    log_path = configure_data_quality_logging()
    logger = logging.getLogger(DATA_QUALITY_LOGGER_NAME)

    assert logger.propagate is False
    assert log_path.name == "data_quality.log"
    file_handlers = [h for h in logger.handlers if isinstance(h, RotatingFileHandler)]
    assert [Path(h.baseFilename) for h in file_handlers] == [log_path]
    assert configure_data_quality_logging() == log_path
