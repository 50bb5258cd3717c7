"""
Logging for the query service.

Every module logs through ``get_logger(__name__)``; handlers are attached
once per logger and write pipe-separated lines to stdout.  Chatty
third-party loggers (the model runtime, the SQL engine) are capped at
WARNING unless the service itself runs at DEBUG.
"""
from __future__ import annotations

import logging
import sys

from src.core.config import get_settings

LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

_NOISY_LOGGERS = ("llama_cpp", "sqlalchemy.engine", "urllib3", "httpx")


def _level() -> int:
    return getattr(logging, get_settings().log_level.upper(), logging.INFO)


def _quiet_third_party(level: int) -> None:
    floor = logging.DEBUG if level <= logging.DEBUG else logging.WARNING
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(floor)


def get_logger(name: str) -> logging.Logger:
    level = _level()
    logger = logging.getLogger(name)
    if not logger.handlers:
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT))
        logger.addHandler(handler)
        _quiet_third_party(level)
    logger.setLevel(level)
    return logger
