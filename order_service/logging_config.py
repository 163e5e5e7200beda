"""
logging_config.py — Logging Setup for the Order Service

All modules log through the root logger configured here, so API requests,
webhook handling and the notification worker end up in the same stream.

Features:
    • Console output plus an optional log file (LOG_FILE, empty disables it)
    • PID and logger name on every line, the API and worker may run side by side
    • Chatty client libraries (pika, httpx, SQLAlchemy) kept at WARNING
"""

import logging
import sys

from . import config

LOG_FORMAT = '%(asctime)s - %(levelname)s - [PID:%(process)d] - %(name)s - %(message)s'
QUIET_LOGGERS = ("pika", "httpx", "sqlalchemy.engine")


def setup_logging(level=None, log_file=None):
    """
    Installs the handlers and format on the root logger.

    Args:
        level (str | None): Log level name, defaults to LOG_LEVEL.
        log_file (str | None): Log file path, defaults to LOG_FILE. An empty string
            means stdout only (used by the test suite).
    """
    if log_file is None:
        log_file = config.LOG_FILE

    handlers = [logging.StreamHandler(sys.stdout)]
    if log_file:
        handlers.append(logging.FileHandler(log_file, encoding="utf-8"))

    logging.basicConfig(level=(level or config.LOG_LEVEL).upper(), format=LOG_FORMAT, handlers=handlers)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name):
    """Module logger sharing the root configuration."""
    return logging.getLogger(name)
