"""
Logging configuration.

Log records always go to stdout; when a log file is configured they are
also written there, rotated once the file reaches ``max_size_mb``.
"""

import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

from .loader import LoggingConfig

LOGGER_NAME = "usage_monitor"
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
BACKUP_COUNT = 3

_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}


def setup_logging(config: LoggingConfig) -> logging.Logger:
    """Configure the package logger from the logging section.

    Calling it again replaces the handlers installed by a previous call.

    Returns:
        The configured ``usage_monitor`` logger
    """
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(_LEVELS.get(config.level.lower(), logging.INFO))
    logger.propagate = False

    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    formatter = logging.Formatter(LOG_FORMAT)
    stream_handler = logging.StreamHandler(sys.stdout)
    stream_handler.setFormatter(formatter)
    logger.addHandler(stream_handler)

    if config.file:
        path = Path(config.file).expanduser()
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            file_handler = RotatingFileHandler(
                path,
                maxBytes=config.max_size_mb * 1024 * 1024,
                backupCount=BACKUP_COUNT,
                encoding="utf-8",
            )
        except OSError as e:
            logger.warning("Could not open log file %s: %s. Logging to stdout only.", path, e)
        else:
            file_handler.setFormatter(formatter)
            logger.addHandler(file_handler)

    return logger
