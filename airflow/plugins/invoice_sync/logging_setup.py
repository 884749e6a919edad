"""Operational logging: console plus a daily rotating file in the log directory."""
import logging
import os
import sys
from logging.handlers import TimedRotatingFileHandler

from invoice_sync.config import Settings


LOG_FILE_NAME = "invoice-worker.log"
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def configure_logging(settings: Settings, console: bool = True) -> logging.Logger:
    """
    Attach handlers for the worker to the 'invoice_sync' logger.

    Creates the log directory if it is missing. Safe to call more than once:
    previously attached handlers are replaced.

    Args:
        settings: Worker settings (log_directory, log_level)
        console: Also log to stdout

    Returns:
        The configured package logger
    """
    os.makedirs(settings.log_directory, exist_ok=True)
    log_path = os.path.join(settings.log_directory, LOG_FILE_NAME)

    logger = logging.getLogger("invoice_sync")
    logger.setLevel(getattr(logging, settings.log_level, logging.INFO))
    logger.propagate = False

    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    fmt = logging.Formatter(LOG_FORMAT)

    # Rolls at midnight, keeps two weeks
    file_handler = TimedRotatingFileHandler(
        log_path,
        when="midnight",
        interval=1,
        backupCount=14,
        encoding="utf-8",
    )
    file_handler.setFormatter(fmt)
    logger.addHandler(file_handler)

    if console:
        stream = logging.StreamHandler(sys.stdout)
        stream.setFormatter(fmt)
        logger.addHandler(stream)

    logger.debug("Logging to %s", log_path)
    return logger
