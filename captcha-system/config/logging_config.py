"""Logging setup for the challenge service (persistent logs + trace ids)."""

import logging
import os
from logging.handlers import RotatingFileHandler
from typing import Optional

LOGGER_NAME = "captcha_system"
LOG_FILE_NAME = "captcha_events.log"

logger = logging.getLogger(LOGGER_NAME)


# Every record must carry a trace_id so the formatter can print a
# correlation id even when no LoggerAdapter supplied one. The filter sits on
# the handlers because logger-level filters skip records from child loggers.
class TraceFilter(logging.Filter):
    def filter(self, record):
        if not hasattr(record, 'trace_id'):
            record.trace_id = '-'
        return True


def configure_logging(log_dir: str = "logs", level: int = logging.INFO) -> logging.Logger:
    """Attach rotating-file and console handlers to the service logger.

    Safe to call more than once; handlers are only added the first time.
    """
    logger.setLevel(level)
    if getattr(logger, "_captcha_configured", False):
        return logger

    formatter = logging.Formatter("%(asctime)s %(levelname)-8s [%(name)s] [trace=%(trace_id)s] %(message)s")

    os.makedirs(log_dir, exist_ok=True)
    # Rotating file handler to avoid uncontrolled log growth
    file_handler = RotatingFileHandler(
        os.path.join(log_dir, LOG_FILE_NAME), maxBytes=5 * 1024 * 1024, backupCount=5, encoding="utf-8"
    )
    file_handler.setFormatter(formatter)
    file_handler.addFilter(TraceFilter())
    logger.addHandler(file_handler)

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)
    console_handler.addFilter(TraceFilter())
    logger.addHandler(console_handler)

    logger._captcha_configured = True
    return logger


def get_trace_logger(trace_id: Optional[str], name: str = LOGGER_NAME) -> logging.LoggerAdapter:
    """Return a LoggerAdapter that attaches a trace_id to each LogRecord.

    Use this where you know a challenge id (or other correlation id) and want
    to include it in subsequent log messages so they can be correlated.
    """
    return logging.LoggerAdapter(logging.getLogger(name), {"trace_id": trace_id if trace_id else '-'})
