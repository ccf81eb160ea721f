"""
Logging configuration.

Console logging only: plain text in development, one JSON object per line
everywhere else so log shippers can index the fields. Every record carries
the id of the HTTP request that produced it (``-`` outside a request).
"""

import json
import logging
import sys
from contextvars import ContextVar

from dream_billing.config.config import Config

logger = logging.getLogger(__name__)

# Set by RequestIDMiddleware for the lifetime of a request
request_id_var: ContextVar[str | None] = ContextVar("request_id", default=None)

NOISY_LOGGERS = ("httpx", "httpcore", "hpack", "urllib3", "stripe", "apscheduler")


class RequestIDFilter(logging.Filter):
    """
    Logging filter that stamps the current request id on each record.

    Returns:
        bool: Always True (don't filter out records)
    """

    def filter(self, record: logging.LogRecord) -> bool:
        record.request_id = request_id_var.get() or "-"
        return True


class StructuredFormatter(logging.Formatter):
    """
    JSON formatter for structured logging.

    Formats log records as JSON with the request id and additional metadata.
    """

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": self.formatTime(record),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        request_id = getattr(record, "request_id", None)
        if request_id and request_id != "-":
            log_data["request_id"] = request_id

        # Add exception info if present
        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        # Add any extra fields
        if hasattr(record, "extra"):
            log_data.update(record.extra)

        return json.dumps(log_data, default=str)


def configure_logging(level: str | None = None) -> None:
    """
    Configure application logging.

    Sets up:
    - Console handler on stdout
    - Request id filter for request correlation
    - Plain format in development, JSON elsewhere
    - WARNING level for chatty third-party libraries

    Args:
        level: Root level name; defaults to Config.LOG_LEVEL
    """
    root_logger = logging.getLogger()
    root_logger.setLevel((level or Config.LOG_LEVEL or "INFO").upper())

    # Clear existing handlers
    root_logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.addFilter(RequestIDFilter())

    if Config.IS_DEVELOPMENT:
        console_formatter = logging.Formatter(
            "%(asctime)s - %(name)s - %(levelname)s - [%(request_id)s] %(message)s"
        )
    else:
        console_formatter = StructuredFormatter()

    console_handler.setFormatter(console_formatter)
    root_logger.addHandler(console_handler)

    # Set log levels for noisy libraries
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    logger.info("Console logging configured (level=%s)", logging.getLevelName(root_logger.level))
