"""Logging configuration for Site Kit Auth.

Provides structured logging setup with configurable levels, consistent
formatting, and redaction of one-time codes and tokens in log output.
"""

from __future__ import annotations

import logging
import re
import sys
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from sitekit_auth.config import Config

# Package logger name
LOGGER_NAME = "sitekit_auth"

LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
DATE_FORMAT = "%Y-%m-%dT%H:%M:%S%z"

# Query/form parameters whose values must never reach a log line
REDACTED_PARAMS = (
    "code",
    "site_code",
    "googlesitekit_code",
    "googlesitekit_site_code",
    "nonce",
    "token",
    "access_token",
    "refresh_token",
    "site_secret",
    "client_secret",
)

_REDACT_PATTERN = re.compile(
    r"(?P<key>\b(?:" + "|".join(REDACTED_PARAMS) + r"))=(?P<value>[^&\s\"']+)"
)

_logging_configured = False


class RedactingFilter(logging.Filter):
    """Mask sensitive ``key=value`` pairs in formatted log messages."""

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        redacted = _REDACT_PATTERN.sub(r"\g<key>=***", message)
        if redacted != message:
            record.msg = redacted
            record.args = None
        return True


def setup_logging(config: Config) -> None:
    """Configure logging for the application.

    Idempotent: repeated calls only update the level.

    Args:
        config: Application configuration containing log_level setting
    """
    global _logging_configured

    log_level = getattr(logging, config.log_level.value)

    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(log_level)

    if _logging_configured:
        for handler in logger.handlers:
            handler.setLevel(log_level)
        return

    logger.handlers.clear()

    handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(log_level)
    handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT))
    handler.addFilter(RedactingFilter())

    logger.addHandler(handler)
    logger.propagate = False

    _logging_configured = True

    logger.debug("Logging configured with level %s", config.log_level.value)


def get_logger(name: str) -> logging.Logger:
    """Get a logger instance for a module.

    Args:
        name: Logger name, typically __name__ of the calling module

    Returns:
        Child logger of the package logger
    """
    if name.startswith(LOGGER_NAME):
        return logging.getLogger(name)

    return logging.getLogger(f"{LOGGER_NAME}.{name}")


def reset_logging() -> None:
    """Reset logging configuration.

    Used primarily for testing to allow re-initialization.
    """
    global _logging_configured
    logger = logging.getLogger(LOGGER_NAME)
    logger.handlers.clear()
    logger.propagate = True
    _logging_configured = False
