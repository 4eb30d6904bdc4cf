"""
Logging configuration for threatdoc.

This module provides:
- Structured JSON logging with python-json-logger
- Configurable log formats (JSON or text)
- Redaction of configured secrets (document passwords) from log output
- Log level configuration per component
"""

import logging
import sys
from collections.abc import Iterable
from typing import Any, Optional

from pythonjsonlogger.json import JsonFormatter

REDACTED = "**********"

TEXT_FORMAT = "%(levelname)s [%(asctime)s] %(name)s - %(message)s"
JSON_FORMAT = "%(timestamp)s %(level)s %(name)s %(message)s"


class RedactingFilter(logging.Filter):
    """
    Logging filter that masks secret values in log messages.

    Attached to handlers so that records propagated from every module logger
    pass through it. Default passwords for encrypted documents are
    registered here when logging is configured.
    """

    def __init__(self, secrets: Optional[Iterable[str]] = None):
        super().__init__()
        self._secrets = {s for s in secrets or () if s}

    def add_secret(self, secret: Optional[str]) -> None:
        if secret:
            self._secrets.add(secret)

    def filter(self, record: logging.LogRecord) -> bool:
        """
        Replace secret values in the formatted message.

        Args:
            record: LogRecord instance

        Returns:
            Always True; records are rewritten, never dropped
        """
        if not self._secrets:
            return True
        message = record.getMessage()
        redacted = message
        for secret in self._secrets:
            redacted = redacted.replace(secret, REDACTED)
        if redacted != message:
            record.msg = redacted
            record.args = None
        return True


class DocumentJsonFormatter(JsonFormatter):
    """
    JSON formatter with consistent field naming.

    Every entry carries timestamp, level, logger and message; exception
    tracebacks are added under ``exception``.
    """

    def add_fields(
        self,
        log_record: dict[str, Any],
        record: logging.LogRecord,
        message_dict: dict[str, Any],
    ) -> None:
        super().add_fields(log_record, record, message_dict)

        log_record["timestamp"] = self.formatTime(record)
        log_record["level"] = record.levelname
        log_record["logger"] = record.name
        log_record["message"] = record.getMessage()

        if record.exc_info:
            log_record["exception"] = self.formatException(record.exc_info)


def setup_logging(
    log_format: str = "text",
    log_level: str = "INFO",
    secrets: Optional[Iterable[str]] = None,
) -> RedactingFilter:
    """
    Configure logging for threatdoc.

    Log output goes to stderr so that command output on stdout stays
    machine-readable.

    Args:
        log_format: "json" for JSON logging, "text" for human-readable text (default: "text")
        log_level: Minimum log level (DEBUG, INFO, WARNING, ERROR, CRITICAL) (default: "INFO")
        secrets: Values to mask in every log message

    Returns:
        The RedactingFilter installed on the handler, for registering
        further secrets
    """
    level = getattr(logging, log_level.upper(), logging.INFO)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(level)

    if log_format.lower() == "json":
        formatter: logging.Formatter = DocumentJsonFormatter(
            JSON_FORMAT, datefmt="%Y-%m-%dT%H:%M:%S"
        )
    else:
        formatter = logging.Formatter(TEXT_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")

    redacting_filter = RedactingFilter(secrets)
    console_handler.setFormatter(formatter)
    console_handler.addFilter(redacting_filter)
    root_logger.addHandler(console_handler)

    configure_component_loggers(log_level)

    root_logger.debug(f"Logging configured: format={log_format}, level={log_level}")
    return redacting_filter


def configure_component_loggers(default_level: str = "INFO") -> None:
    """
    Configure log levels for specific components.

    Args:
        default_level: Default log level for threatdoc components
    """
    logger_levels = {
        # Application loggers
        "threatdoc": default_level,
        "threatdoc.document_processors": default_level,
        "threatdoc.plugins": default_level,
        # Third-party parsers (less verbose by default)
        "PIL": "WARNING",
        "pytesseract": "WARNING",
        "openpyxl": "WARNING",
        "docx": "WARNING",
    }

    for logger_name, level in logger_levels.items():
        logger = logging.getLogger(logger_name)
        logger.setLevel(getattr(logging, level.upper(), logging.INFO))
