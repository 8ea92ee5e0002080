"""Centralized logging configuration for the dispatch service.

This module provides standardized logging setup using structured JSON output
with the current order id attached to every record. Services call
configure_logging() once at startup.

Example:
    >>> from libs.common.logging.config import configure_logging
    >>> logger = configure_logging(service_name="delivery_dispatch", log_level="INFO")
    >>> logger.info("Service started", extra={"buffer_minutes": 30})
"""

import logging
import sys

from libs.common.logging.context import get_order_id
from libs.common.logging.formatter import JSONFormatter


class OrderContextFilter(logging.Filter):
    """Logging filter that adds the bound order id to log records."""

    def filter(self, record: logging.LogRecord) -> bool:
        if getattr(record, "order_id", None) is None:
            record.order_id = get_order_id()
        return True


def configure_logging(
    service_name: str,
    log_level: str = "INFO",
    include_context: bool = True,
) -> logging.Logger:
    """Configure structured JSON logging for a service.

    Sets up the root logger with JSON formatted output to stdout, order id
    injection on all records and the requested level. Existing root handlers
    are replaced so repeated calls do not duplicate output.

    Args:
        service_name: Name of the service (e.g., "delivery_dispatch")
        log_level: Minimum log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        include_context: Whether to include context dict in output

    Returns:
        Configured root logger instance

    Raises:
        ValueError: If log_level is invalid
    """
    numeric_level = getattr(logging, log_level.upper(), None)
    if not isinstance(numeric_level, int):
        raise ValueError(f"Invalid log level: {log_level}")

    root_logger = logging.getLogger()
    root_logger.setLevel(numeric_level)
    root_logger.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(numeric_level)
    handler.setFormatter(JSONFormatter(service_name=service_name, include_context=include_context))
    handler.addFilter(OrderContextFilter())

    root_logger.addHandler(handler)

    # Partner HTTP traffic is logged by the client itself
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("apscheduler").setLevel(logging.WARNING)

    return root_logger


def get_logger(name: str | None = None) -> logging.Logger:
    """Get a logger instance (typically ``get_logger(__name__)``)."""
    return logging.getLogger(name)
