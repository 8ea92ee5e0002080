"""Centralized structured logging library.

This package provides structured JSON logging with order id correlation for
every record emitted while an order is being dispatched or reconciled.

Usage:
    # At service startup
    from libs.common.logging import configure_logging
    configure_logging(service_name="delivery_dispatch", log_level="INFO")

    # While handling an order
    from libs.common.logging import order_context
    with order_context(order_id):
        logger.info("Dispatching order")
"""

from libs.common.logging.config import OrderContextFilter, configure_logging, get_logger
from libs.common.logging.context import (
    clear_order_id,
    get_order_id,
    order_context,
    set_order_id,
)
from libs.common.logging.formatter import JSONFormatter

__all__ = [
    "configure_logging",
    "get_logger",
    "OrderContextFilter",
    "get_order_id",
    "set_order_id",
    "clear_order_id",
    "order_context",
    "JSONFormatter",
]
