"""
Exception hierarchy for the delivery dispatch platform.

This module defines the platform-wide exceptions, organized in a hierarchy
for precise error handling. Partner API errors live next to the client that
raises them (see apps/delivery_dispatch/doordash_client.py) and also derive
from DeliveryPlatformError.
"""


class DeliveryPlatformError(Exception):
    """
    Base exception for all delivery platform errors.

    All custom exceptions in the platform inherit from this class,
    allowing for catch-all error handling at the dispatch boundary.

    Example:
        >>> try:
        ...     # dispatch code
        ...     pass
        ... except DeliveryPlatformError as e:
        ...     logger.error(f"Dispatch error: {e}")
    """

    pass


class ConfigurationError(DeliveryPlatformError):
    """
    Raised when required configuration or secrets are missing.

    Fatal on the startup path; caught per call once the service is running
    so a missing credential degrades a single dispatch instead of the loop.

    Example:
        >>> if not developer_id.strip():
        ...     raise ConfigurationError("DOORDASH_DEVELOPER_ID is empty or invalid")
    """

    pass


class OrderValidationError(DeliveryPlatformError):
    """
    Raised when an order cannot be translated into a dispatch payload.

    Covers malformed or incomplete pickup/dropoff addresses. Aborts the
    dispatch for that order only; the order remains unsent.

    Example:
        >>> if len(dropoff_address) < 10:
        ...     raise OrderValidationError(f"Invalid dropoff address: {dropoff_address!r}")
    """

    pass
