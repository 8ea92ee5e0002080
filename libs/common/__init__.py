"""Common utilities and exceptions."""

from libs.common.exceptions import (
    ConfigurationError,
    DeliveryPlatformError,
    OrderValidationError,
)
from libs.common.log_sanitizer import describe_credential, mask_phone, sanitize_dict

__all__ = [
    "DeliveryPlatformError",
    "ConfigurationError",
    "OrderValidationError",
    "describe_credential",
    "mask_phone",
    "sanitize_dict",
]
