"""PII and credential masking utilities for logs and diagnostics."""

from __future__ import annotations

import re
from typing import Any

# Compiled patterns for fast reuse
EMAIL_PATTERN = re.compile(r"[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}")
# Ten or more digits, optionally separated by spaces, dashes or parentheses
PHONE_PATTERN = re.compile(r"\+?\(?\d(?:[\s\-\(\)]*\d){9,}")

# Credentials are never shown beyond this many leading characters
CREDENTIAL_PREFIX_CHARS = 4


def mask_email(email: str) -> str:
    """Mask an email address, preserving only the domain part."""
    if not email:
        return "***"
    _, _, domain = email.partition("@")
    return f"***@{domain}" if domain else "***"


def mask_phone(phone: str) -> str:
    """Mask a phone number, showing only the last four digits."""
    digits = "".join(char for char in phone if char.isdigit())
    last4 = digits[-4:] if digits else ""
    return f"***{last4}"


def describe_credential(name: str, value: str | None) -> str:
    """Describe a credential by length and short prefix, never the full value.

    Example:
        >>> describe_credential("DOORDASH_KEY_ID", "abcd1234efgh")
        'DOORDASH_KEY_ID: abcd... (length: 12 chars)'
        >>> describe_credential("DOORDASH_KEY_ID", None)
        'DOORDASH_KEY_ID: NOT SET'
    """
    if not value or not value.strip():
        return f"{name}: NOT SET"
    value = value.strip()
    prefix = value[:CREDENTIAL_PREFIX_CHARS]
    return f"{name}: {prefix}... (length: {len(value)} chars)"


def _sanitize_string(text: str) -> str:
    """Apply pattern-based masking to a string."""
    sanitized = EMAIL_PATTERN.sub(lambda m: mask_email(m.group(0)), text)
    sanitized = PHONE_PATTERN.sub(lambda m: mask_phone(m.group(0)), sanitized)
    return sanitized


def _sanitize_value(value: Any) -> Any:
    """Sanitize arbitrary values, preserving original types when possible."""
    if isinstance(value, dict):
        return sanitize_dict(value)
    if isinstance(value, list):
        return [_sanitize_value(item) for item in value]
    if isinstance(value, tuple):
        return tuple(_sanitize_value(item) for item in value)
    if isinstance(value, str):
        return _sanitize_string(value)
    return value


def sanitize_dict(data: dict[str, Any]) -> dict[str, Any]:
    """Recursively sanitize a dictionary by masking PII and secret values.

    Sensitive keys are masked regardless of value type. Strings are scanned
    for embedded emails and phone numbers.
    """
    sanitized: dict[str, Any] = {}

    for raw_key, raw_value in data.items():
        key = str(raw_key).lower()

        if "email" in key:
            sanitized_value = mask_email(str(raw_value)) if isinstance(raw_value, str) else "***"
        elif "phone" in key:
            sanitized_value = mask_phone(str(raw_value)) if isinstance(raw_value, str) else "***"
        elif any(token in key for token in ("password", "secret", "token", "authorization")):
            sanitized_value = "***"
        else:
            sanitized_value = _sanitize_value(raw_value)

        sanitized[raw_key] = sanitized_value

    return sanitized


__all__ = [
    "describe_credential",
    "mask_email",
    "mask_phone",
    "sanitize_dict",
]
