"""Configuration module for the Delivery Dispatch service.

This module centralizes all environment variable parsing, giving the
scheduler, partner client and reconciliation loop a single source of truth.

Usage:
    from apps.delivery_dispatch.config import get_config

    config = get_config()
    if not config.has_doordash_credentials:
        logger.warning("DoorDash integration disabled")
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)


# ============================================================================
# Helper Functions
# ============================================================================


def _get_int_env(name: str, default: int) -> int:
    """Parse int from environment variable with fallback to default.

    Args:
        name: Environment variable name
        default: Default value if env var is missing or invalid

    Returns:
        Parsed int value or default
    """
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning("Invalid int for %s=%s; using default=%s", name, raw, default)
        return default


def _get_float_env(name: str, default: float) -> float:
    """Parse float from environment variable with fallback to default."""
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning("Invalid float for %s=%s; using default=%s", name, raw, default)
        return default


def _get_bool_env_permissive(name: str, default: bool) -> bool:
    """Parse boolean from environment variable (permissive: true/yes/on/1).

    Note:
        Accepts: "true", "yes", "on", "1" (case-insensitive) as True
        All other values are False
    """
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("true", "yes", "on", "1")


def _get_positive_int_env(name: str, default: int) -> int:
    """Parse a strictly positive int, falling back to default otherwise."""
    value = _get_int_env(name, default)
    if value <= 0:
        logger.warning("%s must be > 0; using default=%s", name, default)
        return default
    return value


# ============================================================================
# Configuration Defaults
# ============================================================================

DOORDASH_API_URL_DEFAULT = "https://openapi.doordash.com/drive/v2"
REQUEST_TIMEOUT_SECONDS_DEFAULT = 30.0
DELIVERY_BUFFER_MINUTES_DEFAULT = 30
SCHEDULER_RESTORE_LIMIT_DEFAULT = 500
RECONCILIATION_INTERVAL_SECONDS_DEFAULT = 120
RECONCILIATION_INITIAL_DELAY_SECONDS_DEFAULT = 30
RECONCILIATION_BATCH_LIMIT_DEFAULT = 100


# ============================================================================
# Configuration Dataclass
# ============================================================================


@dataclass
class DeliveryDispatchConfig:
    """Configuration for the Delivery Dispatch service.

    Attributes:
        # Core Settings
        log_level: Logging level (default: INFO)
        environment: Environment name (dev, staging, prod)

        # DoorDash Drive credentials and transport
        doordash_developer_id: Developer ID (JWT issuer)
        doordash_key_id: Access key ID (JWT kid)
        doordash_signing_secret: base64url signing secret (never logged)
        doordash_api_url: Drive API base URL
        request_timeout_seconds: Per-request timeout for partner calls

        # Scheduling
        delivery_buffer_minutes: Lead time before delivery at which to dispatch
        scheduler_restore_limit: Max persisted orders replayed at startup

        # Reconciliation
        reconciliation_enabled: Run the periodic status poll
        reconciliation_interval_seconds: Interval between passes
        reconciliation_initial_delay_seconds: Delay before the first pass
        reconciliation_batch_limit: Max orders read per pass
    """

    # Core Settings
    log_level: str
    environment: str

    # DoorDash Drive credentials and transport
    doordash_developer_id: str
    doordash_key_id: str
    doordash_signing_secret: str = field(repr=False)
    doordash_api_url: str = DOORDASH_API_URL_DEFAULT
    request_timeout_seconds: float = REQUEST_TIMEOUT_SECONDS_DEFAULT

    # Scheduling
    delivery_buffer_minutes: int = DELIVERY_BUFFER_MINUTES_DEFAULT
    scheduler_restore_limit: int = SCHEDULER_RESTORE_LIMIT_DEFAULT

    # Reconciliation
    reconciliation_enabled: bool = True
    reconciliation_interval_seconds: int = RECONCILIATION_INTERVAL_SECONDS_DEFAULT
    reconciliation_initial_delay_seconds: int = RECONCILIATION_INITIAL_DELAY_SECONDS_DEFAULT
    reconciliation_batch_limit: int = RECONCILIATION_BATCH_LIMIT_DEFAULT

    @property
    def has_doordash_credentials(self) -> bool:
        """True when all three DoorDash credentials are non-blank."""
        return all(
            value.strip()
            for value in (
                self.doordash_developer_id,
                self.doordash_key_id,
                self.doordash_signing_secret,
            )
        )


# ============================================================================
# Configuration Factory
# ============================================================================


def get_config() -> DeliveryDispatchConfig:
    """Load and validate configuration from environment variables.

    Returns:
        DeliveryDispatchConfig: Validated configuration

    Note:
        Invalid values fall back to defaults with warnings. Missing DoorDash
        credentials are not an error here; CredentialSigner raises
        ConfigurationError when a token is actually requested.
    """
    buffer_minutes = _get_int_env("DOORDASH_DELIVERY_BUFFER_MINUTES", DELIVERY_BUFFER_MINUTES_DEFAULT)
    if buffer_minutes < 0:
        logger.warning(
            "DOORDASH_DELIVERY_BUFFER_MINUTES must be >= 0; using default=%s",
            DELIVERY_BUFFER_MINUTES_DEFAULT,
        )
        buffer_minutes = DELIVERY_BUFFER_MINUTES_DEFAULT

    timeout_seconds = _get_float_env(
        "DOORDASH_REQUEST_TIMEOUT_SECONDS", REQUEST_TIMEOUT_SECONDS_DEFAULT
    )
    if timeout_seconds <= 0:
        logger.warning(
            "DOORDASH_REQUEST_TIMEOUT_SECONDS must be > 0; using default=%s",
            REQUEST_TIMEOUT_SECONDS_DEFAULT,
        )
        timeout_seconds = REQUEST_TIMEOUT_SECONDS_DEFAULT

    api_url = os.getenv("DOORDASH_API_URL", "").strip() or DOORDASH_API_URL_DEFAULT

    return DeliveryDispatchConfig(
        # Core Settings
        log_level=os.getenv("LOG_LEVEL", "INFO"),
        environment=os.getenv("ENVIRONMENT", "dev"),
        # DoorDash Drive
        doordash_developer_id=os.getenv("DOORDASH_DEVELOPER_ID", ""),
        doordash_key_id=os.getenv("DOORDASH_KEY_ID", ""),
        doordash_signing_secret=os.getenv("DOORDASH_SIGNING_SECRET", ""),
        doordash_api_url=api_url.rstrip("/"),
        request_timeout_seconds=timeout_seconds,
        # Scheduling
        delivery_buffer_minutes=buffer_minutes,
        scheduler_restore_limit=_get_positive_int_env(
            "SCHEDULER_RESTORE_LIMIT", SCHEDULER_RESTORE_LIMIT_DEFAULT
        ),
        # Reconciliation
        reconciliation_enabled=_get_bool_env_permissive("RECONCILIATION_ENABLED", True),
        reconciliation_interval_seconds=_get_positive_int_env(
            "RECONCILIATION_INTERVAL_SECONDS", RECONCILIATION_INTERVAL_SECONDS_DEFAULT
        ),
        reconciliation_initial_delay_seconds=_get_int_env(
            "RECONCILIATION_INITIAL_DELAY_SECONDS", RECONCILIATION_INITIAL_DELAY_SECONDS_DEFAULT
        ),
        reconciliation_batch_limit=_get_positive_int_env(
            "RECONCILIATION_BATCH_LIMIT", RECONCILIATION_BATCH_LIMIT_DEFAULT
        ),
    )
