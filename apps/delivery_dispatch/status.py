"""
Delivery status vocabulary and update rules.

Partner statuses arrive under many spellings (``canceled``, ``CANCELLED``,
``cancellation_requested``, ``completed`` ...). They are folded into a small
canonical vocabulary before being mapped onto local order statuses.

Remote status writes follow a last-write-wins policy: an update observed at
time T is applied only when T is not older than the order's last local write.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from apps.delivery_dispatch.order_fields import parse_datetime

# Canonical partner statuses
PARTNER_CANCELLED = "cancelled"
PARTNER_DELIVERED = "delivered"
PARTNER_ACCEPTED = "accepted"
PARTNER_PICKED_UP = "picked_up"

# Local order statuses written by this service
LOCAL_CANCELLED = "CANCELLED"
LOCAL_DELIVERED = "DELIVERED"
LOCAL_ACCEPTED = "ACCEPTED"
LOCAL_PICKED_UP = "PICKED UP"

# Local statuses the reconciliation poll still watches
RECONCILABLE_LOCAL_STATUSES = frozenset({"PENDING", "ACCEPTED", "CONFIRMED"})

_CANCELLED_ALIASES = frozenset({"cancelled", "canceled", "cancellation", "rejected", "voided"})
_DELIVERED_ALIASES = frozenset({"delivered", "completed"})
_ACCEPTED_ALIASES = frozenset({"accepted", "assigned"})
_PICKED_UP_ALIASES = frozenset({"picked_up", "pickedup", "picked up"})

_PARTNER_TO_LOCAL = {
    PARTNER_CANCELLED: LOCAL_CANCELLED,
    PARTNER_DELIVERED: LOCAL_DELIVERED,
    PARTNER_ACCEPTED: LOCAL_ACCEPTED,
    PARTNER_PICKED_UP: LOCAL_PICKED_UP,
}

# Only terminal transitions are taken from polling; progress comes from events
_POLL_STATUSES = frozenset({PARTNER_CANCELLED, PARTNER_DELIVERED})


def normalize_partner_status(raw: Any) -> str | None:
    """Fold a partner status spelling into the canonical vocabulary.

    Unknown statuses are returned lowercased and stripped; blank input
    yields None.

    Examples:
        >>> normalize_partner_status("CANCELED")
        'cancelled'
        >>> normalize_partner_status("cancellation_requested")
        'cancelled'
        >>> normalize_partner_status("enroute_to_dropoff")
        'enroute_to_dropoff'
    """
    if raw is None:
        return None
    status = str(raw).strip().lower()
    if not status:
        return None
    if status in _CANCELLED_ALIASES or "cancel" in status:
        return PARTNER_CANCELLED
    if status in _DELIVERED_ALIASES:
        return PARTNER_DELIVERED
    if status in _ACCEPTED_ALIASES:
        return PARTNER_ACCEPTED
    if status in _PICKED_UP_ALIASES:
        return PARTNER_PICKED_UP
    return status


def local_status_for(raw: Any, *, from_poll: bool = False) -> str | None:
    """Local order status for a partner status, or None when unmapped.

    Polling only ever produces terminal transitions (CANCELLED/DELIVERED).
    """
    normalized = normalize_partner_status(raw)
    if normalized is None:
        return None
    if from_poll and normalized not in _POLL_STATUSES:
        return None
    return _PARTNER_TO_LOCAL.get(normalized)


def is_terminal_local_status(status: Any) -> bool:
    """True once an order is cancelled or delivered locally."""
    return normalize_partner_status(status) in _POLL_STATUSES


def is_reconcilable_local_status(status: Any) -> bool:
    if status is None:
        return False
    return str(status).strip().upper() in RECONCILABLE_LOCAL_STATUSES


def should_apply_remote_update(observed_at: datetime, local_updated_at: Any) -> bool:
    """Last-write-wins: apply unless the local write is strictly newer."""
    local = parse_datetime(local_updated_at)
    if local is None:
        return True
    return observed_at >= local
