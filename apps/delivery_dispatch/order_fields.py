"""Field extraction for shape-varying order payloads.

Inbound orders come from several upstream shapes (webhook payloads, stored
snapshots, restored rows), so every field is resolved through an explicit
priority list of candidate keys. The first present, non-empty candidate wins.
"""

from __future__ import annotations

import json
import logging
import math
from collections.abc import Iterable, Mapping
from datetime import UTC, datetime
from typing import Any

logger = logging.getLogger(__name__)

ORDER_ID_KEYS = ("id", "order_id", "orderId", "order_number", "orderNumber", "external_delivery_id")
ORDER_TYPE_KEYS = ("type", "order_type", "orderType")
DELIVERY_TIME_KEYS = (
    "delivery_time",
    "deliveryTime",
    "delivery_datetime",
    "deliveryDateTime",
    "scheduled_delivery_time",
    "scheduledDeliveryTime",
    "estimated_delivery_time",
    "estimatedDeliveryTime",
)
SENT_FLAG_KEYS = ("sent_to_doordash", "sentToDoordash")

DELIVERY_ORDER_TYPE = "delivery"

# Epoch values above this are milliseconds (1e11 seconds is year 5138)
EPOCH_MILLIS_THRESHOLD = 1e11


def is_blank(value: Any) -> bool:
    """True for None, empty/whitespace strings and empty containers."""
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, (dict, list, tuple)):
        return not value
    return False


def get_path(data: Mapping[str, Any] | None, path: str) -> Any:
    """Resolve a dotted path (``"restaurant.street"``) or return None."""
    current: Any = data
    for part in path.split("."):
        if not isinstance(current, Mapping):
            return None
        current = current.get(part)
    return current


def first_present(data: Mapping[str, Any] | None, paths: Iterable[str]) -> Any:
    """Return the first non-blank value among candidate paths."""
    if not data:
        return None
    for path in paths:
        value = get_path(data, path)
        if not is_blank(value):
            return value
    return None


def first_text(data: Mapping[str, Any] | None, paths: Iterable[str]) -> str | None:
    """Like first_present, but stringified and stripped."""
    value = first_present(data, paths)
    if value is None:
        return None
    return str(value).strip()


def load_snapshot(raw: Any) -> dict[str, Any] | None:
    """Decode a raw payload snapshot stored as dict or JSON string."""
    if isinstance(raw, Mapping):
        return dict(raw)
    if isinstance(raw, (str, bytes)) and raw:
        try:
            decoded = json.loads(raw)
        except ValueError:
            logger.warning("Ignoring raw_data snapshot that is not valid JSON")
            return None
        return decoded if isinstance(decoded, dict) else None
    return None


def merged_order_data(order: Mapping[str, Any]) -> dict[str, Any]:
    """Merge an order's raw snapshot over its top-level fields."""
    merged = {key: value for key, value in order.items() if key != "raw_data"}
    snapshot = load_snapshot(order.get("raw_data"))
    if snapshot:
        merged.update({key: value for key, value in snapshot.items() if value is not None})
    return merged


def resolve_order_id(data: Mapping[str, Any] | None) -> str | None:
    """Order id from the first present candidate key, as a string."""
    return first_text(data, ORDER_ID_KEYS)


def resolve_order_type(data: Mapping[str, Any] | None) -> str:
    value = first_text(data, ORDER_TYPE_KEYS)
    return value.lower() if value else ""


def is_delivery_order(data: Mapping[str, Any] | None) -> bool:
    return resolve_order_type(data) == DELIVERY_ORDER_TYPE


def is_marked_sent(data: Mapping[str, Any] | None) -> bool:
    """Read the sent flag, tolerating stringly and integer encodings."""
    value = first_present(data, SENT_FLAG_KEYS)
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    if isinstance(value, str):
        return value.strip().lower() in ("true", "1", "yes")
    return False


def parse_datetime(value: Any) -> datetime | None:
    """Parse a datetime, ISO-8601 string or epoch number into aware UTC.

    Naive values are taken as UTC. Epoch numbers larger than 1e11 are
    treated as milliseconds. Unparsable input yields None.
    """
    if value is None or isinstance(value, bool):
        return None

    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, (int, float)):
        if not math.isfinite(value):
            return None
        seconds = value / 1000 if abs(value) > EPOCH_MILLIS_THRESHOLD else value
        try:
            return datetime.fromtimestamp(seconds, tz=UTC)
        except (OverflowError, OSError, ValueError):
            return None
    elif isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        if text.endswith(("Z", "z")):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None
    else:
        return None

    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)


def extract_delivery_time(data: Mapping[str, Any] | None) -> datetime | None:
    """Requested delivery moment, checking top-level keys then ``delivery``."""
    if not data:
        return None
    for key in DELIVERY_TIME_KEYS:
        parsed = parse_datetime(data.get(key))
        if parsed is not None:
            return parsed

    delivery = data.get("delivery")
    if isinstance(delivery, Mapping):
        return extract_delivery_time(delivery)
    return None
