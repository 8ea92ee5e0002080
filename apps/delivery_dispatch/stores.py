"""Order store and merchant directory interfaces.

The dispatch pipeline reads and mutates orders only through OrderStore.
Implementations may be sync or async; callers wrap every call in
``maybe_await`` so either works. ``InMemoryOrderStore`` backs local runs and
tests.
"""

from __future__ import annotations

import inspect
import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from typing import Any, Protocol, TypeVar

from apps.delivery_dispatch.order_fields import (
    extract_delivery_time,
    first_text,
    is_marked_sent,
    load_snapshot,
    resolve_order_id,
    resolve_order_type,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

STORE_ID_KEYS = ("store_id", "restaurant_id", "merchant_id", "restaurant.id")


async def maybe_await(value: T | Any) -> T:
    """Await ``value`` if it is awaitable, else return it unchanged."""
    if inspect.isawaitable(value):
        return await value
    return value


@dataclass
class StoredOrder:
    """Persisted order as seen by the dispatch pipeline.

    Attributes:
        id: Order id (also used as Drive external_delivery_id)
        order_type: "delivery", "pickup", ...
        status: Local order status (PENDING, ACCEPTED, DELIVERED, ...)
        raw_data: Raw payload snapshot (dict or JSON string)
        delivery_time: Requested delivery moment, if known
        sent_to_doordash: Authoritative "already dispatched" flag
        doordash_order_id: Partner dispatch id once created
        doordash_tracking_url: Partner tracking link once known
        updated_at: Timestamp of the last local status write
        store_id: Merchant/store key for MerchantDirectory lookups
    """

    id: str
    order_type: str = ""
    status: str | None = None
    raw_data: dict[str, Any] | str | None = None
    delivery_time: datetime | None = None
    sent_to_doordash: bool = False
    doordash_order_id: str | None = None
    doordash_tracking_url: str | None = None
    updated_at: datetime | None = None
    store_id: str | None = None

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> StoredOrder:
        """Build a record from an inbound order payload.

        Raises:
            ValueError: If the payload carries no order id
        """
        order_id = resolve_order_id(payload)
        if not order_id:
            raise ValueError("Order payload has no id")
        return cls(
            id=order_id,
            order_type=resolve_order_type(payload),
            status=first_text(payload, ("status", "order_status")),
            raw_data=dict(payload),
            delivery_time=extract_delivery_time(payload),
            sent_to_doordash=is_marked_sent(payload),
            doordash_order_id=first_text(payload, ("doordash_order_id",)),
            doordash_tracking_url=first_text(payload, ("doordash_tracking_url",)),
            store_id=first_text(payload, STORE_ID_KEYS),
        )

    def snapshot(self) -> dict[str, Any] | None:
        """Decoded raw payload snapshot, if any."""
        return load_snapshot(self.raw_data)

    def to_order_data(self) -> dict[str, Any]:
        """Flat order dict as consumed by the scheduler and translator."""
        data: dict[str, Any] = {
            "id": self.id,
            "order_type": self.order_type,
            "status": self.status,
            "raw_data": self.raw_data,
            "sent_to_doordash": self.sent_to_doordash,
            "doordash_order_id": self.doordash_order_id,
            "doordash_tracking_url": self.doordash_tracking_url,
            "store_id": self.store_id,
        }
        if self.delivery_time is not None:
            data["delivery_time"] = self.delivery_time
        return data


class OrderStore(Protocol):
    """Persistence for orders. Methods may be sync or async."""

    def get_by_id(self, order_id: str) -> Any:
        """Return StoredOrder | None."""
        ...

    def get_all(self, limit: int) -> Any:
        """Return up to ``limit`` StoredOrders, most recent first."""
        ...

    def update_status(self, order_id: str, status: str) -> Any:
        """Write a local status; returns bool (found)."""
        ...

    def mark_sent(self, order_id: str, dispatch_id: str | None, tracking_url: str | None) -> Any:
        """Set the sent flag plus partner id/tracking; returns bool (found)."""
        ...

    def upsert(self, order: StoredOrder) -> Any:
        """Insert or update an order; returns the stored StoredOrder."""
        ...


class MerchantDirectory(Protocol):
    """Merchant lookups keyed by store id."""

    def lookup(self, store_id: str) -> Any:
        """Return ``{name, address, phone}`` or None."""
        ...


@dataclass
class InMemoryOrderStore:
    """Dict-backed OrderStore.

    ``upsert`` never clears dispatch state: the sent flag is sticky and a
    missing partner id/tracking URL keeps the stored value.
    """

    clock: Callable[[], datetime] = field(default=lambda: datetime.now(UTC))
    _orders: dict[str, StoredOrder] = field(default_factory=dict)

    def get_by_id(self, order_id: str) -> StoredOrder | None:
        order = self._orders.get(str(order_id))
        return replace(order) if order else None

    def get_by_dispatch_id(self, dispatch_id: str) -> StoredOrder | None:
        for order in self._orders.values():
            if order.doordash_order_id == dispatch_id:
                return replace(order)
        return None

    def get_all(self, limit: int) -> list[StoredOrder]:
        ordered = sorted(
            self._orders.values(),
            key=lambda o: o.updated_at or datetime.min.replace(tzinfo=UTC),
            reverse=True,
        )
        return [replace(order) for order in ordered[:limit]]

    def update_status(self, order_id: str, status: str) -> bool:
        order = self._orders.get(str(order_id))
        if order is None:
            return False
        order.status = status
        order.updated_at = self.clock()
        return True

    def mark_sent(self, order_id: str, dispatch_id: str | None, tracking_url: str | None) -> bool:
        order = self._orders.get(str(order_id))
        if order is None:
            return False
        order.sent_to_doordash = True
        if dispatch_id:
            order.doordash_order_id = dispatch_id
        if tracking_url:
            order.doordash_tracking_url = tracking_url
        return True

    def upsert(self, order: StoredOrder) -> StoredOrder:
        existing = self._orders.get(order.id)
        stored = replace(order, updated_at=order.updated_at or self.clock())
        if existing is not None:
            stored.sent_to_doordash = existing.sent_to_doordash or order.sent_to_doordash
            stored.doordash_order_id = order.doordash_order_id or existing.doordash_order_id
            stored.doordash_tracking_url = (
                order.doordash_tracking_url or existing.doordash_tracking_url
            )
        self._orders[order.id] = stored
        return replace(stored)

    def __len__(self) -> int:
        return len(self._orders)


@dataclass
class InMemoryMerchantDirectory:
    """Dict-backed MerchantDirectory."""

    merchants: dict[str, dict[str, Any]] = field(default_factory=dict)

    def lookup(self, store_id: str) -> dict[str, Any] | None:
        return self.merchants.get(str(store_id))
