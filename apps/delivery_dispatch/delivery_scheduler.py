"""
Per-order dispatch timers.

Decides, for each delivery order, whether the DoorDash delivery should be
created now or a fixed buffer before the requested delivery time, and holds
at most one armed timer per order id.

Per order id the scheduler moves through:
    Idle (no entry) -> Scheduled (timer armed) -> Dispatching (timer fired,
    sink running) -> Idle

Rescheduling an order replaces its armed timer (last write wins). A fired
entry is removed *before* the sink runs, so a re-entrant schedule() for the
same order during dispatch arms a fresh timer instead of being swallowed.

Example:
    >>> scheduler = DeliveryScheduler(timer=APSchedulerTimer(), buffer_minutes=30)
    >>> scheduler.sink = coordinator
    >>> result = await scheduler.schedule(order, {"source": "webhook"})
    >>> result.status
    'scheduled'
"""

from __future__ import annotations

import itertools
import logging
from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from functools import partial
from typing import Any, Literal, Protocol

from apps.delivery_dispatch.metrics import scheduled_entries_current, schedule_results_total
from apps.delivery_dispatch.order_fields import (
    extract_delivery_time,
    is_delivery_order,
    is_marked_sent,
    merged_order_data,
    resolve_order_id,
)
from apps.delivery_dispatch.schemas import DispatchOutcome, ScheduleResult
from apps.delivery_dispatch.stores import OrderStore, maybe_await
from apps.delivery_dispatch.timers import Timer

logger = logging.getLogger(__name__)

DEFAULT_RESTORE_LIMIT = 500


@dataclass
class DispatchRequest:
    """What the scheduler hands to the dispatch sink."""

    order_data: dict[str, Any]
    trigger: Literal["scheduled", "immediate"]
    scheduled_time: datetime | None = None
    delivery_time: datetime | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


class DispatchSink(Protocol):
    """Receives orders when it is time to create the delivery."""

    async def send(self, request: DispatchRequest) -> DispatchOutcome | None:
        """Dispatch one order. Failures are handled and logged by the sink."""
        ...


@dataclass
class ScheduleEntry:
    """Armed timer for one order."""

    order_id: str
    scheduled_at: datetime
    delivery_at: datetime
    timer_handle: str
    order_data: dict[str, Any]
    metadata: dict[str, Any] = field(default_factory=dict)


class DeliveryScheduler:
    """
    Timing state machine for DoorDash dispatch.

    Attributes:
        timer: Clock/timer capability (APScheduler in production)
        buffer_minutes: Lead time before delivery at which to dispatch
        sink: Dispatch sink; wired after construction since the coordinator
            depends on the scheduler
    """

    def __init__(
        self,
        timer: Timer,
        buffer_minutes: int = 30,
        sink: DispatchSink | None = None,
    ) -> None:
        self.timer = timer
        self.buffer_minutes = buffer_minutes
        self.sink = sink
        self._entries: dict[str, ScheduleEntry] = {}
        self._sequence = itertools.count(1)

    @property
    def buffer(self) -> timedelta:
        return timedelta(minutes=self.buffer_minutes)

    def _require_sink(self) -> DispatchSink:
        if self.sink is None:
            raise RuntimeError("DeliveryScheduler has no dispatch sink attached")
        return self.sink

    def _record(self, result: ScheduleResult) -> ScheduleResult:
        schedule_results_total.labels(status=result.status, reason=result.reason or "none").inc()
        return result

    async def schedule(
        self, order: Mapping[str, Any], metadata: Mapping[str, Any] | None = None
    ) -> ScheduleResult:
        """
        Schedule (or immediately dispatch) one order.

        Args:
            order: Order payload, optionally carrying a ``raw_data`` snapshot
            metadata: Free-form context (``source``, ``reason``) kept on the entry

        Returns:
            ScheduleResult with status ``scheduled``, ``dispatched`` or ``skipped``

        Raises:
            RuntimeError: If an immediate dispatch is needed but no sink is attached
        """
        metadata = dict(metadata or {})
        data = merged_order_data(order)

        order_id = resolve_order_id(data)
        if not order_id:
            return self._record(ScheduleResult(status="skipped", reason="missing-order-id"))
        if not is_delivery_order(data):
            return self._record(
                ScheduleResult(status="skipped", order_id=order_id, reason="not-delivery-order")
            )
        if is_marked_sent(data):
            return self._record(
                ScheduleResult(status="skipped", order_id=order_id, reason="already-sent")
            )

        now = self.timer.now()
        delivery_time = extract_delivery_time(data)

        if delivery_time is None or delivery_time <= now + self.buffer:
            reason = "no-delivery-time" if delivery_time is None else "within-buffer"
            self._remove(order_id)
            logger.info(
                f"Dispatching order {order_id} immediately ({reason})",
                extra={"order_id": order_id, "source": metadata.get("source")},
            )
            outcome = await self._require_sink().send(
                DispatchRequest(
                    order_data=dict(order),
                    trigger="immediate",
                    delivery_time=delivery_time,
                    metadata={**metadata, "reason": reason},
                )
            )
            return self._record(
                ScheduleResult(
                    status="dispatched",
                    order_id=order_id,
                    delivery_time=delivery_time,
                    reason=reason,
                    outcome=outcome,
                )
            )

        scheduled_at = delivery_time - self.buffer
        if self._remove(order_id):
            logger.info(
                f"Replacing existing schedule for order {order_id}",
                extra={"order_id": order_id},
            )

        key = f"dispatch:{order_id}:{next(self._sequence)}"
        handle = self.timer.call_at(key, scheduled_at, partial(self._fire, order_id, key))
        self._entries[order_id] = ScheduleEntry(
            order_id=order_id,
            scheduled_at=scheduled_at,
            delivery_at=delivery_time,
            timer_handle=handle,
            order_data=dict(order),
            metadata=metadata,
        )
        scheduled_entries_current.set(len(self._entries))

        logger.info(
            f"Scheduled DoorDash delivery for order {order_id} at {scheduled_at.isoformat()} "
            f"(delivery: {delivery_time.isoformat()})",
            extra={"order_id": order_id, "source": metadata.get("source")},
        )
        return self._record(
            ScheduleResult(
                status="scheduled",
                order_id=order_id,
                scheduled_time=scheduled_at,
                delivery_time=delivery_time,
            )
        )

    async def _fire(self, order_id: str, handle: str) -> None:
        """Timer callback: release the entry, then run the sink."""
        entry = self._entries.get(order_id)
        if entry is None or entry.timer_handle != handle:
            logger.debug(f"Ignoring stale timer {handle} for order {order_id}")
            return

        del self._entries[order_id]
        scheduled_entries_current.set(len(self._entries))

        try:
            await self._require_sink().send(
                DispatchRequest(
                    order_data=entry.order_data,
                    trigger="scheduled",
                    scheduled_time=entry.scheduled_at,
                    delivery_time=entry.delivery_at,
                    metadata={**entry.metadata, "source": "scheduler"},
                )
            )
        except Exception as e:
            # Not retried here; reconciliation or the next inbound event recovers
            logger.error(
                f"Error executing scheduled dispatch for order {order_id}: {e}",
                exc_info=True,
                extra={"order_id": order_id},
            )

    def _remove(self, order_id: str) -> bool:
        entry = self._entries.pop(order_id, None)
        if entry is None:
            return False
        self.timer.cancel(entry.timer_handle)
        scheduled_entries_current.set(len(self._entries))
        return True

    def cancel(self, order_id: str, reason: str | None = None) -> bool:
        """Disarm any entry for ``order_id``; returns True if one existed."""
        removed = self._remove(str(order_id))
        if removed:
            logger.info(
                f"Cancelled scheduled delivery for order {order_id}: {reason or 'no reason given'}",
                extra={"order_id": str(order_id)},
            )
        return removed

    def clear(self, order_id: str) -> bool:
        """Release the entry after a dispatch; same effect as cancel()."""
        removed = self._remove(str(order_id))
        if removed:
            logger.debug(f"Cleared schedule entry for order {order_id}")
        return removed

    def stop(self) -> None:
        """Disarm every outstanding timer."""
        for entry in list(self._entries.values()):
            self.timer.cancel(entry.timer_handle)
        count = len(self._entries)
        self._entries.clear()
        scheduled_entries_current.set(0)
        logger.info(f"Delivery scheduler stopped ({count} pending timers cancelled)")

    def pending(self) -> list[ScheduleEntry]:
        """Snapshot of live entries, soonest first."""
        return [replace(entry) for entry in sorted(self._entries.values(), key=lambda e: e.scheduled_at)]

    def get_entry(self, order_id: str) -> ScheduleEntry | None:
        entry = self._entries.get(str(order_id))
        return replace(entry) if entry else None

    async def restore(self, store: OrderStore, limit: int = DEFAULT_RESTORE_LIMIT) -> int:
        """
        Re-arm timers for persisted, unsent delivery orders.

        Orders already sent, of another type, or without a raw snapshot are
        skipped. One order failing does not abort the rest.

        Returns:
            Number of orders re-armed (status ``scheduled``)
        """
        orders = await maybe_await(store.get_all(limit))
        restored = 0
        for stored in orders:
            if stored.sent_to_doordash:
                continue
            if (stored.order_type or "").strip().lower() != "delivery":
                continue
            if not stored.snapshot():
                continue
            try:
                result = await self.schedule(stored.to_order_data(), {"source": "restore"})
            except Exception as e:
                logger.error(
                    f"Failed to restore schedule for order {stored.id}: {e}",
                    exc_info=True,
                    extra={"order_id": stored.id},
                )
                continue
            if result.status == "scheduled":
                restored += 1

        logger.info(
            f"Restored {restored} scheduled deliveries",
            extra={"checked": len(orders), "restored": restored},
        )
        return restored
