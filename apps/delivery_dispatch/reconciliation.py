"""
DoorDash status reconciliation.

Keeps local order status in sync with DoorDash when push notifications are
missed. A periodic pass polls the partner for every locally pending,
accepted or confirmed order that already has a dispatch id and writes
terminal transitions (CANCELLED / DELIVERED) back to the order store.

Partner push events are applied through the same last-write-wins policy
via ``apply_partner_event``.

Example:
    >>> loop = ReconciliationLoop(store, client, interval_seconds=120)
    >>> task = asyncio.create_task(loop.run_periodic_loop())
    >>> ...
    >>> loop.stop()
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Mapping
from datetime import UTC, datetime
from typing import Any

from apps.delivery_dispatch.doordash_client import (
    DoorDashApiError,
    DoorDashClient,
    DoorDashNotFoundError,
)
from apps.delivery_dispatch.metrics import reconciliation_errors_total, reconciliation_updates_total
from apps.delivery_dispatch.order_fields import first_text, parse_datetime
from apps.delivery_dispatch.schemas import PartnerEventResult, ReconciliationReport
from apps.delivery_dispatch.status import (
    is_reconcilable_local_status,
    local_status_for,
    should_apply_remote_update,
)
from apps.delivery_dispatch.stores import OrderStore, StoredOrder, maybe_await
from libs.common.exceptions import ConfigurationError
from libs.common.logging import order_context

logger = logging.getLogger(__name__)

EVENT_DELIVERY_ID_FIELDS = ("delivery_id", "id", "deliveryId", "data.delivery_id")
EVENT_EXTERNAL_ID_FIELDS = ("external_delivery_id", "externalDeliveryId", "data.external_delivery_id")
EVENT_STATUS_FIELDS = ("status", "delivery_status", "state", "data.status")
UPDATED_AT_FIELDS = ("updated_at", "data.updated_at")


class ReconciliationLoop:
    """
    Periodic DoorDash status poll plus partner push-event handling.

    Attributes:
        store: OrderStore to read orders from and write statuses to
        client: DoorDashClient used for status lookups
        interval_seconds: Seconds between passes
        initial_delay_seconds: Delay before the first pass
        batch_limit: Max orders read per pass
    """

    def __init__(
        self,
        store: OrderStore,
        client: DoorDashClient,
        interval_seconds: float = 120,
        initial_delay_seconds: float = 30,
        batch_limit: int = 100,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.store = store
        self.client = client
        self.interval_seconds = interval_seconds
        self.initial_delay_seconds = initial_delay_seconds
        self.batch_limit = batch_limit
        self.clock = clock or (lambda: datetime.now(UTC))
        self._stop_event = asyncio.Event()

    def stop(self) -> None:
        """Stop the periodic reconciliation loop."""
        self._stop_event.set()

    async def _wait(self, seconds: float) -> bool:
        """Sleep up to ``seconds``; True if stop() was called meanwhile."""
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=max(seconds, 0))
        except TimeoutError:
            return False
        return True

    async def run_periodic_loop(self) -> None:
        """Run one delayed initial pass, then a pass every interval, until stopped."""
        if await self._wait(self.initial_delay_seconds):
            return
        while not self._stop_event.is_set():
            try:
                report = await self.run_once()
                if report.updated:
                    logger.info(
                        f"Reconciliation updated {report.updated} order(s)",
                        extra=report.model_dump(),
                    )
            except ConfigurationError as exc:
                logger.warning(
                    "Periodic reconciliation skipped: DoorDash not configured",
                    extra={"error": str(exc), "error_type": "configuration"},
                )
            except Exception as exc:
                # Store backends raise their own error types
                logger.error(
                    "Periodic reconciliation failed",
                    exc_info=True,
                    extra={"error": str(exc), "error_type": type(exc).__name__},
                )
            if await self._wait(self.interval_seconds):
                break

    async def run_once(self) -> ReconciliationReport:
        """
        Run a single reconciliation pass.

        Returns:
            ReconciliationReport with checked/updated/not_found/errors counts

        Raises:
            ConfigurationError: If DoorDash credentials are missing
        """
        report = ReconciliationReport()
        started_at = self.clock()
        orders: list[StoredOrder] = await maybe_await(self.store.get_all(self.batch_limit))

        for order in orders:
            if not order.doordash_order_id or not is_reconcilable_local_status(order.status):
                continue
            report.checked += 1
            with order_context(order.id):
                await self._reconcile_order(order, started_at, report)

        logger.debug("Reconciliation pass complete", extra=report.model_dump())
        return report

    async def _reconcile_order(
        self, order: StoredOrder, started_at: datetime, report: ReconciliationReport
    ) -> None:
        dispatch_id = order.doordash_order_id or ""
        try:
            result = await self.client.get_status(dispatch_id)
        except DoorDashNotFoundError:
            # Expected until the partner has created the delivery
            report.not_found += 1
            return
        except (DoorDashApiError, ValueError) as exc:
            report.errors += 1
            reconciliation_errors_total.inc()
            logger.info(
                f"Could not fetch DoorDash status for order {order.id}: {exc}",
                extra={"dispatch_id": dispatch_id, "error_type": type(exc).__name__},
            )
            return

        local_status = local_status_for(result.status, from_poll=True)
        if local_status is None or local_status == (order.status or "").strip().upper():
            return

        observed_at = parse_datetime(first_text(result.raw, UPDATED_AT_FIELDS)) or started_at
        if not should_apply_remote_update(observed_at, order.updated_at):
            logger.info(
                f"Skipping stale DoorDash status {result.status} for order {order.id}",
                extra={"observed_at": observed_at.isoformat()},
            )
            return

        try:
            updated = await maybe_await(self.store.update_status(order.id, local_status))
        except Exception as exc:
            report.errors += 1
            logger.error(
                f"Failed to write status {local_status} for order {order.id}: {exc}",
                exc_info=True,
            )
            return

        if updated:
            report.updated += 1
            reconciliation_updates_total.labels(source="poll", status=local_status).inc()
            logger.info(
                f"Updated order {order.id} status: {order.status} -> {local_status}",
                extra={"dispatch_id": dispatch_id, "partner_status": result.status},
            )

    async def _find_order(
        self, delivery_id: str | None, external_id: str | None
    ) -> StoredOrder | None:
        if delivery_id:
            finder = getattr(self.store, "get_by_dispatch_id", None)
            if finder is not None:
                order = await maybe_await(finder(delivery_id))
                if order is not None:
                    return order
            else:
                orders = await maybe_await(self.store.get_all(self.batch_limit))
                for candidate in orders:
                    if candidate.doordash_order_id == delivery_id:
                        return candidate
        if external_id:
            return await maybe_await(self.store.get_by_id(external_id))
        return None

    async def apply_partner_event(self, event: Mapping[str, Any]) -> PartnerEventResult:
        """
        Apply a DoorDash push notification to the matching order.

        Unknown orders and unmapped statuses are reported in the result,
        never raised.
        """
        delivery_id = first_text(event, EVENT_DELIVERY_ID_FIELDS)
        external_id = first_text(event, EVENT_EXTERNAL_ID_FIELDS)
        partner_status = first_text(event, EVENT_STATUS_FIELDS)

        if not delivery_id and not external_id:
            return PartnerEventResult(applied=False, reason="missing-delivery-id")

        order = await self._find_order(delivery_id, external_id)
        if order is None:
            logger.warning(
                f"Order not found for DoorDash delivery {delivery_id or external_id}",
                extra={"dispatch_id": delivery_id, "external_delivery_id": external_id},
            )
            return PartnerEventResult(applied=False, reason="order-not-found")

        with order_context(order.id):
            local_status = local_status_for(partner_status)
            if local_status is None:
                logger.info(f"Ignoring unmapped DoorDash status {partner_status!r}")
                return PartnerEventResult(
                    applied=False, order_id=order.id, reason="unmapped-status"
                )
            if local_status == (order.status or "").strip().upper():
                return PartnerEventResult(
                    applied=False, order_id=order.id, local_status=local_status, reason="unchanged"
                )

            observed_at = parse_datetime(first_text(event, UPDATED_AT_FIELDS)) or self.clock()
            if not should_apply_remote_update(observed_at, order.updated_at):
                logger.info(f"Skipping stale DoorDash event ({partner_status})")
                return PartnerEventResult(
                    applied=False, order_id=order.id, local_status=local_status, reason="stale"
                )

            updated = await maybe_await(self.store.update_status(order.id, local_status))
            if not updated:
                return PartnerEventResult(
                    applied=False, order_id=order.id, reason="order-not-found"
                )

            reconciliation_updates_total.labels(source="event", status=local_status).inc()
            logger.info(f"Updated order {order.id} status: {order.status} -> {local_status}")
            return PartnerEventResult(applied=True, order_id=order.id, local_status=local_status)
