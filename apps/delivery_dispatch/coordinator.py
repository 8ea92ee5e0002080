"""
Dispatch coordinator - single entry point per inbound order event.

``dispatch()`` applies the idempotency, type and status gates, hands the order
to the DeliveryScheduler and reports a DispatchOutcome. The coordinator is
also the scheduler's dispatch sink: ``send()`` re-checks the sent flag,
translates the order, creates the DoorDash delivery and persists the result.

Every per-order error degrades to a ``failed`` or ``skipped`` outcome; one
order never aborts another.

Example:
    >>> coordinator = DispatchCoordinator(scheduler, client, translator, store, merchants)
    >>> outcome = await coordinator.dispatch(order, {"source": "webhook"})
    >>> outcome.status
    'scheduled'
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Mapping, Sequence
from dataclasses import replace
from typing import Any

from apps.delivery_dispatch.delivery_scheduler import DeliveryScheduler, DispatchRequest
from apps.delivery_dispatch.doordash_client import (
    DoorDashApiError,
    DoorDashAuthError,
    DoorDashClient,
)
from apps.delivery_dispatch.metrics import dispatch_outcomes_total
from apps.delivery_dispatch.order_fields import (
    first_text,
    is_delivery_order,
    is_marked_sent,
    merged_order_data,
    resolve_order_id,
)
from apps.delivery_dispatch.order_translator import OrderTranslator, normalize_phone
from apps.delivery_dispatch.schemas import (
    OUTCOME_EXISTING,
    OUTCOME_FAILED,
    OUTCOME_SCHEDULED,
    OUTCOME_SKIPPED,
    DispatchOutcome,
    DispatchPayload,
    DispatchResult,
)
from apps.delivery_dispatch.status import is_terminal_local_status
from apps.delivery_dispatch.stores import (
    STORE_ID_KEYS,
    MerchantDirectory,
    OrderStore,
    StoredOrder,
    maybe_await,
)
from libs.common.exceptions import ConfigurationError, OrderValidationError
from libs.common.logging import order_context

logger = logging.getLogger(__name__)

TRACKING_RETRY_DELAYS = (1.0, 2.0)
STATUS_KEYS = ("status", "order_status")


class DispatchCoordinator:
    """
    Gates, schedules and dispatches orders to DoorDash.

    Attributes:
        scheduler: DeliveryScheduler; this coordinator becomes its sink
        client: DoorDashClient for create/status calls
        translator: OrderTranslator building the Drive payload
        store: OrderStore holding the authoritative sent flag
        merchants: Optional MerchantDirectory for pickup address lookups
    """

    def __init__(
        self,
        scheduler: DeliveryScheduler,
        client: DoorDashClient,
        translator: OrderTranslator,
        store: OrderStore,
        merchants: MerchantDirectory | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        tracking_retry_delays: Sequence[float] = TRACKING_RETRY_DELAYS,
    ) -> None:
        self.scheduler = scheduler
        self.client = client
        self.translator = translator
        self.store = store
        self.merchants = merchants
        self.sleep = sleep
        self.tracking_retry_delays = tuple(tracking_retry_delays)
        if scheduler.sink is None:
            scheduler.sink = self

    # -------------------------------------------------------------------------
    # Inbound entry point
    # -------------------------------------------------------------------------

    async def dispatch(
        self, order: Mapping[str, Any], context: Mapping[str, Any] | None = None
    ) -> DispatchOutcome:
        """
        Handle one inbound order event.

        Args:
            order: Order payload (optionally carrying ``raw_data``)
            context: Event context, e.g. ``{"source": "webhook"}``

        Returns:
            DispatchOutcome; never raises for per-order errors
        """
        context = dict(context or {})
        data = merged_order_data(order)
        order_id = resolve_order_id(data)

        if not order_id:
            logger.warning("Cannot schedule DoorDash dispatch without order id, dispatching immediately")
            return await self._send_now(order, context, "missing-order-id")

        with order_context(order_id):
            try:
                stored = await maybe_await(self.store.get_by_id(order_id))
            except Exception as e:
                logger.warning(f"Could not check whether order {order_id} was already sent: {e}")
                stored = None

            existing = self._existing_outcome(order_id, stored)
            if existing is not None:
                logger.info(f"Order {order_id} already sent to DoorDash, skipping duplicate")
                return self._count(existing)

            if not is_delivery_order(data):
                self.scheduler.cancel(order_id, "not a delivery order")
                return self._count(
                    DispatchOutcome(order_id=order_id, status=OUTCOME_SKIPPED, reason="not-delivery-order")
                )

            status = first_text(data, STATUS_KEYS) or (stored.status if stored else None)
            if is_terminal_local_status(status):
                self.scheduler.cancel(order_id, f"order status {status}")
                return self._count(
                    DispatchOutcome(order_id=order_id, status=OUTCOME_SKIPPED, reason="terminal-status")
                )

            try:
                result = await self.scheduler.schedule(order, context)
            except Exception as e:
                logger.error(
                    f"Failed to schedule DoorDash delivery for order {order_id}: {e}",
                    exc_info=True,
                )
                return await self._send_now(order, context, "scheduler-error")

            if result.status == "scheduled":
                return self._count(
                    DispatchOutcome(
                        order_id=order_id,
                        status=OUTCOME_SCHEDULED,
                        scheduled_time=result.scheduled_time,
                        delivery_time=result.delivery_time,
                    )
                )
            if result.status == "skipped":
                return self._count(
                    DispatchOutcome(order_id=order_id, status=OUTCOME_SKIPPED, reason=result.reason)
                )
            if result.outcome is None:
                return self._count(
                    DispatchOutcome(order_id=order_id, status=OUTCOME_FAILED, reason=result.reason)
                )
            return result.outcome

    async def _send_now(
        self, order: Mapping[str, Any], context: dict[str, Any], reason: str
    ) -> DispatchOutcome:
        return await self.send(
            DispatchRequest(
                order_data=dict(order),
                trigger="immediate",
                metadata={**context, "reason": reason},
            )
        )

    # -------------------------------------------------------------------------
    # Dispatch sink
    # -------------------------------------------------------------------------

    async def send(self, request: DispatchRequest) -> DispatchOutcome:
        """Create the DoorDash delivery for one order (scheduler sink)."""
        data = merged_order_data(request.order_data)
        order_id = resolve_order_id(data)
        reason = request.metadata.get("reason")

        with order_context(order_id):
            logger.info(
                f"Dispatching order {order_id or 'unknown'} to DoorDash",
                extra={
                    "trigger": request.trigger,
                    "source": request.metadata.get("source"),
                    "reason": reason,
                },
            )
            try:
                outcome = await self._create(request, data, order_id)
            except OrderValidationError as e:
                logger.warning(f"Order {order_id} cannot be dispatched: {e}")
                outcome = self._failure(request, order_id, OUTCOME_FAILED, "invalid-order")
            except ConfigurationError as e:
                logger.warning(f"DoorDash not configured, skipping order {order_id}: {e}")
                outcome = self._failure(request, order_id, OUTCOME_SKIPPED, "not-configured")
            except DoorDashAuthError as e:
                logger.error(f"DoorDash rejected credentials for order {order_id}: {e}")
                outcome = self._failure(request, order_id, OUTCOME_FAILED, "auth-error")
            except DoorDashApiError as e:
                logger.error(
                    f"Failed to send order {order_id} to DoorDash: {e}",
                    extra={"status_code": e.status_code},
                )
                outcome = self._failure(request, order_id, OUTCOME_FAILED, "api-error")
            except Exception as e:
                logger.error(f"Unexpected error dispatching order {order_id}: {e}", exc_info=True)
                outcome = self._failure(request, order_id, OUTCOME_FAILED, "unexpected-error")
            return self._count(outcome)

    async def _create(
        self, request: DispatchRequest, data: dict[str, Any], order_id: str | None
    ) -> DispatchOutcome:
        stored: StoredOrder | None = None
        if order_id:
            stored = await maybe_await(self.store.get_by_id(order_id))
            existing = self._existing_outcome(order_id, stored)
            if existing is not None:
                logger.info(f"Order {order_id} already sent to DoorDash, skipping duplicate")
                self.scheduler.clear(order_id)
                return existing
        elif is_marked_sent(data):
            return self._failure(request, None, OUTCOME_SKIPPED, "already-sent")

        merchant = await self._merchant_for(data, stored)
        payload = self.translator.translate(
            request.order_data, merchant.get("address") if merchant else None
        )
        self._apply_merchant(payload, merchant)

        result = await self.client.create_delivery(payload)

        if result.is_existing:
            dispatch_id = result.id or (stored.doordash_order_id if stored else None)
            if not dispatch_id:
                dispatch_id = await self._lookup_dispatch_id(payload.external_delivery_id)
            tracking_url = result.tracking_url or (stored.doordash_tracking_url if stored else None)
            result = result.model_copy(update={"id": dispatch_id, "tracking_url": tracking_url})
            status = OUTCOME_EXISTING
        else:
            if not result.id:
                logger.warning(f"DoorDash response missing delivery id for order {order_id}")
            if not result.tracking_url and result.id:
                result = await self._fetch_tracking(result)
            status = result.status or "created"

        if order_id:
            await self._persist(order_id, data, payload, result, stored)
            self.scheduler.clear(order_id)

        logger.info(
            f"Order {order_id} sent to DoorDash (delivery id {result.id})",
            extra={"dispatch_id": result.id, "status": status, "tracking_url": result.tracking_url},
        )
        return DispatchOutcome(
            order_id=order_id,
            id=result.id,
            status=status,
            tracking_url=result.tracking_url,
            reason=request.metadata.get("reason"),
            scheduled_time=request.scheduled_time,
            delivery_time=request.delivery_time,
        )

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    def _existing_outcome(
        self, order_id: str, stored: StoredOrder | None
    ) -> DispatchOutcome | None:
        if stored is None or not stored.sent_to_doordash:
            return None
        return DispatchOutcome(
            order_id=order_id,
            id=stored.doordash_order_id,
            status=OUTCOME_EXISTING,
            tracking_url=stored.doordash_tracking_url,
            reason="already-sent",
        )

    def _failure(
        self, request: DispatchRequest, order_id: str | None, status: str, reason: str
    ) -> DispatchOutcome:
        return DispatchOutcome(
            order_id=order_id,
            status=status,
            reason=reason,
            scheduled_time=request.scheduled_time,
            delivery_time=request.delivery_time,
        )

    def _count(self, outcome: DispatchOutcome) -> DispatchOutcome:
        label = outcome.status
        if label not in (OUTCOME_EXISTING, OUTCOME_SCHEDULED, OUTCOME_SKIPPED, OUTCOME_FAILED):
            label = "created"
        dispatch_outcomes_total.labels(status=label).inc()
        return outcome

    async def _merchant_for(
        self, data: Mapping[str, Any], stored: StoredOrder | None
    ) -> dict[str, Any] | None:
        if self.merchants is None:
            return None
        store_id = first_text(data, STORE_ID_KEYS) or (stored.store_id if stored else None)
        if not store_id:
            return None
        try:
            merchant = await maybe_await(self.merchants.lookup(store_id))
        except Exception as e:
            logger.warning(f"Could not get merchant for store {store_id}: {e}")
            return None
        return dict(merchant) if merchant else None

    def _apply_merchant(self, payload: DispatchPayload, merchant: Mapping[str, Any] | None) -> None:
        if not merchant:
            return
        if not payload.pickup_business_name and merchant.get("name"):
            payload.pickup_business_name = str(merchant["name"])
        if not payload.pickup_phone_number and merchant.get("phone"):
            payload.pickup_phone_number = normalize_phone(merchant["phone"])

    async def _lookup_dispatch_id(self, external_id: str) -> str | None:
        try:
            found = await self.client.get_status(external_id)
        except (DoorDashApiError, ValueError) as e:
            logger.info(f"Could not resolve existing DoorDash delivery for {external_id}: {e}")
            return None
        return found.id

    async def _fetch_tracking(self, result: DispatchResult) -> DispatchResult:
        """Poll status for a tracking URL the create response lacked."""
        for delay in self.tracking_retry_delays:
            await self.sleep(delay)
            try:
                status = await self.client.get_status(result.id or "")
            except (DoorDashApiError, ValueError) as e:
                logger.info(f"Tracking fetch for delivery {result.id} failed: {e}")
                continue
            if status.tracking_url:
                return result.model_copy(update={"tracking_url": status.tracking_url})
        logger.info(f"Tracking URL not available yet for delivery {result.id}")
        return result

    async def _persist(
        self,
        order_id: str,
        data: dict[str, Any],
        payload: DispatchPayload,
        result: DispatchResult,
        stored: StoredOrder | None,
    ) -> None:
        """Record dispatch id, tracking and the merged raw blob. Failures are logged only.

        The order is re-read after the partner calls so status writes that
        landed meanwhile (partner events, reconciliation) are kept.
        """
        try:
            await maybe_await(self.store.mark_sent(order_id, result.id, result.tracking_url))

            fresh = await maybe_await(self.store.get_by_id(order_id))
            record = fresh or stored or StoredOrder.from_payload({**data, "id": order_id})
            raw = record.snapshot() or dict(data)
            raw["doordash_request"] = payload.to_wire()
            raw["doordash_data"] = result.raw
            raw["doordash_response"] = {
                "id": result.id,
                "external_delivery_id": result.external_id,
                "status": result.status,
                "tracking_url": result.tracking_url,
            }
            await maybe_await(
                self.store.upsert(
                    replace(
                        record,
                        raw_data=raw,
                        sent_to_doordash=True,
                        doordash_order_id=result.id or record.doordash_order_id,
                        doordash_tracking_url=result.tracking_url or record.doordash_tracking_url,
                    )
                )
            )
        except Exception as e:
            logger.error(
                f"DoorDash delivery created but order {order_id} could not be updated: {e}",
                exc_info=True,
                extra={"dispatch_id": result.id},
            )
