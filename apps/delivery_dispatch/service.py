"""Delivery Dispatch service wiring and lifecycle.

Builds the signer, client, translator, scheduler, coordinator and
reconciliation loop from DeliveryDispatchConfig, and owns their
startup/shutdown:

Startup:
    1. Start the dispatch timer (needs a running event loop)
    2. Re-arm timers for persisted, unsent delivery orders
    3. Launch the reconciliation loop as a background task

Shutdown:
    1. Stop reconciliation and await its task
    2. Cancel outstanding timers and stop the timer
    3. Close the DoorDash HTTP client
"""

from __future__ import annotations

import asyncio
import logging
import signal
from collections.abc import Mapping
from dataclasses import dataclass, replace
from typing import Any

import httpx

from apps.delivery_dispatch.config import DeliveryDispatchConfig, get_config
from apps.delivery_dispatch.coordinator import DispatchCoordinator
from apps.delivery_dispatch.credential_signer import CredentialSigner
from apps.delivery_dispatch.delivery_scheduler import DeliveryScheduler
from apps.delivery_dispatch.doordash_client import DoorDashClient
from apps.delivery_dispatch.order_fields import merged_order_data, resolve_order_id
from apps.delivery_dispatch.order_translator import OrderTranslator
from apps.delivery_dispatch.reconciliation import ReconciliationLoop
from apps.delivery_dispatch.schemas import DispatchOutcome, PartnerEventResult
from apps.delivery_dispatch.stores import (
    InMemoryOrderStore,
    MerchantDirectory,
    OrderStore,
    StoredOrder,
    maybe_await,
)
from apps.delivery_dispatch.timers import APSchedulerTimer, ManagedTimer
from libs.common.logging import configure_logging

logger = logging.getLogger(__name__)

SERVICE_NAME = "delivery_dispatch"

# Raw blob keys written by the coordinator after a partner create
DISPATCH_AUDIT_KEYS = ("doordash_request", "doordash_data", "doordash_response")


@dataclass(slots=True)
class DispatchComponents:
    signer: CredentialSigner
    client: DoorDashClient
    translator: OrderTranslator
    timer: ManagedTimer
    scheduler: DeliveryScheduler
    coordinator: DispatchCoordinator
    reconciliation: ReconciliationLoop


def build_components(
    config: DeliveryDispatchConfig,
    store: OrderStore,
    merchants: MerchantDirectory | None = None,
    timer: ManagedTimer | None = None,
    http_client: httpx.AsyncClient | None = None,
) -> DispatchComponents:
    """Construct the pipeline in dependency order."""
    signer = CredentialSigner(
        developer_id=config.doordash_developer_id,
        key_id=config.doordash_key_id,
        signing_secret=config.doordash_signing_secret,
    )
    client = DoorDashClient(
        signer,
        base_url=config.doordash_api_url,
        timeout=config.request_timeout_seconds,
        http_client=http_client,
    )
    translator = OrderTranslator()
    timer = timer or APSchedulerTimer()
    scheduler = DeliveryScheduler(timer=timer, buffer_minutes=config.delivery_buffer_minutes)
    coordinator = DispatchCoordinator(scheduler, client, translator, store, merchants)
    reconciliation = ReconciliationLoop(
        store,
        client,
        interval_seconds=config.reconciliation_interval_seconds,
        initial_delay_seconds=config.reconciliation_initial_delay_seconds,
        batch_limit=config.reconciliation_batch_limit,
    )
    return DispatchComponents(
        signer=signer,
        client=client,
        translator=translator,
        timer=timer,
        scheduler=scheduler,
        coordinator=coordinator,
        reconciliation=reconciliation,
    )


def _keep_dispatch_audit(record: StoredOrder, existing: StoredOrder | None) -> StoredOrder:
    """Carry the stored dispatch audit keys into an inbound record's snapshot."""
    previous = existing.snapshot() if existing is not None else None
    if not previous:
        return record
    audit = {key: previous[key] for key in DISPATCH_AUDIT_KEYS if key in previous}
    if not audit:
        return record
    return replace(record, raw_data={**audit, **(record.snapshot() or {})})


class DeliveryDispatchService:
    """
    Delivery Dispatch service facade.

    A service instance is single-use: ``stop()`` closes the HTTP client and
    ends reconciliation, so ``start()`` after ``stop()`` raises. Build a new
    instance to run again.

    Examples:
        >>> service = DeliveryDispatchService(get_config(), store=InMemoryOrderStore())
        >>> await service.start()
        >>> outcome = await service.dispatch(order, {"source": "webhook"})
        >>> await service.stop()
    """

    def __init__(
        self,
        config: DeliveryDispatchConfig,
        store: OrderStore | None = None,
        merchants: MerchantDirectory | None = None,
        timer: ManagedTimer | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self.config = config
        self.store: OrderStore = store if store is not None else InMemoryOrderStore()
        self.components = build_components(config, self.store, merchants, timer, http_client)
        self.reconciliation_task: asyncio.Task[None] | None = None
        self.started = False
        self.stopped = False

    @property
    def scheduler(self) -> DeliveryScheduler:
        return self.components.scheduler

    @property
    def coordinator(self) -> DispatchCoordinator:
        return self.components.coordinator

    async def start(self) -> int:
        """Start timers, restore schedules and launch reconciliation.

        Returns:
            Number of schedules restored from the order store

        Raises:
            RuntimeError: If the service was already stopped
        """
        if self.stopped:
            raise RuntimeError("Delivery dispatch service cannot be restarted after stop()")
        if self.started:
            return 0

        if not self.config.has_doordash_credentials:
            logger.warning(
                "DoorDash credentials not configured; dispatches will be skipped",
                extra={"credentials": self.components.signer.credential_fingerprint()},
            )

        self.components.timer.start()
        restored = await self.scheduler.restore(self.store, self.config.scheduler_restore_limit)

        if self.config.reconciliation_enabled and self.config.has_doordash_credentials:
            self.reconciliation_task = asyncio.create_task(
                self.components.reconciliation.run_periodic_loop()
            )
            logger.info("Reconciliation loop started")
        else:
            logger.info("Reconciliation loop disabled")

        self.started = True
        logger.info(
            "Delivery dispatch service started",
            extra={
                "environment": self.config.environment,
                "buffer_minutes": self.config.delivery_buffer_minutes,
                "restored": restored,
            },
        )
        return restored

    async def stop(self) -> None:
        """Stop background work and release the HTTP client."""
        self.components.reconciliation.stop()
        task = self.reconciliation_task
        if task is not None and not task.done():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        self.reconciliation_task = None

        self.scheduler.stop()
        self.components.timer.shutdown(wait=False)
        await self.components.client.close()
        self.started = False
        self.stopped = True
        logger.info("Delivery dispatch service stopped")

    async def dispatch(
        self, order: Mapping[str, Any], context: Mapping[str, Any] | None = None
    ) -> DispatchOutcome:
        """Store an inbound order, then hand it to the coordinator.

        Storage failures are logged; dispatch proceeds regardless. A dispatch
        audit blob already on the stored snapshot is kept.
        """
        data = merged_order_data(order)
        if resolve_order_id(data):
            try:
                record = StoredOrder.from_payload(data)
                existing = await maybe_await(self.store.get_by_id(record.id))
                await maybe_await(self.store.upsert(_keep_dispatch_audit(record, existing)))
            except Exception as e:
                logger.error(f"Failed to store inbound order: {e}", exc_info=True)
        return await self.coordinator.dispatch(order, context)

    async def handle_partner_event(self, event: Mapping[str, Any]) -> PartnerEventResult:
        """Apply a DoorDash push notification."""
        return await self.components.reconciliation.apply_partner_event(event)

    async def test_connection(self) -> bool:
        return await self.components.client.test_connection()


async def run_service(config: DeliveryDispatchConfig) -> None:
    """Run the service until SIGINT/SIGTERM."""
    service = DeliveryDispatchService(config)
    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop_event.set)

    await service.start()
    try:
        await stop_event.wait()
    finally:
        await service.stop()


def main() -> None:
    config = get_config()
    configure_logging(service_name=SERVICE_NAME, log_level=config.log_level)
    asyncio.run(run_service(config))


if __name__ == "__main__":
    main()
