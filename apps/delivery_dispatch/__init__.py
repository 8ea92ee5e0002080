"""
Delivery Dispatch - courier dispatch for restaurant orders.

This package turns inbound restaurant orders into DoorDash Drive delivery
requests, decides when to send them and keeps local order status in sync
with the partner.

Key Features:
- Buffered dispatch: deliveries are created a fixed lead time before the
  requested delivery moment, or immediately when no time is given
- Idempotent dispatch guarded by the stored sent flag
- Short-lived signed JWT credentials, cached until near expiry
- Retry logic with exponential backoff on transport failures
- Periodic status reconciliation plus push event handling

Components:
- credential_signer: DoorDash JWT creation and caching
- order_translator: Order payload to Drive request translation
- doordash_client: Drive API wrapper with error classification
- delivery_scheduler: Per-order dispatch timers
- reconciliation: Status poll loop and push event handler
- coordinator: Single entry point per inbound order event
- service: Wiring and startup/shutdown lifecycle
"""

__version__ = "0.1.0"
