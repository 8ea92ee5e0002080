"""
Pydantic schemas for the Delivery Dispatch service.

Defines the DoorDash Drive create-delivery request and the result values
passed between the client, scheduler and coordinator.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal, TypeAlias

from pydantic import BaseModel, Field

# ============================================================================
# Type Aliases
# ============================================================================

ScheduleStatus: TypeAlias = Literal["scheduled", "dispatched", "skipped"]

# Outcome status is either the partner status of a fresh delivery (free text)
# or one of: existing, scheduled, skipped, failed
OUTCOME_EXISTING = "existing"
OUTCOME_SCHEDULED = "scheduled"
OUTCOME_SKIPPED = "skipped"
OUTCOME_FAILED = "failed"


# ============================================================================
# Partner Payload
# ============================================================================


class AddressComponents(BaseModel):
    """Structured dropoff address as accepted by Drive."""

    street_address: str
    city: str
    state: str
    zip_code: str
    country: str = "US"


class DispatchPayload(BaseModel):
    """
    DoorDash Drive create-delivery request.

    Exactly one of ``dropoff_address`` / ``dropoff_address_components`` is set.
    Monetary fields are integer cents. Unset optional fields are omitted from
    the wire body.

    Examples:
        >>> payload = DispatchPayload(
        ...     external_delivery_id="1001",
        ...     pickup_address="500 Market St, San Francisco, CA, 94105, US",
        ...     dropoff_address="1 Main St, Springfield, IL 62704, US",
        ...     dropoff_phone_number="+15555550100",
        ... )
        >>> payload.to_wire()["external_delivery_id"]
        '1001'
    """

    external_delivery_id: str = Field(..., min_length=1)
    pickup_address: str = Field(..., min_length=10)
    pickup_phone_number: str | None = None
    pickup_business_name: str | None = None
    dropoff_address: str | None = None
    dropoff_address_components: AddressComponents | None = None
    dropoff_phone_number: str = ""
    dropoff_contact_given_name: str | None = None
    dropoff_contact_family_name: str | None = None
    dropoff_instructions: str | None = None
    order_value: int | None = Field(default=None, description="Order value in cents")
    tip: int | None = Field(default=None, description="Tip in cents")

    def to_wire(self) -> dict[str, Any]:
        """JSON body for ``POST /deliveries``."""
        return self.model_dump(exclude_none=True)


# ============================================================================
# Result Values
# ============================================================================


class DispatchResult(BaseModel):
    """Normalized response of a DispatchClient call."""

    id: str | None = None
    external_id: str | None = None
    status: str | None = None
    tracking_url: str | None = None
    raw: dict[str, Any] = Field(default_factory=dict)

    @property
    def is_existing(self) -> bool:
        """True when the partner reported a duplicate external id (409)."""
        return self.status == OUTCOME_EXISTING


class DispatchOutcome(BaseModel):
    """Result of DispatchCoordinator.dispatch() for one order."""

    order_id: str | None = None
    id: str | None = None
    status: str
    tracking_url: str | None = None
    reason: str | None = None
    scheduled_time: datetime | None = None
    delivery_time: datetime | None = None


class ScheduleResult(BaseModel):
    """Result of DeliveryScheduler.schedule()."""

    status: ScheduleStatus
    order_id: str | None = None
    scheduled_time: datetime | None = None
    delivery_time: datetime | None = None
    reason: str | None = None
    outcome: DispatchOutcome | None = Field(
        default=None, description="Sink result when dispatched immediately"
    )


class ReconciliationReport(BaseModel):
    """Counters for one reconciliation pass."""

    checked: int = 0
    updated: int = 0
    not_found: int = 0
    errors: int = 0


class PartnerEventResult(BaseModel):
    """Result of applying one partner push event."""

    applied: bool
    order_id: str | None = None
    local_status: str | None = None
    reason: str | None = None
