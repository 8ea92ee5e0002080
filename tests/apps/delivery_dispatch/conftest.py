"""Shared fixtures for delivery dispatch tests."""

from __future__ import annotations

import base64
from collections.abc import Awaitable, Callable, Iterator
from datetime import UTC, datetime, timedelta
from typing import Any

import pytest
import respx

from apps.delivery_dispatch.credential_signer import CredentialSigner
from apps.delivery_dispatch.delivery_scheduler import DeliveryScheduler, DispatchRequest
from apps.delivery_dispatch.doordash_client import DEFAULT_BASE_URL, DoorDashClient
from apps.delivery_dispatch.schemas import DispatchOutcome
from apps.delivery_dispatch.stores import InMemoryOrderStore

SIGNING_KEY = b"0123456789abcdef0123456789abcdef"
SIGNING_SECRET = base64.urlsafe_b64encode(SIGNING_KEY).rstrip(b"=").decode()
DEVELOPER_ID = "dev-1234567890"
KEY_ID = "key-abcdef"

NOW = datetime(2026, 10, 19, 12, 0, tzinfo=UTC)


class FakeClock:
    """Epoch-seconds clock for CredentialSigner."""

    def __init__(self, now: float = 1_760_000_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class ManualTimer:
    """Virtual-time Timer: callbacks run only when advance() passes them."""

    def __init__(self, start: datetime = NOW) -> None:
        self.current = start
        self.jobs: dict[str, tuple[datetime, Callable[[], Awaitable[None]]]] = {}
        self.cancelled: list[str] = []
        self.running = False

    def now(self) -> datetime:
        return self.current

    def call_at(self, key: str, run_at: datetime, callback: Callable[[], Awaitable[None]]) -> str:
        self.jobs[key] = (run_at, callback)
        return key

    def cancel(self, handle: str) -> None:
        self.cancelled.append(handle)
        self.jobs.pop(handle, None)

    def start(self) -> None:
        self.running = True

    def shutdown(self, wait: bool = False) -> None:
        self.running = False

    async def advance(self, delta: timedelta) -> None:
        target = self.current + delta
        while True:
            due = sorted(
                (run_at, key) for key, (run_at, _) in self.jobs.items() if run_at <= target
            )
            if not due:
                break
            run_at, key = due[0]
            _, callback = self.jobs.pop(key)
            self.current = max(self.current, run_at)
            await callback()
        self.current = target


class RecordingSink:
    """Dispatch sink that records requests."""

    def __init__(self, error: Exception | None = None) -> None:
        self.requests: list[DispatchRequest] = []
        self.error = error

    async def send(self, request: DispatchRequest) -> DispatchOutcome:
        self.requests.append(request)
        if self.error is not None:
            raise self.error
        order_id = request.order_data.get("id")
        return DispatchOutcome(
            order_id=str(order_id) if order_id is not None else None,
            id=f"D-{order_id}",
            status="created",
            reason=request.metadata.get("reason"),
        )


def make_order(**overrides: Any) -> dict[str, Any]:
    """Delivery order with complete pickup and dropoff data."""
    order: dict[str, Any] = {
        "id": "1001",
        "type": "delivery",
        "status": "accepted",
        "restaurant_name": "Luigi's",
        "restaurant_street": "500 Market St",
        "restaurant_city": "San Francisco",
        "restaurant_state": "CA",
        "restaurant_zipcode": "94105",
        "restaurant_phone": "(415) 555-0100",
        "client_first_name": "Ada",
        "client_last_name": "Lovelace",
        "client_phone": "+1 (217) 555-0199",
        "client_address_parts": {
            "street": "1 Main St",
            "city": "Springfield",
            "state": "IL",
            "zip": "62704",
        },
        "total_price": "24.50",
        "instructions": "Leave at door",
    }
    order.update(overrides)
    return order


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def signer(clock: FakeClock) -> CredentialSigner:
    return CredentialSigner(DEVELOPER_ID, KEY_ID, SIGNING_SECRET, clock=clock)


@pytest.fixture()
def timer() -> ManualTimer:
    return ManualTimer()


@pytest.fixture()
def sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture()
def scheduler(timer: ManualTimer, sink: RecordingSink) -> DeliveryScheduler:
    return DeliveryScheduler(timer=timer, buffer_minutes=30, sink=sink)


@pytest.fixture()
def store() -> InMemoryOrderStore:
    return InMemoryOrderStore(clock=lambda: NOW)


@pytest.fixture()
def drive_api() -> Iterator[respx.MockRouter]:
    with respx.mock(base_url=DEFAULT_BASE_URL, assert_all_called=False) as router:
        yield router


@pytest.fixture()
def client(signer: CredentialSigner, drive_api: respx.MockRouter) -> DoorDashClient:
    return DoorDashClient(signer)


@pytest.fixture()
def no_retry_wait(monkeypatch: pytest.MonkeyPatch) -> None:
    """Remove tenacity backoff so retry tests run instantly."""
    from tenacity import wait_none

    for method in (
        DoorDashClient.create_delivery,
        DoorDashClient.cancel_delivery,
        DoorDashClient.mark_ready_for_pickup,
    ):
        monkeypatch.setattr(method.retry, "wait", wait_none())
