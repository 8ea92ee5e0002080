"""Tests for per-order dispatch timing."""

from __future__ import annotations

from datetime import timedelta

import pytest

from apps.delivery_dispatch.delivery_scheduler import DeliveryScheduler, DispatchRequest
from apps.delivery_dispatch.schemas import DispatchOutcome
from apps.delivery_dispatch.stores import InMemoryOrderStore, StoredOrder
from tests.apps.delivery_dispatch.conftest import (
    NOW,
    ManualTimer,
    RecordingSink,
    make_order,
)


def _at(minutes: int) -> str:
    return (NOW + timedelta(minutes=minutes)).isoformat()


class TestScheduleTiming:
    @pytest.mark.asyncio()
    async def test_future_delivery_is_scheduled_before_buffer(
        self, scheduler: DeliveryScheduler, timer: ManualTimer, sink: RecordingSink
    ) -> None:
        result = await scheduler.schedule(make_order(delivery_time=_at(90)), {"source": "webhook"})

        assert result.status == "scheduled"
        assert result.order_id == "1001"
        assert result.scheduled_time == NOW + timedelta(minutes=60)
        assert result.delivery_time == NOW + timedelta(minutes=90)
        assert len(timer.jobs) == 1
        assert sink.requests == []

        await timer.advance(timedelta(minutes=59))
        assert sink.requests == []

        await timer.advance(timedelta(minutes=1))
        assert len(sink.requests) == 1
        request = sink.requests[0]
        assert request.trigger == "scheduled"
        assert request.scheduled_time == NOW + timedelta(minutes=60)
        assert request.metadata["source"] == "scheduler"
        assert scheduler.pending() == []

        await timer.advance(timedelta(hours=2))
        assert len(sink.requests) == 1

    @pytest.mark.asyncio()
    async def test_reschedule_replaces_timer(
        self, scheduler: DeliveryScheduler, timer: ManualTimer, sink: RecordingSink
    ) -> None:
        await scheduler.schedule(make_order(id="42", delivery_time=_at(90)))
        first_handle = scheduler.get_entry("42").timer_handle

        result = await scheduler.schedule(make_order(id="42", delivery_time=_at(120)))

        assert result.scheduled_time == NOW + timedelta(minutes=90)
        assert first_handle in timer.cancelled
        assert len(scheduler.pending()) == 1

        await timer.advance(timedelta(minutes=61))
        assert sink.requests == []

        await timer.advance(timedelta(minutes=30))
        assert len(sink.requests) == 1
        assert sink.requests[0].delivery_time == NOW + timedelta(minutes=120)

    @pytest.mark.asyncio()
    async def test_no_delivery_time_dispatches_immediately(
        self, scheduler: DeliveryScheduler, sink: RecordingSink
    ) -> None:
        result = await scheduler.schedule(make_order(), {"source": "webhook"})

        assert result.status == "dispatched"
        assert result.reason == "no-delivery-time"
        assert result.outcome == DispatchOutcome(
            order_id="1001", id="D-1001", status="created", reason="no-delivery-time"
        )
        request = sink.requests[0]
        assert request.trigger == "immediate"
        assert request.metadata == {"source": "webhook", "reason": "no-delivery-time"}

    @pytest.mark.asyncio()
    @pytest.mark.parametrize("minutes", [-15, 0, 20, 30])
    async def test_within_buffer_dispatches_immediately(
        self, scheduler: DeliveryScheduler, sink: RecordingSink, minutes: int
    ) -> None:
        result = await scheduler.schedule(make_order(delivery_time=_at(minutes)))

        assert result.status == "dispatched"
        assert result.reason == "within-buffer"
        assert len(sink.requests) == 1

    @pytest.mark.asyncio()
    async def test_immediate_dispatch_cancels_armed_timer(
        self, scheduler: DeliveryScheduler, timer: ManualTimer, sink: RecordingSink
    ) -> None:
        await scheduler.schedule(make_order(delivery_time=_at(90)))
        handle = scheduler.get_entry("1001").timer_handle

        result = await scheduler.schedule(make_order(delivery_time=_at(10)))

        assert result.status == "dispatched"
        assert handle in timer.cancelled
        assert scheduler.pending() == []

        await timer.advance(timedelta(hours=2))
        assert len(sink.requests) == 1

    @pytest.mark.asyncio()
    async def test_nested_delivery_time(self, scheduler: DeliveryScheduler) -> None:
        result = await scheduler.schedule(make_order(delivery={"deliveryTime": _at(45)}))

        assert result.status == "scheduled"
        assert result.scheduled_time == NOW + timedelta(minutes=15)


class TestScheduleSkips:
    @pytest.mark.asyncio()
    @pytest.mark.parametrize(
        ("order", "reason"),
        [
            ({"type": "delivery"}, "missing-order-id"),
            (make_order(type="pickup"), "not-delivery-order"),
            (make_order(sent_to_doordash=True), "already-sent"),
            (make_order(raw_data={"sentToDoordash": "yes"}), "already-sent"),
        ],
    )
    async def test_skipped(
        self, scheduler: DeliveryScheduler, sink: RecordingSink, order: dict, reason: str
    ) -> None:
        result = await scheduler.schedule(order)

        assert result.status == "skipped"
        assert result.reason == reason
        assert sink.requests == []
        assert scheduler.pending() == []

    @pytest.mark.asyncio()
    async def test_immediate_dispatch_without_sink(self, timer: ManualTimer) -> None:
        scheduler = DeliveryScheduler(timer=timer)

        with pytest.raises(RuntimeError, match="no dispatch sink"):
            await scheduler.schedule(make_order())


class TestCancelAndClear:
    @pytest.mark.asyncio()
    async def test_cancel(self, scheduler: DeliveryScheduler, timer: ManualTimer, sink: RecordingSink) -> None:
        await scheduler.schedule(make_order(delivery_time=_at(90)))

        assert scheduler.cancel("1001", "order cancelled") is True
        assert scheduler.cancel("1001") is False
        assert scheduler.get_entry("1001") is None

        await timer.advance(timedelta(hours=2))
        assert sink.requests == []

    def test_unknown_order(self, scheduler: DeliveryScheduler, timer: ManualTimer) -> None:
        assert scheduler.cancel("nope") is False
        assert scheduler.clear("nope") is False
        assert timer.cancelled == []

    @pytest.mark.asyncio()
    async def test_clear(self, scheduler: DeliveryScheduler) -> None:
        await scheduler.schedule(make_order(delivery_time=_at(90)))

        assert scheduler.clear(1001) is True
        assert scheduler.pending() == []

    @pytest.mark.asyncio()
    async def test_stop_cancels_everything(
        self, scheduler: DeliveryScheduler, timer: ManualTimer, sink: RecordingSink
    ) -> None:
        await scheduler.schedule(make_order(id="1", delivery_time=_at(120)))
        await scheduler.schedule(make_order(id="2", delivery_time=_at(90)))

        assert [entry.order_id for entry in scheduler.pending()] == ["2", "1"]

        scheduler.stop()

        assert scheduler.pending() == []
        assert len(timer.cancelled) == 2
        await timer.advance(timedelta(hours=3))
        assert sink.requests == []


class TestFiring:
    @pytest.mark.asyncio()
    async def test_sink_error_is_contained(self, timer: ManualTimer) -> None:
        sink = RecordingSink(error=RuntimeError("partner down"))
        scheduler = DeliveryScheduler(timer=timer, sink=sink)
        await scheduler.schedule(make_order(delivery_time=_at(90)))

        await timer.advance(timedelta(minutes=60))

        assert len(sink.requests) == 1
        assert scheduler.pending() == []

    @pytest.mark.asyncio()
    async def test_reentrant_schedule_during_dispatch(self, timer: ManualTimer) -> None:
        scheduler = DeliveryScheduler(timer=timer)
        seen: list[DispatchRequest] = []

        class ReschedulingSink:
            async def send(self, request: DispatchRequest) -> None:
                seen.append(request)
                if len(seen) == 1:
                    await scheduler.schedule(make_order(delivery_time=_at(240)))

        scheduler.sink = ReschedulingSink()
        await scheduler.schedule(make_order(delivery_time=_at(90)))

        await timer.advance(timedelta(minutes=60))

        assert len(seen) == 1
        entry = scheduler.get_entry("1001")
        assert entry is not None
        assert entry.scheduled_at == NOW + timedelta(minutes=210)

        await timer.advance(timedelta(minutes=150))
        assert len(seen) == 2

    @pytest.mark.asyncio()
    async def test_stale_fire_is_ignored(
        self, scheduler: DeliveryScheduler, sink: RecordingSink
    ) -> None:
        await scheduler.schedule(make_order(delivery_time=_at(90)))

        await scheduler._fire("1001", "dispatch:1001:stale")

        assert sink.requests == []
        assert scheduler.get_entry("1001") is not None


class TestRestore:
    @pytest.mark.asyncio()
    async def test_restores_unsent_delivery_orders(
        self, scheduler: DeliveryScheduler, store: InMemoryOrderStore, sink: RecordingSink
    ) -> None:
        store.upsert(StoredOrder.from_payload(make_order(id="1", delivery_time=_at(90))))
        store.upsert(
            StoredOrder.from_payload(make_order(id="2", delivery_time=_at(90), sent_to_doordash=True))
        )
        store.upsert(StoredOrder.from_payload(make_order(id="3", type="pickup", delivery_time=_at(90))))
        store.upsert(StoredOrder(id="4", order_type="delivery", delivery_time=NOW + timedelta(hours=2)))

        restored = await scheduler.restore(store, limit=10)

        assert restored == 1
        assert [entry.order_id for entry in scheduler.pending()] == ["1"]
        assert scheduler.get_entry("1").metadata == {"source": "restore"}
        assert sink.requests == []

    @pytest.mark.asyncio()
    async def test_due_orders_dispatch_and_failures_do_not_abort(
        self, timer: ManualTimer, store: InMemoryOrderStore
    ) -> None:
        scheduler = DeliveryScheduler(timer=timer)
        store.upsert(StoredOrder.from_payload(make_order(id="late", delivery_time=_at(5))))
        store.upsert(StoredOrder.from_payload(make_order(id="later", delivery_time=_at(90))))

        restored = await scheduler.restore(store)

        assert restored == 1
        assert scheduler.get_entry("later") is not None
