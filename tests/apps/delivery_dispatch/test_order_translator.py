"""Tests for order to Drive payload translation."""

from __future__ import annotations

import json

import pytest

from apps.delivery_dispatch.order_fields import resolve_order_id
from apps.delivery_dispatch.order_translator import (
    OrderTranslator,
    normalize_phone,
    resolve_dropoff,
    to_cents,
)
from apps.delivery_dispatch.schemas import AddressComponents
from libs.common.exceptions import OrderValidationError
from tests.apps.delivery_dispatch.conftest import make_order


@pytest.fixture()
def translator() -> OrderTranslator:
    return OrderTranslator(id_factory=lambda: "generated-id")


def _without_address(**overrides: object) -> dict:
    order = make_order(**overrides)
    order.pop("client_address_parts")
    return order


class TestNormalizers:
    @pytest.mark.parametrize(
        ("raw", "expected"),
        [
            ("(415) 555-0100", "4155550100"),
            ("+1 (217) 555-0199", "+12175550199"),
            ("217.555.0199 ext", "2175550199"),
            (2175550199, "2175550199"),
            (None, ""),
        ],
    )
    def test_normalize_phone(self, raw: object, expected: str) -> None:
        assert normalize_phone(raw) == expected

    @pytest.mark.parametrize(
        ("value", "expected"),
        [
            ("24.50", 2450),
            (12.345, 1235),
            ("0.005", 1),
            (7, 700),
            ("", None),
            ("abc", None),
            (None, None),
            (float("inf"), None),
            ("NaN", None),
            (True, None),
        ],
    )
    def test_to_cents(self, value: object, expected: int | None) -> None:
        assert to_cents(value) == expected


class TestTranslate:
    def test_structured_dropoff_uses_components(self, translator: OrderTranslator) -> None:
        payload = translator.translate(make_order())

        assert payload.external_delivery_id == "1001"
        assert payload.pickup_address == "500 Market St, San Francisco, CA, 94105, US"
        assert payload.pickup_phone_number == "4155550100"
        assert payload.pickup_business_name == "Luigi's"
        assert payload.dropoff_address is None
        assert payload.dropoff_address_components == AddressComponents(
            street_address="1 Main St",
            city="Springfield",
            state="IL",
            zip_code="62704",
            country="US",
        )
        assert payload.dropoff_phone_number == "+12175550199"
        assert payload.dropoff_contact_given_name == "Ada"
        assert payload.dropoff_contact_family_name == "Lovelace"
        assert payload.dropoff_instructions == "Leave at door"
        assert payload.order_value == 2450
        assert payload.tip is None

    def test_wire_body_omits_unset_fields(self, translator: OrderTranslator) -> None:
        wire = translator.translate(make_order()).to_wire()

        assert "tip" not in wire
        assert "dropoff_address" not in wire
        assert wire["dropoff_address_components"]["zip_code"] == "62704"

    def test_merchant_address_preferred(self, translator: OrderTranslator) -> None:
        payload = translator.translate(make_order(), merchant_address="  77 Pier Rd, Oakland, CA  ")

        assert payload.pickup_address == "77 Pier Rd, Oakland, CA"

    def test_nested_restaurant_fields(self, translator: OrderTranslator) -> None:
        order = make_order(restaurant={"street": "9 Bay St", "city": "Alameda", "zip": "94501"})
        for key in ("restaurant_street", "restaurant_city", "restaurant_state", "restaurant_zipcode"):
            order.pop(key)

        payload = translator.translate(order)

        assert payload.pickup_address == "9 Bay St, Alameda, 94501, US"

    def test_snapshot_fields_are_merged(self, translator: OrderTranslator) -> None:
        order = {
            "id": "1001",
            "raw_data": json.dumps(make_order(tip_value="3.00")),
        }

        payload = translator.translate(order)

        assert payload.tip == 300
        assert payload.dropoff_address_components is not None

    def test_external_id_generated_when_missing(self, translator: OrderTranslator) -> None:
        order = make_order()
        order.pop("id")

        assert translator.translate(order).external_delivery_id == "generated-id"

    def test_external_id_matches_order_number(self) -> None:
        translator = OrderTranslator()
        order = make_order(order_number="77")
        order.pop("id")

        first = translator.translate(order)
        second = translator.translate(order)

        assert first.external_delivery_id == "77"
        assert second.external_delivery_id == "77"
        assert resolve_order_id(order) == "77"

    def test_unstructured_text_dropoff(self, translator: OrderTranslator) -> None:
        order = _without_address(client_address="742 Evergreen Terrace, Springfield")

        payload = translator.translate(order)

        assert payload.dropoff_address_components is None
        assert payload.dropoff_address == "742 Evergreen Terrace, Springfield"

    def test_invalid_pickup_address(self, translator: OrderTranslator) -> None:
        order = make_order()
        for key in ("restaurant_street", "restaurant_city", "restaurant_state", "restaurant_zipcode"):
            order.pop(key)

        with pytest.raises(OrderValidationError, match="Invalid pickup address"):
            translator.translate(order)

    def test_missing_dropoff(self, translator: OrderTranslator) -> None:
        with pytest.raises(OrderValidationError, match="Invalid dropoff address"):
            translator.translate(_without_address())

    def test_dropoff_without_street(self, translator: OrderTranslator) -> None:
        order = make_order(client_address_parts={"city": "Springfield", "state": "IL"})

        with pytest.raises(OrderValidationError, match="Invalid dropoff address"):
            translator.translate(order)

    def test_short_dropoff(self, translator: OrderTranslator) -> None:
        with pytest.raises(OrderValidationError):
            translator.translate(_without_address(delivery_address="1 A St"))


class TestResolveDropoff:
    def test_client_address_parts_win(self) -> None:
        data = make_order(
            delivery={"address": {"line1": "9 Elm Ave", "city": "Peoria", "state": "IL", "zip": "61602"}},
            client_address="somewhere else 60601",
        )

        address = resolve_dropoff(data)

        assert address is not None
        assert address.street == "1 Main St"

    def test_delivery_address_before_text(self) -> None:
        data = _without_address(
            delivery={
                "address": {
                    "line1": "9 Elm Ave",
                    "locality": "Peoria",
                    "region": "IL",
                    "postal_code": "61602",
                    "country": "US",
                }
            },
            client_address="somewhere else 60601",
        )

        address = resolve_dropoff(data)

        assert address is not None
        assert address.is_structured
        assert (address.street, address.city, address.state, address.zip_code) == (
            "9 Elm Ave",
            "Peoria",
            "IL",
            "61602",
        )

    def test_flat_delivery_fields(self) -> None:
        data = _without_address(
            delivery={"street": "3 Oak Ln", "city": "Normal", "state": "IL", "zip": "61761"}
        )

        address = resolve_dropoff(data)

        assert address is not None
        assert address.joined() == "3 Oak Ln, Normal, IL 61761, US"

    def test_client_address_text_extracts_zip(self) -> None:
        data = _without_address(client_address="742 Evergreen Terrace, Springfield 62704-1234")

        address = resolve_dropoff(data)

        assert address is not None
        assert address.zip_code == "62704-1234"
        assert not address.is_structured

    def test_delivery_address_text_is_last(self) -> None:
        data = _without_address(delivery_address="55 Last Resort Rd")

        address = resolve_dropoff(data)

        assert address is not None
        assert address.street == "55 Last Resort Rd"

    def test_nothing_found(self) -> None:
        assert resolve_dropoff(_without_address()) is None
