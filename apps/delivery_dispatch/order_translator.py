"""
Order to DoorDash Drive payload translation.

Inbound orders arrive in several shapes. The translator merges the stored raw
snapshot over the order, resolves pickup and dropoff addresses through
priority-ordered extractors, normalizes phone numbers and converts money to
integer cents.

Example:
    >>> translator = OrderTranslator()
    >>> payload = translator.translate(order, merchant_address="500 Market St, San Francisco, CA")
    >>> payload.to_wire()
"""

from __future__ import annotations

import logging
import math
import re
import uuid
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any

from apps.delivery_dispatch.order_fields import (
    first_present,
    first_text,
    merged_order_data,
    resolve_order_id,
)
from apps.delivery_dispatch.schemas import AddressComponents, DispatchPayload
from libs.common.exceptions import OrderValidationError

logger = logging.getLogger(__name__)

MIN_ADDRESS_LENGTH = 10
DEFAULT_COUNTRY = "US"
ZIP_PATTERN = re.compile(r"\b(\d{5}(?:-\d{4})?)\b")
PHONE_STRIP_PATTERN = re.compile(r"[^\d+]")

# Candidate keys per address part, shared by every structured source
STREET_KEYS = ("street", "address", "address_line_1")
CITY_KEYS = ("city", "locality")
STATE_KEYS = ("state", "province", "region")
ZIP_KEYS = ("zip", "postal_code", "postcode")

PICKUP_STREET_KEYS = ("restaurant_street", "restaurant.street", "merchant_street")
PICKUP_CITY_KEYS = ("restaurant_city", "restaurant.city", "merchant_city")
PICKUP_STATE_KEYS = ("restaurant_state", "restaurant.state", "merchant_state")
PICKUP_ZIP_KEYS = (
    "restaurant_zipcode",
    "restaurant.zipcode",
    "restaurant.zip",
    "merchant_zipcode",
)
PICKUP_COUNTRY_KEYS = ("restaurant_country", "restaurant.country", "merchant_country")
PICKUP_PHONE_KEYS = ("restaurant_phone", "restaurant.phone")
PICKUP_NAME_KEYS = ("restaurant_name", "restaurant.name", "merchant_name")

GIVEN_NAME_KEYS = ("client_first_name", "client.first_name")
FAMILY_NAME_KEYS = ("client_last_name", "client.last_name")
PHONE_KEYS = ("client_phone", "client.phone")
INSTRUCTIONS_KEYS = ("instructions", "notes", "special_instructions")
ORDER_VALUE_KEYS = ("total_price", "total")
TIP_KEYS = ("tip_value", "tip")


@dataclass(frozen=True)
class DropoffAddress:
    """Dropoff address parts resolved from one source."""

    street: str = ""
    city: str = ""
    state: str = ""
    zip_code: str = ""
    country: str = ""

    @property
    def is_structured(self) -> bool:
        return bool(self.street and self.city and self.state and self.zip_code)

    def joined(self) -> str:
        state_zip = " ".join(part for part in (self.state, self.zip_code) if part)
        return ", ".join(
            part for part in (self.street, self.city, state_zip, self.country) if part
        )

    def components(self) -> AddressComponents:
        return AddressComponents(
            street_address=self.street,
            city=self.city,
            state=self.state,
            zip_code=self.zip_code,
            country=self.country or DEFAULT_COUNTRY,
        )


# ============================================================================
# Normalization Helpers
# ============================================================================


def normalize_phone(raw: Any) -> str:
    """Strip everything but digits and '+'; no country code is inferred.

    Examples:
        >>> normalize_phone("(555) 555-0100")
        '5555550100'
        >>> normalize_phone("+1 555 555 0100")
        '+15555550100'
    """
    if raw is None:
        return ""
    return PHONE_STRIP_PATTERN.sub("", str(raw))


def to_cents(value: Any) -> int | None:
    """Convert a money amount to integer cents, rounding half-up.

    Returns None for missing, unparsable or non-finite input.

    Examples:
        >>> to_cents("12.345")
        1235
        >>> to_cents("abc") is None
        True
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, float) and not math.isfinite(value):
        return None
    try:
        amount = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        return None
    if not amount.is_finite():
        return None
    return int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def _text(data: Mapping[str, Any], keys: tuple[str, ...]) -> str:
    return first_text(data, keys) or ""


def _structured_address(source: Mapping[str, Any], street_keys: tuple[str, ...]) -> DropoffAddress:
    return DropoffAddress(
        street=_text(source, street_keys),
        city=_text(source, CITY_KEYS),
        state=_text(source, STATE_KEYS),
        zip_code=_text(source, ZIP_KEYS),
        country=_text(source, ("country",)) or DEFAULT_COUNTRY,
    )


# ============================================================================
# Dropoff Address Extractors (priority order)
# ============================================================================


def _from_client_address_parts(data: Mapping[str, Any]) -> DropoffAddress | None:
    parts = data.get("client_address_parts")
    if not isinstance(parts, Mapping) or not parts:
        return None
    return _structured_address(parts, STREET_KEYS)


def _from_delivery_address(data: Mapping[str, Any]) -> DropoffAddress | None:
    delivery = data.get("delivery")
    address = delivery.get("address") if isinstance(delivery, Mapping) else None
    if not isinstance(address, Mapping) or not address:
        return None
    return _structured_address(address, ("street", "address_line_1", "address", "line1"))


def _from_delivery_fields(data: Mapping[str, Any]) -> DropoffAddress | None:
    delivery = data.get("delivery")
    if not isinstance(delivery, Mapping) or not delivery:
        return None
    return _structured_address(delivery, STREET_KEYS)


def _from_client_address_text(data: Mapping[str, Any]) -> DropoffAddress | None:
    full_address = first_text(data, ("client_address",))
    if not full_address:
        return None
    match = ZIP_PATTERN.search(full_address)
    return DropoffAddress(street=full_address, zip_code=match.group(1) if match else "")


def _from_delivery_address_text(data: Mapping[str, Any]) -> DropoffAddress | None:
    raw = first_text(data, ("delivery_address",))
    if not raw:
        return None
    return DropoffAddress(street=raw)


DROPOFF_EXTRACTORS: tuple[Callable[[Mapping[str, Any]], DropoffAddress | None], ...] = (
    _from_client_address_parts,
    _from_delivery_address,
    _from_delivery_fields,
    _from_client_address_text,
    _from_delivery_address_text,
)


def resolve_dropoff(data: Mapping[str, Any]) -> DropoffAddress | None:
    """Dropoff address from the first extractor whose source is present."""
    for extractor in DROPOFF_EXTRACTORS:
        address = extractor(data)
        if address is not None:
            return address
    return None


# ============================================================================
# Translator
# ============================================================================


class OrderTranslator:
    """Maps an inbound order onto a DoorDash Drive create-delivery payload.

    The translator is stateless; ``id_factory`` produces the external id for
    orders that carry none.
    """

    def __init__(self, id_factory: Callable[[], str] | None = None) -> None:
        self.id_factory = id_factory or (lambda: str(uuid.uuid4()))

    def translate(
        self, order: Mapping[str, Any], merchant_address: str | None = None
    ) -> DispatchPayload:
        """
        Translate an order into a DispatchPayload.

        Args:
            order: Inbound order, optionally carrying a ``raw_data`` snapshot
            merchant_address: Configured merchant address, preferred over
                restaurant fields in the order

        Returns:
            DispatchPayload ready for DispatchClient.create_delivery()

        Raises:
            OrderValidationError: If pickup or dropoff address is missing or
                shorter than 10 characters, or dropoff street is absent
        """
        data = merged_order_data(order)

        pickup_address = self._pickup_address(data, merchant_address)
        if len(pickup_address) < MIN_ADDRESS_LENGTH:
            raise OrderValidationError(
                f'Invalid pickup address: "{pickup_address}". Set the merchant address '
                "or include restaurant address fields in the order."
            )

        dropoff = resolve_dropoff(data)
        dropoff_text = dropoff.joined() if dropoff else ""
        if dropoff is None or not dropoff.street or len(dropoff_text) < MIN_ADDRESS_LENGTH:
            raise OrderValidationError(
                f'Invalid dropoff address: "{dropoff_text}". Order must contain a customer '
                "delivery address (client_address_parts or delivery.address)."
            )

        pickup_phone = first_present(data, PICKUP_PHONE_KEYS)
        external_id = resolve_order_id(data) or self.id_factory()

        payload = DispatchPayload(
            external_delivery_id=external_id,
            pickup_address=pickup_address,
            pickup_phone_number=normalize_phone(pickup_phone) if pickup_phone else None,
            pickup_business_name=first_text(data, PICKUP_NAME_KEYS),
            dropoff_phone_number=normalize_phone(first_present(data, PHONE_KEYS)),
            dropoff_contact_given_name=first_text(data, GIVEN_NAME_KEYS),
            dropoff_contact_family_name=first_text(data, FAMILY_NAME_KEYS),
            dropoff_instructions=first_text(data, INSTRUCTIONS_KEYS),
            order_value=to_cents(first_present(data, ORDER_VALUE_KEYS)),
            tip=to_cents(first_present(data, TIP_KEYS)),
        )
        if dropoff.is_structured:
            payload.dropoff_address_components = dropoff.components()
        else:
            payload.dropoff_address = dropoff_text

        logger.debug(
            "Translated order to Drive payload",
            extra={
                "external_delivery_id": external_id,
                "structured_dropoff": dropoff.is_structured,
            },
        )
        return payload

    def _pickup_address(self, data: Mapping[str, Any], merchant_address: str | None) -> str:
        if merchant_address and merchant_address.strip():
            return merchant_address.strip()
        parts = [
            _text(data, PICKUP_STREET_KEYS),
            _text(data, PICKUP_CITY_KEYS),
            _text(data, PICKUP_STATE_KEYS),
            _text(data, PICKUP_ZIP_KEYS),
            _text(data, PICKUP_COUNTRY_KEYS) or DEFAULT_COUNTRY,
        ]
        return ", ".join(part for part in parts if part)
