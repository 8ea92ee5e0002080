"""Tests for PII and credential log sanitizer utilities."""

from __future__ import annotations

import pytest

from libs.common.log_sanitizer import (
    PHONE_PATTERN,
    describe_credential,
    mask_email,
    mask_phone,
    sanitize_dict,
)


class TestMaskingFunctions:
    @pytest.mark.parametrize(
        ("email", "expected"),
        [
            ("user@example.com", "***@example.com"),
            ("first.last@sub.domain.co", "***@sub.domain.co"),
            ("not-an-email", "***"),
        ],
    )
    def test_mask_email(self, email: str, expected: str) -> None:
        assert mask_email(email) == expected

    @pytest.mark.parametrize(
        ("phone", "expected_suffix"),
        [
            ("+1 (415) 555-1234", "1234"),
            ("217-555-0199", "0199"),
            ("+442079460958", "0958"),
        ],
    )
    def test_mask_phone(self, phone: str, expected_suffix: str) -> None:
        masked = mask_phone(phone)
        assert masked == f"***{expected_suffix}"
        assert PHONE_PATTERN.search(masked) is None

    def test_phone_pattern_ignores_iso_dates(self) -> None:
        assert PHONE_PATTERN.search("2026-10-19T11:30:00+00:00") is None


class TestDescribeCredential:
    def test_shows_prefix_and_length_only(self) -> None:
        described = describe_credential("DOORDASH_SIGNING_SECRET", "abcdefghijklmnop")

        assert described == "DOORDASH_SIGNING_SECRET: abcd... (length: 16 chars)"
        assert "efgh" not in described

    @pytest.mark.parametrize("value", [None, "", "   "])
    def test_missing_value(self, value: str | None) -> None:
        assert describe_credential("DOORDASH_KEY_ID", value) == "DOORDASH_KEY_ID: NOT SET"


class TestSanitizeDict:
    def test_masks_sensitive_keys(self) -> None:
        data = {
            "client_phone": "+1 217 555 0199",
            "customer_email": "ada@example.com",
            "signing_secret": "super-secret",
            "token": "eyJhbGciOi",
            "Authorization": "Bearer abc",
            "order_id": "1001",
        }

        sanitized = sanitize_dict(data)

        assert sanitized["client_phone"] == "***0199"
        assert sanitized["customer_email"] == "***@example.com"
        assert sanitized["signing_secret"] == "***"
        assert sanitized["token"] == "***"
        assert sanitized["Authorization"] == "***"
        assert sanitized["order_id"] == "1001"

    def test_masks_embedded_pii_in_nested_values(self) -> None:
        data = {
            "note": "call 217-555-0199 or mail ada@example.com",
            "items": [{"phone": 2175550199}, "ok"],
        }

        sanitized = sanitize_dict(data)

        assert sanitized["note"] == "call ***0199 or mail ***@example.com"
        assert sanitized["items"][0]["phone"] == "***"
        assert sanitized["items"][1] == "ok"

    def test_does_not_mutate_input(self) -> None:
        data = {"phone": "217-555-0199"}

        sanitize_dict(data)

        assert data == {"phone": "217-555-0199"}
