"""
DoorDash Drive API client with retry logic.

Provides an async interface to the Drive v2 API with:
- JWT bearer auth on every request (CredentialSigner)
- Automatic retry on transport failures (exponential backoff)
- Error classification (auth, conflict, not found, transport)
- Response normalization across aliased id/status fields
- Connection health checking
"""

from __future__ import annotations

import logging
import time
from collections.abc import Mapping
from datetime import UTC, datetime
from typing import Any
from urllib.parse import quote

import httpx
from tenacity import (
    before_sleep_log,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from apps.delivery_dispatch.credential_signer import CredentialSigner
from apps.delivery_dispatch.metrics import partner_request_duration, partner_requests_total
from apps.delivery_dispatch.order_fields import first_text
from apps.delivery_dispatch.schemas import OUTCOME_EXISTING, DispatchPayload, DispatchResult
from libs.common.exceptions import DeliveryPlatformError

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://openapi.doordash.com/drive/v2"
DEFAULT_TIMEOUT_SECONDS = 30.0
DEFAULT_CANCELLATION_REASON = "Restaurant cancellation"
DUPLICATE_DELIVERY_CODE = "duplicate_delivery_id"

ID_FIELDS = ("delivery_id", "id", "support_reference", "data.delivery_id")
STATUS_FIELDS = ("status", "delivery_status", "state", "data.status")
TRACKING_FIELDS = ("tracking_url", "data.tracking_url")
EXTERNAL_ID_FIELDS = ("external_delivery_id", "data.external_delivery_id")


class DoorDashApiError(DeliveryPlatformError):
    """DoorDash API error carrying the HTTP status and raw body."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        body: Mapping[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.body: dict[str, Any] = dict(body or {})


class DoorDashAuthError(DoorDashApiError):
    """Credentials rejected (401). Never retried."""

    pass


class DoorDashConflictError(DoorDashApiError):
    """Conflict (409) that is not a duplicate delivery id."""

    pass


class DoorDashNotFoundError(DoorDashApiError):
    """Delivery not found (404); usually not created yet."""

    pass


class DoorDashConnectionError(DoorDashApiError):
    """Timeout, connection failure or 5xx response (retryable)."""

    pass


def _parse_body(response: httpx.Response) -> dict[str, Any]:
    if not response.content:
        return {}
    try:
        data = response.json()
    except ValueError:
        return {"body": response.text}
    return data if isinstance(data, dict) else {"body": data}


def _error_message(body: Mapping[str, Any]) -> str:
    message = body.get("message") or body.get("body")
    return str(message) if message else str(dict(body))


def _is_duplicate(body: Mapping[str, Any]) -> bool:
    return body.get("code") == DUPLICATE_DELIVERY_CODE or DUPLICATE_DELIVERY_CODE in str(body)


def normalize_result(
    body: Mapping[str, Any],
    external_id: str | None = None,
    default_id: str | None = None,
    default_status: str | None = None,
) -> DispatchResult:
    """Fold aliased Drive response fields into a DispatchResult."""
    return DispatchResult(
        id=first_text(body, ID_FIELDS) or default_id,
        external_id=first_text(body, EXTERNAL_ID_FIELDS) or external_id,
        status=first_text(body, STATUS_FIELDS) or default_status,
        tracking_url=first_text(body, TRACKING_FIELDS),
        raw=dict(body),
    )


class DoorDashClient:
    """
    DoorDash Drive API client.

    Attributes:
        signer: CredentialSigner providing bearer tokens
        base_url: Drive API base URL
        timeout: Per-request timeout in seconds

    Examples:
        >>> client = DoorDashClient(signer)
        >>> result = await client.create_delivery(payload)
        >>> status = await client.get_status(result.id)
        >>> await client.close()
    """

    def __init__(
        self,
        signer: CredentialSigner,
        base_url: str = DEFAULT_BASE_URL,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self.signer = signer
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.client = http_client or httpx.AsyncClient(base_url=self.base_url, timeout=timeout)

    async def close(self) -> None:
        """Close HTTP client."""
        await self.client.aclose()

    async def _request(
        self,
        operation: str,
        method: str,
        path: str,
        json: Mapping[str, Any] | None = None,
        params: Mapping[str, Any] | None = None,
    ) -> httpx.Response:
        """Send one authenticated request.

        Raises:
            ConfigurationError: If a token cannot be built
            DoorDashConnectionError: On timeout or connection failure
        """
        token = self.signer.get_token()
        start = time.monotonic()
        try:
            response = await self.client.request(
                method,
                path,
                json=json,
                params=params,
                headers={"Authorization": f"Bearer {token}"},
            )
        except httpx.TimeoutException as e:
            partner_requests_total.labels(operation=operation, outcome="transport_error").inc()
            raise DoorDashConnectionError(
                f"DoorDash request timed out after {self.timeout}s: {method} {path}"
            ) from e
        except httpx.TransportError as e:
            partner_requests_total.labels(operation=operation, outcome="transport_error").inc()
            raise DoorDashConnectionError(f"DoorDash connection error: {e}") from e
        finally:
            partner_request_duration.labels(operation=operation).observe(time.monotonic() - start)

        outcome = "success" if response.is_success else "http_error"
        partner_requests_total.labels(operation=operation, outcome=outcome).inc()
        return response

    def _raise_for_status(self, response: httpx.Response, operation: str) -> dict[str, Any]:
        """Classify a non-2xx response; returns the parsed body on success."""
        body = _parse_body(response)
        status = response.status_code
        if response.is_success:
            return body

        message = _error_message(body)
        if status == 401:
            raise DoorDashAuthError(
                f"DoorDash Authentication Error (401) during {operation}: {message}. "
                f"Check that the key id belongs to the developer id and the signing "
                f"secret matches. Configured: {self.signer.credential_fingerprint()}",
                status,
                body,
            )
        if status == 404:
            raise DoorDashNotFoundError(f"DoorDash not found (404): {message}", status, body)
        if status == 409:
            raise DoorDashConflictError(f"DoorDash conflict (409): {message}", status, body)
        if status >= 500:
            raise DoorDashConnectionError(f"DoorDash server error ({status}): {message}", status, body)
        raise DoorDashApiError(f"DoorDash API Error: {status} - {message}", status, body)

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        retry=retry_if_exception_type(DoorDashConnectionError),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True,
    )
    async def create_delivery(self, payload: DispatchPayload) -> DispatchResult:
        """
        Create a Drive delivery.

        Args:
            payload: Translated create-delivery request

        Returns:
            DispatchResult; ``status="existing"`` when the partner already
            holds a delivery with this external id (409 duplicate)

        Raises:
            DoorDashAuthError: Credentials rejected (not retried)
            DoorDashConnectionError: Transport failure after retries
            DoorDashApiError: Any other non-2xx response
        """
        external_id = payload.external_delivery_id
        response = await self._request("create_delivery", "POST", "/deliveries", json=payload.to_wire())

        if response.status_code == 409:
            body = _parse_body(response)
            if _is_duplicate(body):
                logger.info(
                    f"Delivery {external_id} already exists in DoorDash (duplicate delivery id)",
                    extra={"external_delivery_id": external_id},
                )
                return normalize_result(body, external_id=external_id).model_copy(
                    update={"status": OUTCOME_EXISTING}
                )

        body = self._raise_for_status(response, "create_delivery")
        result = normalize_result(body, external_id=external_id)
        logger.info(
            f"Created DoorDash delivery {result.id} for {external_id}",
            extra={"external_delivery_id": external_id, "status": result.status},
        )
        return result

    async def get_status(self, id_or_external_id: str) -> DispatchResult:
        """
        Fetch delivery status, probing known endpoint shapes in order.

        Tries ``/deliveries/{id}``, ``/deliveries/external_delivery_id/{id}``
        and ``/deliveries/by_external_id/{id}``; the first success wins.

        Raises:
            ValueError: If the identifier is blank
            DoorDashAuthError: Credentials rejected (stops the probe)
            DoorDashNotFoundError: No endpoint knows the identifier
            DoorDashApiError: Last error when every endpoint failed
        """
        key = (id_or_external_id or "").strip()
        if not key:
            raise ValueError("Missing DoorDash identifier to query status")

        encoded = quote(key, safe="")
        paths = (
            f"/deliveries/{encoded}",
            f"/deliveries/external_delivery_id/{encoded}",
            f"/deliveries/by_external_id/{encoded}",
        )
        last_error = DoorDashApiError(f'No DoorDash status endpoint answered for "{key}"')
        for path in paths:
            try:
                response = await self._request("get_status", "GET", path)
                body = self._raise_for_status(response, "get_status")
            except DoorDashAuthError:
                raise
            except DoorDashApiError as e:
                last_error = e
                continue
            return normalize_result(body, external_id=key)

        if isinstance(last_error, DoorDashNotFoundError):
            raise DoorDashNotFoundError(
                f'DoorDash not found (404) for identifier "{key}"; delivery may not exist yet',
                last_error.status_code,
                last_error.body,
            ) from last_error
        raise last_error

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        retry=retry_if_exception_type(DoorDashConnectionError),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True,
    )
    async def cancel_delivery(self, delivery_id: str, reason: str | None = None) -> DispatchResult:
        """Cancel a delivery; reason defaults to a restaurant cancellation."""
        response = await self._request(
            "cancel_delivery",
            "POST",
            f"/deliveries/{quote(delivery_id, safe='')}/cancel",
            json={"cancellation_reason": reason or DEFAULT_CANCELLATION_REASON},
        )
        body = self._raise_for_status(response, "cancel_delivery")
        logger.info(f"Cancelled DoorDash delivery {delivery_id}")
        return normalize_result(body, default_id=delivery_id, default_status="cancelled")

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        retry=retry_if_exception_type(DoorDashConnectionError),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True,
    )
    async def mark_ready_for_pickup(self, delivery_id: str) -> DispatchResult:
        """Tell the assigned courier the order is ready."""
        response = await self._request(
            "mark_ready_for_pickup",
            "PATCH",
            f"/deliveries/{quote(delivery_id, safe='')}",
            json={"pickup_ready": True, "pickup_time": datetime.now(UTC).isoformat()},
        )
        body = self._raise_for_status(response, "mark_ready_for_pickup")
        return normalize_result(body, default_id=delivery_id, default_status="ready_for_pickup")

    async def test_connection(self) -> bool:
        """
        Check credentials with one lightweight authenticated call.

        Returns:
            True for 200/403/404 (credentials accepted), False for any other
            non-401 status

        Raises:
            ConfigurationError: If a token cannot be built
            DoorDashAuthError: On 401
            DoorDashConnectionError: On timeout or connection failure
        """
        response = await self._request("test_connection", "GET", "/deliveries", params={"limit": 1})
        status = response.status_code
        if status == 401:
            body = _parse_body(response)
            raise DoorDashAuthError(
                f"DoorDash Authentication Failed: {_error_message(body)}. "
                f"Configured: {self.signer.credential_fingerprint()}",
                status,
                body,
            )
        if status in (200, 403, 404):
            return True
        logger.warning(f"DoorDash connection test returned unexpected status {status}")
        return False
