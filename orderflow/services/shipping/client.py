"""
Shipping gateway adapter.

Async httpx client for the logistics provider's REST API (Shiprocket-style).
It authenticates with account credentials, caches the short-lived bearer
token and refreshes it once when the provider answers 401.

Each public method is a single, independently fallible remote operation.
Failures are raised, never aggregated: combining partial results is the job
of the callers (see the document generator). A call exceeding its
timeout raises GatewayTimeoutError; a provider rejection or 5xx raises
GatewayError with the provider's code and message.
"""

import asyncio
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Optional

import httpx

from orderflow.core.config import Settings, get_settings
from orderflow.core.errors import (
    GatewayError,
    GatewayTimeoutError,
    GatewayUnavailableError,
    InvalidInputError,
)
from orderflow.core.logging import get_logger, log_performance

logger = get_logger(__name__)

PROVIDER = "shipping"

DEFAULT_DIMENSIONS_CM = {"length": 15, "breadth": 10, "height": 5}
WEIGHT_PER_UNIT_KG = Decimal("0.1")
MIN_WEIGHT_KG = Decimal("0.5")

REQUIRED_ADDRESS_FIELDS = ("full_name", "address_line1", "city", "state", "postal_code", "phone")


class DocumentKind(str, Enum):
    """Shipment documents the provider can render."""

    MANIFEST = "manifest"
    LABEL = "label"
    INVOICE = "invoice"


@dataclass(frozen=True)
class CarrierOrder:
    """Carrier order created for an outbound or return shipment."""

    carrier_order_id: str
    shipment_id: str


@dataclass(frozen=True)
class AwbAssignment:
    shipment_id: str
    awb_code: str
    courier_name: Optional[str] = None


@dataclass(frozen=True)
class TrackingSnapshot:
    """Point-in-time tracking state for a waybill."""

    awb_code: str
    status_code: Optional[int]
    status_label: Optional[str]
    current_location: Optional[str]
    courier_name: Optional[str]
    updated_at: Optional[datetime]
    activities: list[dict[str, Any]] = field(default_factory=list)


def normalize_phone(raw: Optional[str]) -> Optional[str]:
    """
    Reduce a phone number to the 10-digit national form.

    Args:
        raw: Phone number as entered by the customer

    Returns:
        10-digit string, or None if it cannot be normalized
    """
    if not raw:
        return None
    digits = re.sub(r"\D", "", raw)
    if digits.startswith("91") and len(digits) == 12:
        digits = digits[2:]
    elif digits.startswith("0") and len(digits) == 11:
        digits = digits[1:]
    if len(digits) > 10:
        digits = digits[-10:]
    return digits if len(digits) == 10 else None


def package_weight(items: list[dict[str, Any]]) -> Decimal:
    """Estimate parcel weight in kilograms from item quantities."""
    total = sum(
        (WEIGHT_PER_UNIT_KG * int(item.get("quantity", 0)) for item in items),
        Decimal("0"),
    )
    return max(total, MIN_WEIGHT_KG)


def _validate_address(address: dict[str, Any]) -> list[str]:
    errors = [f"{name} is required" for name in REQUIRED_ADDRESS_FIELDS if not address.get(name)]
    postal_code = str(address.get("postal_code") or "")
    if postal_code and not re.fullmatch(r"\d{6}", postal_code):
        errors.append("postal_code must be 6 digits")
    if address.get("phone") and normalize_phone(str(address["phone"])) is None:
        errors.append("phone must be a valid 10-digit number")
    return errors


def _split_name(full_name: str) -> tuple[str, str]:
    parts = full_name.strip().split(" ", 1)
    return parts[0], parts[1] if len(parts) > 1 else ""


def build_order_payload(
    reference: str,
    order_date: datetime,
    items: list[dict[str, Any]],
    address: dict[str, Any],
    email: str,
    subtotal: Decimal,
    pickup_location: str,
) -> dict[str, Any]:
    """
    Build the provider payload for an outbound prepaid order.

    Raises:
        InvalidInputError: If the shipping address cannot be shipped to
    """
    errors = _validate_address(address)
    if not items:
        errors.append("order has no items")
    if errors:
        raise InvalidInputError(
            "Order cannot be shipped", code="UNSHIPPABLE_ORDER", errors=errors
        )

    first_name, last_name = _split_name(address["full_name"])
    country = address.get("country") or "India"
    return {
        "order_id": reference,
        "order_date": order_date.strftime("%Y-%m-%d %H:%M"),
        "pickup_location": pickup_location,
        "billing_customer_name": first_name,
        "billing_last_name": last_name,
        "billing_address": address["address_line1"],
        "billing_address_2": address.get("address_line2") or "",
        "billing_city": address["city"],
        "billing_pincode": str(address["postal_code"]),
        "billing_state": address["state"],
        "billing_country": "India" if country == "IN" else country,
        "billing_email": email,
        "billing_phone": normalize_phone(str(address["phone"])),
        "shipping_is_billing": True,
        "order_items": [
            {
                "name": item.get("name") or item["sku"],
                "sku": item["sku"],
                "units": int(item["quantity"]),
                "selling_price": str(item["unit_price"]),
            }
            for item in items
        ],
        "payment_method": "Prepaid",
        "sub_total": str(subtotal),
        **DEFAULT_DIMENSIONS_CM,
        "weight": str(package_weight(items)),
    }


def build_return_payload(
    reference: str,
    order_date: datetime,
    items: list[dict[str, Any]],
    customer_address: dict[str, Any],
    email: str,
    subtotal: Decimal,
    warehouse: dict[str, Any],
) -> dict[str, Any]:
    """
    Build the provider payload for a reverse pickup from the customer.

    Raises:
        InvalidInputError: If the pickup address is incomplete
    """
    errors = _validate_address(customer_address)
    if errors:
        raise InvalidInputError(
            "Return pickup address is incomplete", code="UNSHIPPABLE_RETURN", errors=errors
        )

    first_name, last_name = _split_name(customer_address["full_name"])
    return {
        "order_id": reference,
        "order_date": order_date.strftime("%Y-%m-%d"),
        "pickup_customer_name": first_name,
        "pickup_last_name": last_name,
        "pickup_address": customer_address["address_line1"],
        "pickup_address_2": customer_address.get("address_line2") or "",
        "pickup_city": customer_address["city"],
        "pickup_state": customer_address["state"],
        "pickup_country": customer_address.get("country") or "India",
        "pickup_pincode": str(customer_address["postal_code"]),
        "pickup_email": email,
        "pickup_phone": normalize_phone(str(customer_address["phone"])),
        "shipping_customer_name": warehouse.get("name", ""),
        "shipping_address": warehouse.get("address", ""),
        "shipping_city": warehouse.get("city", ""),
        "shipping_state": warehouse.get("state", ""),
        "shipping_country": warehouse.get("country", "India"),
        "shipping_pincode": warehouse.get("pincode", ""),
        "shipping_phone": warehouse.get("phone", ""),
        "order_items": [
            {
                "name": item.get("name") or item["sku"],
                "sku": item["sku"],
                "units": int(item["quantity"]),
                "selling_price": str(item["unit_price"]),
                "qc_enable": False,
            }
            for item in items
        ],
        "payment_method": "Prepaid",
        "sub_total": str(subtotal),
        **DEFAULT_DIMENSIONS_CM,
        "weight": str(package_weight(items)),
    }


class ShippingClient:
    """
    Logistics provider API client.

    Usable as an async context manager; the underlying httpx client is
    closed on exit.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        email: Optional[str] = None,
        password: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
        token_ttl_minutes: Optional[int] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        settings: Optional[Settings] = None,
    ):
        """
        Initialize the client.

        Args:
            base_url: Provider API base URL
            email: API account email
            password: API account password
            timeout_seconds: Timeout per remote call
            token_ttl_minutes: Lifetime of a cached token
            transport: Optional httpx transport (tests use httpx.MockTransport)
            settings: Optional settings override
        """
        settings = settings or get_settings()
        self.base_url = (base_url or settings.shipping_base_url).rstrip("/")
        self.email = email if email is not None else settings.shipping_email
        self.password = password if password is not None else settings.shipping_password
        self.timeout_seconds = timeout_seconds or settings.shipping_timeout_seconds
        self.token_ttl = timedelta(
            minutes=token_ttl_minutes or settings.shipping_token_ttl_minutes
        )

        self.client = httpx.AsyncClient(
            base_url=self.base_url,
            headers={"Content-Type": "application/json", "Accept": "application/json"},
            timeout=httpx.Timeout(self.timeout_seconds),
            transport=transport,
        )

        self._token: Optional[str] = None
        self._token_expires_at: Optional[datetime] = None
        self._auth_lock = asyncio.Lock()

    async def __aenter__(self) -> "ShippingClient":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    async def close(self) -> None:
        await self.client.aclose()

    def _token_valid(self) -> bool:
        return (
            self._token is not None
            and self._token_expires_at is not None
            and datetime.now(timezone.utc) < self._token_expires_at
        )

    async def authenticate(self, force: bool = False) -> str:
        """
        Return a valid bearer token, logging in if needed.

        Args:
            force: Discard any cached token first

        Returns:
            Bearer token

        Raises:
            GatewayUnavailableError: If credentials are not configured
            GatewayError: If the provider rejects the credentials
        """
        async with self._auth_lock:
            if force:
                self._token = None
            if self._token_valid():
                return self._token

            if not self.email or not self.password:
                logger.error("Shipping provider credentials missing")
                raise GatewayUnavailableError(
                    "Shipping provider is not configured", provider=PROVIDER
                )

            try:
                body = await self._send(
                    "POST",
                    "/auth/login",
                    json={"email": self.email, "password": self.password},
                    operation="authenticate",
                )
            except _Unauthorized as e:
                logger.error("Shipping provider rejected credentials")
                raise GatewayUnavailableError(
                    "Shipping provider rejected credentials",
                    provider=PROVIDER,
                    provider_code="401",
                    provider_description=_error_message(e.body),
                    http_status=401,
                ) from e
            token = body.get("token")
            if not token:
                raise GatewayError(
                    "Shipping provider login returned no token",
                    provider=PROVIDER,
                    provider_description=body.get("message"),
                )

            self._token = token
            self._token_expires_at = datetime.now(timezone.utc) + self.token_ttl
            logger.info("Shipping provider token refreshed")
            return token

    async def _send(
        self,
        method: str,
        path: str,
        operation: str,
        json: Optional[dict[str, Any]] = None,
        token: Optional[str] = None,
    ) -> dict[str, Any]:
        """Send one HTTP request and decode the JSON response body."""
        headers = {"Authorization": f"Bearer {token}"} if token else None

        try:
            async with log_performance(logger, f"shipping.{operation}", path=path):
                response = await asyncio.wait_for(
                    self.client.request(method, path, json=json, headers=headers),
                    timeout=self.timeout_seconds,
                )
        except (asyncio.TimeoutError, httpx.TimeoutException) as e:
            logger.warning(
                "Shipping provider call timed out; outcome unknown",
                operation=operation,
                timeout_seconds=self.timeout_seconds,
            )
            raise GatewayTimeoutError(
                f"Shipping provider {operation} timed out",
                provider=PROVIDER,
                operation=operation,
            ) from e
        except httpx.TransportError as e:
            logger.warning(
                "Shipping provider unreachable",
                operation=operation,
                error=str(e),
            )
            raise GatewayUnavailableError(
                f"Shipping provider {operation} unreachable",
                provider=PROVIDER,
                provider_description=str(e),
                operation=operation,
            ) from e

        try:
            body = response.json() if response.content else {}
        except ValueError:
            body = {"message": response.text[:500]}
        if not isinstance(body, dict):
            body = {"data": body}

        if response.status_code == 401:
            raise _Unauthorized(body)

        if response.status_code >= 400:
            logger.warning(
                "Shipping provider returned error",
                operation=operation,
                status_code=response.status_code,
                provider_message=body.get("message"),
            )
            raise GatewayError(
                f"Shipping provider {operation} failed",
                provider=PROVIDER,
                provider_code=str(body.get("status_code") or response.status_code),
                provider_description=_error_message(body),
                http_status=response.status_code,
                operation=operation,
            )

        return body

    async def _request(
        self,
        method: str,
        path: str,
        operation: str,
        json: Optional[dict[str, Any]] = None,
    ) -> dict[str, Any]:
        """Send an authenticated request, re-authenticating once on 401."""
        token = await self.authenticate()
        try:
            return await self._send(method, path, operation, json=json, token=token)
        except _Unauthorized:
            logger.info("Shipping provider token rejected, re-authenticating", operation=operation)
            token = await self.authenticate(force=True)
            try:
                return await self._send(method, path, operation, json=json, token=token)
            except _Unauthorized as e:
                raise GatewayError(
                    f"Shipping provider {operation} unauthorized",
                    provider=PROVIDER,
                    provider_code="401",
                    provider_description=_error_message(e.body),
                    http_status=401,
                ) from e

    async def create_order(self, payload: dict[str, Any]) -> CarrierOrder:
        """
        Create a carrier order for an outbound shipment.

        Returns:
            CarrierOrder with the provider's order and shipment ids
        """
        body = await self._request("POST", "/orders/create/adhoc", "create_order", json=payload)
        return _carrier_order(body, "create_order")

    async def create_return_order(self, payload: dict[str, Any]) -> CarrierOrder:
        """Create a carrier order for a reverse pickup."""
        body = await self._request("POST", "/orders/create/return", "create_return_order", json=payload)
        return _carrier_order(body, "create_return_order")

    async def assign_awb(self, shipment_id: str, is_return: bool = False) -> AwbAssignment:
        """
        Ask the provider to assign a courier and waybill to a shipment.

        Raises:
            GatewayError: If no AWB could be assigned (e.g. insufficient balance)
        """
        payload: dict[str, Any] = {"shipment_id": shipment_id}
        if is_return:
            payload["is_return"] = 1
        body = await self._request("POST", "/courier/assign/awb", "assign_awb", json=payload)

        data = (body.get("response") or {}).get("data") or {}
        awb_code = data.get("awb_code")
        if body.get("awb_assign_status") != 1 or not awb_code:
            raise GatewayError(
                "Shipping provider did not assign an AWB",
                provider=PROVIDER,
                provider_code=str(body.get("status_code") or "awb_not_assigned"),
                provider_description=_error_message(body) or data.get("awb_assign_error"),
                shipment_id=shipment_id,
            )
        return AwbAssignment(
            shipment_id=str(shipment_id),
            awb_code=str(awb_code),
            courier_name=data.get("courier_name"),
        )

    async def generate_pickup(self, shipment_id: str) -> dict[str, Any]:
        """Request a courier pickup for a shipment."""
        return await self._request(
            "POST",
            "/courier/generate/pickup",
            "generate_pickup",
            json={"shipment_id": [shipment_id]},
        )

    async def create_shipment_documents(
        self, kind: DocumentKind, reference_ids: list[str]
    ) -> str:
        """
        Render one shipment document and return its URL.

        Manifests and invoices are keyed by carrier order ids, labels by
        shipment ids.

        Args:
            kind: Document to render
            reference_ids: Carrier order ids or shipment ids

        Returns:
            URL of the rendered document
        """
        if kind is DocumentKind.MANIFEST:
            path, payload, url_key = "/manifests/print", {"order_ids": reference_ids}, "manifest_url"
        elif kind is DocumentKind.LABEL:
            path, payload, url_key = "/courier/generate/label", {"shipment_id": reference_ids}, "label_url"
        else:
            path, payload, url_key = "/orders/print/invoice", {"ids": reference_ids}, "invoice_url"

        body = await self._request("POST", path, f"{kind.value}_document", json=payload)
        url = body.get(url_key)
        if not url:
            raise GatewayError(
                f"Shipping provider returned no {kind.value} URL",
                provider=PROVIDER,
                provider_code=str(body.get("status_code") or f"{kind.value}_missing"),
                provider_description=_error_message(body),
            )
        return str(url)

    async def track_by_waybill(self, awb_code: str) -> TrackingSnapshot:
        """
        Fetch current tracking state for a waybill.

        Args:
            awb_code: Carrier waybill code

        Returns:
            TrackingSnapshot
        """
        body = await self._request("GET", f"/courier/track/awb/{awb_code}", "track_by_waybill")
        tracking = body.get("tracking_data") or {}
        if tracking.get("error"):
            raise GatewayError(
                "Shipping provider has no tracking for waybill",
                provider=PROVIDER,
                provider_code="tracking_unavailable",
                provider_description=str(tracking["error"]),
                awb_code=awb_code,
            )

        track = (tracking.get("shipment_track") or [{}])[0] or {}
        activities = tracking.get("shipment_track_activities") or []
        latest = activities[0] if activities else {}

        status_code = tracking.get("shipment_status")
        return TrackingSnapshot(
            awb_code=awb_code,
            status_code=int(status_code) if status_code not in (None, "") else None,
            status_label=track.get("current_status") or latest.get("sr-status-label"),
            current_location=latest.get("location") or track.get("destination"),
            courier_name=track.get("courier_name"),
            updated_at=_parse_provider_datetime(latest.get("date")),
            activities=list(activities),
        )


class _Unauthorized(Exception):
    def __init__(self, body: dict[str, Any]):
        super().__init__("unauthorized")
        self.body = body


def _error_message(body: dict[str, Any]) -> Optional[str]:
    message = body.get("message")
    errors = body.get("errors")
    if errors and isinstance(errors, dict):
        details = "; ".join(f"{key}: {value}" for key, value in errors.items())
        return f"{message}: {details}" if message else details
    return message


def _carrier_order(body: dict[str, Any], operation: str) -> CarrierOrder:
    order_id = body.get("order_id")
    shipment_id = body.get("shipment_id")
    if not order_id or not shipment_id:
        raise GatewayError(
            f"Shipping provider {operation} returned no identifiers",
            provider=PROVIDER,
            provider_code=str(body.get("status_code") or "missing_identifiers"),
            provider_description=_error_message(body),
        )
    return CarrierOrder(carrier_order_id=str(order_id), shipment_id=str(shipment_id))


def _parse_provider_datetime(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    for fmt in ("%Y-%m-%d %H:%M:%S", "%Y-%m-%dT%H:%M:%S", "%d %m %Y %H:%M:%S"):
        try:
            return datetime.strptime(value, fmt).replace(tzinfo=timezone.utc)
        except ValueError:
            continue
    return None


_shared_client: Optional[ShippingClient] = None


def get_shipping_client() -> ShippingClient:
    """
    Get or create the process-wide shipping client.

    Sharing one client keeps the provider token cached across requests.
    """
    global _shared_client

    if _shared_client is None:
        _shared_client = ShippingClient()

    return _shared_client


async def close_shipping_client() -> None:
    """Close the shared client on application shutdown."""
    global _shared_client

    if _shared_client is not None:
        await _shared_client.close()
        _shared_client = None
        logger.info("Shipping client closed")
