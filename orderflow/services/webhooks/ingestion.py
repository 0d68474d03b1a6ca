"""
Webhook ingestion.

Normalizes provider payloads, verifies signatures and applies each event at
most once. The idempotency key of an event is the provider's event id when
it has one, otherwise the AWB plus carrier status (and scan timestamp).
The key is inserted after the event's effect, in the same transaction as
its final write; a replay finds the key and is skipped, and a concurrent
duplicate collides on the unique constraint and is rolled back.

Nothing here raises to the transport layer for a provider-side problem:
bad signatures, unknown shipments and unparseable bodies all become
outcomes that are logged and answered with 200.
"""

import hashlib
import hmac
import json
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Optional
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from orderflow.core.config import Settings, get_settings
from orderflow.core.errors import InvalidInputError
from orderflow.core.logging import get_logger
from orderflow.database.models.webhook_event import ProcessedWebhookEvent
from orderflow.services.orders.automation import OrderAutomationService, TrackingUpdate
from orderflow.services.payments.gateway import (
    PaymentGateway,
    RefundRecord,
    refund_record_from_stripe,
)
from orderflow.services.returns.service import ReturnService, ReturnTrackingUpdate
from orderflow.services.shipping.status import parse_status_code

logger = get_logger(__name__)

SHIPPING_SIGNATURE_HEADER = "x-shiprocket-signature"
STRIPE_SIGNATURE_HEADER = "stripe-signature"

REFUND_EVENT_TYPES = frozenset(
    {"refund.created", "refund.updated", "refund.failed", "charge.refund.updated"}
)

# Outcomes after which the event must not be applied again
RECORDED_OUTCOMES = frozenset({"applied", "noop", "flagged"})


class WebhookSource(str, Enum):
    SHIPPING_TRACKING = "shipping_tracking"
    SHIPPING_RETURNS = "shipping_returns"
    PAYMENT_REFUNDS = "payment_refunds"


@dataclass(frozen=True)
class EffectResult:
    outcome: str
    entity_id: Optional[str] = None
    reason: Optional[str] = None


@dataclass
class WebhookOutcome:
    """What happened to one delivery; captured in the webhook log."""

    source: WebhookSource
    outcome: str
    payload: Optional[Any] = None
    signature_valid: Optional[bool] = None
    event_key: Optional[str] = None
    entity_id: Optional[str] = None
    reason: Optional[str] = None


def verify_hmac_signature(
    raw_body: bytes, signature: Optional[str], secret: Optional[str]
) -> Optional[bool]:
    """
    Check a hex HMAC-SHA256 signature over the raw body.

    Returns:
        None if no secret is configured, otherwise whether the signature matches
    """
    if not secret:
        return None
    if not signature:
        return False
    expected = hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected.encode("utf-8"), signature.strip().lower().encode("utf-8"))


def parse_json_body(raw_body: bytes) -> dict[str, Any]:
    """
    Decode a JSON object body.

    Raises:
        InvalidInputError: If the body is not a JSON object
    """
    try:
        payload = json.loads(raw_body.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise InvalidInputError("Webhook body is not valid JSON", code="MALFORMED_PAYLOAD") from e
    if not isinstance(payload, dict):
        raise InvalidInputError("Webhook body must be a JSON object", code="MALFORMED_PAYLOAD")
    return payload


def _text(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _status_code(payload: dict[str, Any]) -> Optional[int]:
    for key in ("current_status_code", "current_status_id", "shipment_status_id", "status_code"):
        code = parse_status_code(payload.get(key))
        if code is not None:
            return code
    return None


def parse_carrier_timestamp(value: Any) -> Optional[datetime]:
    """Parse the carrier's scan timestamp, assumed UTC when naive."""
    text = _text(value)
    if text is None:
        return None
    for fmt in (
        "%Y-%m-%d %H:%M:%S",
        "%Y-%m-%dT%H:%M:%S",
        "%d %m %Y %H:%M:%S",
        "%d-%m-%Y %H:%M:%S",
    ):
        try:
            return datetime.strptime(text, fmt).replace(tzinfo=timezone.utc)
        except ValueError:
            continue
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def _latest_scan_location(payload: dict[str, Any]) -> Optional[str]:
    scans = payload.get("scans")
    if isinstance(scans, list) and scans:
        latest = scans[-1]
        if isinstance(latest, dict):
            return _text(latest.get("location"))
    return None


def tracking_update_from_payload(payload: dict[str, Any]) -> TrackingUpdate:
    """
    Normalize a carrier tracking payload.

    Raises:
        InvalidInputError: If the payload names neither an AWB nor a shipment
    """
    awb_code = _text(payload.get("awb") or payload.get("awb_code"))
    shipment_id = _text(payload.get("shipment_id"))
    if not awb_code and not shipment_id:
        raise InvalidInputError("AWB or shipment id required", code="MISSING_SHIPMENT_REFERENCE")
    return TrackingUpdate(
        awb_code=awb_code,
        shipment_id=shipment_id,
        status_code=_status_code(payload),
        status_label=_text(payload.get("current_status") or payload.get("shipment_status")),
        current_location=_text(payload.get("location")) or _latest_scan_location(payload),
        courier_name=_text(payload.get("courier_name")),
        occurred_at=parse_carrier_timestamp(payload.get("current_timestamp")),
    )


def return_update_from_payload(payload: dict[str, Any]) -> ReturnTrackingUpdate:
    """Normalize a reverse-pickup payload."""
    awb_code = _text(payload.get("awb") or payload.get("awb_code"))
    shipment_id = _text(payload.get("shipment_id"))
    if not awb_code and not shipment_id:
        raise InvalidInputError("AWB or shipment id required", code="MISSING_SHIPMENT_REFERENCE")
    return ReturnTrackingUpdate(
        awb_code=awb_code,
        shipment_id=shipment_id,
        status_code=_status_code(payload),
        status_label=_text(payload.get("current_status") or payload.get("shipment_status")),
    )


def carrier_event_key(payload: dict[str, Any]) -> str:
    """AWB (or shipment id), status code and scan timestamp."""
    reference = _text(payload.get("awb") or payload.get("awb_code")) or (
        f"shipment-{_text(payload.get('shipment_id'))}"
    )
    timestamp = _text(payload.get("current_timestamp")) or ""
    return f"{reference}:{_status_code(payload)}:{timestamp}"


def refund_from_event(event: dict[str, Any]) -> tuple[RefundRecord, Optional[UUID]]:
    """
    Extract the refund and the return id from a gateway refund event.

    Raises:
        InvalidInputError: If the event carries no refund object
    """
    obj = (event.get("data") or {}).get("object") or {}
    if not isinstance(obj, dict) or not obj.get("id") or obj.get("object", "refund") != "refund":
        raise InvalidInputError("Refund event carries no refund", code="MALFORMED_PAYLOAD")
    record = refund_record_from_stripe(obj)
    return_id: Optional[UUID] = None
    raw_return_id = (obj.get("metadata") or {}).get("return_id")
    if raw_return_id:
        try:
            return_id = UUID(str(raw_return_id))
        except ValueError:
            return_id = None
    return record, return_id


class WebhookProcessor:
    """Applies verified, deduplicated provider events to orders and returns."""

    def __init__(
        self,
        session: AsyncSession,
        order_service: OrderAutomationService,
        return_service: ReturnService,
        payment_gateway: PaymentGateway,
        settings: Optional[Settings] = None,
    ):
        self.session = session
        self.order_service = order_service
        self.return_service = return_service
        self.payment_gateway = payment_gateway
        self.settings = settings or get_settings()

    async def _already_processed(self, provider: str, event_type: str, event_key: str) -> bool:
        result = await self.session.execute(
            select(ProcessedWebhookEvent.id).where(
                ProcessedWebhookEvent.provider == provider,
                ProcessedWebhookEvent.event_type == event_type,
                ProcessedWebhookEvent.event_key == event_key,
            )
        )
        return result.first() is not None

    async def _apply_once(
        self,
        outcome: WebhookOutcome,
        provider: str,
        event_type: str,
        apply: Callable[[], Awaitable[EffectResult]],
    ) -> WebhookOutcome:
        """Run ``apply`` unless the event key was already recorded."""
        event_key = outcome.event_key
        if await self._already_processed(provider, event_type, event_key):
            logger.info(
                "Duplicate webhook event skipped",
                provider=provider,
                event_type=event_type,
                event_key=event_key,
            )
            outcome.outcome = "duplicate"
            return outcome

        effect = await apply()
        outcome.outcome = effect.outcome
        outcome.entity_id = effect.entity_id
        outcome.reason = effect.reason

        if effect.outcome in RECORDED_OUTCOMES:
            self.session.add(
                ProcessedWebhookEvent(
                    provider=provider,
                    event_type=event_type,
                    event_key=event_key,
                    entity_id=effect.entity_id,
                    outcome=effect.outcome,
                )
            )
        try:
            await self.session.commit()
        except IntegrityError:
            await self.session.rollback()
            logger.info(
                "Concurrent duplicate webhook event rolled back",
                provider=provider,
                event_type=event_type,
                event_key=event_key,
            )
            outcome.outcome = "duplicate"
        return outcome

    def _check_carrier_signature(
        self, outcome: WebhookOutcome, raw_body: bytes, headers: dict[str, str]
    ) -> bool:
        outcome.signature_valid = verify_hmac_signature(
            raw_body,
            headers.get(SHIPPING_SIGNATURE_HEADER),
            self.settings.shipping_webhook_secret,
        )
        if outcome.signature_valid is False:
            logger.warning("Carrier webhook signature invalid", source=outcome.source.value)
            outcome.outcome = "invalid_signature"
            return False
        return True

    async def handle_tracking(self, raw_body: bytes, headers: dict[str, str]) -> WebhookOutcome:
        """Process an outbound shipment tracking delivery."""
        outcome = WebhookOutcome(WebhookSource.SHIPPING_TRACKING, "received")
        if not self._check_carrier_signature(outcome, raw_body, headers):
            return outcome

        outcome.payload = parse_json_body(raw_body)
        update = tracking_update_from_payload(outcome.payload)
        outcome.event_key = carrier_event_key(outcome.payload)

        async def apply() -> EffectResult:
            result = await self.order_service.apply_tracking_event(update)
            return EffectResult(
                result.outcome,
                str(result.order_id) if result.order_id else None,
                result.reason,
            )

        return await self._apply_once(outcome, "shipping", "tracking", apply)

    async def handle_return(self, raw_body: bytes, headers: dict[str, str]) -> WebhookOutcome:
        """Process a reverse-pickup delivery."""
        outcome = WebhookOutcome(WebhookSource.SHIPPING_RETURNS, "received")
        if not self._check_carrier_signature(outcome, raw_body, headers):
            return outcome

        outcome.payload = parse_json_body(raw_body)
        update = return_update_from_payload(outcome.payload)
        outcome.event_key = carrier_event_key(outcome.payload)

        async def apply() -> EffectResult:
            result = await self.return_service.apply_carrier_event(update)
            return EffectResult(
                result.outcome,
                str(result.return_id) if result.return_id else None,
                result.reason,
            )

        return await self._apply_once(outcome, "shipping", "return", apply)

    async def handle_refund(self, raw_body: bytes, headers: dict[str, str]) -> WebhookOutcome:
        """Process a payment gateway refund event."""
        outcome = WebhookOutcome(WebhookSource.PAYMENT_REFUNDS, "received")

        if self.payment_gateway.webhook_secret:
            try:
                self.payment_gateway.construct_event(raw_body, headers.get(STRIPE_SIGNATURE_HEADER))
            except InvalidInputError as e:
                if e.code == "INVALID_SIGNATURE":
                    logger.warning("Refund webhook signature invalid")
                    outcome.signature_valid = False
                    outcome.outcome = "invalid_signature"
                    return outcome
                raise
            outcome.signature_valid = True

        event = parse_json_body(raw_body)
        outcome.payload = event
        event_type = str(event.get("type") or "")
        if event_type not in REFUND_EVENT_TYPES:
            logger.info("Ignoring unsupported payment event", event_type=event_type)
            outcome.outcome = "ignored"
            outcome.reason = "unsupported_event_type"
            return outcome

        record, return_id = refund_from_event(event)
        outcome.event_key = str(event.get("id") or f"{record.refund_id}:{record.status.value}")

        async def apply() -> EffectResult:
            result = await self.return_service.apply_refund_event(record, return_id)
            return EffectResult(
                result.outcome,
                str(result.return_id) if result.return_id else None,
                result.reason,
            )

        return await self._apply_once(outcome, "payment", event_type, apply)
