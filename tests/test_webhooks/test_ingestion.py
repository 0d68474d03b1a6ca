"""
Test suite for webhook payload normalization and at-most-once processing.
"""

import hashlib
import hmac
import json
from datetime import datetime, timezone

import pytest
from sqlalchemy import func, select

from orderflow.core.errors import InvalidInputError
from orderflow.database.models.webhook_event import ProcessedWebhookEvent
from orderflow.services.orders.enums import OrderStatus, ReturnStatus
from orderflow.services.returns.service import ReturnItemRequest, ReturnTrackingUpdate
from orderflow.services.webhooks.ingestion import (
    SHIPPING_SIGNATURE_HEADER,
    WebhookProcessor,
    carrier_event_key,
    parse_carrier_timestamp,
    parse_json_body,
    tracking_update_from_payload,
    verify_hmac_signature,
)


def body(payload: dict) -> bytes:
    return json.dumps(payload).encode("utf-8")


async def processed_count(session) -> int:
    result = await session.execute(select(func.count(ProcessedWebhookEvent.id)))
    return int(result.scalar())


def refund_event(refund_id: str, status: str = "succeeded", **metadata) -> dict:
    return {
        "id": f"evt_{refund_id}_{status}",
        "object": "event",
        "type": "refund.updated",
        "data": {
            "object": {
                "id": refund_id,
                "object": "refund",
                "amount": 49900,
                "currency": "inr",
                "payment_intent": "pi_123",
                "status": status,
                "metadata": metadata,
            }
        },
    }


@pytest.fixture
def processor(db_session, order_service, return_service, payment_gateway, test_settings):
    return WebhookProcessor(
        db_session, order_service, return_service, payment_gateway, test_settings
    )


@pytest.fixture
async def refunding_return(return_service, customer, delivered_order):
    """Unused kurta received back and refunded as re_1, awaiting confirmation."""
    return_request = await return_service.request_return(
        customer,
        delivered_order.id,
        [ReturnItemRequest(sku="SKU-1", quantity=1, condition="unused")],
    )
    for code in (38, 6):
        await return_service.apply_carrier_event(
            ReturnTrackingUpdate(awb_code="RA1", status_code=code)
        )
    return return_request


# ============================================================================
# Payload Normalization
# ============================================================================


class TestTrackingPayload:
    def test_awb_and_status_id_variants(self):
        update = tracking_update_from_payload(
            {
                "awb_code": " A1 ",
                "current_status_id": "38",
                "shipment_status": "IN TRANSIT",
                "scans": [{"location": "Mumbai Hub"}, {"location": "Pune Hub"}],
                "courier_name": "Delhivery",
                "current_timestamp": "2026-10-12 14:05:00",
            }
        )

        assert update.awb_code == "A1"
        assert update.status_code == 38
        assert update.status_label == "IN TRANSIT"
        assert update.current_location == "Pune Hub"
        assert update.courier_name == "Delhivery"
        assert update.occurred_at == datetime(2026, 10, 12, 14, 5, tzinfo=timezone.utc)

    def test_explicit_location_preferred(self):
        update = tracking_update_from_payload(
            {"awb": "A1", "current_status_code": 6, "location": "Bengaluru", "scans": []}
        )

        assert update.status_code == 6
        assert update.current_location == "Bengaluru"

    def test_shipment_id_alone_is_enough(self):
        update = tracking_update_from_payload({"shipment_id": 2002, "status_code": "6"})

        assert update.awb_code is None
        assert update.shipment_id == "2002"

    def test_missing_reference_rejected(self):
        with pytest.raises(InvalidInputError) as exc_info:
            tracking_update_from_payload({"current_status_code": 6})
        assert exc_info.value.code == "MISSING_SHIPMENT_REFERENCE"

    @pytest.mark.parametrize(
        "raw",
        ["2026-10-12 14:05:00", "2026-10-12T14:05:00", "12 10 2026 14:05:00", "12-10-2026 14:05:00"],
    )
    def test_timestamp_formats(self, raw):
        assert parse_carrier_timestamp(raw) == datetime(2026, 10, 12, 14, 5, tzinfo=timezone.utc)

    def test_unparseable_timestamp(self):
        assert parse_carrier_timestamp("yesterday") is None
        assert parse_carrier_timestamp("") is None

    def test_event_key(self):
        key = carrier_event_key(
            {"awb": "A1", "current_status_id": 6, "current_timestamp": "2026-10-12 14:05:00"}
        )

        assert key == "A1:6:2026-10-12 14:05:00"
        assert carrier_event_key({"shipment_id": "S1", "status_code": 38}) == "shipment-S1:38:"

    @pytest.mark.parametrize("raw", [b"not json", b"[1, 2]", b"\xff\xfe"])
    def test_malformed_body(self, raw):
        with pytest.raises(InvalidInputError) as exc_info:
            parse_json_body(raw)
        assert exc_info.value.code == "MALFORMED_PAYLOAD"


class TestCarrierSignature:
    def test_no_secret_means_unchecked(self):
        assert verify_hmac_signature(b"{}", None, None) is None

    def test_matching_signature(self):
        raw = b'{"awb": "A1"}'
        signature = hmac.new(b"carrier-secret", raw, hashlib.sha256).hexdigest()

        assert verify_hmac_signature(raw, signature.upper(), "carrier-secret") is True

    def test_mismatch_or_missing(self):
        assert verify_hmac_signature(b"{}", "deadbeef", "carrier-secret") is False
        assert verify_hmac_signature(b"{}", None, "carrier-secret") is False


# ============================================================================
# Processing
# ============================================================================


class TestTrackingDeliveries:
    @pytest.mark.asyncio
    async def test_applied_then_duplicate(self, processor, shipped_order, db_session):
        raw = body({"awb": "A1", "current_status_id": 38, "current_timestamp": "2026-10-12 09:00:00"})

        first = await processor.handle_tracking(raw, {})
        replay = await processor.handle_tracking(raw, {})

        assert first.outcome == "applied"
        assert first.entity_id == str(shipped_order.id)
        assert first.event_key == "A1:38:2026-10-12 09:00:00"
        assert replay.outcome == "duplicate"
        assert await processed_count(db_session) == 1
        await db_session.refresh(shipped_order)
        assert shipped_order.status is OrderStatus.SHIPPED

    @pytest.mark.asyncio
    async def test_unknown_awb_not_recorded(self, processor, db_session):
        outcome = await processor.handle_tracking(body({"awb": "NOPE", "current_status_id": 6}), {})

        assert outcome.outcome == "unmatched"
        assert outcome.reason == "order_not_found"
        assert await processed_count(db_session) == 0

    @pytest.mark.asyncio
    async def test_missing_awb_raises(self, processor):
        with pytest.raises(InvalidInputError):
            await processor.handle_tracking(body({"current_status_id": 6}), {})

    @pytest.mark.asyncio
    async def test_bad_signature_not_applied(
        self, db_session, order_service, return_service, payment_gateway, test_settings,
        shipped_order,
    ):
        settings = test_settings.model_copy(update={"shipping_webhook_secret": "carrier-secret"})
        processor = WebhookProcessor(
            db_session, order_service, return_service, payment_gateway, settings
        )

        outcome = await processor.handle_tracking(
            body({"awb": "A1", "current_status_id": 6}),
            {SHIPPING_SIGNATURE_HEADER: "deadbeef"},
        )

        assert outcome.outcome == "invalid_signature"
        assert outcome.signature_valid is False
        await db_session.refresh(shipped_order)
        assert shipped_order.status is OrderStatus.PROCESSING

    @pytest.mark.asyncio
    async def test_valid_signature_applied(
        self, db_session, order_service, return_service, payment_gateway, test_settings,
        shipped_order,
    ):
        settings = test_settings.model_copy(update={"shipping_webhook_secret": "carrier-secret"})
        processor = WebhookProcessor(
            db_session, order_service, return_service, payment_gateway, settings
        )
        raw = body({"awb": "A1", "current_status_id": 38})
        signature = hmac.new(b"carrier-secret", raw, hashlib.sha256).hexdigest()

        outcome = await processor.handle_tracking(raw, {SHIPPING_SIGNATURE_HEADER: signature})

        assert outcome.signature_valid is True
        assert outcome.outcome == "applied"


class TestReturnDeliveries:
    @pytest.mark.asyncio
    async def test_reverse_pickup_in_transit(
        self, processor, return_service, customer, delivered_order, db_session
    ):
        return_request = await return_service.request_return(
            customer,
            delivered_order.id,
            [ReturnItemRequest(sku="SKU-1", quantity=1, condition="unused")],
        )
        await db_session.commit()

        outcome = await processor.handle_return(body({"awb": "RA1", "current_status_id": 38}), {})

        assert outcome.outcome == "applied"
        assert outcome.entity_id == str(return_request.id)
        await db_session.refresh(return_request)
        assert return_request.status is ReturnStatus.IN_TRANSIT

    @pytest.mark.asyncio
    async def test_repeated_warehouse_delivery_refunds_once(
        self, processor, return_service, customer, delivered_order, payment_gateway, db_session
    ):
        return_request = await return_service.request_return(
            customer,
            delivered_order.id,
            [ReturnItemRequest(sku="SKU-1", quantity=1, condition="unused")],
        )
        await db_session.commit()
        delivered = {"awb": "RA1", "current_status_id": 6}

        outcomes = [
            await processor.handle_return(
                body({**delivered, "current_timestamp": "2026-10-12 10:00:00"}), {}
            ),
            await processor.handle_return(
                body({**delivered, "current_timestamp": "2026-10-12 10:00:00"}), {}
            ),
            await processor.handle_return(
                body({**delivered, "current_timestamp": "2026-10-12 11:00:00"}), {}
            ),
            await processor.handle_return(body(delivered), {}),
        ]

        assert [outcome.outcome for outcome in outcomes] == [
            "applied",
            "duplicate",
            "noop",
            "noop",
        ]
        assert payment_gateway.issue_refund.await_count == 1
        await db_session.refresh(return_request)
        assert return_request.status is ReturnStatus.REFUND_INITIATED


class TestRefundDeliveries:
    @pytest.mark.asyncio
    async def test_refund_confirmation_completes_return(
        self, processor, refunding_return, db_session
    ):
        await db_session.commit()
        assert refunding_return.status is ReturnStatus.REFUND_INITIATED

        outcome = await processor.handle_refund(body(refund_event("re_1")), {})
        replay = await processor.handle_refund(body(refund_event("re_1")), {})

        assert outcome.outcome == "applied"
        assert outcome.event_key == "evt_re_1_succeeded"
        assert replay.outcome == "duplicate"
        await db_session.refresh(refunding_return)
        assert refunding_return.status is ReturnStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_matched_by_metadata_return_id(self, processor, refunding_return, db_session):
        await db_session.commit()
        event = refund_event("re_unrecorded", return_id=str(refunding_return.id))

        outcome = await processor.handle_refund(body(event), {})

        assert outcome.outcome == "applied"
        assert outcome.entity_id == str(refunding_return.id)

    @pytest.mark.asyncio
    async def test_unknown_refund_unmatched(self, processor, db_session):
        outcome = await processor.handle_refund(body(refund_event("re_ghost")), {})

        assert outcome.outcome == "unmatched"
        assert await processed_count(db_session) == 0

    @pytest.mark.asyncio
    async def test_unsupported_event_type_ignored(self, processor):
        event = refund_event("re_1")
        event["type"] = "charge.succeeded"

        outcome = await processor.handle_refund(body(event), {})

        assert outcome.outcome == "ignored"
        assert outcome.reason == "unsupported_event_type"

    @pytest.mark.asyncio
    async def test_event_without_refund_rejected(self, processor):
        with pytest.raises(InvalidInputError):
            await processor.handle_refund(
                body({"id": "evt_1", "type": "refund.updated", "data": {"object": {}}}), {}
            )
