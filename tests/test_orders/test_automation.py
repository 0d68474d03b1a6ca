"""
Test suite for OrderAutomationService.

Runs the service against a real SQLite database with the payment and
shipping gateways mocked, covering payment confirmation, shipment creation
with retries, tracking events and administrator overrides.
"""

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from sqlalchemy import select

from orderflow.core.errors import (
    GatewayError,
    GatewayTimeoutError,
    InvalidInputError,
    NotYetShippedError,
    PreconditionFailedError,
)
from orderflow.database.base import as_utc, utcnow
from orderflow.database.models.order import OrderStatusHistory
from orderflow.services.orders.automation import (
    ShipmentOutcome,
    TrackingUpdate,
    create_shipment_after_payment,
)
from orderflow.services.orders.enums import OrderStatus, PaymentStatus, ShipmentStatus
from orderflow.services.orders.repository import OrderNotFoundError
from orderflow.services.shipping.client import AwbAssignment, TrackingSnapshot


async def history_pairs(session, order_id) -> set[tuple]:
    result = await session.execute(
        select(OrderStatusHistory).where(OrderStatusHistory.order_id == order_id)
    )
    return {(entry.from_status, entry.to_status) for entry in result.scalars().all()}


def provider_failure(description: str = "Insufficient wallet balance") -> GatewayError:
    return GatewayError(
        "Shipping provider assign_awb failed",
        provider="shipping",
        provider_code="350",
        provider_description=description,
    )


def _assignment():
    return AwbAssignment(shipment_id="S1", awb_code="A1", courier_name="Delhivery")


def _fail_then_assign():
    outcomes = iter([provider_failure(), _assignment()])

    def _next(shipment_id, is_return=False):
        outcome = next(outcomes)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    return _next


# ============================================================================
# Payment Confirmation
# ============================================================================


class TestConfirmPayment:
    """Signed payment confirmation."""

    @pytest.mark.asyncio
    async def test_valid_signature_moves_order_to_processing(
        self, order_service, pending_order, customer, sign, shipping_client
    ):
        result = await order_service.confirm_payment(
            pending_order.id, customer, "pay_P1", "order_G1", sign("order_G1", "pay_P1")
        )

        assert result.already_confirmed is False
        assert result.order.status is OrderStatus.PROCESSING
        assert result.order.payment_status is PaymentStatus.COMPLETED
        assert result.order.payment_gateway_payment_id == "pay_P1"
        assert result.order.paid_at is not None
        assert result.shipment.outcome is ShipmentOutcome.CREATED
        shipping_client.create_order.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_invalid_signature_rejected_without_changes(
        self, order_service, pending_order, customer, sign, db_session
    ):
        signature = sign("order_G1", "pay_P1")
        tampered = ("0" if signature[0] != "0" else "1") + signature[1:]

        with pytest.raises(InvalidInputError) as exc_info:
            await order_service.confirm_payment(
                pending_order.id, customer, "pay_P1", "order_G1", tampered
            )

        assert exc_info.value.code == "INVALID_SIGNATURE"
        await db_session.refresh(pending_order)
        assert pending_order.status is OrderStatus.PENDING
        assert pending_order.payment_status is PaymentStatus.PENDING

    @pytest.mark.asyncio
    async def test_replayed_confirmation_has_no_further_effect(
        self, order_service, pending_order, customer, sign, shipping_client, db_session
    ):
        signature = sign("order_G1", "pay_P1")
        await order_service.confirm_payment(
            pending_order.id, customer, "pay_P1", "order_G1", signature
        )
        version = pending_order.version

        replay = await order_service.confirm_payment(
            pending_order.id, customer, "pay_P1", "order_G1", signature
        )

        assert replay.already_confirmed is True
        assert replay.order.version == version
        assert shipping_client.create_order.await_count == 1
        assert await history_pairs(db_session, pending_order.id) == {
            (OrderStatus.PENDING, OrderStatus.PROCESSING)
        }

    @pytest.mark.asyncio
    async def test_different_payment_reference_refused(
        self, order_service, pending_order, customer, sign
    ):
        await order_service.confirm_payment(
            pending_order.id, customer, "pay_P1", "order_G1", sign("order_G1", "pay_P1")
        )

        with pytest.raises(PreconditionFailedError) as exc_info:
            await order_service.confirm_payment(
                pending_order.id, customer, "pay_P2", "order_G1", sign("order_G1", "pay_P2")
            )
        assert exc_info.value.code == "PAYMENT_ALREADY_CONFIRMED"

    @pytest.mark.asyncio
    async def test_gateway_order_mismatch_refused(
        self, order_service, pending_order, customer, sign
    ):
        with pytest.raises(InvalidInputError) as exc_info:
            await order_service.confirm_payment(
                pending_order.id, customer, "pay_P1", "order_OTHER", sign("order_OTHER", "pay_P1")
            )
        assert exc_info.value.code == "GATEWAY_ORDER_MISMATCH"

    @pytest.mark.asyncio
    async def test_cancelled_order_refused(self, order_service, make_order, customer, sign):
        order = await make_order(status=OrderStatus.CANCELLED)

        with pytest.raises(PreconditionFailedError) as exc_info:
            await order_service.confirm_payment(
                order.id, customer, "pay_P1", "order_G1", sign("order_G1", "pay_P1")
            )
        assert exc_info.value.code == "ORDER_CANCELLED"

    @pytest.mark.asyncio
    async def test_other_users_order_looks_missing(
        self, order_service, pending_order, other_customer, sign
    ):
        with pytest.raises(OrderNotFoundError):
            await order_service.confirm_payment(
                pending_order.id, other_customer, "pay_P1", "order_G1", sign("order_G1", "pay_P1")
            )

    @pytest.mark.asyncio
    async def test_shipment_failure_does_not_fail_confirmation(
        self, order_service, pending_order, customer, sign, shipping_client
    ):
        shipping_client.assign_awb.side_effect = provider_failure()

        result = await order_service.confirm_payment(
            pending_order.id, customer, "pay_P1", "order_G1", sign("order_G1", "pay_P1")
        )

        assert result.order.status is OrderStatus.PROCESSING
        assert result.order.payment_status is PaymentStatus.COMPLETED
        assert result.shipment.outcome is ShipmentOutcome.RETRY_SCHEDULED

    @pytest.mark.asyncio
    async def test_unexpected_shipment_error_is_contained(
        self, order_service, pending_order, customer, sign, shipping_client
    ):
        shipping_client.create_order.side_effect = RuntimeError("boom")

        result = await order_service.confirm_payment(
            pending_order.id, customer, "pay_P1", "order_G1", sign("order_G1", "pay_P1")
        )

        assert result.shipment is None
        assert result.order.payment_status is PaymentStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_deferred_dispatch_makes_no_carrier_call(
        self, order_service, pending_order, customer, sign, shipping_client
    ):
        result = await order_service.confirm_payment(
            pending_order.id,
            customer,
            "pay_P1",
            "order_G1",
            sign("order_G1", "pay_P1"),
            dispatch_shipment=False,
        )

        assert result.order.status is OrderStatus.PROCESSING
        assert result.order.shipment_status is ShipmentStatus.PENDING
        assert result.shipment is None
        shipping_client.create_order.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_background_attempt_creates_shipment(
        self,
        order_service,
        pending_order,
        customer,
        sign,
        session_factory,
        payment_gateway,
        shipping_client,
        test_settings,
        db_session,
    ):
        await order_service.confirm_payment(
            pending_order.id,
            customer,
            "pay_P1",
            "order_G1",
            sign("order_G1", "pay_P1"),
            dispatch_shipment=False,
        )

        attempt = await create_shipment_after_payment(
            pending_order.id, session_factory, payment_gateway, shipping_client, test_settings
        )

        assert attempt.outcome is ShipmentOutcome.CREATED
        await db_session.refresh(pending_order)
        assert pending_order.shipping_awb_code == "A1"
        assert pending_order.shipment_status is ShipmentStatus.CREATED

    @pytest.mark.asyncio
    async def test_background_attempt_contains_unexpected_errors(
        self,
        order_service,
        pending_order,
        customer,
        sign,
        session_factory,
        payment_gateway,
        shipping_client,
        test_settings,
        db_session,
    ):
        shipping_client.create_order.side_effect = RuntimeError("boom")
        await order_service.confirm_payment(
            pending_order.id,
            customer,
            "pay_P1",
            "order_G1",
            sign("order_G1", "pay_P1"),
            dispatch_shipment=False,
        )

        attempt = await create_shipment_after_payment(
            pending_order.id, session_factory, payment_gateway, shipping_client, test_settings
        )

        assert attempt is None
        await db_session.refresh(pending_order)
        assert pending_order.status is OrderStatus.PROCESSING
        assert pending_order.shipping_awb_code is None


class TestCreatePaymentIntent:
    @pytest.mark.asyncio
    async def test_intent_recorded_on_order(
        self, order_service, make_order, customer, payment_gateway
    ):
        order = await make_order(payment_gateway_order_id=None)

        intent = await order_service.create_payment_intent(order.id, customer)

        assert intent.intent_id == "pi_intent_1"
        assert order.payment_gateway_order_id == "pi_intent_1"
        call = payment_gateway.create_payment_intent.await_args
        assert call.args[0] == Decimal("1797.00")
        assert call.kwargs["idempotency_key"].startswith(f"order-intent-{order.id}")

    @pytest.mark.asyncio
    async def test_paid_order_refused(self, order_service, shipped_order, customer):
        with pytest.raises(PreconditionFailedError) as exc_info:
            await order_service.create_payment_intent(shipped_order.id, customer)
        assert exc_info.value.code == "PAYMENT_ALREADY_CONFIRMED"


# ============================================================================
# Shipment Creation
# ============================================================================


class TestCreateShipment:
    """Shipment creation attempts and retry scheduling."""

    @pytest.fixture
    async def paid_order(self, make_order):
        return await make_order(
            status=OrderStatus.PROCESSING,
            payment_status=PaymentStatus.COMPLETED,
            payment_gateway_payment_id="pay_P1",
            paid_at=utcnow(),
            shipment_status=ShipmentStatus.PENDING,
        )

    @pytest.mark.asyncio
    async def test_success_records_shipment_and_awb(
        self, order_service, paid_order, shipping_client
    ):
        result = await order_service.create_shipment(paid_order)

        assert result.outcome is ShipmentOutcome.CREATED
        assert paid_order.shipping_order_id == "SR-1001"
        assert paid_order.shipping_shipment_id == "S1"
        assert paid_order.shipping_awb_code == "A1"
        assert paid_order.courier_name == "Delhivery"
        assert paid_order.shipment_status is ShipmentStatus.CREATED
        assert paid_order.shipping_pending_shipment_id is None
        shipping_client.generate_pickup.assert_awaited_once_with("S1")

    @pytest.mark.asyncio
    async def test_payload_uses_normalized_address(
        self, order_service, paid_order, shipping_client
    ):
        await order_service.create_shipment(paid_order)

        payload = shipping_client.create_order.await_args.args[0]
        assert payload["order_id"] == str(paid_order.id)
        assert payload["billing_phone"] == "9876543210"
        assert payload["billing_pincode"] == "560001"
        assert payload["payment_method"] == "Prepaid"
        assert payload["sub_total"] == "1797.00"
        assert [item["units"] for item in payload["order_items"]] == [2, 1]

    @pytest.mark.asyncio
    async def test_transient_failure_schedules_backoff(
        self, order_service, paid_order, shipping_client
    ):
        shipping_client.assign_awb.side_effect = provider_failure()
        before = utcnow()

        result = await order_service.create_shipment(paid_order)

        assert result.outcome is ShipmentOutcome.RETRY_SCHEDULED
        assert result.attempt == 1
        assert "Insufficient wallet balance" in result.error
        assert paid_order.shipment_status is ShipmentStatus.PENDING
        assert paid_order.shipment_attempts == 1
        delay = as_utc(paid_order.shipment_next_retry_at) - before
        assert timedelta(seconds=59) <= delay <= timedelta(seconds=70)
        assert paid_order.shipping_shipment_id is None

    @pytest.mark.asyncio
    async def test_carrier_order_reused_across_attempts(
        self, order_service, paid_order, shipping_client
    ):
        shipping_client.assign_awb.side_effect = _fail_then_assign()

        await order_service.create_shipment(paid_order)
        assert paid_order.shipping_pending_shipment_id == "S1"

        result = await order_service.create_shipment(paid_order)

        assert result.outcome is ShipmentOutcome.CREATED
        assert result.attempt == 2
        shipping_client.create_order.assert_awaited_once()
        assert paid_order.shipping_awb_code == "A1"

    @pytest.mark.asyncio
    async def test_exhausted_attempts_flag_order(
        self, order_service, paid_order, shipping_client
    ):
        shipping_client.assign_awb.side_effect = provider_failure()

        results = [await order_service.create_shipment(paid_order) for _ in range(3)]

        assert [r.outcome for r in results] == [
            ShipmentOutcome.RETRY_SCHEDULED,
            ShipmentOutcome.RETRY_SCHEDULED,
            ShipmentOutcome.FAILED,
        ]
        assert paid_order.shipment_status is ShipmentStatus.FAILED
        assert paid_order.shipment_next_retry_at is None
        assert "Manual remediation required" in paid_order.warning
        assert paid_order.status is OrderStatus.PROCESSING

    @pytest.mark.asyncio
    async def test_unshippable_address_fails_permanently(
        self, order_service, make_order, shipping_client
    ):
        order = await make_order(
            status=OrderStatus.PROCESSING,
            payment_status=PaymentStatus.COMPLETED,
            shipment_status=ShipmentStatus.PENDING,
            shipping_address={"full_name": "Asha Rao", "city": "Bengaluru"},
        )

        result = await order_service.create_shipment(order)

        assert result.outcome is ShipmentOutcome.FAILED
        assert order.shipment_status is ShipmentStatus.FAILED
        shipping_client.create_order.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_timeout_marks_outcome_unknown(
        self, order_service, paid_order, shipping_client
    ):
        shipping_client.assign_awb.side_effect = GatewayTimeoutError(
            "Shipping provider assign_awb timed out", provider="shipping"
        )

        result = await order_service.create_shipment(paid_order)

        assert result.outcome is ShipmentOutcome.RETRY_SCHEDULED
        assert "outcome unknown" in paid_order.shipment_error

    @pytest.mark.asyncio
    async def test_pickup_failure_only_warns(self, order_service, paid_order, shipping_client):
        shipping_client.generate_pickup.side_effect = provider_failure("No pickup slot")

        result = await order_service.create_shipment(paid_order)

        assert result.outcome is ShipmentOutcome.CREATED
        assert paid_order.shipment_status is ShipmentStatus.CREATED
        assert "Pickup request failed" in paid_order.warning

    @pytest.mark.asyncio
    async def test_existing_shipment_skipped(self, order_service, shipped_order, shipping_client):
        result = await order_service.create_shipment(shipped_order)

        assert result.outcome is ShipmentOutcome.SKIPPED
        shipping_client.create_order.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_due_shipments_processed(self, order_service, paid_order, shipping_client):
        results = await order_service.process_due_shipments()

        assert [r.order_id for r in results] == [paid_order.id]
        assert results[0].outcome is ShipmentOutcome.CREATED

    @pytest.mark.asyncio
    async def test_retry_not_due_is_skipped_by_loop(
        self, order_service, paid_order, shipping_client
    ):
        shipping_client.assign_awb.side_effect = provider_failure()
        await order_service.create_shipment(paid_order)

        assert await order_service.process_due_shipments() == []

    @pytest.mark.asyncio
    async def test_manual_retry_resets_attempts(
        self, order_service, paid_order, shipping_client, admin_user
    ):
        shipping_client.assign_awb.side_effect = provider_failure()
        for _ in range(3):
            await order_service.create_shipment(paid_order)
        shipping_client.assign_awb.side_effect = None
        shipping_client.assign_awb.return_value = _assignment()

        result = await order_service.retry_shipment(paid_order.id, admin_user)

        assert result.outcome is ShipmentOutcome.CREATED
        assert result.attempt == 1
        assert paid_order.warning is None


# ============================================================================
# Tracking Events
# ============================================================================


class TestTrackingEvents:
    """Carrier tracking updates applied to orders."""

    @pytest.mark.asyncio
    async def test_dispatch_then_delivery(self, order_service, shipped_order, db_session):
        shipped = await order_service.apply_tracking_event(
            TrackingUpdate(awb_code="A1", status_code=38, current_location="Hub")
        )
        delivered = await order_service.apply_tracking_event(
            TrackingUpdate(awb_code="A1", status_code=6, current_location="Bengaluru")
        )

        assert shipped.outcome == "applied"
        assert shipped.status is OrderStatus.SHIPPED
        assert delivered.outcome == "applied"
        assert shipped_order.status is OrderStatus.DELIVERED
        assert shipped_order.delivered_at is not None
        assert shipped_order.current_location == "Bengaluru"

    @pytest.mark.asyncio
    async def test_reverse_order_delivery_is_monotonic(
        self, order_service, shipped_order, db_session
    ):
        picked_up_at = datetime(2026, 10, 10, 9, 0, tzinfo=timezone.utc)
        delivered_at = datetime(2026, 10, 10, 12, 0, tzinfo=timezone.utc)

        delivered = await order_service.apply_tracking_event(
            TrackingUpdate(awb_code="A1", status_code=6, current_location="Bengaluru", occurred_at=delivered_at)
        )
        dispatched = await order_service.apply_tracking_event(
            TrackingUpdate(awb_code="A1", status_code=3, current_location="Origin hub", occurred_at=picked_up_at)
        )

        assert delivered.path == (OrderStatus.SHIPPED, OrderStatus.DELIVERED)
        assert dispatched.outcome == "noop"
        assert shipped_order.status is OrderStatus.DELIVERED
        assert shipped_order.current_location == "Bengaluru"
        assert await history_pairs(db_session, shipped_order.id) == {
            (OrderStatus.PROCESSING, OrderStatus.SHIPPED),
            (OrderStatus.SHIPPED, OrderStatus.DELIVERED),
        }

    @pytest.mark.asyncio
    async def test_lookup_by_shipment_id(self, order_service, shipped_order):
        result = await order_service.apply_tracking_event(
            TrackingUpdate(awb_code=None, shipment_id="S1", status_code=38)
        )

        assert result.outcome == "applied"
        assert result.order_id == shipped_order.id

    @pytest.mark.asyncio
    async def test_unknown_awb_unmatched(self, order_service, shipped_order):
        result = await order_service.apply_tracking_event(
            TrackingUpdate(awb_code="UNKNOWN", status_code=6)
        )

        assert result.outcome == "unmatched"
        assert shipped_order.status is OrderStatus.PROCESSING

    @pytest.mark.asyncio
    async def test_informational_code_updates_location_only(self, order_service, shipped_order):
        result = await order_service.apply_tracking_event(
            TrackingUpdate(awb_code="A1", status_code=1, current_location="Warehouse")
        )

        assert result.outcome == "noop"
        assert result.reason == "informational_status"
        assert shipped_order.current_location == "Warehouse"
        assert shipped_order.status is OrderStatus.PROCESSING

    @pytest.mark.asyncio
    async def test_carrier_cancellation(self, order_service, shipped_order):
        result = await order_service.apply_tracking_event(
            TrackingUpdate(awb_code="A1", status_code=8)
        )

        assert result.outcome == "applied"
        assert shipped_order.status is OrderStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_sync_tracking_applies_snapshot(
        self, order_service, shipped_order, shipping_client
    ):
        shipping_client.track_by_waybill.return_value = TrackingSnapshot(
            awb_code="A1",
            status_code=6,
            status_label="DELIVERED",
            current_location="Bengaluru",
            courier_name="Delhivery",
            updated_at=utcnow(),
        )

        result = await order_service.sync_tracking(shipped_order.id)

        assert result.outcome == "applied"
        assert shipped_order.status is OrderStatus.DELIVERED

    @pytest.mark.asyncio
    async def test_sync_tracking_requires_awb(self, order_service, pending_order, shipping_client):
        with pytest.raises(NotYetShippedError):
            await order_service.sync_tracking(pending_order.id)
        shipping_client.track_by_waybill.assert_not_awaited()


# ============================================================================
# Admin Overrides and Stuck Orders
# ============================================================================


class TestAdminOverride:
    @pytest.mark.asyncio
    async def test_override_records_actor(
        self, order_service, shipped_order, admin_user, db_session
    ):
        order = await order_service.admin_override(
            shipped_order.id, OrderStatus.SHIPPED, admin_user, reason="Courier confirmed by phone"
        )

        assert order.status is OrderStatus.SHIPPED
        assert "carrier events still apply" in order.warning
        result = await db_session.execute(
            select(OrderStatusHistory).where(OrderStatusHistory.order_id == order.id)
        )
        entry = result.scalar_one()
        assert entry.actor == "admin:admin@example.com"
        assert entry.reason == "Courier confirmed by phone"

    @pytest.mark.asyncio
    async def test_cancellation_with_active_shipment_is_advisory(
        self, order_service, shipped_order, admin_user, db_session
    ):
        cancelled = await order_service.admin_override(
            shipped_order.id, OrderStatus.CANCELLED, admin_user, reason="Customer called"
        )
        assert cancelled.status is OrderStatus.CANCELLED
        assert cancelled.cancelled_from is OrderStatus.PROCESSING
        assert "carrier events still apply" in cancelled.warning

        result = await order_service.apply_tracking_event(
            TrackingUpdate(awb_code="A1", status_code=6)
        )

        assert result.outcome == "applied"
        assert result.status is OrderStatus.DELIVERED
        assert result.path == (OrderStatus.SHIPPED, OrderStatus.DELIVERED)
        assert shipped_order.status is OrderStatus.DELIVERED
        assert shipped_order.cancelled_from is None
        assert (OrderStatus.CANCELLED, OrderStatus.SHIPPED) in await history_pairs(
            db_session, shipped_order.id
        )

    @pytest.mark.asyncio
    async def test_carrier_cancellation_makes_override_final(
        self, order_service, shipped_order, admin_user
    ):
        await order_service.admin_override(shipped_order.id, OrderStatus.CANCELLED, admin_user)

        await order_service.apply_tracking_event(TrackingUpdate(awb_code="A1", status_code=9))
        late = await order_service.apply_tracking_event(
            TrackingUpdate(awb_code="A1", status_code=6)
        )

        assert late.outcome == "noop"
        assert late.reason == "order_cancelled"
        assert shipped_order.status is OrderStatus.CANCELLED
        assert shipped_order.cancelled_from is None

    @pytest.mark.asyncio
    async def test_cancellation_without_shipment_is_final(
        self, order_service, make_order, admin_user
    ):
        order = await make_order(
            status=OrderStatus.PROCESSING, payment_status=PaymentStatus.COMPLETED
        )

        cancelled = await order_service.admin_override(order.id, OrderStatus.CANCELLED, admin_user)

        assert cancelled.cancelled_from is None
        assert cancelled.warning is None

    @pytest.mark.asyncio
    async def test_override_cannot_ship_without_awb(
        self, order_service, pending_order, admin_user
    ):
        with pytest.raises(PreconditionFailedError) as exc_info:
            await order_service.admin_override(pending_order.id, OrderStatus.SHIPPED, admin_user)
        assert exc_info.value.code == "INVALID_TRANSITION"

    @pytest.mark.asyncio
    async def test_stuck_orders_listed(self, order_service, make_order):
        stuck = await make_order(
            status=OrderStatus.PROCESSING,
            payment_status=PaymentStatus.COMPLETED,
            paid_at=utcnow() - timedelta(hours=2),
            shipment_status=ShipmentStatus.FAILED,
        )
        await make_order(
            status=OrderStatus.PROCESSING,
            payment_status=PaymentStatus.COMPLETED,
            paid_at=utcnow(),
            shipment_status=ShipmentStatus.PENDING,
        )
        refund_due = await make_order(
            status=OrderStatus.CANCELLED,
            payment_status=PaymentStatus.COMPLETED,
            paid_at=utcnow() - timedelta(hours=1),
        )

        result = await order_service.list_stuck_orders()

        assert [order.id for order in result.unshipped] == [stuck.id]
        assert [order.id for order in result.cancelled_paid] == [refund_due.id]


# ============================================================================
# End to End
# ============================================================================


class TestOrderLifecycle:
    @pytest.mark.asyncio
    async def test_paid_order_shipped_and_delivered(
        self, order_service, pending_order, customer, sign, db_session
    ):
        confirmation = await order_service.confirm_payment(
            pending_order.id, customer, "pay_P1", "order_G1", sign("order_G1", "pay_P1")
        )
        assert confirmation.order.shipping_awb_code == "A1"

        await order_service.apply_tracking_event(TrackingUpdate(awb_code="A1", status_code=38))
        await order_service.apply_tracking_event(TrackingUpdate(awb_code="A1", status_code=6))
        late = await order_service.apply_tracking_event(
            TrackingUpdate(awb_code="A1", status_code=3)
        )

        assert late.outcome == "noop"
        assert pending_order.status is OrderStatus.DELIVERED
        assert await history_pairs(db_session, pending_order.id) == {
            (OrderStatus.PENDING, OrderStatus.PROCESSING),
            (OrderStatus.PROCESSING, OrderStatus.SHIPPED),
            (OrderStatus.SHIPPED, OrderStatus.DELIVERED),
        }
