"""
Order automation service.

Drives an order from payment confirmation to delivery:

- ``confirm_payment`` verifies the storefront's signed confirmation, moves
  the order to ``processing`` exactly once and kicks off shipment creation,
  inline or through ``create_shipment_after_payment`` in the background.
- ``create_shipment`` books the carrier order, obtains an AWB and requests a
  pickup. Failures never propagate to the payment confirmation; they are
  recorded on the order and retried with exponential backoff until
  ``shipment_max_attempts`` is reached.
- ``apply_tracking_event`` advances the order from carrier tracking updates,
  monotonically, so duplicates and late deliveries are harmless.
- ``admin_override`` is the exceptional manual path; it never bypasses the
  shipment invariant and flags orders whose carrier shipment is still live.

All order writes are conditional on the version read (see
``OrderRepository.update_conditional``). Commits happen before every remote
call so a slow carrier never holds a transaction open.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Optional
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from orderflow.core.config import Settings, get_settings
from orderflow.core.errors import (
    ConcurrentUpdateError,
    GatewayError,
    GatewayTimeoutError,
    InvalidInputError,
    NotYetShippedError,
    PreconditionFailedError,
)
from orderflow.core.logging import get_logger
from orderflow.database.base import as_utc, utcnow
from orderflow.database.models.order import Order
from orderflow.database.models.user import User
from orderflow.services.orders.enums import OrderStatus, PaymentStatus, ShipmentStatus
from orderflow.services.orders.repository import OrderNotFoundError, OrderRepository
from orderflow.services.orders.state_machine import (
    OrderEvent,
    OrderStateMachine,
    TransitionResult,
)
from orderflow.services.payments.gateway import PaymentGateway, PaymentIntent
from orderflow.services.shipping.client import ShippingClient, build_order_payload
from orderflow.services.shipping.status import order_event_for_code

logger = get_logger(__name__)

CONFLICT_RETRIES = 3

ACTOR_PAYMENT = "payment_confirmation"
ACTOR_CARRIER = "carrier_webhook"
ACTOR_TRACKING_SYNC = "tracking_sync"


class ShipmentOutcome(str, Enum):
    CREATED = "created"
    RETRY_SCHEDULED = "retry_scheduled"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass(frozen=True)
class ShipmentAttemptResult:
    """Result of one shipment creation attempt."""

    order_id: UUID
    outcome: ShipmentOutcome
    attempt: int = 0
    error: Optional[str] = None
    next_retry_at: Optional[datetime] = None


@dataclass(frozen=True)
class PaymentConfirmationResult:
    order: Order
    already_confirmed: bool = False
    shipment: Optional[ShipmentAttemptResult] = None


@dataclass(frozen=True)
class TrackingUpdate:
    """Normalized carrier tracking event for an outbound shipment."""

    awb_code: Optional[str]
    shipment_id: Optional[str] = None
    status_code: Optional[int] = None
    status_label: Optional[str] = None
    current_location: Optional[str] = None
    courier_name: Optional[str] = None
    occurred_at: Optional[datetime] = None

    @property
    def event(self) -> Optional[OrderEvent]:
        return order_event_for_code(self.status_code)


@dataclass(frozen=True)
class TrackingResult:
    """Effect of a tracking update on an order."""

    outcome: str
    order_id: Optional[UUID] = None
    status: Optional[OrderStatus] = None
    path: tuple[OrderStatus, ...] = ()
    reason: Optional[str] = None


@dataclass
class StuckOrders:
    unshipped: list[Order] = field(default_factory=list)
    cancelled_paid: list[Order] = field(default_factory=list)


def _error_text(error: Exception) -> str:
    if isinstance(error, GatewayError) and error.provider_description:
        return f"{error.message}: {error.provider_description}"
    return getattr(error, "message", None) or str(error)


class OrderAutomationService:
    """Order lifecycle automation against the payment and shipping gateways."""

    def __init__(
        self,
        session: AsyncSession,
        payment_gateway: PaymentGateway,
        shipping_client: ShippingClient,
        settings: Optional[Settings] = None,
    ):
        """
        Initialize the service.

        Args:
            session: Async database session
            payment_gateway: Payment gateway adapter
            shipping_client: Shipping gateway adapter
            settings: Optional settings override
        """
        self.session = session
        self.repository = OrderRepository(session)
        self.payment_gateway = payment_gateway
        self.shipping_client = shipping_client
        self.settings = settings or get_settings()
        self.state_machine = OrderStateMachine()

    async def _get_owned_order(self, order_id: UUID, user: User) -> Order:
        order = await self.repository.get_or_raise(order_id)
        if order.user_id != user.id:
            logger.warning(
                "Order access denied to non-owner",
                order_id=str(order_id),
                user_id=str(user.id),
            )
            raise OrderNotFoundError("Order not found", order_id=str(order_id))
        return order

    async def _save(self, order: Order, **values: Any) -> Order:
        """Write fields that do not depend on the order status, retrying lost races."""
        for attempt in range(CONFLICT_RETRIES):
            try:
                return await self.repository.update_conditional(order, **values)
            except ConcurrentUpdateError:
                if attempt == CONFLICT_RETRIES - 1:
                    raise
        return order

    async def get_order(self, order_id: UUID) -> Order:
        return await self.repository.get_or_raise(order_id)

    async def create_payment_intent(self, order_id: UUID, user: User) -> PaymentIntent:
        """
        Create a gateway payment intent for an order's total.

        Args:
            order_id: Order to pay for
            user: Authenticated order owner

        Returns:
            PaymentIntent

        Raises:
            PreconditionFailedError: If the order is not awaiting payment
            GatewayUnavailableError: If the gateway cannot create the intent
        """
        order = await self._get_owned_order(order_id, user)
        if order.payment_status is PaymentStatus.COMPLETED:
            raise PreconditionFailedError(
                "Order is already paid", code="PAYMENT_ALREADY_CONFIRMED"
            )
        if order.status is not OrderStatus.PENDING:
            raise PreconditionFailedError(
                f"Order is {order.status.value}, not awaiting payment",
                code="INVALID_ORDER_STATUS",
            )

        intent = await self.payment_gateway.create_payment_intent(
            order.total_amount,
            order_ref=str(order.id),
            idempotency_key=f"order-intent-{order.id}-v{order.version}",
        )
        await self._save(order, payment_gateway_order_id=intent.intent_id)
        await self.session.commit()

        logger.info(
            "Payment intent recorded on order",
            order_id=str(order.id),
            intent_id=intent.intent_id,
        )
        return intent

    async def confirm_payment(
        self,
        order_id: UUID,
        user: User,
        payment_ref: str,
        gateway_order_id: str,
        signature: str,
        dispatch_shipment: bool = True,
    ) -> PaymentConfirmationResult:
        """
        Apply a signature-verified payment confirmation.

        Args:
            order_id: Local order id
            user: Authenticated order owner
            payment_ref: Gateway payment reference
            gateway_order_id: Gateway order reference the signature covers
            signature: Hex HMAC-SHA256 of ``gateway_order_id|payment_ref``
            dispatch_shipment: Attempt shipment creation before returning;
                callers that schedule it themselves pass False

        Returns:
            PaymentConfirmationResult

        Raises:
            InvalidInputError: If the signature or gateway order does not match
            PreconditionFailedError: If the order was cancelled or already paid
                with a different payment reference
        """
        order = await self._get_owned_order(order_id, user)

        if not self.payment_gateway.verify_signature(gateway_order_id, payment_ref, signature):
            logger.warning(
                "Payment confirmation signature mismatch",
                order_id=str(order.id),
                gateway_order_id=gateway_order_id,
            )
            raise InvalidInputError("Invalid signature", code="INVALID_SIGNATURE")

        if order.payment_gateway_order_id and order.payment_gateway_order_id != gateway_order_id:
            logger.warning(
                "Payment confirmation for a different gateway order",
                order_id=str(order.id),
                expected=order.payment_gateway_order_id,
                received=gateway_order_id,
            )
            raise InvalidInputError(
                "Gateway order reference does not match order",
                code="GATEWAY_ORDER_MISMATCH",
            )

        for attempt in range(CONFLICT_RETRIES):
            if order.payment_status is PaymentStatus.COMPLETED:
                if order.payment_gateway_payment_id == payment_ref:
                    logger.info(
                        "Duplicate payment confirmation ignored",
                        order_id=str(order.id),
                        payment_ref=payment_ref,
                    )
                    return PaymentConfirmationResult(order=order, already_confirmed=True)
                raise PreconditionFailedError(
                    "Order payment already confirmed with a different payment reference",
                    code="PAYMENT_ALREADY_CONFIRMED",
                    order_id=str(order.id),
                )

            if order.status is OrderStatus.CANCELLED:
                raise PreconditionFailedError(
                    "Order has been cancelled", code="ORDER_CANCELLED", order_id=str(order.id)
                )

            previous = order.status
            transition = self.state_machine.apply(previous, OrderEvent.PAYMENT_CONFIRMED)
            now = utcnow()
            values: dict[str, Any] = {
                "payment_status": PaymentStatus.COMPLETED,
                "payment_gateway_order_id": gateway_order_id,
                "payment_gateway_payment_id": payment_ref,
                "payment_signature": signature,
                "paid_at": now,
            }
            if transition.applied:
                values["status"] = transition.status
            if not order.has_shipment and order.shipment_status is ShipmentStatus.NOT_REQUESTED:
                values["shipment_status"] = ShipmentStatus.PENDING
                values["shipment_next_retry_at"] = None

            try:
                await self.repository.update_conditional(
                    order, expected_status=previous, **values
                )
            except ConcurrentUpdateError:
                if attempt == CONFLICT_RETRIES - 1:
                    raise
                continue

            if transition.applied:
                await self.repository.add_history(
                    order, transition.path, previous, ACTOR_PAYMENT, occurred_at=now
                )
            break

        await self.session.commit()
        logger.info(
            "Payment confirmed",
            order_id=str(order.id),
            payment_ref=payment_ref,
            status=order.status.value,
        )

        if not dispatch_shipment:
            return PaymentConfirmationResult(order=order)

        # Shipment creation must never fail the confirmation
        shipment: Optional[ShipmentAttemptResult] = None
        try:
            shipment = await self.create_shipment(order)
        except Exception as e:
            await self.session.rollback()
            await self.session.refresh(order)
            logger.error(
                "Shipment creation after payment failed unexpectedly",
                order_id=str(order.id),
                error=str(e),
                error_type=type(e).__name__,
                exc_info=True,
            )

        return PaymentConfirmationResult(order=order, shipment=shipment)

    async def create_shipment(self, order: Order) -> ShipmentAttemptResult:
        """
        Run one shipment creation attempt for a paid order.

        The carrier order is created once and its shipment id kept across
        attempts; only AWB assignment is repeated. Gateway failures and
        timeouts schedule a retry with exponential backoff until the attempt
        attempts are exhausted, after which the order carries a warning.

        Args:
            order: Paid order without a carrier shipment

        Returns:
            ShipmentAttemptResult
        """
        if order.has_shipment:
            return ShipmentAttemptResult(
                order.id, ShipmentOutcome.SKIPPED, order.shipment_attempts, "shipment_exists"
            )
        if order.payment_status is not PaymentStatus.COMPLETED or order.status is OrderStatus.CANCELLED:
            return ShipmentAttemptResult(
                order.id, ShipmentOutcome.SKIPPED, order.shipment_attempts, "not_shippable"
            )

        attempt = order.shipment_attempts + 1
        # Lease the attempt so the retry loop does not pick it up concurrently
        lease_until = utcnow() + timedelta(seconds=self.settings.shipping_timeout_seconds * 4)
        try:
            await self.repository.update_conditional(
                order,
                shipment_status=ShipmentStatus.PENDING,
                shipment_attempts=attempt,
                shipment_next_retry_at=lease_until,
            )
        except ConcurrentUpdateError:
            logger.info("Shipment attempt already claimed", order_id=str(order.id))
            return ShipmentAttemptResult(order.id, ShipmentOutcome.SKIPPED, attempt, "claimed")
        await self.session.commit()

        logger.info("Creating shipment", order_id=str(order.id), attempt=attempt)

        try:
            if not order.shipping_order_id:
                user = await self.session.get(User, order.user_id)
                payload = build_order_payload(
                    reference=str(order.id),
                    order_date=as_utc(order.created_at) or utcnow(),
                    items=order.items,
                    address=order.shipping_address,
                    email=user.email if user else "",
                    subtotal=order.items_subtotal,
                    pickup_location=self.settings.shipping_pickup_location,
                )
                carrier_order = await self.shipping_client.create_order(payload)
                await self._save(
                    order,
                    shipping_order_id=carrier_order.carrier_order_id,
                    shipping_pending_shipment_id=carrier_order.shipment_id,
                )
                await self.session.commit()

            assignment = await self.shipping_client.assign_awb(
                order.shipping_pending_shipment_id
            )
            await self._save(
                order,
                shipping_shipment_id=assignment.shipment_id,
                shipping_awb_code=assignment.awb_code,
                courier_name=assignment.courier_name,
                shipping_pending_shipment_id=None,
                shipment_status=ShipmentStatus.CREATED,
                shipment_next_retry_at=None,
                shipment_error=None,
            )
            await self.session.commit()
        except InvalidInputError as e:
            return await self._record_shipment_failure(order, attempt, e, permanent=True)
        except GatewayError as e:
            return await self._record_shipment_failure(order, attempt, e)

        logger.info(
            "Shipment created",
            order_id=str(order.id),
            shipment_id=order.shipping_shipment_id,
            awb_code=order.shipping_awb_code,
            courier=order.courier_name,
        )

        try:
            await self.shipping_client.generate_pickup(order.shipping_shipment_id)
        except GatewayError as e:
            logger.warning(
                "Pickup request failed",
                order_id=str(order.id),
                shipment_id=order.shipping_shipment_id,
                error=_error_text(e),
            )
            await self._save(order, warning=f"Pickup request failed: {_error_text(e)}")
            await self.session.commit()

        return ShipmentAttemptResult(order.id, ShipmentOutcome.CREATED, attempt)

    async def _record_shipment_failure(
        self,
        order: Order,
        attempt: int,
        error: Exception,
        permanent: bool = False,
    ) -> ShipmentAttemptResult:
        message = _error_text(error)
        if isinstance(error, GatewayTimeoutError):
            message = f"{message} (outcome unknown)"

        exhausted = permanent or attempt >= self.settings.shipment_max_attempts
        if exhausted:
            values: dict[str, Any] = {
                "shipment_status": ShipmentStatus.FAILED,
                "shipment_next_retry_at": None,
                "shipment_error": message,
                "warning": (
                    f"Shipment creation failed after {attempt} attempt(s): {message}. "
                    "Manual remediation required."
                ),
            }
            next_retry_at = None
        else:
            delay = self.settings.shipment_retry_base_seconds * (2 ** (attempt - 1))
            next_retry_at = utcnow() + timedelta(seconds=delay)
            values = {
                "shipment_status": ShipmentStatus.PENDING,
                "shipment_next_retry_at": next_retry_at,
                "shipment_error": message,
            }

        await self._save(order, **values)
        await self.session.commit()

        log = logger.error if exhausted else logger.warning
        log(
            "Shipment creation failed",
            order_id=str(order.id),
            attempt=attempt,
            max_attempts=self.settings.shipment_max_attempts,
            error=message,
            error_type=type(error).__name__,
            next_retry_at=next_retry_at.isoformat() if next_retry_at else None,
        )
        return ShipmentAttemptResult(
            order.id,
            ShipmentOutcome.FAILED if exhausted else ShipmentOutcome.RETRY_SCHEDULED,
            attempt,
            message,
            next_retry_at,
        )

    async def retry_shipment(self, order_id: UUID, admin: User) -> ShipmentAttemptResult:
        """
        Reset the shipment attempt counter of an order and attempt shipment creation now.

        Raises:
            PreconditionFailedError: If the order is unpaid, cancelled or
                already has a shipment
        """
        order = await self.repository.get_or_raise(order_id)
        if order.has_shipment:
            raise PreconditionFailedError(
                "Order already has a carrier shipment", code="SHIPMENT_EXISTS"
            )
        if order.payment_status is not PaymentStatus.COMPLETED:
            raise PreconditionFailedError("Order is not paid", code="ORDER_NOT_PAID")
        if order.status is OrderStatus.CANCELLED:
            raise PreconditionFailedError("Order has been cancelled", code="ORDER_CANCELLED")

        await self._save(
            order,
            shipment_status=ShipmentStatus.PENDING,
            shipment_attempts=0,
            shipment_next_retry_at=None,
            shipment_error=None,
            warning=None,
        )
        await self.session.commit()
        logger.info(
            "Manual shipment retry requested",
            order_id=str(order.id),
            admin_id=str(admin.id),
        )
        return await self.create_shipment(order)

    async def process_due_shipments(self, limit: int = 20) -> list[ShipmentAttemptResult]:
        """Run shipment attempts for every order whose retry is due."""
        orders = await self.repository.list_due_for_shipment(utcnow(), limit)
        results: list[ShipmentAttemptResult] = []
        for order in orders:
            results.append(await self.create_shipment(order))
        if results:
            logger.info(
                "Processed due shipments",
                count=len(results),
                created=sum(1 for r in results if r.outcome is ShipmentOutcome.CREATED),
            )
        return results

    async def apply_tracking_event(
        self, update: TrackingUpdate, actor: str = ACTOR_CARRIER
    ) -> TrackingResult:
        """
        Apply a carrier tracking update to the order it refers to.

        Location and courier are updated only when the update is newer than
        what is stored. Status only advances, and skipped predecessors are
        recorded in history.

        Args:
            update: Normalized tracking update
            actor: Actor recorded in status history

        Returns:
            TrackingResult
        """
        order = await self.repository.find_for_carrier_event(
            update.awb_code, update.shipment_id
        )
        if order is None:
            logger.warning(
                "Tracking update for unknown shipment",
                awb_code=update.awb_code,
                shipment_id=update.shipment_id,
                status_code=update.status_code,
            )
            return TrackingResult(outcome="unmatched", reason="order_not_found")

        occurred_at = as_utc(update.occurred_at) or utcnow()
        event = update.event

        for attempt in range(CONFLICT_RETRIES):
            values: dict[str, Any] = {}
            stored_at = as_utc(order.tracking_updated_at)
            if stored_at is None or occurred_at >= stored_at:
                if update.current_location:
                    values["current_location"] = update.current_location
                if update.courier_name:
                    values["courier_name"] = update.courier_name
                values["tracking_updated_at"] = occurred_at

            previous = order.status
            transition: Optional[TransitionResult[OrderStatus]] = None
            if event is not None:
                transition = self.state_machine.apply(
                    previous, event, order.has_shipment, resume_from=order.cancelled_from
                )
                if transition.applied:
                    values["status"] = transition.status
                    values["cancelled_from"] = None
                elif event is OrderEvent.CANCELLED and order.cancelled_from is not None:
                    # Carrier confirms the cancellation; it is no longer advisory
                    values["cancelled_from"] = None
                    if OrderStatus.DELIVERED in transition.path:
                        values["delivered_at"] = occurred_at

            if values:
                try:
                    await self.repository.update_conditional(
                        order, expected_status=previous, **values
                    )
                except ConcurrentUpdateError:
                    if attempt == CONFLICT_RETRIES - 1:
                        raise
                    continue

            if transition is not None and transition.applied:
                await self.repository.add_history(
                    order,
                    transition.path,
                    previous,
                    actor,
                    reason=f"carrier status {update.status_code}"
                    + (f" ({update.status_label})" if update.status_label else ""),
                    occurred_at=occurred_at,
                )
                logger.info(
                    "Order advanced by carrier event",
                    order_id=str(order.id),
                    from_status=previous.value,
                    to_status=transition.status.value,
                    status_code=update.status_code,
                    actor=actor,
                )
                return TrackingResult(
                    "applied", order.id, transition.status, transition.path
                )

            if transition is not None and transition.rejected:
                logger.warning(
                    "Carrier event rejected",
                    order_id=str(order.id),
                    status=previous.value,
                    order_event=event.value,
                    reason=transition.reason,
                )
                return TrackingResult("rejected", order.id, previous, reason=transition.reason)

            reason = transition.reason if transition is not None else "informational_status"
            logger.debug(
                "Carrier event caused no status change",
                order_id=str(order.id),
                status=previous.value,
                status_code=update.status_code,
                reason=reason,
            )
            return TrackingResult("noop", order.id, previous, reason=reason)

        raise ConcurrentUpdateError("Order was modified concurrently", order_id=str(order.id))

    async def sync_tracking(self, order_id: UUID) -> TrackingResult:
        """
        Pull the carrier's tracking snapshot and apply it.

        Raises:
            NotYetShippedError: If the order has no AWB
        """
        order = await self.repository.get_or_raise(order_id)
        if not order.shipping_awb_code:
            raise NotYetShippedError(
                "Order has no AWB to track", order_id=str(order.id)
            )

        snapshot = await self.shipping_client.track_by_waybill(order.shipping_awb_code)
        result = await self.apply_tracking_event(
            TrackingUpdate(
                awb_code=snapshot.awb_code,
                status_code=snapshot.status_code,
                status_label=snapshot.status_label,
                current_location=snapshot.current_location,
                courier_name=snapshot.courier_name,
                occurred_at=snapshot.updated_at,
            ),
            actor=ACTOR_TRACKING_SYNC,
        )
        await self.session.commit()
        return result

    async def admin_override(
        self,
        order_id: UUID,
        target: OrderStatus,
        admin: User,
        reason: Optional[str] = None,
    ) -> Order:
        """
        Set an order status manually.

        Args:
            order_id: Order to update
            target: Requested status
            admin: Authorized administrator
            reason: Free-text justification stored in history

        Returns:
            Updated order

        Raises:
            PreconditionFailedError: If the transition is not allowed
            ConcurrentUpdateError: If the order changed while being overridden
        """
        order = await self.repository.get_or_raise(order_id)
        previous = order.status
        transition = self.state_machine.override(previous, target, order.has_shipment)

        if transition.rejected:
            logger.warning(
                "Admin status override rejected",
                order_id=str(order.id),
                from_status=previous.value,
                to_status=target.value,
                reason=transition.reason,
            )
            raise PreconditionFailedError(
                f"Cannot change order from {previous.value} to {target.value}",
                code="INVALID_TRANSITION",
                reason=transition.reason,
            )
        if transition.noop:
            return order

        actor = f"admin:{admin.email}"
        values: dict[str, Any] = {"status": target}
        if target is OrderStatus.DELIVERED:
            values["delivered_at"] = utcnow()
        if order.has_shipment:
            values["warning"] = (
                f"Status manually set to {target.value} by {admin.email} while carrier "
                f"shipment {order.shipping_awb_code} is active; carrier events still apply."
            )
            if target is OrderStatus.CANCELLED:
                values["cancelled_from"] = previous

        await self.repository.update_conditional(order, expected_status=previous, **values)
        await self.repository.add_history(order, transition.path, previous, actor, reason=reason)
        await self.session.commit()

        logger.info(
            "Order status overridden by admin",
            order_id=str(order.id),
            from_status=previous.value,
            to_status=target.value,
            admin_id=str(admin.id),
            warning=bool(values.get("warning")),
        )
        return await self.repository.reload(order)

    async def list_stuck_orders(self) -> StuckOrders:
        """Paid orders still without a shipment, and cancelled paid orders."""
        cutoff = utcnow() - timedelta(minutes=self.settings.stuck_order_minutes)
        return StuckOrders(
            unshipped=await self.repository.list_paid_without_shipment(cutoff),
            cancelled_paid=await self.repository.list_cancelled_with_payment(),
        )


async def create_shipment_after_payment(
    order_id: UUID,
    session_factory: async_sessionmaker[AsyncSession],
    payment_gateway: PaymentGateway,
    shipping_client: ShippingClient,
    settings: Optional[Settings] = None,
) -> Optional[ShipmentAttemptResult]:
    """
    Run the first shipment attempt for a freshly paid order in its own session.

    Scheduled as a response background task so the payment confirmation never
    waits on the carrier. Failures are logged; orders left without a shipment
    are picked up by the shipment retry loop.
    """
    async with session_factory() as session:
        service = OrderAutomationService(session, payment_gateway, shipping_client, settings)
        try:
            order = await service.repository.get_or_raise(order_id)
            return await service.create_shipment(order)
        except Exception as e:
            await session.rollback()
            logger.error(
                "Shipment creation after payment failed unexpectedly",
                order_id=str(order_id),
                error=str(e),
                error_type=type(e).__name__,
                exc_info=True,
            )
            return None
