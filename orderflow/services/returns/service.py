"""
Return and refund automation service.

A return moves along
``requested -> approved -> pickup_scheduled -> in_transit -> inspected ->
refund_initiated -> refunded -> completed`` without human involvement:

- eligibility (return window, item ownership and quantities) is checked at
  request time and the reverse pickup is booked with the carrier
- carrier events advance the pickup; arrival at the warehouse triggers an
  automated inspection based on the declared item condition
- a passed inspection issues the refund for exactly the returned items'
  original price, keyed so a retry can never refund twice
- only the refund webhook (or the explicitly marked polling fallback) may
  mark a refund as refunded

Damaged or defective items are never inspected automatically. They wait for
an administrator, whose decision (reject or force the refund) is the only
manual status change a return accepts.
"""

from dataclasses import dataclass
from datetime import timedelta
from decimal import Decimal
from functools import partial
from typing import Any, Callable, Optional
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from orderflow.core.config import Settings, get_settings
from orderflow.core.errors import (
    ConcurrentUpdateError,
    GatewayError,
    GatewayTimeoutError,
    InvalidInputError,
    PreconditionFailedError,
)
from orderflow.core.logging import get_logger
from orderflow.database.base import as_utc, utcnow
from orderflow.database.models.order import Order
from orderflow.database.models.return_request import ReturnAdminNote, ReturnRequest
from orderflow.database.models.user import User
from orderflow.services.orders.enums import (
    ItemCondition,
    OrderStatus,
    PaymentStatus,
    RefundStatus,
    ReturnStatus,
    parse_enum,
)
from orderflow.services.orders.repository import OrderNotFoundError, OrderRepository
from orderflow.services.orders.state_machine import TransitionResult
from orderflow.services.payments.gateway import PaymentGateway, RefundRecord
from orderflow.services.returns.repository import ReturnNotFoundError, ReturnRepository
from orderflow.services.returns.state_machine import (
    ManualResolution,
    ReturnEvent,
    ReturnStateMachine,
)
from orderflow.services.shipping.client import ShippingClient, build_return_payload
from orderflow.services.shipping.status import ReturnCarrierEvent, return_event_for_code

logger = get_logger(__name__)

CONFLICT_RETRIES = 3

ACTOR_CUSTOMER = "customer"
ACTOR_ELIGIBILITY = "eligibility_check"
ACTOR_AUTOMATION = "automation"
ACTOR_CARRIER = "carrier_webhook"
ACTOR_INSPECTION = "automated_inspection"
ACTOR_REFUND_WEBHOOK = "refund_webhook"
ACTOR_REFUND_POLL = "refund_poll_fallback"


@dataclass(frozen=True)
class ReturnItemRequest:
    sku: str
    quantity: int
    condition: str
    reason: Optional[str] = None


@dataclass(frozen=True)
class ReturnTrackingUpdate:
    """Normalized carrier event for a reverse pickup."""

    awb_code: Optional[str]
    shipment_id: Optional[str] = None
    status_code: Optional[int] = None
    status_label: Optional[str] = None

    @property
    def event(self) -> Optional[ReturnCarrierEvent]:
        return return_event_for_code(self.status_code)


@dataclass(frozen=True)
class ReturnEventResult:
    outcome: str
    return_id: Optional[UUID] = None
    status: Optional[ReturnStatus] = None
    reason: Optional[str] = None


def _error_text(error: Exception) -> str:
    if isinstance(error, GatewayError) and error.provider_description:
        return f"{error.message}: {error.provider_description}"
    return getattr(error, "message", None) or str(error)


class ReturnService:
    """Return lifecycle automation."""

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
            payment_gateway: Payment gateway adapter used for refunds
            shipping_client: Shipping gateway adapter used for pickups
            settings: Optional settings override
        """
        self.session = session
        self.repository = ReturnRepository(session)
        self.orders = OrderRepository(session)
        self.payment_gateway = payment_gateway
        self.shipping_client = shipping_client
        self.settings = settings or get_settings()
        self.state_machine = ReturnStateMachine()

    async def _transition(
        self,
        return_request: ReturnRequest,
        compute: Callable[[ReturnStatus], TransitionResult[ReturnStatus]],
        actor: str,
        note: Optional[str] = None,
        **values: Any,
    ) -> TransitionResult[ReturnStatus]:
        """
        Compute and persist a transition with a conditional write.

        ``values`` are written alongside the status change, or on their own
        when the transition is a no-op or rejected.
        """
        for attempt in range(CONFLICT_RETRIES):
            previous = return_request.status
            transition = compute(previous)
            updates = dict(values)
            if transition.applied:
                updates["status"] = transition.status

            if updates:
                try:
                    await self.repository.update_conditional(
                        return_request, expected_status=previous, **updates
                    )
                except ConcurrentUpdateError:
                    if attempt == CONFLICT_RETRIES - 1:
                        raise
                    continue

            if transition.applied:
                await self.repository.add_history(
                    return_request, transition.path, actor, note=note
                )
                logger.info(
                    "Return status advanced",
                    return_id=str(return_request.id),
                    from_status=previous.value,
                    to_status=transition.status.value,
                    actor=actor,
                )
            elif transition.rejected:
                logger.warning(
                    "Return transition rejected",
                    return_id=str(return_request.id),
                    status=previous.value,
                    reason=transition.reason,
                    actor=actor,
                )
            return transition

        raise ConcurrentUpdateError(
            "Return was modified concurrently", return_id=str(return_request.id)
        )

    async def _advance(
        self,
        return_request: ReturnRequest,
        event: ReturnEvent,
        actor: str,
        note: Optional[str] = None,
        **values: Any,
    ) -> TransitionResult[ReturnStatus]:
        return await self._transition(
            return_request,
            partial(self.state_machine.apply, event=event),
            actor,
            note,
            **values,
        )

    async def _save(self, return_request: ReturnRequest, **values: Any) -> None:
        for attempt in range(CONFLICT_RETRIES):
            try:
                await self.repository.update_conditional(return_request, **values)
                return
            except ConcurrentUpdateError:
                if attempt == CONFLICT_RETRIES - 1:
                    raise

    async def get_for_user(self, return_id: UUID, user: User) -> ReturnRequest:
        """Load a return owned by ``user``; other users' returns look absent."""
        return_request = await self.repository.get_or_raise(return_id)
        if return_request.user_id != user.id:
            raise ReturnNotFoundError("Return not found", return_id=str(return_id))
        return return_request

    async def get(self, return_id: UUID) -> ReturnRequest:
        return await self.repository.get_or_raise(return_id)

    async def _validate_items(
        self, order: Order, items: list[ReturnItemRequest]
    ) -> list[dict[str, Any]]:
        if not items:
            raise InvalidInputError("At least one item must be returned", code="NO_ITEMS")

        already_returned: dict[str, int] = {}
        for existing in await self.repository.list_active_for_order(order.id):
            for item in existing.items:
                already_returned[item["sku"]] = (
                    already_returned.get(item["sku"], 0) + int(item["quantity"])
                )

        errors: list[str] = []
        seen: set[str] = set()
        validated: list[dict[str, Any]] = []
        for item in items:
            order_item = order.find_item(item.sku)
            condition = parse_enum(ItemCondition, item.condition)
            if order_item is None:
                errors.append(f"{item.sku}: not part of this order")
                continue
            if item.sku in seen:
                errors.append(f"{item.sku}: listed more than once")
                continue
            seen.add(item.sku)
            if condition is None:
                errors.append(f"{item.sku}: unknown condition {item.condition!r}")
                continue
            remaining = int(order_item["quantity"]) - already_returned.get(item.sku, 0)
            if item.quantity < 1 or item.quantity > remaining:
                errors.append(
                    f"{item.sku}: quantity must be between 1 and {max(remaining, 0)}"
                )
                continue
            validated.append(
                {
                    "sku": item.sku,
                    "name": order_item.get("name") or item.sku,
                    "quantity": item.quantity,
                    "unit_price": str(Decimal(str(order_item["unit_price"]))),
                    "condition": condition.value,
                    "reason": item.reason,
                }
            )

        if errors:
            raise InvalidInputError(
                "Return items are invalid", code="INVALID_RETURN_ITEMS", errors=errors
            )
        return validated

    async def request_return(
        self,
        user: User,
        order_id: UUID,
        items: list[ReturnItemRequest],
        reason: Optional[str] = None,
    ) -> ReturnRequest:
        """
        Create a return for a delivered order and run the eligibility check.

        Args:
            user: Authenticated order owner
            order_id: Delivered order
            items: Items to return with their declared condition
            reason: Overall reason given by the customer

        Returns:
            The new return, approved or rejected

        Raises:
            NotFoundError: If the order does not exist or belongs to someone else
            PreconditionFailedError: If the order is not delivered or not paid
            InvalidInputError: If the items are not returnable
        """
        order = await self.orders.get_or_raise(order_id)
        if order.user_id != user.id:
            raise OrderNotFoundError("Order not found", order_id=str(order_id))
        if order.status is not OrderStatus.DELIVERED:
            raise PreconditionFailedError(
                "Only delivered orders can be returned", code="ORDER_NOT_DELIVERED"
            )
        if order.payment_status is not PaymentStatus.COMPLETED:
            raise PreconditionFailedError("Order has no captured payment", code="ORDER_NOT_PAID")

        validated = await self._validate_items(order, items)
        flagged = [
            item["sku"]
            for item in validated
            if ItemCondition(item["condition"]).requires_manual_review
        ]

        return_request = await self.repository.create(
            ReturnRequest(
                order_id=order.id,
                user_id=user.id,
                items=validated,
                reason=reason,
                status=ReturnStatus.REQUESTED,
                requires_manual_review=bool(flagged),
                review_reason=(
                    f"Declared damaged or defective: {', '.join(flagged)}" if flagged else None
                ),
            )
        )
        await self.repository.add_history(
            return_request, (ReturnStatus.REQUESTED,), ACTOR_CUSTOMER, note=reason
        )

        delivered_at = as_utc(order.delivered_at) or as_utc(order.updated_at)
        window = timedelta(days=self.settings.return_window_days)
        if utcnow() > delivered_at + window:
            await self._advance(
                return_request,
                ReturnEvent.REJECTED,
                ACTOR_ELIGIBILITY,
                note=f"Return window of {self.settings.return_window_days} days has expired",
            )
        else:
            await self._advance(return_request, ReturnEvent.APPROVED, ACTOR_ELIGIBILITY)
        await self.session.commit()

        logger.info(
            "Return requested",
            return_id=str(return_request.id),
            order_id=str(order.id),
            status=return_request.status.value,
            requires_manual_review=return_request.requires_manual_review,
        )

        if return_request.status is ReturnStatus.APPROVED:
            await self.book_pickup(return_request, order, user)

        return await self.repository.reload(return_request)

    async def book_pickup(
        self, return_request: ReturnRequest, order: Order, user: User
    ) -> None:
        """
        Book the reverse pickup and move the return to ``pickup_scheduled``.

        A booking failure is recorded as a note for operations; the return
        stays approved.
        """
        try:
            if not return_request.pickup_shipment_id:
                payload = build_return_payload(
                    reference=f"R-{return_request.id}",
                    order_date=utcnow(),
                    items=return_request.items,
                    customer_address=order.shipping_address,
                    email=user.email,
                    subtotal=return_request.items_subtotal,
                    warehouse=self.settings.return_warehouse,
                )
                carrier_order = await self.shipping_client.create_return_order(payload)
                await self._save(
                    return_request,
                    pickup_order_id=carrier_order.carrier_order_id,
                    pickup_shipment_id=carrier_order.shipment_id,
                )
                await self.session.commit()

            assignment = await self.shipping_client.assign_awb(
                return_request.pickup_shipment_id, is_return=True
            )
        except (GatewayError, InvalidInputError) as e:
            logger.warning(
                "Return pickup booking failed",
                return_id=str(return_request.id),
                error=_error_text(e),
                error_type=type(e).__name__,
            )
            await self.repository.add_note(
                return_request,
                f"Return pickup booking failed: {_error_text(e)}",
                ACTOR_AUTOMATION,
            )
            await self.session.commit()
            return

        await self._advance(
            return_request,
            ReturnEvent.PICKUP_SCHEDULED,
            ACTOR_AUTOMATION,
            note=f"Pickup booked with AWB {assignment.awb_code}",
            pickup_awb_code=assignment.awb_code,
        )
        await self.session.commit()

    async def apply_carrier_event(self, update: ReturnTrackingUpdate) -> ReturnEventResult:
        """
        Apply a reverse-pickup carrier event.

        Args:
            update: Normalized carrier event

        Returns:
            ReturnEventResult
        """
        return_request = await self.repository.get_by_pickup(
            update.awb_code, update.shipment_id
        )
        if return_request is None:
            logger.warning(
                "Return carrier event for unknown pickup",
                awb_code=update.awb_code,
                shipment_id=update.shipment_id,
                status_code=update.status_code,
            )
            return ReturnEventResult("unmatched", reason="return_not_found")

        event = update.event
        note = f"Carrier status {update.status_code}" + (
            f" ({update.status_label})" if update.status_label else ""
        )

        if event is None:
            return ReturnEventResult(
                "noop", return_request.id, return_request.status, "informational_status"
            )

        if event is ReturnCarrierEvent.PICKUP_FAILED:
            await self._save(
                return_request,
                requires_manual_review=True,
                review_reason="Carrier reported a failed pickup",
            )
            await self.repository.add_note(
                return_request, f"Pickup failed: {note}", ACTOR_CARRIER
            )
            return ReturnEventResult(
                "flagged", return_request.id, return_request.status, "pickup_failed"
            )

        carrier_event = (
            ReturnEvent.PICKUP_SCHEDULED
            if event is ReturnCarrierEvent.PICKUP_SCHEDULED
            else ReturnEvent.IN_TRANSIT
        )
        transition = await self._advance(return_request, carrier_event, ACTOR_CARRIER, note=note)

        # Later deliveries of the same scan, once inspected, change nothing
        if (
            event is ReturnCarrierEvent.RECEIVED
            and return_request.status.rank < ReturnStatus.INSPECTED.rank
        ):
            await self.inspect(return_request)
            return ReturnEventResult("applied", return_request.id, return_request.status)

        return ReturnEventResult(
            transition.outcome.value,
            return_request.id,
            return_request.status,
            transition.reason,
        )

    async def inspect(self, return_request: ReturnRequest) -> None:
        """
        Run the automated inspection for a return received at the warehouse.

        Items declared unused or lightly used pass and the refund is issued.
        Damaged or defective items are left for manual review.
        """
        if return_request.status.rank >= ReturnStatus.INSPECTED.rank:
            return

        if return_request.requires_manual_review:
            await self.repository.add_note(
                return_request,
                "Return received; awaiting manual review before refund",
                ACTOR_INSPECTION,
            )
            logger.info(
                "Return held for manual review",
                return_id=str(return_request.id),
                review_reason=return_request.review_reason,
            )
            return

        conditions = sorted({item["condition"] for item in return_request.items})
        transition = await self._advance(
            return_request,
            ReturnEvent.INSPECTED,
            ACTOR_INSPECTION,
            note=f"Declared condition: {', '.join(conditions)}",
        )
        if transition.applied:
            await self.session.commit()
            await self.issue_refund(return_request, ACTOR_AUTOMATION)

    async def issue_refund(
        self,
        return_request: ReturnRequest,
        actor: str,
        manual: bool = False,
    ) -> Optional[RefundRecord]:
        """
        Issue the refund for a return against the order's original payment.

        The amount is the sum of the returned items' original prices. The
        gateway idempotency key is derived from the return id and the version
        read before the call, so a retry of the same attempt reuses it.

        Args:
            return_request: Inspected (or manually approved) return
            actor: Actor recorded in history
            manual: Use the manual review transition instead of the forward path

        Returns:
            The gateway's refund record, or None if the outcome is unknown

        Raises:
            GatewayError: On a manual refund the gateway rejected
        """
        order = await self.orders.get_or_raise(return_request.order_id)
        amount = return_request.items_subtotal
        reissue = return_request.status is ReturnStatus.REFUND_INITIATED

        if manual and not reissue:
            compute = partial(self.state_machine.resolve, decision=ManualResolution.REFUND)
        else:
            compute = partial(self.state_machine.apply, event=ReturnEvent.REFUND_INITIATED)

        if not order.payment_gateway_payment_id:
            await self._save(
                return_request,
                requires_manual_review=True,
                review_reason="Order has no payment reference to refund",
            )
            await self.repository.add_note(
                return_request, "Refund not issued: order has no payment reference", actor
            )
            await self.session.commit()
            if manual:
                raise PreconditionFailedError(
                    "Order has no payment reference to refund",
                    code="PAYMENT_REFERENCE_MISSING",
                )
            return None

        idempotency_key = f"return-refund-{return_request.id}-v{return_request.version}"
        try:
            record = await self.payment_gateway.issue_refund(
                order.payment_gateway_payment_id,
                amount=amount,
                idempotency_key=idempotency_key,
                metadata={"return_id": str(return_request.id), "order_id": str(order.id)},
            )
        except GatewayTimeoutError:
            logger.warning(
                "Refund outcome unknown after timeout",
                return_id=str(return_request.id),
                idempotency_key=idempotency_key,
            )
            await self._transition(
                return_request,
                compute,
                actor,
                note="Refund request timed out; awaiting gateway confirmation",
                refund_amount=amount,
                refund_status=RefundStatus.INITIATED,
            )
            await self.session.commit()
            return None
        except GatewayError as e:
            logger.error(
                "Refund rejected by gateway",
                return_id=str(return_request.id),
                provider_code=e.provider_code,
                provider_description=e.provider_description,
            )
            await self._save(
                return_request,
                requires_manual_review=True,
                review_reason="Refund failed at the payment gateway",
                refund_status=RefundStatus.FAILED,
                refund_error_code=e.provider_code,
                refund_error_description=e.provider_description or e.message,
            )
            await self.repository.add_note(
                return_request, f"Refund failed: {_error_text(e)}", actor
            )
            await self.session.commit()
            if manual:
                raise
            return None

        await self._transition(
            return_request,
            compute,
            actor,
            note=f"Refund {record.refund_id} issued for {amount}",
            refund_id=record.refund_id,
            refund_amount=record.amount,
            refund_status=RefundStatus.INITIATED,
            refund_error_code=None,
            refund_error_description=None,
        )
        await self.session.commit()
        return record

    async def apply_refund_event(
        self,
        record: RefundRecord,
        return_id: Optional[UUID] = None,
        actor: str = ACTOR_REFUND_WEBHOOK,
    ) -> ReturnEventResult:
        """
        Apply a refund status reported by the payment gateway.

        Args:
            record: Refund as reported by the gateway
            return_id: Return id from the refund metadata, used when the refund
                id was never recorded (timed-out request)
            actor: ``refund_webhook`` or ``refund_poll_fallback``

        Returns:
            ReturnEventResult
        """
        return_request = await self.repository.get_by_refund_id(record.refund_id)
        if return_request is None and return_id is not None:
            return_request = await self.repository.get(return_id)
        if return_request is None:
            logger.warning("Refund event for unknown return", refund_id=record.refund_id)
            return ReturnEventResult("unmatched", reason="return_not_found")

        if return_request.refund_id is None:
            await self._save(return_request, refund_id=record.refund_id)

        if record.status is RefundStatus.PROCESSED:
            transition = await self._advance(
                return_request,
                ReturnEvent.REFUND_CONFIRMED,
                actor,
                note=f"Refund {record.refund_id} processed",
                refund_status=RefundStatus.PROCESSED,
                refund_amount=record.amount,
                refund_reconciled_at=utcnow(),
            )
            if transition.applied:
                await self._advance(return_request, ReturnEvent.COMPLETED, actor)
                return ReturnEventResult("applied", return_request.id, return_request.status)
            return ReturnEventResult(
                transition.outcome.value,
                return_request.id,
                return_request.status,
                transition.reason,
            )

        if record.status is RefundStatus.FAILED:
            if return_request.status.rank >= ReturnStatus.REFUNDED.rank:
                return ReturnEventResult(
                    "noop", return_request.id, return_request.status, "already_refunded"
                )
            await self._save(
                return_request,
                refund_status=RefundStatus.FAILED,
                refund_error_code="refund_failed",
                refund_error_description=record.failure_reason,
                refund_reconciled_at=utcnow(),
                requires_manual_review=True,
                review_reason="Refund failed at the payment gateway",
            )
            await self.repository.add_note(
                return_request,
                f"Refund {record.refund_id} failed: {record.failure_reason or 'unknown reason'}",
                actor,
            )
            return ReturnEventResult(
                "flagged", return_request.id, return_request.status, "refund_failed"
            )

        return ReturnEventResult(
            "noop", return_request.id, return_request.status, "refund_pending"
        )

    async def check_refund_status(self, return_id: UUID) -> RefundRecord:
        """
        Read the refund's live state from the gateway without changing the return.

        Raises:
            PreconditionFailedError: If no refund id has been recorded
        """
        return_request = await self.repository.get_or_raise(return_id)
        if not return_request.refund_id:
            raise PreconditionFailedError(
                "No refund has been recorded for this return", code="REFUND_NOT_INITIATED"
            )
        return await self.payment_gateway.fetch_refund(return_request.refund_id)

    async def reconcile_refund(self, return_id: UUID) -> ReturnEventResult:
        """Poll the gateway and apply the result as the webhook would."""
        record = await self.check_refund_status(return_id)
        result = await self.apply_refund_event(record, return_id, actor=ACTOR_REFUND_POLL)
        await self.session.commit()
        logger.info(
            "Refund reconciled by polling",
            return_id=str(return_id),
            refund_id=record.refund_id,
            outcome=result.outcome,
        )
        return result

    async def add_note(self, return_id: UUID, note: str, admin: User) -> ReturnAdminNote:
        """Append an administrator note; never changes the return status."""
        return_request = await self.repository.get_or_raise(return_id)
        entry = await self.repository.add_note(return_request, note, admin.email)
        await self.session.commit()
        return entry

    async def resolve_manual_review(
        self,
        return_id: UUID,
        decision: ManualResolution,
        admin: User,
        note: Optional[str] = None,
    ) -> ReturnRequest:
        """
        Apply an administrator's decision on a return held for manual review.

        Args:
            return_id: Return under review
            decision: Reject the return or force the refund
            admin: Authorized administrator
            note: Justification stored in history

        Returns:
            Updated return

        Raises:
            PreconditionFailedError: If the return is not under review, holds no
                damaged or defective items (other than re-issuing a failed refund)
                or the decision is no longer possible
            GatewayError: If a forced refund is rejected by the gateway
        """
        return_request = await self.repository.get_or_raise(return_id)
        if not return_request.requires_manual_review:
            raise PreconditionFailedError(
                "Return is not awaiting manual review", code="NOT_UNDER_REVIEW"
            )

        actor = f"admin:{admin.email}"
        refund_failed = return_request.refund_status is RefundStatus.FAILED

        # Returns without damaged or defective items only allow re-issuing a failed refund
        if not return_request.declares_damage and not (
            decision is ManualResolution.REFUND and refund_failed
        ):
            raise PreconditionFailedError(
                "Only returns with damaged or defective items can be resolved manually",
                code="NOT_DAMAGED_OR_DEFECTIVE",
                reason=return_request.review_reason,
            )

        preview = self.state_machine.resolve(return_request.status, decision)
        if decision is ManualResolution.REJECT:
            if not preview.applied:
                raise PreconditionFailedError(
                    "Return can no longer be rejected",
                    code="INVALID_TRANSITION",
                    reason=preview.reason,
                )
            await self._transition(
                return_request,
                partial(self.state_machine.resolve, decision=decision),
                actor,
                note=note,
                requires_manual_review=False,
            )
            await self.session.commit()
        else:
            if preview.rejected or (preview.noop and not refund_failed):
                raise PreconditionFailedError(
                    "Refund cannot be forced for this return",
                    code="INVALID_TRANSITION",
                    reason=preview.reason,
                )
            await self.issue_refund(return_request, actor, manual=True)
            await self._save(return_request, requires_manual_review=False)
            if note:
                await self.repository.add_note(return_request, note, admin.email)
            await self.session.commit()

        logger.info(
            "Manual review resolved",
            return_id=str(return_request.id),
            decision=decision.value,
            status=return_request.status.value,
            admin_id=str(admin.id),
        )
        return await self.repository.reload(return_request)
