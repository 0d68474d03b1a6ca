"""Order state machine.

Pure transition logic for the order lifecycle, free of persistence and
transport concerns. Callers pass the current status plus whether carrier
identifiers are recorded, and receive a TransitionResult describing what to
persist:

- applied: the status advances; ``path`` lists every status entered, in
  order, so history never skips a predecessor
- noop: the event is stale or a duplicate under monotonic ordering
- rejected: the event is not valid for the order (e.g. shipped without AWB)
"""

from dataclasses import dataclass
from enum import Enum
from typing import Generic, Optional, TypeVar

from orderflow.core.logging import get_logger
from orderflow.services.orders.enums import ORDER_FORWARD_PATH, OrderStatus

logger = get_logger(__name__)

S = TypeVar("S")


class TransitionOutcome(str, Enum):
    APPLIED = "applied"
    NOOP = "noop"
    REJECTED = "rejected"


@dataclass(frozen=True)
class TransitionResult(Generic[S]):
    """Result of applying an event to a state."""

    outcome: TransitionOutcome
    previous: S
    status: S
    path: tuple[S, ...] = ()
    reason: Optional[str] = None

    @property
    def applied(self) -> bool:
        return self.outcome is TransitionOutcome.APPLIED

    @property
    def noop(self) -> bool:
        return self.outcome is TransitionOutcome.NOOP

    @property
    def rejected(self) -> bool:
        return self.outcome is TransitionOutcome.REJECTED

    @classmethod
    def apply_path(cls, previous: S, path: tuple[S, ...]) -> "TransitionResult[S]":
        return cls(TransitionOutcome.APPLIED, previous, path[-1], path)

    @classmethod
    def no_change(cls, current: S, reason: str) -> "TransitionResult[S]":
        return cls(TransitionOutcome.NOOP, current, current, (), reason)

    @classmethod
    def reject(cls, current: S, reason: str) -> "TransitionResult[S]":
        return cls(TransitionOutcome.REJECTED, current, current, (), reason)


class OrderEvent(str, Enum):
    """Events that drive the order lifecycle."""

    PAYMENT_CONFIRMED = "payment_confirmed"
    DISPATCHED = "dispatched"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


ORDER_EVENT_TARGETS: dict[OrderEvent, OrderStatus] = {
    OrderEvent.PAYMENT_CONFIRMED: OrderStatus.PROCESSING,
    OrderEvent.DISPATCHED: OrderStatus.SHIPPED,
    OrderEvent.DELIVERED: OrderStatus.DELIVERED,
    OrderEvent.CANCELLED: OrderStatus.CANCELLED,
}

# Statuses an administrator may set through the override endpoint
ADMIN_OVERRIDE_STATUSES: frozenset[OrderStatus] = frozenset(OrderStatus)


class OrderStateMachine:
    """Transition table for orders.

    Forward events are monotonic: an event whose target ranks at or below
    the current status is a no-op, so replays and late deliveries cannot
    move an order backwards. Cancellation is accepted from any non-terminal
    status. A cancellation an administrator made while the shipment was
    active is advisory: carrier progress resumes from the status it replaced.
    """

    def apply(
        self,
        current: OrderStatus,
        event: OrderEvent,
        has_shipment: bool = False,
        resume_from: Optional[OrderStatus] = None,
    ) -> TransitionResult[OrderStatus]:
        """Apply an automated event.

        Args:
            current: Current order status
            event: Event being applied
            has_shipment: Whether shipment id and AWB are both recorded
            resume_from: For an advisory cancellation, the status it replaced;
                forward carrier events advance from there instead of being
                ignored

        Returns:
            TransitionResult describing the effect
        """
        target = ORDER_EVENT_TARGETS[event]

        if event is OrderEvent.CANCELLED:
            if current is OrderStatus.CANCELLED:
                return TransitionResult.no_change(current, "already_cancelled")
            if current.is_terminal():
                return TransitionResult.reject(current, f"order_already_{current.value}")
            return TransitionResult.apply_path(current, (OrderStatus.CANCELLED,))

        origin = current
        if current is OrderStatus.CANCELLED:
            if resume_from is None:
                return TransitionResult.no_change(current, "order_cancelled")
            origin = resume_from

        if target.rank <= origin.rank:
            return TransitionResult.no_change(current, "stale_or_duplicate")

        if target.requires_shipment() and not has_shipment:
            return TransitionResult.reject(current, "shipment_not_created")

        path = self._forward_path(origin, target)
        if len(path) > 1:
            logger.info(
                "Order event skipped intermediate statuses",
                order_event=event.value,
                from_status=current.value,
                path=[status.value for status in path],
            )
        return TransitionResult.apply_path(current, path)

    def override(
        self,
        current: OrderStatus,
        target: OrderStatus,
        has_shipment: bool = False,
    ) -> TransitionResult[OrderStatus]:
        """Apply an administrator override.

        Overrides may move an order in either direction between non-terminal
        statuses but never violate the shipment invariant and never reopen a
        terminal order.

        Args:
            current: Current order status
            target: Requested status
            has_shipment: Whether shipment id and AWB are both recorded

        Returns:
            TransitionResult describing the effect
        """
        if target not in ADMIN_OVERRIDE_STATUSES:
            return TransitionResult.reject(current, "status_not_overridable")
        if target is current:
            return TransitionResult.no_change(current, "already_in_status")
        if current.is_terminal():
            return TransitionResult.reject(current, f"order_already_{current.value}")
        if target.requires_shipment() and not has_shipment:
            return TransitionResult.reject(current, "shipment_not_created")
        return TransitionResult.apply_path(current, (target,))

    @staticmethod
    def _forward_path(
        current: OrderStatus, target: OrderStatus
    ) -> tuple[OrderStatus, ...]:
        start = ORDER_FORWARD_PATH.index(current) + 1
        end = ORDER_FORWARD_PATH.index(target) + 1
        return ORDER_FORWARD_PATH[start:end]
