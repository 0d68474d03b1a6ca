"""Return state machine.

Returns advance along a single forward path. Carrier events may arrive out
of order or skip a scan, so the carrier-owned statuses (pickup scheduled and
in transit) are filled in automatically when a later event lands. Every
other predecessor is required: a refund cannot be confirmed before it was
initiated, and a return cannot be inspected before it was approved.

The only way around the forward path is the manual review resolution used
for damaged or defective items, which jumps straight to ``rejected`` or
``refund_initiated``.
"""

from enum import Enum

from orderflow.services.orders.enums import RETURN_FORWARD_PATH, ReturnStatus
from orderflow.services.orders.state_machine import TransitionResult


class ReturnEvent(str, Enum):
    APPROVED = "approved"
    PICKUP_SCHEDULED = "pickup_scheduled"
    IN_TRANSIT = "in_transit"
    INSPECTED = "inspected"
    REFUND_INITIATED = "refund_initiated"
    REFUND_CONFIRMED = "refund_confirmed"
    COMPLETED = "completed"
    REJECTED = "rejected"


class ManualResolution(str, Enum):
    """Administrator decision on a return flagged for manual review."""

    REJECT = "reject"
    REFUND = "refund"


RETURN_EVENT_TARGETS: dict[ReturnEvent, ReturnStatus] = {
    ReturnEvent.APPROVED: ReturnStatus.APPROVED,
    ReturnEvent.PICKUP_SCHEDULED: ReturnStatus.PICKUP_SCHEDULED,
    ReturnEvent.IN_TRANSIT: ReturnStatus.IN_TRANSIT,
    ReturnEvent.INSPECTED: ReturnStatus.INSPECTED,
    ReturnEvent.REFUND_INITIATED: ReturnStatus.REFUND_INITIATED,
    ReturnEvent.REFUND_CONFIRMED: ReturnStatus.REFUNDED,
    ReturnEvent.COMPLETED: ReturnStatus.COMPLETED,
    ReturnEvent.REJECTED: ReturnStatus.REJECTED,
}

# Statuses owned by the carrier that may be inferred from a later scan
CARRIER_FILLABLE: frozenset[ReturnStatus] = frozenset(
    {ReturnStatus.PICKUP_SCHEDULED, ReturnStatus.IN_TRANSIT}
)


class ReturnStateMachine:
    """Transition table for returns."""

    def apply(
        self, current: ReturnStatus, event: ReturnEvent
    ) -> TransitionResult[ReturnStatus]:
        """Apply an automated event.

        Args:
            current: Current return status
            event: Event being applied

        Returns:
            TransitionResult describing the effect
        """
        target = RETURN_EVENT_TARGETS[event]

        if current.is_terminal():
            return TransitionResult.no_change(current, f"return_{current.value}")

        if event is ReturnEvent.REJECTED:
            # Automatic rejection only happens at the eligibility check
            if current is not ReturnStatus.REQUESTED:
                return TransitionResult.reject(current, "manual_review_required")
            return TransitionResult.apply_path(current, (ReturnStatus.REJECTED,))

        if target.rank <= current.rank:
            return TransitionResult.no_change(current, "stale_or_duplicate")

        start = RETURN_FORWARD_PATH.index(current) + 1
        end = RETURN_FORWARD_PATH.index(target) + 1
        path = RETURN_FORWARD_PATH[start:end]

        for intermediate in path[:-1]:
            if intermediate not in CARRIER_FILLABLE:
                return TransitionResult.reject(
                    current, f"missing_predecessor_{intermediate.value}"
                )

        return TransitionResult.apply_path(current, path)

    def resolve(
        self, current: ReturnStatus, decision: ManualResolution
    ) -> TransitionResult[ReturnStatus]:
        """Apply an administrator's manual review decision.

        Args:
            current: Current return status
            decision: Reject the return or force the refund

        Returns:
            TransitionResult describing the effect
        """
        if current.is_terminal():
            return TransitionResult.reject(current, f"return_{current.value}")

        if current.rank >= ReturnStatus.REFUND_INITIATED.rank:
            if decision is ManualResolution.REFUND:
                return TransitionResult.no_change(current, "refund_already_initiated")
            return TransitionResult.reject(current, "refund_already_initiated")

        if decision is ManualResolution.REJECT:
            return TransitionResult.apply_path(current, (ReturnStatus.REJECTED,))
        return TransitionResult.apply_path(current, (ReturnStatus.REFUND_INITIATED,))
