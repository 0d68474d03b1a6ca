"""Status enums for the order and return lifecycles.

Order and return statuses carry a rank. Carrier and gateway events are
applied as monotonic advances: an event is only effective when it moves an
entity to a strictly higher rank than the one it already holds.
"""

from enum import Enum
from typing import Optional


class OrderStatus(str, Enum):
    """Order lifecycle status.

    Forward path: PENDING -> PROCESSING -> SHIPPED -> DELIVERED.
    CANCELLED is reachable from every non-terminal status.
    """

    PENDING = "pending"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"

    @classmethod
    def from_string(cls, value: str) -> "OrderStatus":
        """Convert string to OrderStatus enum.

        Args:
            value: String representation of status

        Returns:
            OrderStatus enum value

        Raises:
            ValueError: If value is not a valid status
        """
        try:
            return cls(value.strip().lower())
        except ValueError:
            valid_values = ", ".join(s.value for s in cls)
            raise ValueError(
                f"Invalid order status: {value}. Valid values are: {valid_values}"
            )

    @property
    def rank(self) -> int:
        return ORDER_STATUS_RANK[self]

    def is_terminal(self) -> bool:
        return self in (OrderStatus.DELIVERED, OrderStatus.CANCELLED)

    def requires_shipment(self) -> bool:
        """Statuses that are only valid once shipment id and AWB exist."""
        return self in (OrderStatus.SHIPPED, OrderStatus.DELIVERED)


ORDER_STATUS_RANK: dict[OrderStatus, int] = {
    OrderStatus.PENDING: 0,
    OrderStatus.PROCESSING: 1,
    OrderStatus.SHIPPED: 2,
    OrderStatus.DELIVERED: 3,
    OrderStatus.CANCELLED: 4,
}

# Forward path without the cancellation branch
ORDER_FORWARD_PATH: tuple[OrderStatus, ...] = (
    OrderStatus.PENDING,
    OrderStatus.PROCESSING,
    OrderStatus.SHIPPED,
    OrderStatus.DELIVERED,
)


class PaymentStatus(str, Enum):
    """Payment status recorded on the order."""

    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class ShipmentStatus(str, Enum):
    """Progress of automated shipment creation for an order.

    NOT_REQUESTED: payment not yet confirmed.
    PENDING: creation scheduled or awaiting a retry.
    CREATED: carrier shipment id and AWB recorded.
    FAILED: retries exhausted, needs manual remediation.
    """

    NOT_REQUESTED = "not_requested"
    PENDING = "pending"
    CREATED = "created"
    FAILED = "failed"


class ReturnStatus(str, Enum):
    """Return lifecycle status.

    Forward path: REQUESTED -> APPROVED -> PICKUP_SCHEDULED -> IN_TRANSIT ->
    INSPECTED -> REFUND_INITIATED -> REFUNDED -> COMPLETED.
    REJECTED is a terminal side branch.
    """

    REQUESTED = "requested"
    APPROVED = "approved"
    PICKUP_SCHEDULED = "pickup_scheduled"
    IN_TRANSIT = "in_transit"
    INSPECTED = "inspected"
    REFUND_INITIATED = "refund_initiated"
    REFUNDED = "refunded"
    COMPLETED = "completed"
    REJECTED = "rejected"

    @property
    def rank(self) -> int:
        return RETURN_STATUS_RANK[self]

    def is_terminal(self) -> bool:
        return self in (ReturnStatus.COMPLETED, ReturnStatus.REJECTED)


RETURN_FORWARD_PATH: tuple[ReturnStatus, ...] = (
    ReturnStatus.REQUESTED,
    ReturnStatus.APPROVED,
    ReturnStatus.PICKUP_SCHEDULED,
    ReturnStatus.IN_TRANSIT,
    ReturnStatus.INSPECTED,
    ReturnStatus.REFUND_INITIATED,
    ReturnStatus.REFUNDED,
    ReturnStatus.COMPLETED,
)

RETURN_STATUS_RANK: dict[ReturnStatus, int] = {
    status: index for index, status in enumerate(RETURN_FORWARD_PATH)
}
RETURN_STATUS_RANK[ReturnStatus.REJECTED] = len(RETURN_FORWARD_PATH)


class RefundStatus(str, Enum):
    """Status of the refund record embedded in a return."""

    INITIATED = "initiated"
    PROCESSED = "processed"
    FAILED = "failed"


class ItemCondition(str, Enum):
    """Condition of a returned item as self-reported by the customer."""

    UNUSED = "unused"
    LIGHTLY_USED = "lightly_used"
    DAMAGED = "damaged"
    DEFECTIVE = "defective"

    @property
    def requires_manual_review(self) -> bool:
        return self in (ItemCondition.DAMAGED, ItemCondition.DEFECTIVE)


def parse_enum(enum_cls: type[Enum], value: Optional[str]) -> Optional[Enum]:
    """Return the enum member for ``value`` or None if it does not match."""
    if value is None:
        return None
    try:
        return enum_cls(str(value).strip().lower())
    except ValueError:
        return None
