"""
Carrier status code mapping.

The logistics provider reports shipment progress as numeric status codes in
tracking webhooks and tracking snapshots. These tables translate them into
order and return events. Codes without an entry are informational and do
not move any state.
"""

from enum import Enum
from typing import Any, Optional

from orderflow.services.orders.state_machine import OrderEvent


class ReturnCarrierEvent(str, Enum):
    """Reverse-pickup progress reported by the carrier."""

    PICKUP_SCHEDULED = "pickup_scheduled"
    IN_TRANSIT = "in_transit"
    RECEIVED = "received"
    PICKUP_FAILED = "pickup_failed"


# Forward shipment codes
ORDER_STATUS_CODES: dict[int, Optional[OrderEvent]] = {
    1: None,  # awb assigned
    2: None,  # label generated
    3: OrderEvent.DISPATCHED,  # pickup scheduled
    4: OrderEvent.DISPATCHED,  # pickup queued
    5: OrderEvent.DISPATCHED,  # manifest generated
    13: OrderEvent.DISPATCHED,  # pickup error, retried by carrier
    25: OrderEvent.DISPATCHED,  # picked up
    38: OrderEvent.DISPATCHED,  # in transit
    6: OrderEvent.DELIVERED,
    7: OrderEvent.CANCELLED,
    8: OrderEvent.CANCELLED,  # cancellation requested
    9: OrderEvent.CANCELLED,  # rto initiated
    10: OrderEvent.CANCELLED,  # rto delivered
    11: OrderEvent.CANCELLED,  # lost
}

# Reverse pickup codes
RETURN_STATUS_CODES: dict[int, ReturnCarrierEvent] = {
    2: ReturnCarrierEvent.PICKUP_SCHEDULED,
    13: ReturnCarrierEvent.PICKUP_SCHEDULED,
    3: ReturnCarrierEvent.IN_TRANSIT,
    4: ReturnCarrierEvent.IN_TRANSIT,
    25: ReturnCarrierEvent.IN_TRANSIT,
    38: ReturnCarrierEvent.IN_TRANSIT,
    6: ReturnCarrierEvent.RECEIVED,
    7: ReturnCarrierEvent.PICKUP_FAILED,
    9: ReturnCarrierEvent.PICKUP_FAILED,
    10: ReturnCarrierEvent.PICKUP_FAILED,
}


def parse_status_code(value: Any) -> Optional[int]:
    """Coerce a provider status code (int or numeric string) to int."""
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(str(value).strip())
    except ValueError:
        return None


def order_event_for_code(code: Optional[int]) -> Optional[OrderEvent]:
    if code is None:
        return None
    return ORDER_STATUS_CODES.get(code)


def return_event_for_code(code: Optional[int]) -> Optional[ReturnCarrierEvent]:
    if code is None:
        return None
    return RETURN_STATUS_CODES.get(code)
