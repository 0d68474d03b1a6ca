"""
Order administration Pydantic schemas.
"""

from datetime import datetime
from decimal import Decimal
from typing import Optional
from uuid import UUID

from pydantic import Field, field_validator

from orderflow.schemas.common import CamelModel
from orderflow.services.orders.enums import OrderStatus, PaymentStatus, ShipmentStatus


class OrderStatusUpdateRequest(CamelModel):
    """Administrator status override."""

    status: OrderStatus = Field(..., description="Target order status")
    reason: Optional[str] = Field(None, max_length=1000)

    @field_validator("status", mode="before")
    @classmethod
    def parse_status(cls, v):
        if isinstance(v, str):
            return OrderStatus.from_string(v)
        return v


class OrderHistoryEntry(CamelModel):
    from_status: Optional[OrderStatus] = None
    to_status: OrderStatus
    actor: str
    reason: Optional[str] = None
    occurred_at: datetime


class OrderResponse(CamelModel):
    """Order as seen by administrators."""

    id: UUID
    user_id: UUID
    status: OrderStatus
    total_amount: Decimal
    currency: str
    payment_status: PaymentStatus
    payment_gateway_order_id: Optional[str] = None
    payment_gateway_payment_id: Optional[str] = None
    paid_at: Optional[datetime] = None
    shipping_order_id: Optional[str] = None
    shipping_shipment_id: Optional[str] = None
    shipping_awb_code: Optional[str] = None
    courier_name: Optional[str] = None
    current_location: Optional[str] = None
    tracking_updated_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    shipment_status: ShipmentStatus
    shipment_attempts: int
    shipment_next_retry_at: Optional[datetime] = None
    shipment_error: Optional[str] = None
    warning: Optional[str] = None
    cancelled_from: Optional[OrderStatus] = None
    version: int
    updated_at: datetime
    status_history: list[OrderHistoryEntry] = Field(default_factory=list)


class StuckOrdersResponse(CamelModel):
    unshipped: list[OrderResponse]
    cancelled_paid: list[OrderResponse]
    threshold_minutes: int


class ShipmentAttemptResponse(CamelModel):
    order_id: UUID
    outcome: str
    attempt: int
    error: Optional[str] = None
    next_retry_at: Optional[datetime] = None


class TrackingSyncResponse(CamelModel):
    order_id: UUID
    outcome: str
    status: Optional[OrderStatus] = None
    path: list[OrderStatus] = Field(default_factory=list)
    reason: Optional[str] = None
