"""
Order model for payment, shipment and delivery tracking.

An order is created by the storefront at checkout. The fulfillment engine
owns everything after that: payment confirmation fields, the carrier
identifiers written after dispatch, the lifecycle status advanced by carrier
events, and a status history trail.
"""

import uuid
from datetime import datetime
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy import (
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from orderflow.database.base import (
    BaseModel,
    JSONType,
    VersionedModel,
    enum_column_type,
    utcnow,
)
from orderflow.services.orders.enums import OrderStatus, PaymentStatus, ShipmentStatus


class Order(VersionedModel):
    """
    Order with embedded payment and shipping state.

    Invariants enforced at the database level:
        - shipping_shipment_id and shipping_awb_code are both null or both set
        - shipped/delivered orders carry an AWB code
    """

    __tablename__ = "orders"

    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("users.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )

    status: Mapped[OrderStatus] = mapped_column(
        enum_column_type(OrderStatus, "order_status"),
        nullable=False,
        default=OrderStatus.PENDING,
        index=True,
    )

    total_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)

    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="inr")

    # [{"sku", "name", "quantity", "unit_price"}]
    items: Mapped[list[dict[str, Any]]] = mapped_column(
        JSONType, nullable=False, default=list
    )

    shipping_address: Mapped[dict[str, Any]] = mapped_column(
        JSONType, nullable=False, default=dict
    )

    # Payment
    payment_status: Mapped[PaymentStatus] = mapped_column(
        enum_column_type(PaymentStatus, "order_payment_status"),
        nullable=False,
        default=PaymentStatus.PENDING,
    )
    payment_gateway_order_id: Mapped[Optional[str]] = mapped_column(
        String(255), nullable=True, index=True
    )
    payment_gateway_payment_id: Mapped[Optional[str]] = mapped_column(
        String(255), nullable=True
    )
    payment_signature: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    paid_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    # Shipping
    shipping_order_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    shipping_shipment_id: Mapped[Optional[str]] = mapped_column(
        String(64), nullable=True, index=True
    )
    shipping_awb_code: Mapped[Optional[str]] = mapped_column(
        String(64), nullable=True, unique=True
    )
    # Carrier shipment created but no AWB assigned yet
    shipping_pending_shipment_id: Mapped[Optional[str]] = mapped_column(
        String(64), nullable=True
    )
    courier_name: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    current_location: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    tracking_updated_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    delivered_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    # Shipment automation
    shipment_status: Mapped[ShipmentStatus] = mapped_column(
        enum_column_type(ShipmentStatus, "order_shipment_status"),
        nullable=False,
        default=ShipmentStatus.NOT_REQUESTED,
        index=True,
    )
    shipment_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    shipment_next_retry_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    shipment_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    warning: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    # Status replaced by an admin cancellation made while a shipment was active;
    # carrier dispatch and delivery events resume from it
    cancelled_from: Mapped[Optional[OrderStatus]] = mapped_column(
        enum_column_type(OrderStatus, "order_cancelled_from"),
        nullable=True,
    )

    status_history: Mapped[list["OrderStatusHistory"]] = relationship(
        back_populates="order",
        order_by="OrderStatusHistory.created_at",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    __table_args__ = (
        CheckConstraint(
            "(shipping_shipment_id IS NULL AND shipping_awb_code IS NULL) OR "
            "(shipping_shipment_id IS NOT NULL AND shipping_awb_code IS NOT NULL)",
            name="ck_orders_shipment_awb_pair",
        ),
        CheckConstraint(
            "status NOT IN ('shipped', 'delivered') OR shipping_awb_code IS NOT NULL",
            name="ck_orders_shipped_requires_awb",
        ),
        CheckConstraint("total_amount >= 0", name="ck_orders_total_non_negative"),
        Index("ix_orders_shipment_retry", "shipment_status", "shipment_next_retry_at"),
    )

    @property
    def has_shipment(self) -> bool:
        """True once the carrier shipment id and AWB are recorded."""
        return bool(self.shipping_shipment_id and self.shipping_awb_code)

    @property
    def items_subtotal(self) -> Decimal:
        """Sum of quantity * unit price over all order items."""
        return sum(
            (
                Decimal(str(item.get("unit_price", 0))) * int(item.get("quantity", 0))
                for item in self.items or []
            ),
            Decimal("0"),
        )

    def find_item(self, sku: str) -> Optional[dict[str, Any]]:
        """Return the order item with the given SKU, if any."""
        for item in self.items or []:
            if item.get("sku") == sku:
                return item
        return None

    def __repr__(self) -> str:
        return f"<Order(id={self.id}, status={self.status.value})>"


class OrderStatusHistory(BaseModel):
    """Append-only record of order status transitions."""

    __tablename__ = "order_status_history"

    order_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("orders.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    from_status: Mapped[Optional[OrderStatus]] = mapped_column(
        enum_column_type(OrderStatus, "order_history_from_status"),
        nullable=True,
    )

    to_status: Mapped[OrderStatus] = mapped_column(
        enum_column_type(OrderStatus, "order_history_to_status"),
        nullable=False,
    )

    actor: Mapped[str] = mapped_column(String(128), nullable=False)

    reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    occurred_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )

    order: Mapped["Order"] = relationship(back_populates="status_history")
