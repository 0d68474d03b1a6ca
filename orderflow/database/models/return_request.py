"""
Return request model with append-only status history and admin notes.

A return references a delivered order and carries the subset of its items
being sent back, each annotated with a self-reported condition. The refund
record is embedded: it is written only by the refund flow and is read-only
to administrators.
"""

import uuid
from datetime import datetime
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy import (
    Boolean,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
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
from orderflow.services.orders.enums import ItemCondition, RefundStatus, ReturnStatus


class ReturnRequest(VersionedModel):
    """Customer return of some or all items of a delivered order."""

    __tablename__ = "return_requests"

    order_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("orders.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )

    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("users.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )

    # [{"sku", "name", "quantity", "unit_price", "condition", "reason"}]
    items: Mapped[list[dict[str, Any]]] = mapped_column(JSONType, nullable=False)

    reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    status: Mapped[ReturnStatus] = mapped_column(
        enum_column_type(ReturnStatus, "return_status"),
        nullable=False,
        default=ReturnStatus.REQUESTED,
        index=True,
    )

    requires_manual_review: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False
    )
    review_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Reverse pickup
    pickup_order_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    pickup_shipment_id: Mapped[Optional[str]] = mapped_column(
        String(64), nullable=True, index=True
    )
    pickup_awb_code: Mapped[Optional[str]] = mapped_column(
        String(64), nullable=True, index=True
    )

    # Embedded refund record
    refund_id: Mapped[Optional[str]] = mapped_column(
        String(255), nullable=True, unique=True
    )
    refund_amount: Mapped[Optional[Decimal]] = mapped_column(
        Numeric(12, 2), nullable=True
    )
    refund_status: Mapped[Optional[RefundStatus]] = mapped_column(
        enum_column_type(RefundStatus, "refund_status"),
        nullable=True,
    )
    refund_reconciled_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    refund_error_code: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    refund_error_description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    status_history: Mapped[list["ReturnStatusHistory"]] = relationship(
        back_populates="return_request",
        order_by="ReturnStatusHistory.sequence",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    admin_notes: Mapped[list["ReturnAdminNote"]] = relationship(
        back_populates="return_request",
        order_by="ReturnAdminNote.created_at",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    @property
    def items_subtotal(self) -> Decimal:
        """Refundable amount: quantity * unit price over returned items."""
        return sum(
            (
                Decimal(str(item.get("unit_price", 0))) * int(item.get("quantity", 0))
                for item in self.items or []
            ),
            Decimal("0"),
        ).quantize(Decimal("0.01"))

    @property
    def declares_damage(self) -> bool:
        """Whether any returned item was declared damaged or defective."""
        return any(
            ItemCondition(item["condition"]).requires_manual_review
            for item in self.items or []
        )

    def __repr__(self) -> str:
        return f"<ReturnRequest(id={self.id}, status={self.status.value})>"


class ReturnStatusHistory(BaseModel):
    """Append-only status trail of a return; sequence is dense per return."""

    __tablename__ = "return_status_history"

    return_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("return_requests.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    sequence: Mapped[int] = mapped_column(Integer, nullable=False)

    status: Mapped[ReturnStatus] = mapped_column(
        enum_column_type(ReturnStatus, "return_history_status"),
        nullable=False,
    )

    actor: Mapped[str] = mapped_column(String(128), nullable=False)

    note: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    occurred_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )

    return_request: Mapped["ReturnRequest"] = relationship(back_populates="status_history")

    __table_args__ = (
        UniqueConstraint("return_id", "sequence", name="uq_return_status_history_seq"),
    )


class ReturnAdminNote(BaseModel):
    """Append-only administrator note on a return. Never changes status."""

    __tablename__ = "return_admin_notes"

    return_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("return_requests.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    note: Mapped[str] = mapped_column(Text, nullable=False)

    author: Mapped[str] = mapped_column(String(255), nullable=False)

    return_request: Mapped["ReturnRequest"] = relationship(back_populates="admin_notes")
