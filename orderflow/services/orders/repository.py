"""
Order data access repository.

All writes to an order row go through ``update_conditional``, which only
succeeds if the row still has the version (and optionally the status) the
caller read. Lookups cover every identifier a provider event may carry:
local id, gateway order id, carrier shipment id and AWB.
"""

import uuid
from datetime import datetime
from typing import Any, Optional, Sequence

from sqlalchemy import and_, or_, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from orderflow.core.errors import ConcurrentUpdateError, NotFoundError
from orderflow.core.logging import get_logger
from orderflow.database.base import versioned_update
from orderflow.database.models.order import Order, OrderStatusHistory
from orderflow.services.orders.enums import OrderStatus, PaymentStatus, ShipmentStatus

logger = get_logger(__name__)


class OrderNotFoundError(NotFoundError):
    """Raised when an order is not found."""

    default_code = "ORDER_NOT_FOUND"


class OrderRepository:
    """Repository for order reads and conditional writes."""

    def __init__(self, session: AsyncSession):
        """
        Initialize order repository.

        Args:
            session: Async database session
        """
        self.session = session

    async def get(self, order_id: uuid.UUID) -> Optional[Order]:
        return await self.session.get(Order, order_id)

    async def get_or_raise(self, order_id: uuid.UUID) -> Order:
        """
        Load an order by id.

        Raises:
            OrderNotFoundError: If no such order exists
        """
        order = await self.get(order_id)
        if order is None:
            raise OrderNotFoundError("Order not found", order_id=str(order_id))
        return order

    async def reload(self, order: Order) -> Order:
        """Re-read columns and status history, replacing the identity-mapped state."""
        result = await self.session.execute(
            select(Order)
            .where(Order.id == order.id)
            .options(selectinload(Order.status_history))
            .execution_options(populate_existing=True)
        )
        return result.scalar_one()

    async def get_by_awb(self, awb_code: str) -> Optional[Order]:
        result = await self.session.execute(
            select(Order).where(Order.shipping_awb_code == awb_code)
        )
        return result.scalar_one_or_none()

    async def get_by_shipment_id(self, shipment_id: str) -> Optional[Order]:
        result = await self.session.execute(
            select(Order).where(
                or_(
                    Order.shipping_shipment_id == shipment_id,
                    Order.shipping_pending_shipment_id == shipment_id,
                )
            )
        )
        return result.scalars().first()

    async def find_for_carrier_event(
        self, awb_code: Optional[str], shipment_id: Optional[str]
    ) -> Optional[Order]:
        """Locate the order a carrier event refers to, AWB first."""
        if awb_code:
            order = await self.get_by_awb(awb_code)
            if order is not None:
                return order
        if shipment_id:
            return await self.get_by_shipment_id(shipment_id)
        return None

    async def update_conditional(
        self,
        order: Order,
        expected_status: Optional[OrderStatus] = None,
        **values: Any,
    ) -> Order:
        """
        Write ``values`` if the order is unchanged since it was read.

        Args:
            order: Order as read by the caller
            expected_status: Status the row must still have
            **values: Column values to write

        Returns:
            The refreshed order

        Raises:
            ConcurrentUpdateError: If another writer changed the order first
        """
        read_version = order.version
        if not await versioned_update(self.session, order, values, expected_status):
            logger.info(
                "Conditional order update lost race",
                order_id=str(order.id),
                read_version=read_version,
                current_version=order.version,
            )
            raise ConcurrentUpdateError(
                "Order was modified concurrently",
                order_id=str(order.id),
            )
        return order

    async def add_history(
        self,
        order: Order,
        path: Sequence[OrderStatus],
        previous: Optional[OrderStatus],
        actor: str,
        reason: Optional[str] = None,
        occurred_at: Optional[datetime] = None,
    ) -> None:
        """Append one history row per status entered along ``path``."""
        from_status = previous
        for status in path:
            entry = OrderStatusHistory(
                order_id=order.id,
                from_status=from_status,
                to_status=status,
                actor=actor,
                reason=reason,
            )
            if occurred_at is not None:
                entry.occurred_at = occurred_at
            self.session.add(entry)
            from_status = status
        await self.session.flush()

    async def list_due_for_shipment(self, now: datetime, limit: int = 20) -> list[Order]:
        """Paid orders whose shipment creation is pending and due."""
        result = await self.session.execute(
            select(Order)
            .where(
                Order.shipment_status == ShipmentStatus.PENDING,
                Order.payment_status == PaymentStatus.COMPLETED,
                Order.status != OrderStatus.CANCELLED,
                or_(
                    Order.shipment_next_retry_at.is_(None),
                    Order.shipment_next_retry_at <= now,
                ),
            )
            .order_by(Order.shipment_next_retry_at)
            .limit(limit)
        )
        return list(result.scalars().all())

    async def list_paid_without_shipment(self, paid_before: datetime) -> list[Order]:
        """Paid, non-cancelled orders still lacking a carrier shipment."""
        result = await self.session.execute(
            select(Order)
            .where(
                Order.payment_status == PaymentStatus.COMPLETED,
                Order.status != OrderStatus.CANCELLED,
                Order.shipping_shipment_id.is_(None),
                Order.paid_at <= paid_before,
            )
            .order_by(Order.paid_at)
        )
        return list(result.scalars().all())

    async def list_cancelled_with_payment(self) -> list[Order]:
        """Cancelled orders whose payment was captured."""
        result = await self.session.execute(
            select(Order)
            .where(
                and_(
                    Order.status == OrderStatus.CANCELLED,
                    Order.payment_status == PaymentStatus.COMPLETED,
                )
            )
            .order_by(Order.updated_at.desc())
        )
        return list(result.scalars().all())
