"""
Return request data access repository.

Status history rows carry a dense per-return sequence number; the unique
(return_id, sequence) constraint turns two writers appending concurrently
into an integrity error instead of an interleaved trail.
"""

import uuid
from datetime import datetime
from typing import Any, Optional, Sequence

from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from orderflow.core.errors import ConcurrentUpdateError, NotFoundError
from orderflow.core.logging import get_logger
from orderflow.database.base import versioned_update
from orderflow.database.models.return_request import (
    ReturnAdminNote,
    ReturnRequest,
    ReturnStatusHistory,
)
from orderflow.services.orders.enums import ReturnStatus

logger = get_logger(__name__)


class ReturnNotFoundError(NotFoundError):
    """Raised when a return request is not found."""

    default_code = "RETURN_NOT_FOUND"


class ReturnRepository:
    """Repository for return requests, their history and notes."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get(self, return_id: uuid.UUID) -> Optional[ReturnRequest]:
        return await self.session.get(ReturnRequest, return_id)

    async def get_or_raise(self, return_id: uuid.UUID) -> ReturnRequest:
        """
        Load a return by id.

        Raises:
            ReturnNotFoundError: If no such return exists
        """
        return_request = await self.get(return_id)
        if return_request is None:
            raise ReturnNotFoundError("Return not found", return_id=str(return_id))
        return return_request

    async def get_by_refund_id(self, refund_id: str) -> Optional[ReturnRequest]:
        result = await self.session.execute(
            select(ReturnRequest).where(ReturnRequest.refund_id == refund_id)
        )
        return result.scalar_one_or_none()

    async def get_by_pickup(
        self, awb_code: Optional[str], shipment_id: Optional[str]
    ) -> Optional[ReturnRequest]:
        """Locate a return by its reverse-pickup AWB or shipment id."""
        conditions = []
        if awb_code:
            conditions.append(ReturnRequest.pickup_awb_code == awb_code)
        if shipment_id:
            conditions.append(ReturnRequest.pickup_shipment_id == shipment_id)
        if not conditions:
            return None
        result = await self.session.execute(
            select(ReturnRequest).where(or_(*conditions)).limit(1)
        )
        return result.scalars().first()

    async def list_active_for_order(self, order_id: uuid.UUID) -> list[ReturnRequest]:
        """Returns for an order that still count against its item quantities."""
        result = await self.session.execute(
            select(ReturnRequest).where(
                ReturnRequest.order_id == order_id,
                ReturnRequest.status != ReturnStatus.REJECTED,
            )
        )
        return list(result.scalars().all())

    async def create(self, return_request: ReturnRequest) -> ReturnRequest:
        self.session.add(return_request)
        await self.session.flush()
        logger.info(
            "Return request created",
            return_id=str(return_request.id),
            order_id=str(return_request.order_id),
        )
        return return_request

    async def update_conditional(
        self,
        return_request: ReturnRequest,
        expected_status: Optional[ReturnStatus] = None,
        **values: Any,
    ) -> ReturnRequest:
        """
        Write ``values`` if the return is unchanged since it was read.

        Raises:
            ConcurrentUpdateError: If another writer changed the return first
        """
        if not await versioned_update(self.session, return_request, values, expected_status):
            raise ConcurrentUpdateError(
                "Return was modified concurrently",
                return_id=str(return_request.id),
            )
        return return_request

    async def add_history(
        self,
        return_request: ReturnRequest,
        statuses: Sequence[ReturnStatus],
        actor: str,
        note: Optional[str] = None,
        occurred_at: Optional[datetime] = None,
    ) -> None:
        """Append history entries for each status entered, in order."""
        result = await self.session.execute(
            select(func.max(ReturnStatusHistory.sequence)).where(
                ReturnStatusHistory.return_id == return_request.id
            )
        )
        sequence = result.scalar() or 0
        for status in statuses:
            sequence += 1
            entry = ReturnStatusHistory(
                return_id=return_request.id,
                sequence=sequence,
                status=status,
                actor=actor,
                note=note,
            )
            if occurred_at is not None:
                entry.occurred_at = occurred_at
            self.session.add(entry)
        await self.session.flush()

    async def add_note(
        self, return_request: ReturnRequest, note: str, author: str
    ) -> ReturnAdminNote:
        entry = ReturnAdminNote(return_id=return_request.id, note=note, author=author)
        self.session.add(entry)
        await self.session.flush()
        return entry

    async def reload(self, return_request: ReturnRequest) -> ReturnRequest:
        """Re-read columns, history and notes, replacing the identity-mapped state."""
        result = await self.session.execute(
            select(ReturnRequest)
            .where(ReturnRequest.id == return_request.id)
            .options(
                selectinload(ReturnRequest.status_history),
                selectinload(ReturnRequest.admin_notes),
            )
            .execution_options(populate_existing=True)
        )
        return result.scalar_one()
