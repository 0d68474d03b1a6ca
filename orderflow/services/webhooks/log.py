"""
Bounded webhook capture log.

Every inbound delivery is recorded with its headers, body and outcome so
operators can see exactly what providers sent. The table is a ring buffer:
after each append, entries beyond ``capacity`` are pruned oldest first.
"""

from typing import Any, Optional

from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from orderflow.core.logging import get_logger
from orderflow.database.models.webhook_event import WebhookLogEntry

logger = get_logger(__name__)

MAX_RAW_BODY_CHARS = 65536

# Never persisted
REDACTED_HEADERS = frozenset({"authorization", "cookie", "x-api-key"})


def capture_headers(headers: Any) -> dict[str, str]:
    """Lower-case header names and drop credentials."""
    return {
        str(name).lower(): str(value)
        for name, value in headers.items()
        if str(name).lower() not in REDACTED_HEADERS
    }


class WebhookLog:
    """Persistent ring buffer of webhook deliveries."""

    def __init__(self, session: AsyncSession, capacity: int = 100):
        self.session = session
        self.capacity = capacity

    async def append(
        self,
        source: str,
        headers: dict[str, str],
        payload: Optional[Any],
        raw_body: Optional[bytes],
        signature_valid: Optional[bool],
        outcome: Optional[str],
        error: Optional[str] = None,
    ) -> WebhookLogEntry:
        """
        Record one delivery and prune entries beyond capacity.

        Args:
            source: Webhook endpoint the delivery arrived on
            headers: Captured request headers
            payload: Parsed JSON body, if it parsed
            raw_body: Raw request body
            signature_valid: Signature check result, None when not checked
            outcome: Processing outcome
            error: Error message when processing failed

        Returns:
            The stored entry
        """
        entry = WebhookLogEntry(
            source=source,
            headers=headers,
            payload=payload,
            raw_body=(
                raw_body.decode("utf-8", errors="replace")[:MAX_RAW_BODY_CHARS]
                if raw_body is not None
                else None
            ),
            signature_valid=signature_valid,
            outcome=outcome,
            error=error,
        )
        self.session.add(entry)
        await self.session.flush()
        await self._prune()
        return entry

    async def _prune(self) -> None:
        result = await self.session.execute(
            select(WebhookLogEntry.id)
            .order_by(WebhookLogEntry.id.desc())
            .offset(self.capacity)
            .limit(1)
        )
        cutoff = result.scalar_one_or_none()
        if cutoff is not None:
            await self.session.execute(
                delete(WebhookLogEntry).where(WebhookLogEntry.id <= cutoff)
            )

    async def read(
        self, source: Optional[str] = None, limit: Optional[int] = None
    ) -> list[WebhookLogEntry]:
        """Entries newest first, optionally filtered by source."""
        query = select(WebhookLogEntry).order_by(WebhookLogEntry.id.desc())
        if source:
            query = query.where(WebhookLogEntry.source == source)
        query = query.limit(min(limit or self.capacity, self.capacity))
        result = await self.session.execute(query)
        return list(result.scalars().all())

    async def count(self) -> int:
        result = await self.session.execute(select(func.count(WebhookLogEntry.id)))
        return int(result.scalar() or 0)

    async def clear(self) -> int:
        """Delete every entry; returns how many were removed."""
        removed = await self.count()
        await self.session.execute(delete(WebhookLogEntry))
        logger.info("Webhook log cleared", removed=removed)
        return removed
