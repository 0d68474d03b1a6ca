"""
Webhook bookkeeping models.

ProcessedWebhookEvent is the idempotency ledger: a row is inserted in the
same transaction as the state change an event causes, and the unique key
makes a replayed delivery collide instead of re-applying its effect.

WebhookLogEntry is the bounded capture log operators use to inspect what
providers actually sent.
"""

from datetime import datetime
from typing import Any, Optional

from sqlalchemy import (
    BigInteger,
    Boolean,
    DateTime,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from orderflow.database.base import Base, BaseModel, JSONType, utcnow


class ProcessedWebhookEvent(BaseModel):
    """Idempotency key of a webhook event whose effect has been applied."""

    __tablename__ = "processed_webhook_events"

    provider: Mapped[str] = mapped_column(String(32), nullable=False)

    event_type: Mapped[str] = mapped_column(String(64), nullable=False)

    event_key: Mapped[str] = mapped_column(String(255), nullable=False)

    entity_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    outcome: Mapped[str] = mapped_column(String(64), nullable=False)

    __table_args__ = (
        UniqueConstraint(
            "provider", "event_type", "event_key", name="uq_processed_webhook_event"
        ),
    )


class WebhookLogEntry(Base):
    """One captured inbound webhook delivery."""

    __tablename__ = "webhook_log_entries"

    id: Mapped[int] = mapped_column(
        BigInteger().with_variant(Integer, "sqlite"),
        primary_key=True,
        autoincrement=True,
    )

    source: Mapped[str] = mapped_column(String(64), nullable=False, index=True)

    headers: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)

    payload: Mapped[Optional[Any]] = mapped_column(JSONType, nullable=True)

    raw_body: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    signature_valid: Mapped[Optional[bool]] = mapped_column(Boolean, nullable=True)

    outcome: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    received_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, index=True
    )
