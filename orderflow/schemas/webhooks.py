"""
Webhook acknowledgement and capture-log schemas.
"""

from datetime import datetime
from typing import Any, Optional

from orderflow.schemas.common import CamelModel


class WebhookAck(CamelModel):
    """Body returned to providers; always sent with HTTP 200."""

    received: bool = True
    outcome: Optional[str] = None


class WebhookEndpointStatus(CamelModel):
    status: str = "active"
    endpoint: str


class WebhookLogEntryResponse(CamelModel):
    id: int
    source: str
    headers: dict[str, Any]
    payload: Optional[Any] = None
    raw_body: Optional[str] = None
    signature_valid: Optional[bool] = None
    outcome: Optional[str] = None
    error: Optional[str] = None
    received_at: datetime


class WebhookLogResponse(CamelModel):
    entries: list[WebhookLogEntryResponse]
    capacity: int


class WebhookLogClearResponse(CamelModel):
    cleared: int
