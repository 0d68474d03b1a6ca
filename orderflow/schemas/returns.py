"""
Return and refund Pydantic schemas for API request/response validation.
"""

from datetime import datetime
from decimal import Decimal
from typing import Optional
from uuid import UUID

from pydantic import Field, field_validator

from orderflow.schemas.common import CamelModel
from orderflow.services.orders.enums import ItemCondition, RefundStatus, ReturnStatus
from orderflow.services.returns.state_machine import ManualResolution


class ReturnItemInput(CamelModel):
    sku: str = Field(..., min_length=1, max_length=100)
    quantity: int = Field(..., ge=1, le=1000)
    condition: ItemCondition = Field(..., description="Self-reported item condition")
    reason: Optional[str] = Field(None, max_length=500)


class ReturnCreateRequest(CamelModel):
    """Customer return request for a delivered order."""

    order_id: UUID
    items: list[ReturnItemInput] = Field(..., min_length=1, max_length=100)
    reason: Optional[str] = Field(None, max_length=1000)


class ReturnItemResponse(CamelModel):
    sku: str
    name: Optional[str] = None
    quantity: int
    unit_price: Decimal
    condition: ItemCondition
    reason: Optional[str] = None


class ReturnHistoryEntry(CamelModel):
    sequence: int
    status: ReturnStatus
    actor: str
    note: Optional[str] = None
    occurred_at: datetime


class AdminNoteResponse(CamelModel):
    id: UUID
    note: str
    author: str
    created_at: datetime


class RefundSummary(CamelModel):
    """Embedded refund record; read-only to administrators."""

    refund_id: Optional[str] = None
    amount: Optional[Decimal] = None
    status: Optional[RefundStatus] = None
    reconciled_at: Optional[datetime] = None
    error_code: Optional[str] = None
    error_description: Optional[str] = None


class ReturnResponse(CamelModel):
    """Return as seen by the customer."""

    id: UUID
    order_id: UUID
    status: ReturnStatus
    items: list[ReturnItemResponse]
    reason: Optional[str] = None
    pickup_awb_code: Optional[str] = None
    refund: RefundSummary
    status_history: list[ReturnHistoryEntry] = Field(default_factory=list)
    created_at: datetime
    updated_at: datetime


class AdminReturnResponse(ReturnResponse):
    """Return as seen by administrators."""

    user_id: UUID
    requires_manual_review: bool
    review_reason: Optional[str] = None
    pickup_order_id: Optional[str] = None
    pickup_shipment_id: Optional[str] = None
    admin_notes: list[AdminNoteResponse] = Field(default_factory=list)
    version: int


class AdminNoteRequest(CamelModel):
    note: str = Field(..., min_length=1, max_length=5000)

    @field_validator("note")
    @classmethod
    def reject_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("Note cannot be blank")
        return v


class ManualResolutionRequest(CamelModel):
    """Administrator decision for a damaged or defective return."""

    decision: ManualResolution
    note: Optional[str] = Field(None, max_length=1000)


class RefundStatusResponse(CamelModel):
    """Live refund state read from the payment gateway."""

    return_id: UUID
    refund_id: str
    status: RefundStatus
    amount: Decimal
    currency: str
    failure_reason: Optional[str] = None
    created_at: Optional[datetime] = None
    recorded_status: Optional[RefundStatus] = Field(
        None, description="Refund status stored on the return"
    )


class ReconcileResponse(CamelModel):
    return_id: UUID
    outcome: str
    status: Optional[ReturnStatus] = None
    reason: Optional[str] = None


def return_response_data(return_request, admin: bool = False) -> dict:
    """Flatten a ReturnRequest into the response shape."""
    data = {
        "id": return_request.id,
        "order_id": return_request.order_id,
        "status": return_request.status,
        "items": return_request.items,
        "reason": return_request.reason,
        "pickup_awb_code": return_request.pickup_awb_code,
        "refund": RefundSummary(
            refund_id=return_request.refund_id,
            amount=return_request.refund_amount,
            status=return_request.refund_status,
            reconciled_at=return_request.refund_reconciled_at,
            error_code=return_request.refund_error_code,
            error_description=return_request.refund_error_description,
        ),
        "status_history": [
            ReturnHistoryEntry.model_validate(entry) for entry in return_request.status_history
        ],
        "created_at": return_request.created_at,
        "updated_at": return_request.updated_at,
    }
    if admin:
        data.update(
            user_id=return_request.user_id,
            requires_manual_review=return_request.requires_manual_review,
            review_reason=return_request.review_reason,
            pickup_order_id=return_request.pickup_order_id,
            pickup_shipment_id=return_request.pickup_shipment_id,
            admin_notes=[
                AdminNoteResponse.model_validate(note) for note in return_request.admin_notes
            ],
            version=return_request.version,
        )
    return data
