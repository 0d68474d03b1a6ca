"""
Payment Pydantic schemas for API request/response validation.

Payment payloads use camelCase on the wire, matching what the storefront
checkout sends.
"""

from decimal import Decimal
from typing import Optional
from uuid import UUID

from pydantic import Field, field_validator

from orderflow.schemas.common import CamelModel
from orderflow.services.orders.enums import OrderStatus, PaymentStatus


class PaymentIntentRequest(CamelModel):
    """Request a payment intent for an order's total."""

    order_ref: UUID = Field(..., description="Local order id")


class PaymentIntentResponse(CamelModel):
    intent_id: str = Field(..., description="Gateway order reference to sign against")
    amount: Decimal
    currency: str
    client_secret: Optional[str] = None


class PaymentVerifyRequest(CamelModel):
    """
    Signed payment confirmation from the checkout.

    The signature is the hex HMAC-SHA256 of ``gatewayOrderId|paymentRef``.
    """

    order_ref: UUID = Field(..., description="Local order id")
    payment_ref: str = Field(..., min_length=1, max_length=255)
    gateway_order_id: str = Field(..., min_length=1, max_length=255)
    signature: str = Field(..., min_length=1, max_length=255)

    @field_validator("signature")
    @classmethod
    def normalize_signature(cls, v: str) -> str:
        return v.lower()


class PaymentVerifyResponse(CamelModel):
    order_id: UUID
    status: OrderStatus
    payment_status: PaymentStatus
    already_confirmed: bool = False
    shipment_outcome: Optional[str] = Field(
        None,
        description="\"scheduled\" when a first confirmation queued shipment creation",
    )
