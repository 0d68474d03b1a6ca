"""
Payment gateway adapter.

Wraps the Stripe API for the three operations the fulfillment engine needs:
creating payment intents at checkout, issuing refunds for returns and
reading refund state back for reconciliation. It also verifies the HMAC
signature the storefront submits with a payment confirmation.

Every remote call runs under an explicit timeout. Exceeding it raises
GatewayTimeoutError, which callers treat as an unknown outcome; a remote
failure raises GatewayError carrying Stripe's own code and description.
Transient failures (connection, rate limit, 5xx) are retried with
exponential backoff, always under the same idempotency key so a retry can
never double-charge or double-refund.
"""

import asyncio
import hashlib
import hmac
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Callable, Optional

import stripe

from orderflow.core.config import Settings, get_settings
from orderflow.core.errors import (
    GatewayError,
    GatewayTimeoutError,
    GatewayUnavailableError,
    InvalidInputError,
)
from orderflow.core.logging import get_logger, log_performance
from orderflow.services.orders.enums import RefundStatus

logger = get_logger(__name__)

PROVIDER = "payment"

# Stripe refund.status -> local refund status
REFUND_STATUS_MAP: dict[str, RefundStatus] = {
    "pending": RefundStatus.INITIATED,
    "requires_action": RefundStatus.INITIATED,
    "succeeded": RefundStatus.PROCESSED,
    "failed": RefundStatus.FAILED,
    "canceled": RefundStatus.FAILED,
}


@dataclass(frozen=True)
class PaymentIntent:
    intent_id: str
    amount: Decimal
    currency: str
    client_secret: Optional[str] = None


@dataclass(frozen=True)
class RefundRecord:
    """Refund as reported by the gateway."""

    refund_id: str
    payment_ref: Optional[str]
    amount: Decimal
    currency: str
    status: RefundStatus
    failure_reason: Optional[str] = None
    created_at: Optional[datetime] = None


def to_minor_units(amount: Decimal) -> int:
    """Convert a major-unit decimal amount to integer minor units."""
    return int((Decimal(amount) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_minor_units(amount: int) -> Decimal:
    return (Decimal(int(amount)) / 100).quantize(Decimal("0.01"))


def compute_signature(secret: str, order_ref: str, payment_ref: str) -> str:
    """
    Compute the hex HMAC-SHA256 of ``order_ref|payment_ref``.

    Args:
        secret: Shared signing secret
        order_ref: Gateway order reference
        payment_ref: Gateway payment reference

    Returns:
        Lowercase hex digest
    """
    message = f"{order_ref}|{payment_ref}".encode("utf-8")
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


def as_mapping(obj: Any) -> dict[str, Any]:
    """Return a Stripe object as a plain mapping."""
    if isinstance(obj, dict):
        return obj
    to_dict = getattr(obj, "to_dict", None)
    if callable(to_dict):
        return to_dict()
    raise TypeError(f"Unsupported Stripe object: {type(obj).__name__}")


def refund_record_from_stripe(refund: Any) -> RefundRecord:
    """Build a RefundRecord from a Stripe Refund object or event payload."""
    refund = as_mapping(refund)
    status = REFUND_STATUS_MAP.get(str(refund.get("status") or ""), RefundStatus.INITIATED)
    created = refund.get("created")
    return RefundRecord(
        refund_id=refund["id"],
        payment_ref=refund.get("payment_intent") or refund.get("charge"),
        amount=from_minor_units(refund.get("amount") or 0),
        currency=str(refund.get("currency") or ""),
        status=status,
        failure_reason=refund.get("failure_reason"),
        created_at=(
            datetime.fromtimestamp(created, tz=timezone.utc) if created else None
        ),
    )


class PaymentGateway:
    """
    Stripe-backed payment gateway adapter.

    Side effects are limited to network calls; the adapter never touches
    local state.
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        signing_secret: Optional[str] = None,
        webhook_secret: Optional[str] = None,
        currency: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
        max_retries: Optional[int] = None,
        initial_backoff: float = 0.5,
        max_backoff: float = 4.0,
        settings: Optional[Settings] = None,
    ):
        """
        Initialize the adapter.

        Args:
            api_key: Stripe secret key (defaults to settings)
            signing_secret: Secret for payment confirmation signatures
            webhook_secret: Stripe webhook signing secret
            currency: ISO currency code
            timeout_seconds: Timeout per remote call
            max_retries: Retries for transient failures
            initial_backoff: Initial backoff delay in seconds
            max_backoff: Maximum backoff delay in seconds
            settings: Optional settings override
        """
        settings = settings or get_settings()
        self.api_key = api_key if api_key is not None else settings.stripe_secret_key
        self.signing_secret = (
            signing_secret if signing_secret is not None else settings.payment_signing_secret
        )
        self.webhook_secret = (
            webhook_secret if webhook_secret is not None else settings.stripe_webhook_secret
        )
        self.currency = (currency or settings.payment_currency).lower()
        self.timeout_seconds = timeout_seconds or settings.payment_timeout_seconds
        self.max_retries = (
            max_retries if max_retries is not None else settings.payment_max_retries
        )
        self.initial_backoff = initial_backoff
        self.max_backoff = max_backoff

        stripe.max_network_retries = 0

    def _calculate_backoff(self, attempt: int) -> float:
        return min(self.initial_backoff * (2**attempt), self.max_backoff)

    def _require_credentials(self, operation: str) -> None:
        if not self.api_key:
            logger.error("Payment gateway credentials missing", operation=operation)
            raise GatewayUnavailableError(
                "Payment gateway is not configured",
                provider=PROVIDER,
                operation=operation,
            )

    @staticmethod
    def _translate(error: stripe.StripeError, operation: str) -> GatewayError:
        """Convert a Stripe error into a GatewayError keeping provider details."""
        description = getattr(error, "user_message", None) or str(error) or None
        error_cls: type[GatewayError] = GatewayError
        if isinstance(error, (stripe.AuthenticationError, stripe.APIConnectionError)):
            error_cls = GatewayUnavailableError
        return error_cls(
            f"Payment gateway {operation} failed",
            provider=PROVIDER,
            provider_code=getattr(error, "code", None),
            provider_description=description,
            http_status=getattr(error, "http_status", None),
            operation=operation,
        )

    async def _call(self, operation: str, func: Callable[..., Any], **kwargs: Any) -> Any:
        """
        Execute a blocking Stripe call in a worker thread with timeout and retry.

        Raises:
            GatewayTimeoutError: If the call exceeds its timeout
            GatewayUnavailableError: On authentication or persistent connection failure
            GatewayError: On any other provider error
        """
        self._require_credentials(operation)
        last_error: Optional[stripe.StripeError] = None

        for attempt in range(self.max_retries + 1):
            try:
                async with log_performance(logger, f"payment.{operation}", attempt=attempt):
                    return await asyncio.wait_for(
                        asyncio.to_thread(func, api_key=self.api_key, **kwargs),
                        timeout=self.timeout_seconds,
                    )
            except asyncio.TimeoutError as e:
                logger.warning(
                    "Payment gateway call timed out; outcome unknown",
                    operation=operation,
                    timeout_seconds=self.timeout_seconds,
                )
                raise GatewayTimeoutError(
                    f"Payment gateway {operation} timed out",
                    provider=PROVIDER,
                    operation=operation,
                ) from e
            except (stripe.APIConnectionError, stripe.RateLimitError, stripe.APIError) as e:
                last_error = e
                if attempt >= self.max_retries:
                    break
                backoff = self._calculate_backoff(attempt)
                logger.warning(
                    "Transient payment gateway error, retrying",
                    operation=operation,
                    attempt=attempt,
                    backoff_seconds=backoff,
                    error_type=type(e).__name__,
                )
                await asyncio.sleep(backoff)
            except stripe.StripeError as e:
                logger.warning(
                    "Payment gateway rejected request",
                    operation=operation,
                    error_type=type(e).__name__,
                    provider_code=getattr(e, "code", None),
                )
                raise self._translate(e, operation) from e

        logger.error(
            "Payment gateway call failed after retries",
            operation=operation,
            attempts=self.max_retries + 1,
            error_type=type(last_error).__name__,
        )
        raise self._translate(last_error, operation) from last_error

    async def create_payment_intent(
        self,
        amount: Decimal,
        order_ref: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> PaymentIntent:
        """
        Create a payment intent for an amount in major units.

        Args:
            amount: Amount to charge
            order_ref: Local order reference stored as metadata
            idempotency_key: Key protecting against duplicate creation

        Returns:
            PaymentIntent with intent id, amount and currency

        Raises:
            InvalidInputError: If amount is not positive
            GatewayUnavailableError: If credentials are missing or the call errors
        """
        if amount is None or Decimal(amount) <= 0:
            raise InvalidInputError("Amount must be positive", amount=str(amount))

        params: dict[str, Any] = {
            "amount": to_minor_units(amount),
            "currency": self.currency,
            "automatic_payment_methods": {"enabled": True},
        }
        if order_ref:
            params["metadata"] = {"order_ref": order_ref}
        if idempotency_key:
            params["idempotency_key"] = idempotency_key

        try:
            intent = await self._call("create_payment_intent", stripe.PaymentIntent.create, **params)
        except GatewayTimeoutError:
            raise
        except GatewayError as e:
            if isinstance(e, GatewayUnavailableError):
                raise
            raise GatewayUnavailableError(
                "Payment gateway could not create payment intent",
                provider=PROVIDER,
                provider_code=e.provider_code,
                provider_description=e.provider_description,
                http_status=e.http_status,
            ) from e

        intent = as_mapping(intent)
        logger.info(
            "Payment intent created",
            intent_id=intent["id"],
            order_ref=order_ref,
            amount=str(amount),
        )
        return PaymentIntent(
            intent_id=intent["id"],
            amount=from_minor_units(intent["amount"]),
            currency=str(intent["currency"]),
            client_secret=intent.get("client_secret"),
        )

    def sign(self, order_ref: str, payment_ref: str) -> str:
        """Compute the confirmation signature for a pair of references."""
        if not self.signing_secret:
            raise GatewayUnavailableError(
                "Payment signing secret is not configured", provider=PROVIDER
            )
        return compute_signature(self.signing_secret, order_ref, payment_ref)

    def verify_signature(self, order_ref: str, payment_ref: str, signature: str) -> bool:
        """
        Verify a payment confirmation signature.

        Args:
            order_ref: Gateway order reference
            payment_ref: Gateway payment reference
            signature: Hex HMAC-SHA256 submitted by the client

        Returns:
            True if the signature matches, compared in constant time

        Raises:
            GatewayUnavailableError: If no signing secret is configured
        """
        if not order_ref or not payment_ref or not signature:
            return False
        expected = self.sign(order_ref, payment_ref)
        return hmac.compare_digest(expected.encode("utf-8"), signature.encode("utf-8"))

    async def issue_refund(
        self,
        payment_ref: str,
        amount: Optional[Decimal] = None,
        idempotency_key: Optional[str] = None,
        metadata: Optional[dict[str, str]] = None,
    ) -> RefundRecord:
        """
        Issue a refund against a captured payment.

        Args:
            payment_ref: Original payment reference (payment intent or charge id)
            amount: Amount in major units; None requests a full refund
            idempotency_key: Key protecting against double submission
            metadata: Extra metadata stored on the refund

        Returns:
            RefundRecord as reported by the gateway

        Raises:
            GatewayError: With the provider's code and description
            GatewayTimeoutError: Outcome unknown; reconcile later
        """
        if not payment_ref:
            raise InvalidInputError("Payment reference is required for a refund")

        params: dict[str, Any] = {}
        if payment_ref.startswith("ch_"):
            params["charge"] = payment_ref
        else:
            params["payment_intent"] = payment_ref
        if amount is not None:
            if Decimal(amount) <= 0:
                raise InvalidInputError("Refund amount must be positive", amount=str(amount))
            params["amount"] = to_minor_units(amount)
        if metadata:
            params["metadata"] = metadata
        if idempotency_key:
            params["idempotency_key"] = idempotency_key

        refund = await self._call("issue_refund", stripe.Refund.create, **params)
        record = refund_record_from_stripe(refund)

        logger.info(
            "Refund issued",
            refund_id=record.refund_id,
            payment_ref=payment_ref,
            amount=str(record.amount),
            status=record.status.value,
        )
        return record

    async def fetch_refund(self, refund_id: str) -> RefundRecord:
        """
        Read a refund's current state from the gateway.

        Args:
            refund_id: Gateway refund id

        Returns:
            RefundRecord
        """
        refund = await self._call("fetch_refund", stripe.Refund.retrieve, id=refund_id)
        return refund_record_from_stripe(refund)

    def construct_event(self, payload: bytes, sig_header: Optional[str]) -> Any:
        """
        Verify and parse a Stripe webhook delivery.

        Args:
            payload: Raw request body
            sig_header: Value of the Stripe-Signature header

        Returns:
            Verified stripe.Event

        Raises:
            InvalidInputError: If the payload or signature is invalid
        """
        if not self.webhook_secret:
            raise GatewayUnavailableError(
                "Payment webhook secret is not configured", provider=PROVIDER
            )
        try:
            return stripe.Webhook.construct_event(payload, sig_header or "", self.webhook_secret)
        except ValueError as e:
            raise InvalidInputError("Malformed webhook payload") from e
        except stripe.SignatureVerificationError as e:
            raise InvalidInputError(
                "Invalid webhook signature", code="INVALID_SIGNATURE"
            ) from e


def get_payment_gateway() -> PaymentGateway:
    """Dependency factory for the payment gateway adapter."""
    return PaymentGateway()
