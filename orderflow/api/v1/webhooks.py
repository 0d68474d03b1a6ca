"""
Provider webhook endpoints.

Every delivery is answered with HTTP 200 so providers never retry on our
account; what happened to it is recorded in the webhook capture log and the
application log instead.
"""

from typing import Awaitable, Callable, Optional

from fastapi import APIRouter, Request, status

from orderflow.api.deps import AppSettings, DatabaseSession, WebhookProcessorDep
from orderflow.core.errors import OrderflowError
from orderflow.core.logging import get_logger
from orderflow.schemas.webhooks import WebhookAck, WebhookEndpointStatus
from orderflow.services.webhooks.ingestion import WebhookOutcome, WebhookSource
from orderflow.services.webhooks.log import WebhookLog, capture_headers

logger = get_logger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])

Handler = Callable[[bytes, dict[str, str]], Awaitable[WebhookOutcome]]


async def _ingest(
    source: WebhookSource,
    handler: Handler,
    request: Request,
    db: DatabaseSession,
    settings: AppSettings,
) -> WebhookAck:
    raw_body = await request.body()
    headers = capture_headers(request.headers)

    outcome: Optional[WebhookOutcome] = None
    outcome_name = "error"
    error: Optional[str] = None

    try:
        outcome = await handler(raw_body, headers)
        outcome_name = outcome.outcome
    except OrderflowError as e:
        await db.rollback()
        outcome_name = "rejected"
        error = f"{e.code}: {e.message}"
        logger.warning(
            "Webhook delivery rejected",
            source=source.value,
            code=e.code,
            error=e.message,
        )
    except Exception as e:
        await db.rollback()
        error = f"{type(e).__name__}: {e}"
        logger.error(
            "Webhook processing failed",
            source=source.value,
            error=str(e),
            error_type=type(e).__name__,
            exc_info=True,
        )

    try:
        await WebhookLog(db, settings.webhook_log_capacity).append(
            source=source.value,
            headers=headers,
            payload=outcome.payload if outcome else None,
            raw_body=raw_body,
            signature_valid=outcome.signature_valid if outcome else None,
            outcome=outcome_name,
            error=error or (outcome.reason if outcome else None),
        )
        await db.commit()
    except Exception as e:
        await db.rollback()
        logger.error(
            "Failed to capture webhook delivery",
            source=source.value,
            error=str(e),
            error_type=type(e).__name__,
        )

    logger.info(
        "Webhook delivery handled",
        source=source.value,
        outcome=outcome_name,
        event_key=outcome.event_key if outcome else None,
        entity_id=outcome.entity_id if outcome else None,
    )
    return WebhookAck(outcome=outcome_name)


@router.post(
    "/shipping/tracking",
    response_model=WebhookAck,
    status_code=status.HTTP_200_OK,
    summary="Shipment tracking webhook",
    description="Carrier status updates for outbound shipments",
)
async def shipping_tracking_webhook(
    request: Request,
    db: DatabaseSession,
    processor: WebhookProcessorDep,
    settings: AppSettings,
) -> WebhookAck:
    """
    Receive a carrier tracking update.

    Args:
        request: Raw provider request
        db: Database session
        processor: Webhook processor
        settings: Application settings

    Returns:
        Acknowledgement carrying the processing outcome
    """
    return await _ingest(
        WebhookSource.SHIPPING_TRACKING, processor.handle_tracking, request, db, settings
    )


@router.post(
    "/shipping/returns",
    response_model=WebhookAck,
    status_code=status.HTTP_200_OK,
    summary="Return pickup webhook",
    description="Carrier status updates for reverse pickups",
)
async def shipping_returns_webhook(
    request: Request,
    db: DatabaseSession,
    processor: WebhookProcessorDep,
    settings: AppSettings,
) -> WebhookAck:
    """Receive a reverse pickup status update."""
    return await _ingest(
        WebhookSource.SHIPPING_RETURNS, processor.handle_return, request, db, settings
    )


@router.post(
    "/payments/refunds",
    response_model=WebhookAck,
    status_code=status.HTTP_200_OK,
    summary="Refund webhook",
    description="Refund lifecycle events from the payment gateway",
)
async def payment_refunds_webhook(
    request: Request,
    db: DatabaseSession,
    processor: WebhookProcessorDep,
    settings: AppSettings,
) -> WebhookAck:
    """Receive a refund event."""
    return await _ingest(
        WebhookSource.PAYMENT_REFUNDS, processor.handle_refund, request, db, settings
    )


@router.get("/shipping/tracking", response_model=WebhookEndpointStatus)
async def shipping_tracking_status() -> WebhookEndpointStatus:
    return WebhookEndpointStatus(endpoint="shipping/tracking")


@router.get("/shipping/returns", response_model=WebhookEndpointStatus)
async def shipping_returns_status() -> WebhookEndpointStatus:
    return WebhookEndpointStatus(endpoint="shipping/returns")


@router.get("/payments/refunds", response_model=WebhookEndpointStatus)
async def payment_refunds_status() -> WebhookEndpointStatus:
    return WebhookEndpointStatus(endpoint="payments/refunds")
