"""
Administrator order endpoints.

Status overrides, shipment document generation, tracking sync, manual
shipment retries, the stuck-order report and the webhook capture log.
"""

from typing import Any, Optional
from uuid import UUID

from fastapi import APIRouter, HTTPException, Query, status

from orderflow.api.deps import (
    AppSettings,
    CurrentAdmin,
    DatabaseSession,
    OrderService,
    ShippingClientDep,
)
from orderflow.core.errors import OrderflowError
from orderflow.core.logging import get_logger
from orderflow.schemas.orders import (
    OrderResponse,
    OrderStatusUpdateRequest,
    ShipmentAttemptResponse,
    StuckOrdersResponse,
    TrackingSyncResponse,
)
from orderflow.schemas.webhooks import (
    WebhookLogClearResponse,
    WebhookLogEntryResponse,
    WebhookLogResponse,
)
from orderflow.services.orders.documents import DocumentGenerator
from orderflow.services.webhooks.log import WebhookLog

logger = get_logger(__name__)

router = APIRouter(prefix="/admin", tags=["admin"])


def _http_error(e: OrderflowError) -> HTTPException:
    return HTTPException(status_code=e.status_code, detail=e.to_dict())


@router.get(
    "/orders/stuck",
    response_model=StuckOrdersResponse,
    summary="List stuck orders",
    description=(
        "Paid orders still without a shipment after the configured threshold, "
        "and cancelled orders whose payment completed"
    ),
)
async def list_stuck_orders(
    admin: CurrentAdmin,
    service: OrderService,
    settings: AppSettings,
) -> StuckOrdersResponse:
    stuck = await service.list_stuck_orders()

    logger.info(
        "Stuck orders listed",
        admin_id=str(admin.id),
        unshipped=len(stuck.unshipped),
        cancelled_paid=len(stuck.cancelled_paid),
    )

    return StuckOrdersResponse(
        unshipped=[OrderResponse.model_validate(order) for order in stuck.unshipped],
        cancelled_paid=[OrderResponse.model_validate(order) for order in stuck.cancelled_paid],
        threshold_minutes=settings.stuck_order_minutes,
    )


@router.get(
    "/orders/{order_id}/documents",
    response_model=dict[str, Any],
    summary="Generate shipment documents",
    description=(
        "Generate manifest, label and invoice. Each document succeeds or fails "
        "independently"
    ),
)
async def generate_documents(
    order_id: UUID,
    admin: CurrentAdmin,
    service: OrderService,
    shipping_client: ShippingClientDep,
) -> dict[str, Any]:
    """
    Generate shipment documents for an order.

    Args:
        order_id: Order identifier
        admin: Authorized administrator
        service: Order automation service
        shipping_client: Shipping provider client

    Returns:
        ``{manifestUrl|manifestError, labelUrl|labelError, invoiceUrl|invoiceError}``

    Raises:
        HTTPException: 404 for an unknown order, 412 if no shipment exists yet
    """
    logger.info("Generating shipment documents", order_id=str(order_id), admin_id=str(admin.id))

    try:
        order = await service.get_order(order_id)
        envelope = await DocumentGenerator(shipping_client).generate(order)
    except OrderflowError as e:
        logger.warning(
            "Shipment documents unavailable",
            order_id=str(order_id),
            code=e.code,
            error=e.message,
        )
        raise _http_error(e)

    return envelope.to_response()


@router.put(
    "/orders/{order_id}/status",
    response_model=OrderResponse,
    summary="Override order status",
    description="Set an order status manually; only allowed transitions are accepted",
)
async def update_order_status(
    order_id: UUID,
    request: OrderStatusUpdateRequest,
    admin: CurrentAdmin,
    service: OrderService,
) -> OrderResponse:
    """
    Override an order's status.

    Args:
        order_id: Order identifier
        request: Target status and reason
        admin: Authorized administrator
        service: Order automation service

    Returns:
        Updated order

    Raises:
        HTTPException: 404 for an unknown order, 412 for a disallowed
            transition, 409 on a concurrent update
    """
    logger.info(
        "Admin order status override requested",
        order_id=str(order_id),
        target=request.status.value,
        admin_id=str(admin.id),
    )

    try:
        order = await service.admin_override(order_id, request.status, admin, request.reason)
    except OrderflowError as e:
        logger.warning(
            "Admin order status override failed",
            order_id=str(order_id),
            code=e.code,
            error=e.message,
        )
        raise _http_error(e)

    return OrderResponse.model_validate(order)


@router.post(
    "/orders/{order_id}/sync-tracking",
    response_model=TrackingSyncResponse,
    summary="Sync tracking",
    description="Fetch the carrier tracking snapshot and apply it",
)
async def sync_tracking(
    order_id: UUID,
    admin: CurrentAdmin,
    service: OrderService,
) -> TrackingSyncResponse:
    try:
        result = await service.sync_tracking(order_id)
    except OrderflowError as e:
        logger.warning(
            "Tracking sync failed",
            order_id=str(order_id),
            code=e.code,
            error=e.message,
        )
        raise _http_error(e)

    logger.info(
        "Tracking synced",
        order_id=str(order_id),
        outcome=result.outcome,
        admin_id=str(admin.id),
    )

    return TrackingSyncResponse(
        order_id=order_id,
        outcome=result.outcome,
        status=result.status,
        path=list(result.path),
        reason=result.reason,
    )


@router.post(
    "/orders/{order_id}/retry-shipment",
    response_model=ShipmentAttemptResponse,
    summary="Retry shipment creation",
    description="Run a shipment creation attempt now, resetting the attempt counter",
)
async def retry_shipment(
    order_id: UUID,
    admin: CurrentAdmin,
    service: OrderService,
) -> ShipmentAttemptResponse:
    try:
        result = await service.retry_shipment(order_id, admin)
    except OrderflowError as e:
        logger.warning(
            "Manual shipment retry refused",
            order_id=str(order_id),
            code=e.code,
            error=e.message,
        )
        raise _http_error(e)

    return ShipmentAttemptResponse(
        order_id=result.order_id,
        outcome=result.outcome.value,
        attempt=result.attempt,
        error=result.error,
        next_retry_at=result.next_retry_at,
    )


@router.get(
    "/webhooks/log",
    response_model=WebhookLogResponse,
    summary="Read webhook capture log",
)
async def read_webhook_log(
    admin: CurrentAdmin,
    db: DatabaseSession,
    settings: AppSettings,
    source: Optional[str] = Query(None, description="Filter by webhook source"),
    limit: Optional[int] = Query(None, ge=1, le=10000),
) -> WebhookLogResponse:
    log = WebhookLog(db, settings.webhook_log_capacity)
    entries = await log.read(source=source, limit=limit)
    return WebhookLogResponse(
        entries=[WebhookLogEntryResponse.model_validate(entry) for entry in entries],
        capacity=settings.webhook_log_capacity,
    )


@router.delete(
    "/webhooks/log",
    response_model=WebhookLogClearResponse,
    summary="Clear webhook capture log",
)
async def clear_webhook_log(
    admin: CurrentAdmin,
    db: DatabaseSession,
    settings: AppSettings,
) -> WebhookLogClearResponse:
    removed = await WebhookLog(db, settings.webhook_log_capacity).clear()
    await db.commit()
    logger.info("Webhook log cleared by admin", admin_id=str(admin.id), removed=removed)
    return WebhookLogClearResponse(cleared=removed)
