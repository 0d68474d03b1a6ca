"""
Payment API endpoints.

Creates gateway payment intents for orders and applies signed payment
confirmations from the checkout. A verified confirmation moves the order to
processing; the first shipment creation attempt runs as a background task
after the response so the checkout never waits on the carrier.
"""

from fastapi import APIRouter, BackgroundTasks, HTTPException, status

from orderflow.api.deps import (
    AppSettings,
    CurrentUser,
    OrderService,
    PaymentGatewayDep,
    SessionFactory,
    ShippingClientDep,
)
from orderflow.core.errors import InvalidInputError, OrderflowError
from orderflow.core.logging import get_logger
from orderflow.services.orders.automation import create_shipment_after_payment
from orderflow.schemas.payments import (
    PaymentIntentRequest,
    PaymentIntentResponse,
    PaymentVerifyRequest,
    PaymentVerifyResponse,
)

logger = get_logger(__name__)

router = APIRouter(prefix="/payments", tags=["payments"])


@router.post(
    "/intent",
    response_model=PaymentIntentResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create payment intent",
    description="Create a gateway payment intent for the order's total",
)
async def create_payment_intent(
    request: PaymentIntentRequest,
    current_user: CurrentUser,
    service: OrderService,
) -> PaymentIntentResponse:
    """
    Create payment intent for an order.

    Args:
        request: Payment intent request
        current_user: Authenticated order owner
        service: Order automation service

    Returns:
        Intent reference, amount and client secret

    Raises:
        HTTPException: 404 if the order is unknown, 412 if it is not awaiting
            payment, 503 if the gateway is unavailable
    """
    logger.info(
        "Creating payment intent",
        user_id=str(current_user.id),
        order_id=str(request.order_ref),
    )

    try:
        intent = await service.create_payment_intent(request.order_ref, current_user)
    except OrderflowError as e:
        logger.warning(
            "Payment intent creation failed",
            order_id=str(request.order_ref),
            code=e.code,
            error=e.message,
        )
        raise HTTPException(status_code=e.status_code, detail=e.to_dict())

    logger.info(
        "Payment intent created successfully",
        order_id=str(request.order_ref),
        intent_id=intent.intent_id,
    )

    return PaymentIntentResponse(
        intent_id=intent.intent_id,
        amount=intent.amount,
        currency=intent.currency,
        client_secret=intent.client_secret,
    )


@router.post(
    "/verify",
    response_model=PaymentVerifyResponse,
    status_code=status.HTTP_200_OK,
    summary="Verify payment",
    description=(
        "Verify the HMAC signature of a payment confirmation and advance the "
        "order to processing"
    ),
)
async def verify_payment(
    request: PaymentVerifyRequest,
    current_user: CurrentUser,
    service: OrderService,
    background_tasks: BackgroundTasks,
    session_factory: SessionFactory,
    payment_gateway: PaymentGatewayDep,
    shipping_client: ShippingClientDep,
    settings: AppSettings,
) -> PaymentVerifyResponse:
    """
    Apply a signed payment confirmation.

    Replaying an accepted confirmation returns the same result without
    further effects. A first confirmation schedules shipment creation to run
    after the response is sent.

    Args:
        request: Signed confirmation
        current_user: Authenticated order owner
        service: Order automation service
        background_tasks: Response background tasks
        session_factory: Session factory for the background attempt
        payment_gateway: Payment gateway adapter
        shipping_client: Shipping gateway adapter
        settings: Application settings

    Returns:
        Order status after confirmation and whether shipment creation was scheduled

    Raises:
        HTTPException: 400 for an invalid signature, 404 for an unknown order,
            412 if the order was cancelled or paid with another reference
    """
    logger.info(
        "Verifying payment",
        user_id=str(current_user.id),
        order_id=str(request.order_ref),
        payment_ref=request.payment_ref,
    )

    try:
        result = await service.confirm_payment(
            request.order_ref,
            current_user,
            payment_ref=request.payment_ref,
            gateway_order_id=request.gateway_order_id,
            signature=request.signature,
            dispatch_shipment=False,
        )
    except InvalidInputError as e:
        logger.warning(
            "Payment verification rejected",
            order_id=str(request.order_ref),
            code=e.code,
        )
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=e.to_dict(),
        )
    except OrderflowError as e:
        logger.warning(
            "Payment verification failed",
            order_id=str(request.order_ref),
            code=e.code,
            error=e.message,
        )
        raise HTTPException(status_code=e.status_code, detail=e.to_dict())

    order = result.order
    logger.info(
        "Payment verified",
        order_id=str(order.id),
        status=order.status.value,
        already_confirmed=result.already_confirmed,
    )

    shipment_outcome = None
    if not result.already_confirmed:
        background_tasks.add_task(
            create_shipment_after_payment,
            order.id,
            session_factory,
            payment_gateway,
            shipping_client,
            settings,
        )
        shipment_outcome = "scheduled"

    return PaymentVerifyResponse(
        order_id=order.id,
        status=order.status,
        payment_status=order.payment_status,
        already_confirmed=result.already_confirmed,
        shipment_outcome=shipment_outcome,
    )
