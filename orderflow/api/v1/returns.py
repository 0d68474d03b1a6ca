"""
Customer return endpoints.
"""

from uuid import UUID

from fastapi import APIRouter, HTTPException, status

from orderflow.api.deps import CurrentUser, ReturnServiceDep
from orderflow.core.errors import OrderflowError
from orderflow.core.logging import get_logger
from orderflow.schemas.returns import ReturnCreateRequest, ReturnResponse, return_response_data
from orderflow.services.returns.service import ReturnItemRequest

logger = get_logger(__name__)

router = APIRouter(prefix="/returns", tags=["returns"])


@router.post(
    "",
    response_model=ReturnResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Request a return",
    description=(
        "Request a return for items of a delivered order. Eligibility is checked "
        "immediately and an approved return gets a pickup booked"
    ),
)
async def create_return(
    request: ReturnCreateRequest,
    current_user: CurrentUser,
    service: ReturnServiceDep,
) -> ReturnResponse:
    """
    Create a return request.

    Args:
        request: Order and items to return
        current_user: Authenticated order owner
        service: Return service

    Returns:
        The return, approved or rejected by the eligibility check

    Raises:
        HTTPException: 400 for invalid items, 404 for an unknown order,
            412 if the order is not delivered and paid
    """
    logger.info(
        "Return requested",
        user_id=str(current_user.id),
        order_id=str(request.order_id),
        items=len(request.items),
    )

    items = [
        ReturnItemRequest(
            sku=item.sku,
            quantity=item.quantity,
            condition=item.condition.value,
            reason=item.reason,
        )
        for item in request.items
    ]

    try:
        return_request = await service.request_return(
            current_user, request.order_id, items, request.reason
        )
    except OrderflowError as e:
        logger.warning(
            "Return request refused",
            order_id=str(request.order_id),
            code=e.code,
            error=e.message,
        )
        raise HTTPException(status_code=e.status_code, detail=e.to_dict())

    logger.info(
        "Return created",
        return_id=str(return_request.id),
        status=return_request.status.value,
    )
    return ReturnResponse(**return_response_data(return_request))


@router.get(
    "/{return_id}",
    response_model=ReturnResponse,
    summary="Get return",
)
async def get_return(
    return_id: UUID,
    current_user: CurrentUser,
    service: ReturnServiceDep,
) -> ReturnResponse:
    try:
        return_request = await service.get_for_user(return_id, current_user)
    except OrderflowError as e:
        raise HTTPException(status_code=e.status_code, detail=e.to_dict())
    return ReturnResponse(**return_response_data(return_request))
