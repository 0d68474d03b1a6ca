"""
Administrator return endpoints.

Administrators can read returns, append notes, resolve the damaged or
defective exception and inspect refunds. Return state itself is driven only
by automation and provider events: direct edits are always refused.
"""

from uuid import UUID

from fastapi import APIRouter, HTTPException, status

from orderflow.api.deps import CurrentAdmin, ReturnServiceDep
from orderflow.core.errors import OrderflowError
from orderflow.core.logging import get_logger
from orderflow.schemas.returns import (
    AdminNoteRequest,
    AdminNoteResponse,
    AdminReturnResponse,
    ManualResolutionRequest,
    ReconcileResponse,
    RefundStatusResponse,
    return_response_data,
)

logger = get_logger(__name__)

router = APIRouter(prefix="/admin/returns", tags=["admin"])

EDIT_FORBIDDEN = {
    "message": "Returns cannot be edited directly; add a note instead",
    "code": "RETURN_IMMUTABLE",
}


def _http_error(e: OrderflowError) -> HTTPException:
    return HTTPException(status_code=e.status_code, detail=e.to_dict())


@router.get(
    "/{return_id}",
    response_model=AdminReturnResponse,
    summary="Get return",
    description="Full return record including history, refund and admin notes",
)
async def get_return(
    return_id: UUID,
    admin: CurrentAdmin,
    service: ReturnServiceDep,
) -> AdminReturnResponse:
    try:
        return_request = await service.get(return_id)
    except OrderflowError as e:
        raise _http_error(e)
    return AdminReturnResponse(**return_response_data(return_request, admin=True))


@router.put(
    "/{return_id}",
    status_code=status.HTTP_403_FORBIDDEN,
    summary="Edit return (forbidden)",
    description="Always refused; returns are read-only to administrators",
)
async def edit_return(return_id: UUID) -> None:
    logger.warning("Direct return edit refused", return_id=str(return_id))
    raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=EDIT_FORBIDDEN)


@router.put(
    "/{return_id}/status",
    status_code=status.HTTP_403_FORBIDDEN,
    summary="Change return status (forbidden)",
    description="Always refused; return status follows automation only",
)
async def edit_return_status(return_id: UUID) -> None:
    logger.warning("Direct return status change refused", return_id=str(return_id))
    raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=EDIT_FORBIDDEN)


@router.post(
    "/{return_id}/notes",
    response_model=AdminNoteResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Add admin note",
)
async def add_note(
    return_id: UUID,
    request: AdminNoteRequest,
    admin: CurrentAdmin,
    service: ReturnServiceDep,
) -> AdminNoteResponse:
    """
    Append a note to a return without changing its status.

    Args:
        return_id: Return identifier
        request: Note text
        admin: Authorized administrator
        service: Return service

    Returns:
        Stored note

    Raises:
        HTTPException: 404 if the return does not exist
    """
    try:
        note = await service.add_note(return_id, request.note, admin)
    except OrderflowError as e:
        raise _http_error(e)

    logger.info("Admin note added", return_id=str(return_id), admin_id=str(admin.id))
    return AdminNoteResponse.model_validate(note)


@router.post(
    "/{return_id}/resolve",
    response_model=AdminReturnResponse,
    summary="Resolve manual review",
    description="Reject a damaged or defective return, or force its refund",
)
async def resolve_manual_review(
    return_id: UUID,
    request: ManualResolutionRequest,
    admin: CurrentAdmin,
    service: ReturnServiceDep,
) -> AdminReturnResponse:
    """
    Apply an administrator decision to a return held for review.

    Args:
        return_id: Return identifier
        request: Decision and optional note
        admin: Authorized administrator
        service: Return service

    Returns:
        Updated return

    Raises:
        HTTPException: 404 if unknown, 412 if not under review or the decision
            is no longer possible, 502/504 if a forced refund fails
    """
    logger.info(
        "Resolving manual review",
        return_id=str(return_id),
        decision=request.decision.value,
        admin_id=str(admin.id),
    )

    try:
        return_request = await service.resolve_manual_review(
            return_id, request.decision, admin, request.note
        )
    except OrderflowError as e:
        logger.warning(
            "Manual review resolution failed",
            return_id=str(return_id),
            code=e.code,
            error=e.message,
        )
        raise _http_error(e)

    return AdminReturnResponse(**return_response_data(return_request, admin=True))


@router.get(
    "/{return_id}/refund-status",
    response_model=RefundStatusResponse,
    summary="Check refund status",
    description="Read-only live query of the refund at the payment gateway",
)
async def get_refund_status(
    return_id: UUID,
    admin: CurrentAdmin,
    service: ReturnServiceDep,
) -> RefundStatusResponse:
    """
    Query the gateway for a return's refund without changing local state.

    Raises:
        HTTPException: 404 if unknown, 412 if no refund was recorded, 502/503/504
            on gateway failure
    """
    try:
        return_request = await service.get(return_id)
        record = await service.check_refund_status(return_id)
    except OrderflowError as e:
        logger.warning(
            "Refund status check failed",
            return_id=str(return_id),
            code=e.code,
            error=e.message,
        )
        raise _http_error(e)

    return RefundStatusResponse(
        return_id=return_id,
        refund_id=record.refund_id,
        status=record.status,
        amount=record.amount,
        currency=record.currency,
        failure_reason=record.failure_reason,
        created_at=record.created_at,
        recorded_status=return_request.refund_status,
    )


@router.post(
    "/{return_id}/refund-status/reconcile",
    response_model=ReconcileResponse,
    summary="Reconcile refund",
    description="Poll the gateway and apply the refund state as a webhook would",
)
async def reconcile_refund(
    return_id: UUID,
    admin: CurrentAdmin,
    service: ReturnServiceDep,
) -> ReconcileResponse:
    try:
        result = await service.reconcile_refund(return_id)
    except OrderflowError as e:
        logger.warning(
            "Refund reconciliation failed",
            return_id=str(return_id),
            code=e.code,
            error=e.message,
        )
        raise _http_error(e)

    logger.info(
        "Refund reconciled",
        return_id=str(return_id),
        outcome=result.outcome,
        admin_id=str(admin.id),
    )
    return ReconcileResponse(
        return_id=return_id,
        outcome=result.outcome,
        status=result.status,
        reason=result.reason,
    )
