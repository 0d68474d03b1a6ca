"""
FastAPI dependencies for authentication, authorization and services.

Authentication is two mandatory steps: the bearer token is verified into a
Principal (401 on failure), then the durable user record is consulted by
``authorize`` for the requested capability (403 on denial).
"""

from typing import Annotated, Optional
from uuid import UUID

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from orderflow.core.config import Settings, get_settings
from orderflow.core.logging import get_logger, set_principal_id
from orderflow.core.security import (
    Capability,
    Principal,
    TokenError,
    TokenVerifier,
    authorize,
    build_token_verifier,
)
from orderflow.database.connection import get_db, get_session_factory
from orderflow.database.models.user import User
from orderflow.services.orders.automation import OrderAutomationService
from orderflow.services.payments.gateway import PaymentGateway, get_payment_gateway
from orderflow.services.returns.service import ReturnService
from orderflow.services.shipping.client import ShippingClient, get_shipping_client
from orderflow.services.webhooks.ingestion import WebhookProcessor

logger = get_logger(__name__)

security = HTTPBearer(auto_error=False)


def get_token_verifier() -> TokenVerifier:
    """Dependency returning the configured session token verifier."""
    return build_token_verifier()


async def get_current_principal(
    credentials: Annotated[Optional[HTTPAuthorizationCredentials], Depends(security)],
    verifier: Annotated[TokenVerifier, Depends(get_token_verifier)],
) -> Principal:
    """
    Verify the bearer token and return the principal it asserts.

    Args:
        credentials: HTTP Bearer token from Authorization header
        verifier: Session token verifier

    Returns:
        Principal: Verified identity

    Raises:
        HTTPException: 401 if the token is missing, malformed or expired
    """
    if credentials is None:
        logger.warning("Authentication failed: No credentials provided")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"message": "Could not validate credentials", "code": "UNAUTHORIZED"},
            headers={"WWW-Authenticate": "Bearer"},
        )

    try:
        principal = verifier.verify(credentials.credentials)
    except TokenError as e:
        logger.warning("Authentication failed", code=e.code, error=e.message)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=e.to_dict(),
            headers={"WWW-Authenticate": "Bearer"},
        )

    set_principal_id(principal.subject)
    return principal


async def _load_user(db: AsyncSession, principal: Principal) -> Optional[User]:
    try:
        user_id = UUID(principal.subject)
    except ValueError:
        return None
    return await db.get(User, user_id)


async def _require(
    principal: Principal, db: AsyncSession, capability: Capability
) -> User:
    user = await _load_user(db, principal)
    decision = authorize(principal, user, capability)
    if not decision:
        logger.warning(
            "Access denied",
            subject=principal.subject,
            capability=capability.value,
            reason=decision.reason,
        )
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail={"message": "Insufficient permissions", "code": "FORBIDDEN"},
        )
    return user


async def get_current_user(
    principal: Annotated[Principal, Depends(get_current_principal)],
    db: Annotated[AsyncSession, Depends(get_db)],
) -> User:
    """
    Resolve the authenticated customer.

    Args:
        principal: Verified token principal
        db: Database session

    Returns:
        User: Active user record

    Raises:
        HTTPException: 403 if the user no longer exists or is inactive
    """
    return await _require(principal, db, Capability.CUSTOMER)


async def get_current_admin(
    principal: Annotated[Principal, Depends(get_current_principal)],
    db: Annotated[AsyncSession, Depends(get_db)],
) -> User:
    """
    Resolve an administrator.

    The admin flag is read from the user record, not from the token.

    Args:
        principal: Verified token principal
        db: Database session

    Returns:
        User: Admin user record

    Raises:
        HTTPException: 403 if the user is not an active administrator
    """
    admin = await _require(principal, db, Capability.ADMIN)
    logger.info("Admin authorized", user_id=str(admin.id), email=admin.email)
    return admin


CurrentPrincipal = Annotated[Principal, Depends(get_current_principal)]
CurrentUser = Annotated[User, Depends(get_current_user)]
CurrentAdmin = Annotated[User, Depends(get_current_admin)]
DatabaseSession = Annotated[AsyncSession, Depends(get_db)]
SessionFactory = Annotated[async_sessionmaker[AsyncSession], Depends(get_session_factory)]
AppSettings = Annotated[Settings, Depends(get_settings)]
PaymentGatewayDep = Annotated[PaymentGateway, Depends(get_payment_gateway)]
ShippingClientDep = Annotated[ShippingClient, Depends(get_shipping_client)]


def get_order_automation_service(
    db: DatabaseSession,
    payment_gateway: PaymentGatewayDep,
    shipping_client: ShippingClientDep,
    settings: AppSettings,
) -> OrderAutomationService:
    """Dependency factory for the order automation service."""
    return OrderAutomationService(db, payment_gateway, shipping_client, settings)


def get_return_service(
    db: DatabaseSession,
    payment_gateway: PaymentGatewayDep,
    shipping_client: ShippingClientDep,
    settings: AppSettings,
) -> ReturnService:
    """Dependency factory for the return service."""
    return ReturnService(db, payment_gateway, shipping_client, settings)


def get_webhook_processor(
    db: DatabaseSession,
    order_service: Annotated[OrderAutomationService, Depends(get_order_automation_service)],
    return_service: Annotated[ReturnService, Depends(get_return_service)],
    payment_gateway: PaymentGatewayDep,
    settings: AppSettings,
) -> WebhookProcessor:
    """Dependency factory for the webhook processor."""
    return WebhookProcessor(db, order_service, return_service, payment_gateway, settings)


OrderService = Annotated[OrderAutomationService, Depends(get_order_automation_service)]
ReturnServiceDep = Annotated[ReturnService, Depends(get_return_service)]
WebhookProcessorDep = Annotated[WebhookProcessor, Depends(get_webhook_processor)]
