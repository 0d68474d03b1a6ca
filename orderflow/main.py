"""
FastAPI application entry point with health endpoints and service routing.

This module provides the main FastAPI application instance with CORS
configuration, health check endpoints, global exception handling and the
v1 routers. The lifespan runs the background shipment retry loop.
"""

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address

from orderflow.api.v1 import (
    admin_orders_router,
    admin_returns_router,
    payments_router,
    returns_router,
    webhooks_router,
)
from orderflow.core.config import get_settings
from orderflow.core.errors import OrderflowError
from orderflow.core.logging import (
    clear_context,
    configure_logging,
    get_logger,
    get_request_id,
    log_performance,
    set_request_id,
)
from orderflow.database.connection import (
    check_database_health,
    close_database_connections,
    get_db_session,
)
from orderflow.services.orders.automation import OrderAutomationService
from orderflow.services.payments.gateway import get_payment_gateway
from orderflow.services.shipping.client import close_shipping_client, get_shipping_client

# Configure logging before application initialization
configure_logging()
logger = get_logger(__name__)

# Initialize rate limiter
limiter = Limiter(key_func=get_remote_address)


async def retry_pending_shipments():
    """
    Background task creating shipments for paid orders whose attempt is due.

    Picks up orders whose earlier attempt failed transiently and orders whose
    shipment creation never ran, e.g. after a crash between payment
    confirmation and the carrier call.
    """
    settings = get_settings()

    while True:
        try:
            async with get_db_session() as session:
                service = OrderAutomationService(
                    session,
                    get_payment_gateway(),
                    get_shipping_client(),
                    settings,
                )
                results = await service.process_due_shipments()
                if results:
                    logger.info(
                        "Shipment retry pass completed",
                        attempted=len(results),
                        outcomes=[result.outcome.value for result in results],
                    )
        except Exception as e:
            logger.error(
                "Failed to process pending shipments",
                error=str(e),
                error_type=type(e).__name__,
            )
        await asyncio.sleep(settings.shipment_retry_interval_seconds)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """
    Application lifespan context manager for startup and shutdown events.

    Args:
        app: FastAPI application instance

    Yields:
        None during application runtime
    """
    settings = get_settings()

    logger.info(
        "Application starting",
        environment=settings.environment,
        debug=settings.debug,
        version=settings.app_version,
        payment_configured=settings.payment_configured,
        shipping_configured=settings.shipping_configured,
    )

    shipment_retry_task = asyncio.create_task(retry_pending_shipments())
    logger.info(
        "Background shipment retry started",
        interval_seconds=settings.shipment_retry_interval_seconds,
    )

    yield

    logger.info("Application shutting down")
    with log_performance(logger, "application_shutdown"):
        shipment_retry_task.cancel()
        try:
            await shipment_retry_task
        except asyncio.CancelledError:
            pass
        logger.info("Background tasks stopped")
        await close_shipping_client()
        await close_database_connections()
        logger.info("Resources cleaned up successfully")


# Initialize FastAPI application
settings = get_settings()
app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    description="Order fulfillment and returns automation API",
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
    lifespan=lifespan,
    debug=settings.debug,
)

# Configure rate limiting
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["X-Request-ID"],
)


@app.middleware("http")
async def request_logging_middleware(request: Request, call_next):
    """
    Middleware for request logging and correlation ID management.

    Sets request ID for correlation, logs request details, and measures
    response time. Clears context after request processing.

    Args:
        request: Incoming HTTP request
        call_next: Next middleware or route handler

    Returns:
        HTTP response with X-Request-ID header
    """
    request_id = set_request_id(request.headers.get("X-Request-ID"))

    logger.info(
        "Request received",
        method=request.method,
        path=request.url.path,
        client_host=request.client.host if request.client else None,
    )

    try:
        with log_performance(
            logger,
            "request_processing",
            method=request.method,
            path=request.url.path,
        ):
            response = await call_next(request)

        response.headers["X-Request-ID"] = request_id

        logger.info(
            "Request completed",
            method=request.method,
            path=request.url.path,
            status_code=response.status_code,
        )

        return response
    except Exception as e:
        logger.error(
            "Request failed",
            method=request.method,
            path=request.url.path,
            error=str(e),
            error_type=type(e).__name__,
        )
        raise
    finally:
        clear_context()


@app.exception_handler(OrderflowError)
async def orderflow_exception_handler(request: Request, exc: OrderflowError) -> JSONResponse:
    """
    Map application errors to their HTTP status.

    Args:
        request: HTTP request that raised the error
        exc: Application error

    Returns:
        JSON response with error code and message
    """
    logger.warning(
        "Application error",
        method=request.method,
        path=request.url.path,
        code=exc.code,
        error=exc.message,
        status_code=exc.status_code,
    )

    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error": type(exc).__name__,
            **exc.to_dict(),
            "request_id": get_request_id(),
        },
    )


def jsonable_errors(exc: RequestValidationError) -> list[dict]:
    """Validation errors without the non-serializable ``ctx`` payloads."""
    return [
        {key: value for key, value in error.items() if key not in ("ctx", "input")}
        for error in exc.errors()
    ]


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """
    Handle request validation errors with structured error response.

    Args:
        request: HTTP request that caused validation error
        exc: Validation exception with error details

    Returns:
        JSON response with validation error details
    """
    logger.warning(
        "Request validation failed",
        method=request.method,
        path=request.url.path,
        errors=exc.errors(),
    )

    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={
            "error": "Validation Error",
            "message": "Request validation failed",
            "details": jsonable_errors(exc),
            "request_id": get_request_id(),
        },
    )


@app.exception_handler(Exception)
async def global_exception_handler(
    request: Request, exc: Exception
) -> JSONResponse:
    """
    Handle unexpected exceptions with structured error response.

    Logs error with full context and returns generic error message
    to avoid exposing internal details.

    Args:
        request: HTTP request that caused exception
        exc: Exception that was raised

    Returns:
        JSON response with error details
    """
    logger.error(
        "Unhandled exception",
        method=request.method,
        path=request.url.path,
        error=str(exc),
        error_type=type(exc).__name__,
        exc_info=True,
    )

    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "error": "Internal Server Error",
            "message": "An unexpected error occurred",
            "request_id": get_request_id(),
        },
    )


@app.get(
    "/health",
    status_code=status.HTTP_200_OK,
    tags=["Health"],
    summary="Health check endpoint",
    response_description="Application health status",
)
async def health_check() -> dict[str, str]:
    """
    Basic health check endpoint.

    Always returns 200 OK if application is running.

    Returns:
        Dictionary with health status
    """
    return {
        "status": "healthy",
        "service": settings.app_name,
        "version": settings.app_version,
        "environment": settings.environment,
    }


@app.get(
    "/ready",
    status_code=status.HTTP_200_OK,
    tags=["Health"],
    summary="Readiness check endpoint",
    response_description="Application readiness status",
)
async def readiness_check():
    """
    Readiness check endpoint for orchestration.

    Verifies database connectivity and reports whether the two providers
    are configured.

    Returns:
        Dictionary with readiness status and dependency checks
    """
    database_ready = await check_database_health(max_retries=1)

    body = {
        "service": settings.app_name,
        "version": settings.app_version,
        "environment": settings.environment,
        "database": "healthy" if database_ready else "unhealthy",
        "payment_gateway": "configured" if settings.payment_configured else "not_configured",
        "shipping_gateway": "configured" if settings.shipping_configured else "not_configured",
    }

    if not database_ready:
        logger.warning("Readiness check failed", database=body["database"])
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={"status": "not_ready", **body},
        )

    return {"status": "ready", **body}


@app.get(
    "/live",
    status_code=status.HTTP_200_OK,
    tags=["Health"],
    summary="Liveness check endpoint",
    response_description="Application liveness status",
)
async def liveness_check() -> dict[str, str]:
    """
    Liveness check endpoint.

    Returns:
        Dictionary with liveness status
    """
    return {
        "status": "alive",
        "service": settings.app_name,
        "version": settings.app_version,
    }


app.include_router(payments_router, prefix=settings.api_v1_prefix)
app.include_router(returns_router, prefix=settings.api_v1_prefix)
app.include_router(webhooks_router, prefix=settings.api_v1_prefix)
app.include_router(admin_orders_router, prefix=settings.api_v1_prefix)
app.include_router(admin_returns_router, prefix=settings.api_v1_prefix)
