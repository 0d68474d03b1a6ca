"""
API v1 package initialization.

This module initializes the v1 API package for the Orderflow service.
"""

from orderflow.api.v1.admin_orders import router as admin_orders_router
from orderflow.api.v1.admin_returns import router as admin_returns_router
from orderflow.api.v1.payments import router as payments_router
from orderflow.api.v1.returns import router as returns_router
from orderflow.api.v1.webhooks import router as webhooks_router

__all__ = [
    "admin_orders_router",
    "admin_returns_router",
    "payments_router",
    "returns_router",
    "webhooks_router",
]
