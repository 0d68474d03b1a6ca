"""
Pytest configuration and shared test fixtures.

Provides a SQLite-backed async database, seeded users and orders, the two
provider adapters with their remote calls mocked out, and an HTTP client
wired to the FastAPI application through dependency overrides.
"""

from datetime import timedelta
from decimal import Decimal
from typing import Any, AsyncGenerator, Awaitable, Callable
from unittest.mock import AsyncMock, MagicMock

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from orderflow.api.deps import get_token_verifier
from orderflow.core.config import Settings, get_settings
from orderflow.core.security import JoseTokenVerifier, create_access_token
from orderflow.database.base import Base, utcnow
from orderflow.database.connection import get_db, get_session_factory
from orderflow.database.models.order import Order
from orderflow.database.models.user import User
from orderflow.main import app
from orderflow.services.orders.automation import OrderAutomationService
from orderflow.services.orders.enums import (
    OrderStatus,
    PaymentStatus,
    RefundStatus,
    ShipmentStatus,
)
from orderflow.services.payments.gateway import (
    PaymentGateway,
    PaymentIntent,
    RefundRecord,
    compute_signature,
    get_payment_gateway,
)
from orderflow.services.returns.service import ReturnService
from orderflow.services.shipping.client import (
    AwbAssignment,
    CarrierOrder,
    ShippingClient,
    get_shipping_client,
)

SIGNING_SECRET = "test-payment-signing-secret"

ORDER_ITEMS = [
    {"sku": "SKU-1", "name": "Cotton Kurta", "quantity": 2, "unit_price": "499.00"},
    {"sku": "SKU-2", "name": "Silk Scarf", "quantity": 1, "unit_price": "799.00"},
]

SHIPPING_ADDRESS = {
    "full_name": "Asha Rao",
    "address_line1": "12 MG Road",
    "city": "Bengaluru",
    "state": "Karnataka",
    "postal_code": "560001",
    "country": "India",
    "phone": "+91 98765 43210",
}


# ============================================================================
# Settings and Database
# ============================================================================


@pytest.fixture
def test_settings(tmp_path) -> Settings:
    """
    Settings for an isolated test run.

    Returns:
        Settings pointing at a throwaway SQLite database
    """
    return Settings(
        environment="test",
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'orderflow.db'}",
        stripe_secret_key="sk_test_orderflow",
        payment_signing_secret=SIGNING_SECRET,
        shipping_email="ops@example.com",
        shipping_password="shipping-password",
        shipment_max_attempts=3,
        shipment_retry_base_seconds=60,
        return_window_days=7,
        stuck_order_minutes=30,
        webhook_log_capacity=5,
        return_warehouse={
            "name": "Orderflow Returns",
            "address": "Plot 4, Industrial Area",
            "city": "Bengaluru",
            "state": "Karnataka",
            "country": "India",
            "pincode": "560058",
            "phone": "9000000000",
        },
    )


@pytest.fixture
async def engine(test_settings: Settings) -> AsyncGenerator[AsyncEngine, None]:
    """Async engine with the full schema created."""
    engine = create_async_engine(test_settings.database_url)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        engine, class_=AsyncSession, expire_on_commit=False, autoflush=False
    )


@pytest.fixture
async def db_session(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, None]:
    """
    Session used by tests to seed and inspect data.

    Yields:
        AsyncSession bound to the test database
    """
    async with session_factory() as session:
        yield session


# ============================================================================
# Users and Orders
# ============================================================================


@pytest.fixture
async def customer(db_session: AsyncSession) -> User:
    user = User(email="asha@example.com", full_name="Asha Rao", phone="9876543210")
    db_session.add(user)
    await db_session.commit()
    return user


@pytest.fixture
async def other_customer(db_session: AsyncSession) -> User:
    user = User(email="ravi@example.com", full_name="Ravi Kumar")
    db_session.add(user)
    await db_session.commit()
    return user


@pytest.fixture
async def admin_user(db_session: AsyncSession) -> User:
    user = User(email="admin@example.com", full_name="Ops Admin", is_admin=True)
    db_session.add(user)
    await db_session.commit()
    return user


@pytest.fixture
def make_order(
    db_session: AsyncSession, customer: User
) -> Callable[..., Awaitable[Order]]:
    """
    Factory creating persisted orders.

    Keyword arguments override any column; the customer owns the order
    unless ``user_id`` is given.

    Returns:
        Async factory returning a committed Order
    """

    async def _make(**overrides: Any) -> Order:
        values: dict[str, Any] = {
            "user_id": customer.id,
            "status": OrderStatus.PENDING,
            "total_amount": Decimal("1797.00"),
            "currency": "inr",
            "items": [dict(item) for item in ORDER_ITEMS],
            "shipping_address": dict(SHIPPING_ADDRESS),
            "payment_gateway_order_id": "order_G1",
        }
        values.update(overrides)
        order = Order(**values)
        db_session.add(order)
        await db_session.commit()
        await db_session.refresh(order)
        return order

    return _make


@pytest.fixture
async def pending_order(make_order) -> Order:
    return await make_order()


@pytest.fixture
async def shipped_order(make_order) -> Order:
    """Paid order with a carrier shipment S1 / AWB A1 in the processing status."""
    return await make_order(
        status=OrderStatus.PROCESSING,
        payment_status=PaymentStatus.COMPLETED,
        payment_gateway_payment_id="pay_P1",
        paid_at=utcnow(),
        shipping_order_id="SR-1001",
        shipping_shipment_id="S1",
        shipping_awb_code="A1",
        shipment_status=ShipmentStatus.CREATED,
        shipment_attempts=1,
    )


@pytest.fixture
async def delivered_order(make_order) -> Order:
    """Order delivered yesterday and paid with payment reference pi_123."""
    delivered_at = utcnow() - timedelta(days=1)
    return await make_order(
        status=OrderStatus.DELIVERED,
        payment_status=PaymentStatus.COMPLETED,
        payment_gateway_payment_id="pi_123",
        paid_at=delivered_at - timedelta(days=3),
        shipping_order_id="SR-1001",
        shipping_shipment_id="S1",
        shipping_awb_code="A1",
        shipment_status=ShipmentStatus.CREATED,
        shipment_attempts=1,
        delivered_at=delivered_at,
    )


# ============================================================================
# Provider Adapters
# ============================================================================


@pytest.fixture
def payment_gateway(test_settings: Settings) -> PaymentGateway:
    """
    Payment gateway with real signature handling and mocked remote calls.

    Returns:
        PaymentGateway whose Stripe-facing methods are AsyncMocks
    """
    gateway = PaymentGateway(
        api_key="sk_test_orderflow",
        signing_secret=SIGNING_SECRET,
        webhook_secret="",
        settings=test_settings,
    )
    gateway.create_payment_intent = AsyncMock(
        return_value=PaymentIntent(
            intent_id="pi_intent_1",
            amount=Decimal("1797.00"),
            currency="inr",
            client_secret="pi_intent_1_secret",
        )
    )
    gateway.issue_refund = AsyncMock(
        side_effect=lambda payment_ref, amount=None, idempotency_key=None, metadata=None: (
            RefundRecord(
                refund_id="re_1",
                payment_ref=payment_ref,
                amount=amount,
                currency="inr",
                status=RefundStatus.INITIATED,
            )
        )
    )
    gateway.fetch_refund = AsyncMock()
    return gateway


@pytest.fixture
def shipping_client() -> MagicMock:
    """
    Shipping client double.

    Outbound shipments get carrier order SR-1001, shipment S1 and AWB A1;
    reverse pickups get SR-R1, RS1 and RA1.
    """

    def _assign(shipment_id: str, is_return: bool = False) -> AwbAssignment:
        awb_code = "RA1" if is_return else "A1"
        return AwbAssignment(shipment_id=shipment_id, awb_code=awb_code, courier_name="Delhivery")

    client = MagicMock(spec=ShippingClient)
    client.create_order = AsyncMock(return_value=CarrierOrder("SR-1001", "S1"))
    client.create_return_order = AsyncMock(return_value=CarrierOrder("SR-R1", "RS1"))
    client.assign_awb = AsyncMock(side_effect=_assign)
    client.generate_pickup = AsyncMock(return_value={"pickup_status": 1})
    client.create_shipment_documents = AsyncMock()
    client.track_by_waybill = AsyncMock()
    return client


# ============================================================================
# Services
# ============================================================================


@pytest.fixture
def order_service(
    db_session: AsyncSession,
    payment_gateway: PaymentGateway,
    shipping_client: MagicMock,
    test_settings: Settings,
) -> OrderAutomationService:
    return OrderAutomationService(db_session, payment_gateway, shipping_client, test_settings)


@pytest.fixture
def return_service(
    db_session: AsyncSession,
    payment_gateway: PaymentGateway,
    shipping_client: MagicMock,
    test_settings: Settings,
) -> ReturnService:
    return ReturnService(db_session, payment_gateway, shipping_client, test_settings)


# ============================================================================
# Helpers
# ============================================================================


@pytest.fixture
def sign() -> Callable[[str, str], str]:
    """Signature the checkout would submit for a payment confirmation."""

    def _sign(gateway_order_id: str, payment_ref: str) -> str:
        return compute_signature(SIGNING_SECRET, gateway_order_id, payment_ref)

    return _sign


@pytest.fixture
def auth_headers(test_settings: Settings) -> Callable[[User], dict[str, str]]:
    """Build a bearer Authorization header for a user."""

    def _headers(user: User) -> dict[str, str]:
        token = create_access_token(str(user.id), settings=test_settings)
        return {"Authorization": f"Bearer {token}"}

    return _headers


# ============================================================================
# HTTP Client
# ============================================================================


@pytest.fixture
async def client(
    session_factory: async_sessionmaker[AsyncSession],
    payment_gateway: PaymentGateway,
    shipping_client: MagicMock,
    test_settings: Settings,
) -> AsyncGenerator[AsyncClient, None]:
    """
    HTTP client for the application with test dependencies injected.

    Each request gets its own session on the test database, committed on
    success like the production dependency.

    Yields:
        AsyncClient talking to the app in-process
    """

    async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    app.dependency_overrides[get_settings] = lambda: test_settings
    app.dependency_overrides[get_token_verifier] = lambda: JoseTokenVerifier(
        test_settings.secret_key, test_settings.jwt_algorithm
    )
    app.dependency_overrides[get_payment_gateway] = lambda: payment_gateway
    app.dependency_overrides[get_shipping_client] = lambda: shipping_client

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


@pytest.fixture
def customer_headers(customer: User, auth_headers) -> dict[str, str]:
    return auth_headers(customer)


@pytest.fixture
def admin_headers(admin_user: User, auth_headers) -> dict[str, str]:
    return auth_headers(admin_user)
