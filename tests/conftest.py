"""
Pytest configuration and fixtures.
"""
import itertools
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, AsyncGenerator, Dict, Optional
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from order_payments.api import PaymentServices, create_app
from order_payments.config import Settings
from order_payments.core.event_ledger import EventLedger
from order_payments.core.models import OrderSnapshot, Role, UserSnapshot
from order_payments.core.order_store import OrderStore
from order_payments.core.payment_orchestrator import PaymentOrchestrator
from order_payments.core.status_service import StatusService
from order_payments.core.user_store import UserStore
from order_payments.core.webhook_reconciler import WebhookReconciler
from order_payments.database import create_session_factory, init_db
from order_payments.integrations import (
    AuthorizationRef,
    AuthorizationSnapshot,
    CustomerRef,
    PaymentMethodDetails,
    StripeGateway,
)
from tests.helpers import WEBHOOK_SECRET


@pytest.fixture
def test_settings() -> Settings:
    """Create test settings."""
    return Settings(
        stripe_secret_key="sk_test_fake_key_for_testing",
        stripe_publishable_key="pk_test_fake_key_for_testing",
        stripe_webhook_secret=WEBHOOK_SECRET,
        currency="usd",
        database_url="sqlite+aiosqlite://",
        app_name="order-payments-test",
        app_env="test",
        log_level="DEBUG",
        gateway_retry_base_delay=0,
    )


@pytest_asyncio.fixture
async def engine(tmp_path: Any) -> AsyncGenerator[AsyncEngine, Any]:
    """File-backed SQLite database per test, so concurrent sessions see real transactions."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'payments.db'}")
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return create_session_factory(engine)


@pytest.fixture
def order_store(session_factory: async_sessionmaker[AsyncSession]) -> OrderStore:
    return OrderStore(session_factory)


@pytest.fixture
def user_store(session_factory: async_sessionmaker[AsyncSession]) -> UserStore:
    return UserStore(session_factory)


@pytest.fixture
def ledger(session_factory: async_sessionmaker[AsyncSession]) -> EventLedger:
    return EventLedger(session_factory)


@pytest.fixture
def gateway(test_settings: Settings) -> AsyncMock:
    """
    Gateway double.

    Remote calls are mocked; signature verification and unit conversion
    run the real adapter code.
    """
    real = StripeGateway(test_settings)
    mock = AsyncMock(spec=StripeGateway)
    counter = itertools.count(1)

    async def create_authorization(
        amount_minor: int, currency: str, customer_ref: Optional[str], metadata: Dict[str, str], **kwargs: Any
    ) -> AuthorizationRef:
        intent_id = f"pi_test_{next(counter)}"
        return AuthorizationRef(
            id=intent_id,
            client_secret=f"{intent_id}_secret_abc",
            status="requires_payment_method",
            amount_minor=amount_minor,
            currency=currency,
        )

    mock.verify_event.side_effect = real.verify_event
    mock.to_minor_units.side_effect = real.to_minor_units
    mock.to_major_units.side_effect = real.to_major_units
    mock.create_or_get_customer.return_value = CustomerRef(id="cus_test_123", created=True)
    mock.create_authorization.side_effect = create_authorization
    mock.cancel_authorization.side_effect = lambda authorization_id: AuthorizationSnapshot(
        id=authorization_id, status="canceled", amount_minor=1999, currency="usd"
    )
    mock.retrieve_payment_method.return_value = PaymentMethodDetails(
        type="card", brand="visa", last4="4242"
    )
    return mock


@pytest.fixture
def orchestrator(
    order_store: OrderStore, user_store: UserStore, gateway: AsyncMock, test_settings: Settings
) -> PaymentOrchestrator:
    return PaymentOrchestrator(
        order_store,
        user_store,
        gateway,
        currency=test_settings.currency,
        publishable_key=test_settings.stripe_publishable_key,
    )


@pytest.fixture
def reconciler(order_store: OrderStore, ledger: EventLedger, gateway: AsyncMock) -> WebhookReconciler:
    return WebhookReconciler(order_store, ledger, gateway)


@pytest.fixture
def status_service(order_store: OrderStore, gateway: AsyncMock) -> StatusService:
    return StatusService(order_store, gateway)


@pytest_asyncio.fixture
async def user(user_store: UserStore) -> UserSnapshot:
    return await user_store.create(
        email="buyer@example.com", name="Test Buyer", phone="+15555550100"
    )


@pytest_asyncio.fixture
async def other_user(user_store: UserStore) -> UserSnapshot:
    return await user_store.create(email="other@example.com", name="Other Buyer")


@pytest_asyncio.fixture
async def admin(user_store: UserStore) -> UserSnapshot:
    return await user_store.create(email="admin@example.com", name="Admin", role=Role.ADMIN)


@pytest_asyncio.fixture
async def order(order_store: OrderStore, user: UserSnapshot) -> OrderSnapshot:
    """A pending 19.99 USD order delivered in three days."""
    return await order_store.create(
        user_id=user.id,
        total_amount=Decimal("19.99"),
        delivery_date=datetime.now(timezone.utc) + timedelta(days=3),
        contact_number="+15555550100",
        delivery_address={
            "street": "1 Main St",
            "city": "Springfield",
            "state": "IL",
            "zip_code": "62701",
            "country": "US",
        },
    )


@pytest.fixture
def services(
    test_settings: Settings,
    session_factory: async_sessionmaker[AsyncSession],
    gateway: AsyncMock,
) -> PaymentServices:
    return PaymentServices.build(test_settings, session_factory, gateway)


@pytest_asyncio.fixture
async def client(
    test_settings: Settings, services: PaymentServices
) -> AsyncGenerator[AsyncClient, Any]:
    """Create test HTTP client."""
    app = create_app(test_settings, services)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
