"""
Service wiring and request dependencies.

Services are built once per application and stored on `app.state`;
routes receive them through `Depends`.
"""
import uuid
from dataclasses import dataclass
from typing import Optional

import redis.asyncio as aioredis
import structlog
from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from order_payments.config import Settings
from order_payments.core.event_ledger import EventLedger
from order_payments.core.exceptions import AuthenticationError, AuthorizationError, ValidationError
from order_payments.core.models import Requester, Role
from order_payments.core.order_store import OrderStore
from order_payments.core.payment_orchestrator import PaymentOrchestrator
from order_payments.core.status_service import StatusService
from order_payments.core.user_store import UserStore
from order_payments.core.webhook_reconciler import WebhookReconciler
from order_payments.database import create_engine_from_settings, create_session_factory
from order_payments.integrations.stripe_gateway import StripeGateway
from order_payments.monitoring.health import HealthCheck

logger = structlog.get_logger(__name__)


@dataclass
class PaymentServices:
    """Everything the routes need, built from one Settings instance."""

    settings: Settings
    session_factory: async_sessionmaker[AsyncSession]
    gateway: StripeGateway
    order_store: OrderStore
    user_store: UserStore
    ledger: EventLedger
    orchestrator: PaymentOrchestrator
    reconciler: WebhookReconciler
    status_service: StatusService
    health: HealthCheck
    engine: Optional[AsyncEngine] = None
    redis_client: Optional[aioredis.Redis] = None

    @classmethod
    def build(
        cls,
        settings: Settings,
        session_factory: async_sessionmaker[AsyncSession],
        gateway: StripeGateway,
        redis_client: Optional[aioredis.Redis] = None,
        engine: Optional[AsyncEngine] = None,
    ) -> "PaymentServices":
        order_store = OrderStore(session_factory)
        user_store = UserStore(session_factory)
        ledger = EventLedger(session_factory, redis_client, settings.ledger_cache_ttl)
        return cls(
            settings=settings,
            session_factory=session_factory,
            gateway=gateway,
            order_store=order_store,
            user_store=user_store,
            ledger=ledger,
            orchestrator=PaymentOrchestrator(
                order_store,
                user_store,
                gateway,
                currency=settings.currency,
                publishable_key=settings.stripe_publishable_key,
            ),
            reconciler=WebhookReconciler(order_store, ledger, gateway),
            status_service=StatusService(order_store, gateway),
            health=HealthCheck(session_factory, gateway, redis_client),
            engine=engine,
            redis_client=redis_client,
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> "PaymentServices":
        """Create the engine, Redis client and gateway adapter from settings."""
        engine = create_engine_from_settings(settings)
        redis_client = None
        if settings.redis_url:
            redis_client = aioredis.from_url(
                settings.redis_url, encoding="utf-8", decode_responses=True
            )
        return cls.build(
            settings,
            create_session_factory(engine),
            StripeGateway(settings),
            redis_client=redis_client,
            engine=engine,
        )

    async def close(self) -> None:
        await self.ledger.close()
        if self.engine is not None:
            await self.engine.dispose()


def get_services(request: Request) -> PaymentServices:
    return request.app.state.services


def _check_api_key(request: Request, settings: Settings) -> None:
    if settings.api_key and request.headers.get(settings.api_key_header) != settings.api_key:
        raise AuthenticationError("Invalid or missing API key")


def get_requester(request: Request) -> Requester:
    """
    Identity of the caller, as asserted by the upstream auth layer.

    Raises:
        AuthenticationError: Missing identity or API key
        ValidationError: Malformed identity headers
    """
    settings = get_services(request).settings
    _check_api_key(request, settings)

    user_id = request.headers.get("X-User-ID")
    if not user_id:
        raise AuthenticationError("Missing X-User-ID header")
    try:
        user_uuid = uuid.UUID(user_id)
    except ValueError:
        raise ValidationError(f"Invalid user id: {user_id!r}")

    role = request.headers.get("X-User-Role", Role.USER.value).lower()
    try:
        return Requester(user_id=user_uuid, role=Role(role))
    except ValueError:
        raise ValidationError(f"Invalid role: {role!r}")


def get_admin(request: Request) -> Requester:
    requester = get_requester(request)
    if not requester.is_admin:
        raise AuthorizationError("Admin access required")
    return requester
