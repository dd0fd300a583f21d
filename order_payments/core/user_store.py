"""User Store: reads users and caches their gateway customer id."""
import uuid
from typing import Optional

import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from order_payments.core.exceptions import NotFoundError
from order_payments.core.models import Role, UserSnapshot
from order_payments.database.models import User

logger = structlog.get_logger(__name__)


def _to_snapshot(user: User) -> UserSnapshot:
    return UserSnapshot(
        id=user.id,
        email=user.email,
        name=user.name,
        phone=user.phone,
        role=Role(user.role),
        gateway_customer_id=user.gateway_customer_id,
    )


class UserStore:
    """Collaborator store for the user fields the payment flow needs."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def create(
        self,
        email: str,
        name: str,
        phone: Optional[str] = None,
        role: Role = Role.USER,
    ) -> UserSnapshot:
        user = User(
            id=uuid.uuid4(),
            email=email.lower(),
            name=name,
            phone=phone,
            role=role.value,
            gateway_customer_id=None,
        )
        async with self.session_factory() as session:
            session.add(user)
            await session.commit()
        return _to_snapshot(user)

    async def get(self, user_id: uuid.UUID) -> Optional[UserSnapshot]:
        async with self.session_factory() as session:
            user = await session.get(User, user_id)
            return _to_snapshot(user) if user is not None else None

    async def set_gateway_customer_id_if_absent(
        self, user_id: uuid.UUID, customer_id: str
    ) -> str:
        """
        Cache a gateway customer id unless one is already cached.

        Concurrent first-time callers race on the NULL check; the first
        write wins and every caller gets the winning id back.

        Returns:
            str: The customer id now cached on the user
        """
        async with self.session_factory() as session:
            result = await session.execute(
                update(User)
                .where(User.id == user_id, User.gateway_customer_id.is_(None))
                .values(gateway_customer_id=customer_id)
            )
            await session.commit()
            if result.rowcount == 1:
                logger.info(
                    "gateway_customer_cached", user_id=str(user_id), customer_id=customer_id
                )
                return customer_id

            cached = await session.scalar(
                select(User.gateway_customer_id).where(User.id == user_id)
            )

        if cached is None:
            raise NotFoundError(f"User {user_id} not found", user_message="User not found")

        logger.warning(
            "gateway_customer_cache_lost_race",
            user_id=str(user_id),
            discarded_customer_id=customer_id,
            cached_customer_id=cached,
        )
        return cached
