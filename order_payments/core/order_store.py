"""
Order Store: the single source of truth for order payment state.

Every mutation goes through one conditional UPDATE whose WHERE clause
carries the expected payment status (and optionally the version). A
mismatch changes nothing and is reported as False; there are no locks.
"""
import random
import time
import uuid
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Iterable, Mapping, Optional

import structlog
from sqlalchemy import case, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from order_payments.core.exceptions import StateConflictError, ValidationError
from order_payments.core.models import (
    OrderSnapshot,
    OrderStatus,
    PaymentMethod,
    PaymentStatus,
)
from order_payments.database.models import Order

logger = structlog.get_logger(__name__)

ORDER_NUMBER_ATTEMPTS = 3


def generate_order_number() -> str:
    """Creation time in milliseconds plus a random suffix, e.g. ORD1718031234567042."""
    return f"ORD{int(time.time() * 1000)}{random.randint(0, 999):03d}"


def _to_snapshot(order: Order) -> OrderSnapshot:
    return OrderSnapshot(
        id=order.id,
        order_number=order.order_number,
        user_id=order.user_id,
        total_amount=Decimal(order.total_amount),
        currency=order.currency,
        payment_method=PaymentMethod(order.payment_method),
        payment_status=PaymentStatus(order.payment_status),
        order_status=OrderStatus(order.order_status),
        authorization_id=order.authorization_id,
        gateway_customer_id=order.gateway_customer_id,
        is_paid=order.is_paid,
        paid_at=order.paid_at,
        delivery_date=order.delivery_date,
        delivery_address=order.delivery_address,
        contact_number=order.contact_number,
        payment_details=order.payment_details,
        cancellation_reason=order.cancellation_reason,
        version=order.version,
    )


def _values(values: Mapping[str, Any]) -> Dict[str, Any]:
    """Unwrap enum members so they bind as plain strings."""
    return {
        key: value.value if isinstance(value, (PaymentStatus, OrderStatus, PaymentMethod)) else value
        for key, value in values.items()
    }


class OrderStore:
    """Persistent order records with compare-and-set updates."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def create(
        self,
        user_id: uuid.UUID,
        total_amount: Decimal,
        delivery_date: datetime,
        currency: str = "usd",
        contact_number: Optional[str] = None,
        delivery_address: Optional[Dict[str, Any]] = None,
        payment_method: PaymentMethod = PaymentMethod.UNSET,
    ) -> OrderSnapshot:
        """
        Insert a new order in pending state.

        The order number is generated once here and never changes.

        Raises:
            ValidationError: If the amount is negative
            StateConflictError: If no unique order number could be generated
        """
        total_amount = Decimal(total_amount)
        if total_amount < 0:
            raise ValidationError("Total amount cannot be negative")

        for attempt in range(1, ORDER_NUMBER_ATTEMPTS + 1):
            order = Order(
                id=uuid.uuid4(),
                order_number=generate_order_number(),
                user_id=user_id,
                total_amount=total_amount,
                currency=currency.lower(),
                payment_method=payment_method.value,
                payment_status=PaymentStatus.PENDING.value,
                order_status=OrderStatus.PENDING.value,
                is_paid=False,
                paid_at=None,
                authorization_id=None,
                gateway_customer_id=None,
                payment_details=None,
                cancellation_reason=None,
                delivery_date=delivery_date,
                delivery_address=delivery_address,
                contact_number=contact_number,
                version=1,
            )
            async with self.session_factory() as session:
                session.add(order)
                try:
                    await session.commit()
                except IntegrityError:
                    await session.rollback()
                    logger.warning("order_number_collision", attempt=attempt)
                    continue

            logger.info(
                "order_created",
                order_id=str(order.id),
                order_number=order.order_number,
                total_amount=str(total_amount),
            )
            return _to_snapshot(order)

        raise StateConflictError("Could not allocate a unique order number")

    async def get(self, order_id: uuid.UUID) -> Optional[OrderSnapshot]:
        async with self.session_factory() as session:
            order = await session.get(Order, order_id)
            return _to_snapshot(order) if order is not None else None

    async def get_by_authorization_id(self, authorization_id: str) -> Optional[OrderSnapshot]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(Order).where(Order.authorization_id == authorization_id)
            )
            order = result.scalar_one_or_none()
            return _to_snapshot(order) if order is not None else None

    async def conditional_update(
        self,
        order_id: uuid.UUID,
        expected_statuses: Iterable[PaymentStatus],
        values: Mapping[str, Any],
        expected_version: Optional[int] = None,
        confirm_pending_order: bool = False,
        excluded_order_statuses: Iterable[OrderStatus] = (),
    ) -> bool:
        """
        Update an order only if its payment status is one of `expected_statuses`.

        Args:
            order_id: Order to update
            expected_statuses: Payment statuses the row must currently have
            values: Column values to set
            expected_version: Optional version the row must currently have
            confirm_pending_order: Also move order_status pending -> confirmed
            excluded_order_statuses: Order statuses the row must not have

        Returns:
            bool: True if the row matched and was updated

        Raises:
            StateConflictError: If the write violates authorization_id uniqueness
        """
        statuses = [status.value for status in expected_statuses]
        stmt = update(Order).where(
            Order.id == order_id,
            Order.payment_status.in_(statuses),
        )
        if expected_version is not None:
            stmt = stmt.where(Order.version == expected_version)
        excluded = [status.value for status in excluded_order_statuses]
        if excluded:
            stmt = stmt.where(Order.order_status.not_in(excluded))

        new_values = _values(values)
        new_values["version"] = Order.version + 1
        if confirm_pending_order:
            new_values["order_status"] = case(
                (Order.order_status == OrderStatus.PENDING.value, OrderStatus.CONFIRMED.value),
                else_=Order.order_status,
            )

        return await self._execute(stmt.values(**new_values), order_id)

    async def conditional_update_order_status(
        self,
        order_id: uuid.UUID,
        expected_order_statuses: Iterable[OrderStatus],
        excluded_payment_statuses: Iterable[PaymentStatus],
        values: Mapping[str, Any],
    ) -> bool:
        """
        Update an order keyed on its fulfilment status.

        Used for cancellation, where the guard is the order status plus a
        set of payment statuses the row must not be in.
        """
        stmt = (
            update(Order)
            .where(
                Order.id == order_id,
                Order.order_status.in_([s.value for s in expected_order_statuses]),
                Order.payment_status.not_in([s.value for s in excluded_payment_statuses]),
            )
            .values(**_values(values), version=Order.version + 1)
        )
        return await self._execute(stmt, order_id)

    async def _execute(self, stmt: Any, order_id: uuid.UUID) -> bool:
        async with self.session_factory() as session:
            try:
                result = await session.execute(stmt)
                await session.commit()
            except IntegrityError as e:
                await session.rollback()
                logger.error("order_update_integrity_error", order_id=str(order_id), error=str(e))
                raise StateConflictError(
                    "Order update conflicts with another order",
                    order_id=str(order_id),
                )

        updated = result.rowcount == 1
        logger.debug("order_conditional_update", order_id=str(order_id), updated=updated)
        return updated
