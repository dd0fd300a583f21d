"""SQLAlchemy database models for order payment reconciliation."""
import uuid
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    Uuid,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests).
JsonType = JSON().with_variant(JSONB(), "postgresql")


class Base(DeclarativeBase):
    """Base class for all database models."""

    pass


class User(Base):
    """
    User records table.

    Only the fields the payment flow needs: contact details forwarded to
    the gateway customer and the cached gateway customer id.
    """

    __tablename__ = "users"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    phone: Mapped[str | None] = mapped_column(String(32), nullable=True)
    role: Mapped[str] = mapped_column(String(20), nullable=False, default="user")
    gateway_customer_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=func.now(),
        onupdate=func.now(),
    )

    __table_args__ = (
        CheckConstraint("role IN ('user', 'admin')", name="valid_role"),
    )

    def __repr__(self) -> str:
        """String representation of User."""
        return f"<User(id={self.id}, email={self.email}, role={self.role})>"


class Order(Base):
    """
    Orders table, the aggregate root for payment state.

    `version` is bumped by every conditional update so callers can
    compare-and-set on it as well as on payment_status.
    """

    __tablename__ = "orders"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    order_number: Mapped[str] = mapped_column(String(32), unique=True, nullable=False)
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    total_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="usd")
    payment_method: Mapped[str] = mapped_column(String(10), nullable=False, default="unset")
    payment_status: Mapped[str] = mapped_column(
        String(20), nullable=False, default="pending", index=True
    )
    order_status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")
    authorization_id: Mapped[str | None] = mapped_column(
        String(255), unique=True, nullable=True
    )
    gateway_customer_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    is_paid: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    payment_details: Mapped[Dict[str, Any] | None] = mapped_column(JsonType, nullable=True)
    delivery_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    delivery_address: Mapped[Dict[str, Any] | None] = mapped_column(JsonType, nullable=True)
    contact_number: Mapped[str | None] = mapped_column(String(32), nullable=True)
    cancellation_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=func.now(), index=True
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=func.now(),
        onupdate=func.now(),
    )

    __table_args__ = (
        CheckConstraint("total_amount >= 0", name="non_negative_amount"),
        CheckConstraint(
            "payment_status IN ('pending', 'processing', 'paid', 'failed', 'refunded')",
            name="valid_payment_status",
        ),
        CheckConstraint(
            "order_status IN ('pending', 'confirmed', 'packed', 'out-for-delivery', "
            "'delivered', 'cancelled')",
            name="valid_order_status",
        ),
        CheckConstraint("payment_method IN ('unset', 'cod', 'card')", name="valid_payment_method"),
        CheckConstraint(
            "(is_paid AND payment_status = 'paid') OR (NOT is_paid AND payment_status <> 'paid')",
            name="paid_flag_matches_status",
        ),
        Index("idx_orders_user_status", "user_id", "payment_status"),
    )

    def __repr__(self) -> str:
        """String representation of Order."""
        return (
            f"<Order(id={self.id}, number={self.order_number}, "
            f"payment_status={self.payment_status}, order_status={self.order_status})>"
        )


class ProcessedEvent(Base):
    """
    Idempotency ledger of gateway events.

    The primary key on event_id is what makes "insert if absent" atomic
    across workers. Rows are immutable once written.
    """

    __tablename__ = "processed_events"

    event_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    event_type: Mapped[str] = mapped_column(String(100), nullable=False)
    order_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    effect: Mapped[str] = mapped_column(String(100), nullable=False)
    processed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=func.now(), index=True
    )

    def __repr__(self) -> str:
        """String representation of ProcessedEvent."""
        return (
            f"<ProcessedEvent(event_id={self.event_id}, type={self.event_type}, "
            f"effect={self.effect})>"
        )
