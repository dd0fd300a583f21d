"""Domain enums and read models shared by the payment components."""
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional
import uuid

from order_payments.core.exceptions import ValidationError


class PaymentStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    PAID = "paid"
    FAILED = "failed"
    REFUNDED = "refunded"


class OrderStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    PACKED = "packed"
    OUT_FOR_DELIVERY = "out-for-delivery"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


class PaymentMethod(str, Enum):
    UNSET = "unset"
    CASH_ON_DELIVERY = "cod"
    CARD = "card"


class Role(str, Enum):
    USER = "user"
    ADMIN = "admin"


@dataclass(frozen=True)
class Requester:
    """Authenticated caller as asserted by the upstream auth layer."""

    user_id: uuid.UUID
    role: Role = Role.USER

    @property
    def is_admin(self) -> bool:
        return self.role is Role.ADMIN

    def can_access(self, owner_id: uuid.UUID) -> bool:
        return self.is_admin or self.user_id == owner_id


@dataclass(frozen=True)
class OrderSnapshot:
    """
    Point-in-time copy of an order row.

    Components read a snapshot, decide, and issue one conditional write;
    snapshots are never written back.
    """

    id: uuid.UUID
    order_number: str
    user_id: uuid.UUID
    total_amount: Decimal
    currency: str
    payment_method: PaymentMethod
    payment_status: PaymentStatus
    order_status: OrderStatus
    authorization_id: Optional[str]
    gateway_customer_id: Optional[str]
    is_paid: bool
    paid_at: Optional[datetime]
    delivery_date: datetime
    delivery_address: Optional[Dict[str, Any]]
    contact_number: Optional[str]
    payment_details: Optional[Dict[str, Any]]
    cancellation_reason: Optional[str]
    version: int


@dataclass(frozen=True)
class UserSnapshot:
    id: uuid.UUID
    email: str
    name: str
    phone: Optional[str]
    role: Role
    gateway_customer_id: Optional[str]


def as_utc(value: datetime) -> datetime:
    """Treat naive datetimes read back from the database as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def parse_uuid(value: Any, field_name: str) -> uuid.UUID:
    try:
        return value if isinstance(value, uuid.UUID) else uuid.UUID(str(value))
    except ValueError:
        raise ValidationError(f"Invalid {field_name}: {value!r}")
