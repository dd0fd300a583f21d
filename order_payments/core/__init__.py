"""
Core payment reconciliation logic.

Services live in their own modules (order_store, event_ledger,
payment_orchestrator, webhook_reconciler, status_service); this package
exports only the shared types so that integrations can import them
without pulling in the services.
"""
from .exceptions import (
    AuthenticationError,
    AuthorizationError,
    GatewayError,
    GatewayErrorType,
    NotFoundError,
    PaymentSystemError,
    SignatureInvalid,
    StateConflictError,
    ValidationError,
)
from .models import OrderSnapshot, OrderStatus, PaymentMethod, PaymentStatus, Requester, Role

__all__ = [
    "AuthenticationError",
    "AuthorizationError",
    "GatewayError",
    "GatewayErrorType",
    "NotFoundError",
    "OrderSnapshot",
    "OrderStatus",
    "PaymentMethod",
    "PaymentStatus",
    "PaymentSystemError",
    "Requester",
    "Role",
    "SignatureInvalid",
    "StateConflictError",
    "ValidationError",
]
