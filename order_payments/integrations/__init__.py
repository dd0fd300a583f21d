"""External integrations for payment processing."""
from .gateway_types import (
    AuthorizationRef,
    AuthorizationSnapshot,
    CustomerProfile,
    CustomerRef,
    GatewayEvent,
    PaymentMethodDetails,
    ShippingInfo,
)
from .stripe_gateway import CircuitBreaker, StripeGateway

__all__ = [
    "AuthorizationRef",
    "AuthorizationSnapshot",
    "CircuitBreaker",
    "CustomerProfile",
    "CustomerRef",
    "GatewayEvent",
    "PaymentMethodDetails",
    "ShippingInfo",
    "StripeGateway",
]
