"""
Pydantic schemas for API request/response models.
"""
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field


class BeginPaymentResponse(BaseModel):
    """Response schema for beginning a card payment."""

    client_secret: str = Field(..., description="Secret the client uses to confirm the payment")
    authorization_id: str = Field(..., description="Stripe PaymentIntent ID")
    publishable_key: str = Field(default="", description="Stripe publishable key")
    amount: Decimal = Field(..., description="Order total in major units")
    currency: str = Field(..., description="Currency code")

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "client_secret": "pi_3Nx_secret_abc",
                    "authorization_id": "pi_3Nx",
                    "publishable_key": "pk_test_123",
                    "amount": "19.99",
                    "currency": "usd",
                }
            ]
        }
    }


class LocalPaymentState(BaseModel):
    order_id: str
    order_number: str
    payment_status: str
    order_status: str
    payment_method: str
    is_paid: bool
    paid_at: Optional[datetime] = None
    total_amount: Decimal
    currency: str
    payment_details: Optional[Dict[str, Any]] = None


class GatewayPaymentState(BaseModel):
    id: str
    status: str
    amount: Decimal
    currency: str
    created: Optional[int] = None


class PaymentStatusResponse(BaseModel):
    """Local payment state plus the gateway's live view, when there is one."""

    local: LocalPaymentState
    gateway: Optional[GatewayPaymentState] = Field(
        default=None, description="Live authorization state; absent when none was created"
    )


class CancelOrderRequest(BaseModel):
    reason: Optional[str] = Field(default=None, max_length=500, description="Cancellation reason")


class OrderResponse(BaseModel):
    """Response schema for an order after a state change."""

    id: str
    order_number: str
    order_status: str
    payment_status: str
    is_paid: bool
    cancellation_reason: Optional[str] = None


class WebhookResponse(BaseModel):
    """Acknowledgement returned to the gateway."""

    received: bool = True
    status: str = Field(..., description="applied, ignored, duplicate, unresolved or unhandled")
    event_id: str = Field(..., description="Stripe event ID")
    event_type: str = Field(..., description="Stripe event type")
    order_id: Optional[str] = None


class LedgerPurgeRequest(BaseModel):
    retention_days: Optional[int] = Field(
        default=None, gt=3, description="Override the configured retention window"
    )


class LedgerPurgeResponse(BaseModel):
    deleted: int
    retention_days: int


class ConnectivityResponse(BaseModel):
    status: str
    authorization_id: str
    authorization_status: str
    cancelled: bool
    test_mode: bool


class HealthCheckResponse(BaseModel):
    """Response schema for health checks."""

    status: str = Field(..., description="Overall health status (healthy/unhealthy)")
    checks: Optional[Dict[str, Any]] = Field(default=None, description="Individual service checks")
    message: Optional[str] = Field(default=None, description="Status message")
