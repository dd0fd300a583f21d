"""
Exception taxonomy for order payment processing.

Every error carries:
- Error code (for client handling)
- User message (safe to show to users)
- HTTP status code (for API responses)

Nothing raised from here has mutated an order; callers may surface the
error directly.
"""
from enum import Enum
from typing import Any, Dict, Optional


class PaymentSystemError(Exception):
    """Base exception for all payment reconciliation errors."""

    error_code = "payment_error"
    http_status = 500
    default_user_message = "An error occurred. Please try again."

    def __init__(
        self,
        message: str,
        user_message: Optional[str] = None,
        **kwargs: Any,
    ):
        super().__init__(message)
        self.message = message
        self.user_message = user_message or message or self.default_user_message
        self.metadata = kwargs

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dict for API responses"""
        return {
            "error": {
                "code": self.error_code,
                "message": self.user_message,
                "type": self.__class__.__name__,
            }
        }


class ValidationError(PaymentSystemError):
    """Bad or missing input. No side effect was performed."""

    error_code = "validation_error"
    http_status = 400


class AuthenticationError(PaymentSystemError):
    """Caller identity or API key missing."""

    error_code = "authentication_required"
    http_status = 401


class AuthorizationError(PaymentSystemError):
    """Ownership or role mismatch."""

    error_code = "not_authorized"
    http_status = 403


class NotFoundError(PaymentSystemError):
    """Missing order or user record."""

    error_code = "not_found"
    http_status = 404


class StateConflictError(PaymentSystemError):
    """
    A precondition on order state was not met.

    Examples: order already paid, delivery date passed, order cancelled,
    or a conditional update lost a race.
    """

    error_code = "state_conflict"
    http_status = 409


class SignatureInvalid(PaymentSystemError):
    """Webhook authenticity check failed. The event is never processed."""

    error_code = "signature_invalid"
    http_status = 400


class GatewayErrorType(Enum):
    """Classification of gateway errors for retry logic."""

    TRANSIENT = "transient"  # Retry these
    PERMANENT = "permanent"  # Don't retry these
    RATE_LIMIT = "rate_limit"  # Retry with longer backoff


class GatewayError(PaymentSystemError):
    """Network or API failure talking to the payment gateway."""

    error_code = "gateway_error"

    def __init__(
        self,
        message: str,
        error_type: GatewayErrorType = GatewayErrorType.TRANSIENT,
        original_error: Optional[Exception] = None,
        user_message: Optional[str] = None,
    ):
        super().__init__(
            message,
            user_message=user_message or "Payment gateway unavailable. Please retry.",
        )
        self.error_type = error_type
        self.original_error = original_error

    @property
    def retryable(self) -> bool:
        return self.error_type is not GatewayErrorType.PERMANENT

    @property
    def http_status(self) -> int:  # type: ignore[override]
        return 503 if self.retryable else 502
