"""
Stripe gateway adapter with retry logic and error classification.

Implements:
- Exponential backoff for transient errors
- Circuit breaker pattern
- Per-call idempotency keys so retries never double-create
- Webhook signature verification
- Major/minor currency unit conversion

The adapter is constructed explicitly from settings and passes the API key
on every request; it never touches the module-level `stripe.api_key`.
"""
import asyncio
import json
import time
import uuid
from decimal import Decimal
from typing import Any, Callable, Dict, Optional, TypeVar

import stripe
import structlog
from tenacity import (
    AsyncRetrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from order_payments.config import Settings
from order_payments.core.exceptions import (
    GatewayError,
    GatewayErrorType,
    SignatureInvalid,
    ValidationError,
)
from order_payments.integrations.currency import to_major_units, to_minor_units
from order_payments.integrations.gateway_types import (
    AuthorizationRef,
    AuthorizationSnapshot,
    CustomerProfile,
    CustomerRef,
    GatewayEvent,
    PaymentMethodDetails,
    ShippingInfo,
)
from order_payments.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

T = TypeVar("T")


class CircuitBreaker:
    """
    Circuit breaker for gateway calls.

    Prevents cascading failures by temporarily stopping requests
    when consecutive failures exceed a threshold.
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        timeout: int = 60,
        success_threshold: int = 2,
    ):
        """
        Initialize circuit breaker.

        Args:
            failure_threshold: Number of failures before opening circuit
            timeout: Seconds before attempting to close circuit
            success_threshold: Successful calls needed to close circuit
        """
        self.failure_threshold = failure_threshold
        self.timeout = timeout
        self.success_threshold = success_threshold
        self.failure_count = 0
        self.success_count = 0
        self.last_failure_time: Optional[float] = None
        self.state = "closed"  # closed, open, half_open

    def before_call(self) -> None:
        """
        Reject the call if the circuit is open.

        Moves an open circuit to half_open once its timeout has elapsed.

        Raises:
            GatewayError: If circuit is open
        """
        if self.state == "open":
            if (
                self.last_failure_time
                and time.time() - self.last_failure_time > self.timeout
            ):
                self._set_state("half_open")
                self.success_count = 0
                logger.info("circuit_breaker_half_open")
            else:
                raise GatewayError(
                    "Circuit breaker is open",
                    GatewayErrorType.TRANSIENT,
                )

    def record_outcome(self, error: Optional[BaseException] = None) -> None:
        # A declined card says nothing about gateway health.
        if error is None or isinstance(error, stripe.CardError):
            self.on_success()
        else:
            self.on_failure()

    def on_success(self) -> None:
        """Record successful call."""
        self.failure_count = 0
        if self.state == "half_open":
            self.success_count += 1
            if self.success_count >= self.success_threshold:
                self._set_state("closed")
                logger.info("circuit_breaker_closed")

    def on_failure(self) -> None:
        """Record failed call."""
        self.failure_count += 1
        self.last_failure_time = time.time()
        if self.state == "half_open" or self.failure_count >= self.failure_threshold:
            self._set_state("open")
            logger.warning(
                "circuit_breaker_opened",
                failure_count=self.failure_count,
            )

    def _set_state(self, state: str) -> None:
        self.state = state
        metrics.set_circuit_breaker_state(state)


def _is_retryable(error: BaseException) -> bool:
    return isinstance(error, GatewayError) and error.retryable


class StripeGateway:
    """
    Side-effect-isolating wrapper over the Stripe API.

    Features:
    - Automatic retry with exponential backoff for transient failures
    - Circuit breaker pattern
    - Comprehensive error classification
    - Request deadline on every call
    """

    def __init__(self, settings: Settings) -> None:
        """Initialize the gateway adapter from settings."""
        self.settings = settings
        self.currency = settings.currency
        self.circuit_breaker = CircuitBreaker(
            failure_threshold=settings.circuit_breaker_failure_threshold,
            timeout=settings.circuit_breaker_timeout,
        )
        self._request_options: Dict[str, Any] = {
            "api_key": settings.stripe_secret_key,
            "stripe_version": settings.stripe_api_version,
        }

        logger.info(
            "stripe_gateway_initialized",
            api_version=settings.stripe_api_version,
            test_mode=settings.is_test_mode,
            webhook_low_trust=settings.webhook_low_trust,
        )

    @staticmethod
    def _classify_error(error: stripe.StripeError) -> GatewayErrorType:
        """
        Classify Stripe error for retry logic.

        Args:
            error: Stripe error

        Returns:
            GatewayErrorType: Error classification
        """
        if isinstance(error, stripe.RateLimitError):
            return GatewayErrorType.RATE_LIMIT
        elif isinstance(error, (stripe.APIConnectionError, stripe.APIError)):
            return GatewayErrorType.TRANSIENT
        elif isinstance(
            error,
            (
                stripe.CardError,
                stripe.InvalidRequestError,
                stripe.AuthenticationError,
                stripe.PermissionError,
                stripe.IdempotencyError,
            ),
        ):
            return GatewayErrorType.PERMANENT
        else:
            # Unknown errors are treated as transient
            return GatewayErrorType.TRANSIENT

    def _translate_error(self, operation: str, error: stripe.StripeError) -> GatewayError:
        error_type = self._classify_error(error)

        logger.error(
            "stripe_api_error",
            operation=operation,
            error_type=error_type.value,
            error_code=getattr(error, "code", None),
            error_message=str(error),
        )
        metrics.record_gateway_error(error_type.value)

        user_message = None
        if isinstance(error, stripe.CardError):
            user_message = getattr(error, "user_message", None) or str(error)

        return GatewayError(
            message=f"{operation} failed: {error}",
            error_type=error_type,
            original_error=error,
            user_message=user_message,
        )

    async def _call(self, operation: str, func: Callable[[], T]) -> T:
        """
        Run one blocking SDK call in the executor under the circuit breaker.

        Breaker state is only touched on the event loop. The worker thread
        runs the SDK call alone, so a call abandoned after its timeout
        cannot update the breaker when it eventually finishes.
        """
        self.circuit_breaker.before_call()
        loop = asyncio.get_running_loop()
        start_time = time.time()
        try:
            result = await asyncio.wait_for(
                loop.run_in_executor(None, func),
                timeout=self.settings.gateway_timeout_seconds,
            )
        except stripe.StripeError as e:
            self.circuit_breaker.record_outcome(e)
            metrics.record_gateway_call(operation, "error", time.time() - start_time)
            raise self._translate_error(operation, e)
        except asyncio.TimeoutError as e:
            self.circuit_breaker.record_outcome(e)
            metrics.record_gateway_call(operation, "timeout", time.time() - start_time)
            metrics.record_gateway_error(GatewayErrorType.TRANSIENT.value)
            logger.error("stripe_api_timeout", operation=operation)
            raise GatewayError(f"{operation} timed out", GatewayErrorType.TRANSIENT)
        except Exception as e:
            self.circuit_breaker.record_outcome(e)
            raise

        self.circuit_breaker.record_outcome()
        metrics.record_gateway_call(operation, "success", time.time() - start_time)
        return result

    async def _call_with_retry(self, operation: str, func: Callable[[], T]) -> T:
        async for attempt in AsyncRetrying(
            retry=retry_if_exception(_is_retryable),
            stop=stop_after_attempt(self.settings.gateway_retry_max_attempts),
            wait=wait_exponential(multiplier=self.settings.gateway_retry_base_delay, max=16),
            reraise=True,
        ):
            with attempt:
                if attempt.retry_state.attempt_number > 1:
                    logger.info(
                        "stripe_api_retry",
                        operation=operation,
                        attempt=attempt.retry_state.attempt_number,
                    )
                return await self._call(operation, func)
        raise GatewayError(f"{operation} was not attempted")

    def to_minor_units(self, amount: Decimal, currency: Optional[str] = None) -> int:
        return to_minor_units(amount, currency or self.currency)

    def to_major_units(self, amount_minor: int, currency: Optional[str] = None) -> Decimal:
        return to_major_units(amount_minor, currency or self.currency)

    async def create_or_get_customer(self, profile: CustomerProfile) -> CustomerRef:
        """
        Return the cached customer, or create one at the gateway.

        The gateway is authoritative for the customer object; a cached id is
        reused as-is.
        """
        if profile.customer_id:
            return CustomerRef(id=profile.customer_id, created=False)

        logger.info("creating_gateway_customer", user_id=profile.user_id)
        params: Dict[str, Any] = {
            "email": profile.email,
            "name": profile.name,
            "metadata": {"user_id": profile.user_id},
        }
        if profile.phone:
            params["phone"] = profile.phone
        idempotency_key = f"customer-{uuid.uuid4()}"

        customer = await self._call_with_retry(
            "create_customer",
            lambda: stripe.Customer.create(
                idempotency_key=idempotency_key, **self._request_options, **params
            ),
        )
        logger.info("gateway_customer_created", user_id=profile.user_id, customer_id=customer.id)
        return CustomerRef(id=customer.id, created=True)

    async def create_authorization(
        self,
        amount_minor: int,
        currency: str,
        customer_ref: Optional[str],
        metadata: Dict[str, str],
        shipping: Optional[ShippingInfo] = None,
        description: Optional[str] = None,
    ) -> AuthorizationRef:
        """
        Create a new PaymentIntent.

        Every call creates a new authorization. The idempotency key only
        spans the retries of this one call.

        Raises:
            ValidationError: If the amount is not positive
            GatewayError: If creation fails
        """
        if amount_minor <= 0:
            raise ValidationError("Authorization amount must be positive")

        params: Dict[str, Any] = {
            "amount": amount_minor,
            "currency": currency.lower(),
            "metadata": metadata,
            "automatic_payment_methods": {"enabled": True},
        }
        if customer_ref:
            params["customer"] = customer_ref
        if description:
            params["description"] = description
        if shipping is not None:
            params["shipping"] = shipping.to_params()
        idempotency_key = f"authorization-{uuid.uuid4()}"

        logger.info(
            "creating_payment_intent",
            amount_minor=amount_minor,
            currency=currency,
            idempotency_key=idempotency_key,
        )

        intent = await self._call_with_retry(
            "create_authorization",
            lambda: stripe.PaymentIntent.create(
                idempotency_key=idempotency_key, **self._request_options, **params
            ),
        )

        logger.info(
            "payment_intent_created",
            payment_intent_id=intent.id,
            status=intent.status,
        )
        return AuthorizationRef(
            id=intent.id,
            client_secret=intent.client_secret,
            status=intent.status,
            amount_minor=intent.amount,
            currency=intent.currency,
        )

    async def retrieve_authorization(self, authorization_id: str) -> AuthorizationSnapshot:
        """Retrieve a PaymentIntent by ID."""
        logger.info("retrieving_payment_intent", payment_intent_id=authorization_id)

        intent = await self._call_with_retry(
            "retrieve_authorization",
            lambda: stripe.PaymentIntent.retrieve(authorization_id, **self._request_options),
        )
        return self._snapshot(intent)

    async def cancel_authorization(self, authorization_id: str) -> AuthorizationSnapshot:
        """Cancel a PaymentIntent that has not been captured."""
        logger.info("canceling_payment_intent", payment_intent_id=authorization_id)

        intent = await self._call_with_retry(
            "cancel_authorization",
            lambda: stripe.PaymentIntent.cancel(authorization_id, **self._request_options),
        )
        logger.info("payment_intent_canceled", payment_intent_id=intent.id, status=intent.status)
        return self._snapshot(intent)

    async def retrieve_payment_method(self, payment_method_id: str) -> PaymentMethodDetails:
        """Retrieve the card brand and last four digits of a payment method."""
        method = await self._call_with_retry(
            "retrieve_payment_method",
            lambda: stripe.PaymentMethod.retrieve(payment_method_id, **self._request_options),
        )
        card = method.get("card") or {}
        return PaymentMethodDetails(
            type=method.get("type") or "",
            brand=card.get("brand") or "",
            last4=card.get("last4") or "",
        )

    def verify_event(
        self,
        raw_payload: bytes,
        signature_header: Optional[str],
        secret: Optional[str] = None,
    ) -> GatewayEvent:
        """
        Verify a webhook signature and parse the event.

        The signature is computed over the exact raw bytes, so the payload
        must not have been parsed and re-serialized.

        With no signing secret configured the payload is parsed without any
        authenticity proof. That mode fails open and must not be exposed to
        untrusted networks.

        Raises:
            SignatureInvalid: If the signature is missing or does not match
            ValidationError: If the payload is not a gateway event
        """
        webhook_secret = secret if secret is not None else self.settings.stripe_webhook_secret

        if not webhook_secret:
            event = GatewayEvent.from_payload(self._parse_payload(raw_payload), verified=False)
            logger.warning(
                "webhook_unverified_low_trust",
                event_id=event.id,
                event_type=event.type,
            )
            return event

        if not signature_header:
            logger.error("webhook_signature_missing")
            raise SignatureInvalid("Missing Stripe-Signature header")

        try:
            stripe.Webhook.construct_event(
                payload=raw_payload,
                sig_header=signature_header,
                secret=webhook_secret,
                tolerance=self.settings.webhook_tolerance_seconds,
            )
        except stripe.SignatureVerificationError as e:
            logger.error("webhook_signature_verification_failed", error=str(e))
            raise SignatureInvalid(f"Invalid webhook signature: {e}")
        except ValueError as e:
            logger.error("webhook_payload_invalid", error=str(e))
            raise ValidationError(f"Invalid webhook payload: {e}")

        event = GatewayEvent.from_payload(self._parse_payload(raw_payload))
        logger.info(
            "webhook_signature_verified",
            event_id=event.id,
            event_type=event.type,
        )
        return event

    @staticmethod
    def _parse_payload(raw_payload: bytes) -> Dict[str, Any]:
        try:
            payload = json.loads(raw_payload)
        except ValueError as e:
            raise ValidationError(f"Invalid webhook payload: {e}")
        if (
            not isinstance(payload, dict)
            or not isinstance(payload.get("id"), str)
            or not isinstance(payload.get("type"), str)
        ):
            raise ValidationError("Webhook payload is not a gateway event")
        return payload

    async def check_connectivity(self) -> Dict[str, Any]:
        """
        Create a minimal test authorization and cancel it again.

        Cancellation is cleanup only; its failure is logged and ignored.
        """
        authorization = await self.create_authorization(
            amount_minor=100,
            currency=self.currency,
            customer_ref=None,
            metadata={"test": "true"},
            description="Gateway connectivity test",
        )

        cancelled = False
        try:
            await self.cancel_authorization(authorization.id)
            cancelled = True
        except GatewayError as e:
            logger.warning(
                "connectivity_test_cancel_failed",
                payment_intent_id=authorization.id,
                error=str(e),
            )

        return {
            "status": "ok",
            "authorization_id": authorization.id,
            "authorization_status": authorization.status,
            "cancelled": cancelled,
            "test_mode": self.settings.is_test_mode,
        }

    async def ping(self) -> None:
        """Cheapest authenticated call, used by health checks."""
        await self._call("ping", lambda: stripe.Balance.retrieve(**self._request_options))

    def _snapshot(self, intent: Any) -> AuthorizationSnapshot:
        return AuthorizationSnapshot(
            id=intent.id,
            status=intent.status,
            amount_minor=intent.amount,
            currency=intent.currency,
            created=intent.get("created"),
            metadata=dict(intent.get("metadata") or {}),
        )
