"""
Payment intent orchestrator.

Begins a card payment for an order:
1. Validate order eligibility (each check a distinct rejection)
2. Resolve the user's gateway customer (create and cache on first use)
3. Create a new authorization at the gateway
4. Conditionally write the authorization reference onto the order

A failed precondition aborts before any side effect. Repeated calls on the
same order each create a new authorization and replace the order's
reference; the superseded authorization stays at the gateway until it
expires there.
"""
import time
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import structlog

from order_payments.core.exceptions import (
    AuthorizationError,
    GatewayError,
    NotFoundError,
    StateConflictError,
    ValidationError,
)
from order_payments.core.models import (
    OrderSnapshot,
    OrderStatus,
    PaymentMethod,
    PaymentStatus,
    Requester,
    UserSnapshot,
    as_utc,
    parse_uuid,
)
from order_payments.core.order_store import OrderStore
from order_payments.core.state_machine import AUTHORIZATION_CREATED, SETTLED_STATUSES
from order_payments.core.user_store import UserStore
from order_payments.integrations.gateway_types import CustomerProfile, ShippingInfo
from order_payments.integrations.stripe_gateway import StripeGateway
from order_payments.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

CANCELLABLE_ORDER_STATUSES = frozenset({OrderStatus.PENDING, OrderStatus.CONFIRMED})


class PaymentOrchestrator:
    """
    Creates authorizations for orders and persists the reference.

    Handles the beginPayment flow with ordered precondition checks,
    best-effort customer deduplication and a single conditional order write.
    """

    def __init__(
        self,
        order_store: OrderStore,
        user_store: UserStore,
        gateway: StripeGateway,
        currency: str,
        publishable_key: str = "",
    ):
        """
        Initialize the orchestrator.

        Args:
            order_store: Order Store
            user_store: User Store holding the cached gateway customer id
            gateway: Gateway adapter
            currency: Currency code for authorizations
            publishable_key: Client-side gateway key returned to the caller
        """
        self.order_store = order_store
        self.user_store = user_store
        self.gateway = gateway
        self.currency = currency.lower()
        self.publishable_key = publishable_key

    @staticmethod
    def _check_eligibility(
        order: Optional[OrderSnapshot], user_id: uuid.UUID, now: datetime
    ) -> OrderSnapshot:
        """
        Check beginPayment preconditions in order.

        Raises:
            NotFoundError: Order does not exist
            AuthorizationError: Order belongs to another user
            StateConflictError: Order paid, cancelled, or past its delivery date
        """
        if order is None:
            raise NotFoundError("Order not found")

        if order.user_id != user_id:
            raise AuthorizationError("Not authorized to pay for this order")

        if order.payment_status in SETTLED_STATUSES or order.is_paid:
            raise StateConflictError("Order already paid")

        if order.order_status is OrderStatus.CANCELLED:
            raise StateConflictError("Cannot pay for cancelled order")

        if as_utc(order.delivery_date) < now:
            raise StateConflictError("Delivery date has passed. Please create a new order.")

        return order

    async def _resolve_customer(self, user: UserSnapshot) -> str:
        """
        Return the user's gateway customer id, creating it on first use.

        Concurrent first calls may each create a customer; only the first
        cached id is kept and the others are left unused at the gateway.
        """
        customer = await self.gateway.create_or_get_customer(
            CustomerProfile(
                user_id=str(user.id),
                email=user.email,
                name=user.name,
                phone=user.phone,
                customer_id=user.gateway_customer_id,
            )
        )
        if not customer.created:
            return customer.id
        return await self.user_store.set_gateway_customer_id_if_absent(user.id, customer.id)

    @staticmethod
    def _shipping_for(order: OrderSnapshot, user: UserSnapshot) -> Optional[ShippingInfo]:
        address = order.delivery_address
        if not address:
            return None
        return ShippingInfo(
            name=user.name,
            phone=order.contact_number or user.phone,
            line1=address.get("street"),
            city=address.get("city"),
            state=address.get("state"),
            postal_code=address.get("zip_code") or address.get("postal_code"),
            country=address.get("country"),
        )

    async def begin_payment(self, order_id: Any, user_id: Any) -> Dict[str, Any]:
        """
        Begin a card payment for an order.

        Returns:
            Dict[str, Any]: client secret, authorization id, amount, currency
                and the publishable key

        Raises:
            ValidationError: Malformed ids or a non-positive amount
            NotFoundError: Order or user missing
            AuthorizationError: Order belongs to another user
            StateConflictError: Order not eligible, or changed concurrently
            GatewayError: Gateway call failed (retryable by the caller)
        """
        start_time = time.time()
        order_uuid = parse_uuid(order_id, "order id")
        user_uuid = parse_uuid(user_id, "user id")
        correlation_id = str(uuid.uuid4())

        logger.info(
            "payment_begin_started",
            correlation_id=correlation_id,
            order_id=str(order_uuid),
            user_id=str(user_uuid),
        )

        try:
            order = self._check_eligibility(
                await self.order_store.get(order_uuid),
                user_uuid,
                datetime.now(timezone.utc),
            )
            amount_minor = self.gateway.to_minor_units(order.total_amount, self.currency)
            if amount_minor <= 0:
                raise ValidationError("Order total must be positive to pay by card")

            user = await self.user_store.get(user_uuid)
            if user is None:
                raise NotFoundError("User not found")
        except (ValidationError, NotFoundError, AuthorizationError, StateConflictError) as e:
            logger.warning(
                "payment_begin_rejected",
                correlation_id=correlation_id,
                order_id=str(order_uuid),
                reason=str(e),
                error_code=e.error_code,
            )
            metrics.record_payment_attempt("rejected", self.currency)
            raise

        try:
            customer_id = await self._resolve_customer(user)
            authorization = await self.gateway.create_authorization(
                amount_minor=amount_minor,
                currency=self.currency,
                customer_ref=customer_id,
                metadata={
                    "order_id": str(order.id),
                    "order_number": order.order_number,
                    "user_id": str(user.id),
                },
                shipping=self._shipping_for(order, user),
                description=f"Order #{order.order_number}",
            )
        except GatewayError as e:
            logger.error(
                "payment_begin_gateway_error",
                correlation_id=correlation_id,
                order_id=str(order.id),
                error=str(e),
                error_type=e.error_type.value,
            )
            metrics.record_payment_attempt("gateway_error", self.currency)
            raise

        updated = await self.order_store.conditional_update(
            order.id,
            expected_statuses=AUTHORIZATION_CREATED.sources,
            values={
                "authorization_id": authorization.id,
                "gateway_customer_id": customer_id,
                "payment_status": AUTHORIZATION_CREATED.target,
                "payment_method": PaymentMethod.CARD,
            },
            excluded_order_statuses={OrderStatus.CANCELLED},
        )
        if not updated:
            logger.warning(
                "payment_begin_lost_race",
                correlation_id=correlation_id,
                order_id=str(order.id),
                payment_intent_id=authorization.id,
            )
            await self._discard_authorization(authorization.id)
            metrics.record_payment_attempt("rejected", self.currency)
            raise StateConflictError("Order changed while the payment was being created")

        duration = time.time() - start_time
        metrics.record_payment_attempt("created", self.currency, amount_minor)
        metrics.record_payment_duration(duration)
        logger.info(
            "payment_begun",
            correlation_id=correlation_id,
            order_id=str(order.id),
            order_number=order.order_number,
            payment_intent_id=authorization.id,
            replaced_payment_intent_id=order.authorization_id,
            duration_seconds=duration,
        )

        return {
            "client_secret": authorization.client_secret,
            "authorization_id": authorization.id,
            "publishable_key": self.publishable_key,
            "amount": order.total_amount,
            "currency": authorization.currency,
        }

    async def cancel_order(
        self, order_id: Any, requester: Requester, reason: Optional[str] = None
    ) -> OrderSnapshot:
        """
        Cancel an order on behalf of its owner or an administrator.

        The order status change is one conditional write. An in-flight
        authorization is then cancelled at the gateway best-effort; the
        gateway's canceled event moves the payment to failed through the
        webhook reconciler.

        Raises:
            NotFoundError: Order missing
            AuthorizationError: Requester is neither owner nor admin
            StateConflictError: Order already shipped, cancelled, or paid
        """
        order_uuid = parse_uuid(order_id, "order id")
        order = await self.order_store.get(order_uuid)
        if order is None:
            raise NotFoundError("Order not found")
        if not requester.can_access(order.user_id):
            raise AuthorizationError("Not authorized to cancel this order")
        if order.order_status not in CANCELLABLE_ORDER_STATUSES:
            raise StateConflictError(f"Cannot cancel order in status {order.order_status.value}")
        if order.payment_status in SETTLED_STATUSES:
            raise StateConflictError("Paid orders must be refunded, not cancelled")

        updated = await self.order_store.conditional_update_order_status(
            order.id,
            expected_order_statuses=CANCELLABLE_ORDER_STATUSES,
            excluded_payment_statuses=SETTLED_STATUSES,
            values={
                "order_status": OrderStatus.CANCELLED,
                "cancellation_reason": reason,
            },
        )
        if not updated:
            metrics.record_cancellation("conflict")
            raise StateConflictError("Order changed while it was being cancelled")

        logger.info(
            "order_cancelled",
            order_id=str(order.id),
            order_number=order.order_number,
            by_admin=requester.is_admin,
        )
        metrics.record_cancellation("cancelled")

        if order.authorization_id and order.payment_status is PaymentStatus.PROCESSING:
            await self._discard_authorization(order.authorization_id)

        return await self.order_store.get(order.id)

    async def _discard_authorization(self, authorization_id: str) -> None:
        """Cancel a stray authorization; failure only leaves it to expire."""
        try:
            await self.gateway.cancel_authorization(authorization_id)
        except GatewayError as e:
            logger.warning(
                "authorization_cancel_failed",
                payment_intent_id=authorization_id,
                error=str(e),
            )
