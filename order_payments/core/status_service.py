"""
Payment status queries.

Returns the local order payment state and, when the order carries an
authorization reference, the gateway's live view of it. Read-only: the
gateway view is never written back to the order.
"""
from typing import Any, Dict

import structlog

from order_payments.core.exceptions import AuthorizationError, NotFoundError
from order_payments.core.models import OrderSnapshot, Requester, parse_uuid
from order_payments.core.order_store import OrderStore
from order_payments.integrations.stripe_gateway import StripeGateway
from order_payments.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


def local_view(order: OrderSnapshot) -> Dict[str, Any]:
    return {
        "order_id": str(order.id),
        "order_number": order.order_number,
        "payment_status": order.payment_status.value,
        "order_status": order.order_status.value,
        "payment_method": order.payment_method.value,
        "is_paid": order.is_paid,
        "paid_at": order.paid_at,
        "total_amount": order.total_amount,
        "currency": order.currency,
        "payment_details": order.payment_details,
    }


class StatusService:
    """Owner/admin view of an order's payment state."""

    def __init__(self, order_store: OrderStore, gateway: StripeGateway):
        self.order_store = order_store
        self.gateway = gateway

    async def get_status(self, order_id: Any, requester: Requester) -> Dict[str, Any]:
        """
        Get the payment status of an order.

        Gateway errors propagate; the local state is not returned alone
        when the live lookup fails.

        Raises:
            NotFoundError: Order missing
            AuthorizationError: Requester is neither owner nor admin
            GatewayError: Live lookup failed
        """
        order_uuid = parse_uuid(order_id, "order id")
        order = await self.order_store.get(order_uuid)
        if order is None:
            raise NotFoundError("Order not found")
        if not requester.can_access(order.user_id):
            raise AuthorizationError("Not authorized to view this order")

        result: Dict[str, Any] = {"local": local_view(order), "gateway": None}

        if not order.authorization_id:
            metrics.record_status_query("local")
            return result

        result["gateway"] = await self._gateway_view(order.authorization_id)
        metrics.record_status_query("gateway")

        if result["gateway"]["status"] == "succeeded" and not order.is_paid:
            logger.info(
                "payment_status_awaiting_webhook",
                order_id=str(order.id),
                payment_intent_id=order.authorization_id,
            )
        return result

    async def _gateway_view(self, authorization_id: str) -> Dict[str, Any]:
        snapshot = await self.gateway.retrieve_authorization(authorization_id)
        return {
            "id": snapshot.id,
            "status": snapshot.status,
            "amount": snapshot.amount,
            "currency": snapshot.currency,
            "created": snapshot.created,
        }
