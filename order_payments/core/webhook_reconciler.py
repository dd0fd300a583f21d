"""
Webhook reconciler for gateway events.

Implements:
- Signature verification through the gateway adapter
- Event deduplication through the idempotency ledger
- Order resolution by authorization id, falling back to event metadata
- State transitions as single conditional updates

Every outcome other than a bad signature is acknowledged, so the gateway
stops redelivering. Errors while updating the order propagate instead, so
the gateway retries.
"""
import time
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import structlog

from order_payments.core.event_ledger import EventLedger
from order_payments.core.exceptions import GatewayError, SignatureInvalid
from order_payments.core.models import OrderSnapshot, PaymentMethod
from order_payments.core.order_store import OrderStore
from order_payments.core.state_machine import Transition, transition_for_event
from order_payments.integrations.gateway_types import GatewayEvent
from order_payments.integrations.stripe_gateway import StripeGateway
from order_payments.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


class WebhookReconciler:
    """
    Applies gateway events to orders with at-most-once business effect.

    Coordinates with the orchestrator only through the Order Store and
    the ledger; it keeps no in-memory state between events.
    """

    def __init__(
        self,
        order_store: OrderStore,
        ledger: EventLedger,
        gateway: StripeGateway,
    ):
        self.order_store = order_store
        self.ledger = ledger
        self.gateway = gateway

    async def handle_event(
        self, raw_body: bytes, signature_header: Optional[str]
    ) -> Dict[str, Any]:
        """
        Verify, deduplicate, resolve and apply one webhook delivery.

        Args:
            raw_body: Exact request bytes as received
            signature_header: Stripe-Signature header value

        Returns:
            Dict[str, Any]: Acknowledgement with the processing status

        Raises:
            SignatureInvalid: If authenticity cannot be established
        """
        start_time = time.time()

        try:
            event = self.gateway.verify_event(raw_body, signature_header)
        except SignatureInvalid:
            metrics.record_signature_failure()
            raise

        result = await self.process_event(event)
        metrics.record_webhook_event(event.type, result["status"], time.time() - start_time)
        return result

    async def process_event(self, event: GatewayEvent) -> Dict[str, Any]:
        """Apply an already verified event."""
        log = logger.bind(event_id=event.id, event_type=event.type, verified=event.verified)
        log.info("processing_webhook_event")

        if await self.ledger.has_processed(event.id):
            log.info("webhook_event_already_processed")
            return self._ack(event, "duplicate")

        transition = transition_for_event(event.type)
        if transition is None:
            log.info("webhook_event_unhandled")
            await self._record(event, "unhandled")
            return self._ack(event, "unhandled")

        order = await self._resolve_order(event)
        if order is None:
            log.warning(
                "webhook_order_unresolved",
                payment_intent_id=event.authorization_id,
                metadata_order_id=event.order_id,
            )
            await self._record(event, "unresolved")
            return self._ack(event, "unresolved")

        applied = await self._apply(event, order, transition)
        status = "applied" if applied else "ignored"
        await self._record(event, f"{status}:{transition.target.value}", order.id)
        return self._ack(event, status, order_id=order.id)

    async def _resolve_order(self, event: GatewayEvent) -> Optional[OrderSnapshot]:
        """
        Find the order an event refers to.

        Looks up by authorization id first. The metadata order id covers
        the window where the event arrives before the orchestrator's write
        of the authorization id has committed.
        """
        authorization_id = event.authorization_id
        if authorization_id:
            order = await self.order_store.get_by_authorization_id(authorization_id)
            if order is not None:
                return order

        if event.order_id:
            try:
                order_uuid = uuid.UUID(event.order_id)
            except (TypeError, ValueError, AttributeError):
                logger.warning("webhook_metadata_order_id_invalid", order_id=event.order_id)
                return None
            order = await self.order_store.get(order_uuid)
            if order is not None:
                logger.info(
                    "webhook_order_resolved_by_metadata",
                    event_id=event.id,
                    order_id=event.order_id,
                    payment_intent_id=authorization_id,
                )
            return order

        return None

    async def _apply(
        self, event: GatewayEvent, order: OrderSnapshot, transition: Transition
    ) -> bool:
        """
        Issue the conditional update for a transition.

        A source-state mismatch is a logged no-op: redeliveries and
        reordered events are expected.
        """
        values: Dict[str, Any] = {"payment_status": transition.target}

        if transition.marks_paid:
            values.update(
                is_paid=True,
                paid_at=datetime.now(timezone.utc),
                payment_method=PaymentMethod.CARD,
            )
            details = await self._payment_details(event)
            if details is not None:
                values["payment_details"] = details
        else:
            values["is_paid"] = False

        if event.type == "payment_intent.payment_failed":
            values["payment_method"] = PaymentMethod.CARD

        updated = await self.order_store.conditional_update(
            order.id,
            expected_statuses=transition.sources,
            values=values,
            confirm_pending_order=transition.marks_paid,
        )

        if updated:
            logger.info(
                "order_payment_transitioned",
                event_id=event.id,
                order_id=str(order.id),
                order_number=order.order_number,
                transition=transition.name,
                new_status=transition.target.value,
            )
        else:
            current = await self.order_store.get(order.id)
            logger.info(
                "order_payment_transition_ignored",
                event_id=event.id,
                order_id=str(order.id),
                transition=transition.name,
                current_status=current.payment_status.value if current else None,
            )
        return updated

    async def _payment_details(self, event: GatewayEvent) -> Optional[Dict[str, str]]:
        """Card brand and last4 for the paid order; best-effort."""
        payment_method_id = event.payment_method_id
        if not payment_method_id:
            return None
        try:
            details = await self.gateway.retrieve_payment_method(payment_method_id)
        except GatewayError as e:
            logger.warning(
                "payment_method_lookup_failed",
                event_id=event.id,
                payment_method_id=payment_method_id,
                error=str(e),
            )
            return None
        return details.to_dict()

    async def _record(
        self, event: GatewayEvent, effect: str, order_id: Optional[uuid.UUID] = None
    ) -> None:
        """
        Record the event in the ledger.

        Runs after the order update. A failure here cannot corrupt the
        order; a later redelivery would hit an idempotent update.
        """
        try:
            await self.ledger.record(event.id, event.type, effect, order_id)
        except Exception as e:
            metrics.record_ledger_write_failure()
            logger.error(
                "ledger_write_failed",
                event_id=event.id,
                effect=effect,
                error=str(e),
            )

    @staticmethod
    def _ack(
        event: GatewayEvent, status: str, order_id: Optional[uuid.UUID] = None
    ) -> Dict[str, Any]:
        return {
            "received": True,
            "status": status,
            "event_id": event.id,
            "event_type": event.type,
            "order_id": str(order_id) if order_id else None,
        }
