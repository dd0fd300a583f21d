"""
Tests for webhook reconciliation.
"""
import asyncio
import uuid
from typing import Any

import pytest

from order_payments.core.event_ledger import EventLedger
from order_payments.core.exceptions import GatewayError, SignatureInvalid
from order_payments.core.models import OrderStatus, PaymentMethod, PaymentStatus
from order_payments.core.order_store import OrderStore
from order_payments.core.payment_orchestrator import PaymentOrchestrator
from order_payments.core.webhook_reconciler import WebhookReconciler
from order_payments.integrations import StripeGateway
from tests.helpers import charge_object, intent_object, make_event, sign_payload, signed_event


async def _begin(orchestrator: PaymentOrchestrator, order: Any, user: Any) -> str:
    result = await orchestrator.begin_payment(order.id, user.id)
    return result["authorization_id"]


class TestPaymentSucceeded:
    """Successful payments and redelivery."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_succeeded_marks_order_paid_once(
        self,
        reconciler: WebhookReconciler,
        orchestrator: PaymentOrchestrator,
        order_store: OrderStore,
        ledger: EventLedger,
        order: Any,
        user: Any,
    ) -> None:
        intent_id = await _begin(orchestrator, order, user)
        body, signature = signed_event(
            "payment_intent.succeeded", intent_object(intent_id, "succeeded", order.id), "evt_paid_1"
        )

        result = await reconciler.handle_event(body, signature)

        assert result["status"] == "applied"
        assert result["event_id"] == "evt_paid_1"
        paid = await order_store.get(order.id)
        assert paid.payment_status is PaymentStatus.PAID
        assert paid.is_paid is True
        assert paid.paid_at is not None
        assert paid.order_status is OrderStatus.CONFIRMED
        assert paid.payment_method is PaymentMethod.CARD
        assert paid.payment_details == {"payment_method": "card", "brand": "visa", "last4": "4242"}
        assert (await ledger.get("evt_paid_1")).effect == "applied:paid"

        redelivered = await reconciler.handle_event(body, signature)

        assert redelivered["status"] == "duplicate"
        again = await order_store.get(order.id)
        assert again.version == paid.version
        assert again.paid_at == paid.paid_at

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_payment_details_lookup_failure_is_skipped(
        self,
        reconciler: WebhookReconciler,
        orchestrator: PaymentOrchestrator,
        order_store: OrderStore,
        gateway: Any,
        order: Any,
        user: Any,
    ) -> None:
        intent_id = await _begin(orchestrator, order, user)
        gateway.retrieve_payment_method.side_effect = GatewayError("lookup failed")
        body, signature = signed_event(
            "payment_intent.succeeded", intent_object(intent_id, "succeeded", order.id)
        )

        result = await reconciler.handle_event(body, signature)

        assert result["status"] == "applied"
        paid = await order_store.get(order.id)
        assert paid.is_paid is True
        assert paid.payment_details is None

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_resolves_by_metadata_before_authorization_is_stored(
        self,
        reconciler: WebhookReconciler,
        order_store: OrderStore,
        ledger: EventLedger,
        order: Any,
    ) -> None:
        body, signature = signed_event(
            "payment_intent.succeeded",
            intent_object("pi_not_yet_stored", "succeeded", order.id),
            "evt_early",
        )

        result = await reconciler.handle_event(body, signature)
        redelivered = await reconciler.handle_event(body, signature)

        assert result["status"] == "applied"
        assert result["order_id"] == str(order.id)
        assert redelivered["status"] == "duplicate"
        paid = await order_store.get(order.id)
        assert paid.payment_status is PaymentStatus.PAID
        assert paid.version == 2
        assert await ledger.count() == 1

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_ledger_failure_still_acknowledges(
        self,
        reconciler: WebhookReconciler,
        orchestrator: PaymentOrchestrator,
        order_store: OrderStore,
        ledger: EventLedger,
        order: Any,
        user: Any,
        mocker: Any,
    ) -> None:
        intent_id = await _begin(orchestrator, order, user)
        mocker.patch.object(ledger, "record", side_effect=RuntimeError("ledger unavailable"))
        body, signature = signed_event(
            "payment_intent.succeeded", intent_object(intent_id, "succeeded", order.id)
        )

        result = await reconciler.handle_event(body, signature)

        assert result["received"] is True
        assert result["status"] == "applied"
        assert (await order_store.get(order.id)).is_paid is True


class TestStateTransitions:
    """Refunds, failures and out-of-order events."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_refund_after_payment(
        self,
        reconciler: WebhookReconciler,
        orchestrator: PaymentOrchestrator,
        order_store: OrderStore,
        order: Any,
        user: Any,
    ) -> None:
        intent_id = await _begin(orchestrator, order, user)
        await reconciler.handle_event(
            *signed_event("payment_intent.succeeded", intent_object(intent_id, "succeeded", order.id))
        )

        result = await reconciler.handle_event(
            *signed_event("charge.refunded", charge_object(intent_id))
        )

        assert result["status"] == "applied"
        refunded = await order_store.get(order.id)
        assert refunded.payment_status is PaymentStatus.REFUNDED
        assert refunded.is_paid is False

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_refund_before_payment_is_ignored(
        self,
        reconciler: WebhookReconciler,
        orchestrator: PaymentOrchestrator,
        order_store: OrderStore,
        ledger: EventLedger,
        order: Any,
        user: Any,
    ) -> None:
        intent_id = await _begin(orchestrator, order, user)
        before = await order_store.get(order.id)

        result = await reconciler.handle_event(
            *signed_event("charge.refunded", charge_object(intent_id), "evt_early_refund")
        )

        assert result["status"] == "ignored"
        after = await order_store.get(order.id)
        assert after.payment_status is PaymentStatus.PROCESSING
        assert after.version == before.version
        assert (await ledger.get("evt_early_refund")).effect == "ignored:refunded"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_failed_after_paid_does_not_regress(
        self,
        reconciler: WebhookReconciler,
        orchestrator: PaymentOrchestrator,
        order_store: OrderStore,
        order: Any,
        user: Any,
    ) -> None:
        intent_id = await _begin(orchestrator, order, user)
        await reconciler.handle_event(
            *signed_event("payment_intent.succeeded", intent_object(intent_id, "succeeded", order.id))
        )

        result = await reconciler.handle_event(
            *signed_event(
                "payment_intent.payment_failed",
                intent_object(intent_id, "requires_payment_method", order.id),
            )
        )

        assert result["status"] == "ignored"
        stored = await order_store.get(order.id)
        assert stored.payment_status is PaymentStatus.PAID
        assert stored.is_paid is True

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_payment_failed(
        self,
        reconciler: WebhookReconciler,
        orchestrator: PaymentOrchestrator,
        order_store: OrderStore,
        order: Any,
        user: Any,
    ) -> None:
        intent_id = await _begin(orchestrator, order, user)

        result = await reconciler.handle_event(
            *signed_event(
                "payment_intent.payment_failed",
                intent_object(intent_id, "requires_payment_method", order.id),
            )
        )

        assert result["status"] == "applied"
        stored = await order_store.get(order.id)
        assert stored.payment_status is PaymentStatus.FAILED
        assert stored.is_paid is False

        retry = await orchestrator.begin_payment(order.id, user.id)
        assert (await order_store.get(order.id)).authorization_id == retry["authorization_id"]

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_canceled_authorization_fails_payment(
        self,
        reconciler: WebhookReconciler,
        orchestrator: PaymentOrchestrator,
        order_store: OrderStore,
        order: Any,
        user: Any,
    ) -> None:
        intent_id = await _begin(orchestrator, order, user)

        await reconciler.handle_event(
            *signed_event("payment_intent.canceled", intent_object(intent_id, "canceled", order.id))
        )

        assert (await order_store.get(order.id)).payment_status is PaymentStatus.FAILED


class TestEventRejection:
    """Signature failures and events that map to no order."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_bad_signature_rejected_before_lookup(
        self,
        reconciler: WebhookReconciler,
        order_store: OrderStore,
        ledger: EventLedger,
        order: Any,
        mocker: Any,
    ) -> None:
        lookup = mocker.spy(order_store, "get_by_authorization_id")
        body = make_event("payment_intent.succeeded", intent_object("pi_x", "succeeded", order.id))

        with pytest.raises(SignatureInvalid):
            await reconciler.handle_event(body, sign_payload(body, secret="whsec_wrong"))

        lookup.assert_not_called()
        assert await ledger.count() == 0
        assert (await order_store.get(order.id)).payment_status is PaymentStatus.PENDING

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_missing_signature_rejected(self, reconciler: WebhookReconciler) -> None:
        body = make_event("payment_intent.succeeded", intent_object("pi_x", "succeeded"))

        with pytest.raises(SignatureInvalid):
            await reconciler.handle_event(body, None)

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_tampered_body_rejected(self, reconciler: WebhookReconciler) -> None:
        body = make_event("payment_intent.succeeded", intent_object("pi_x", "succeeded", amount=1999))
        signature = sign_payload(body)

        with pytest.raises(SignatureInvalid):
            await reconciler.handle_event(body.replace(b"1999", b"1"), signature)

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_unresolved_event_is_acknowledged(
        self, reconciler: WebhookReconciler, ledger: EventLedger
    ) -> None:
        result = await reconciler.handle_event(
            *signed_event("payment_intent.succeeded", intent_object("pi_unknown", "succeeded"), "evt_orphan")
        )

        assert result["status"] == "unresolved"
        assert (await ledger.get("evt_orphan")).effect == "unresolved"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_invalid_metadata_order_id_is_unresolved(self, reconciler: WebhookReconciler) -> None:
        obj = intent_object("pi_unknown", "succeeded")
        obj["metadata"] = {"order_id": "not-a-uuid"}

        result = await reconciler.handle_event(*signed_event("payment_intent.succeeded", obj))

        assert result["status"] == "unresolved"

    @pytest.mark.integration
    @pytest.mark.asyncio
    @pytest.mark.parametrize("order_id", [12345, ["not", "a", "uuid"]])
    async def test_non_string_metadata_order_id_is_unresolved(
        self, reconciler: WebhookReconciler, order_id: Any
    ) -> None:
        obj = intent_object("pi_unknown", "succeeded")
        obj["metadata"] = {"order_id": order_id}

        result = await reconciler.handle_event(*signed_event("payment_intent.succeeded", obj))

        assert result["status"] == "unresolved"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_unhandled_event_type_is_acknowledged(
        self, reconciler: WebhookReconciler, ledger: EventLedger
    ) -> None:
        result = await reconciler.handle_event(
            *signed_event("customer.created", {"id": "cus_1", "object": "customer"}, "evt_customer")
        )

        assert result["status"] == "unhandled"
        assert await ledger.has_processed("evt_customer")


class TestLowTrustMode:
    """No signing secret configured."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_unsigned_events_are_processed_unverified(
        self,
        test_settings: Any,
        gateway: Any,
        order_store: OrderStore,
        ledger: EventLedger,
        order: Any,
    ) -> None:
        low_trust = StripeGateway(test_settings.model_copy(update={"stripe_webhook_secret": None}))
        gateway.verify_event.side_effect = low_trust.verify_event
        reconciler = WebhookReconciler(order_store, ledger, gateway)
        body = make_event("payment_intent.succeeded", intent_object("pi_low", "succeeded", order.id))

        event = low_trust.verify_event(body, None)
        result = await reconciler.handle_event(body, None)

        assert event.verified is False
        assert result["status"] == "applied"


class TestConcurrentDelivery:
    """Concurrent copies of the same event."""

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_concurrent_redelivery_applies_once(
        self,
        reconciler: WebhookReconciler,
        orchestrator: PaymentOrchestrator,
        order_store: OrderStore,
        ledger: EventLedger,
        order: Any,
        user: Any,
    ) -> None:
        intent_id = await _begin(orchestrator, order, user)
        before = await order_store.get(order.id)
        body, signature = signed_event(
            "payment_intent.succeeded", intent_object(intent_id, "succeeded", order.id), "evt_twice"
        )

        results = await asyncio.gather(
            reconciler.handle_event(body, signature),
            reconciler.handle_event(body, signature),
        )

        statuses = sorted(result["status"] for result in results)
        assert "applied" in statuses
        assert statuses.count("applied") == 1
        paid = await order_store.get(order.id)
        assert paid.payment_status is PaymentStatus.PAID
        assert paid.version == before.version + 1
        assert await ledger.count() == 1
