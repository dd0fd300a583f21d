"""Webhook payload builders shared by the test modules."""
import hashlib
import hmac
import json
import time
import uuid
from typing import Any, Dict, Optional

WEBHOOK_SECRET = "whsec_test_fake_secret"


def sign_payload(
    payload: bytes, secret: str = WEBHOOK_SECRET, timestamp: Optional[int] = None
) -> str:
    """Build a Stripe-Signature header the way Stripe signs webhooks."""
    timestamp = timestamp or int(time.time())
    signed = f"{timestamp}.{payload.decode('utf-8')}".encode("utf-8")
    signature = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


def make_event(
    event_type: str,
    data_object: Dict[str, Any],
    event_id: Optional[str] = None,
) -> bytes:
    return json.dumps(
        {
            "id": event_id or f"evt_{uuid.uuid4().hex[:24]}",
            "object": "event",
            "type": event_type,
            "created": int(time.time()),
            "livemode": False,
            "data": {"object": data_object},
        }
    ).encode("utf-8")


def intent_object(
    intent_id: str,
    status: str,
    order_id: Optional[uuid.UUID] = None,
    amount: int = 1999,
    payment_method: Optional[str] = "pm_card_visa",
) -> Dict[str, Any]:
    return {
        "id": intent_id,
        "object": "payment_intent",
        "amount": amount,
        "currency": "usd",
        "status": status,
        "payment_method": payment_method,
        "metadata": {"order_id": str(order_id)} if order_id else {},
    }


def charge_object(
    intent_id: str, order_id: Optional[uuid.UUID] = None, amount: int = 1999
) -> Dict[str, Any]:
    return {
        "id": f"ch_{uuid.uuid4().hex[:24]}",
        "object": "charge",
        "amount": amount,
        "amount_refunded": amount,
        "refunded": True,
        "payment_intent": intent_id,
        "metadata": {"order_id": str(order_id)} if order_id else {},
    }


def signed_event(event_type: str, data_object: Dict[str, Any], event_id: Optional[str] = None):
    """Return (body, signature header) for an event."""
    body = make_event(event_type, data_object, event_id)
    return body, sign_payload(body)
