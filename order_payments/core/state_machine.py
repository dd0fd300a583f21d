"""
Order payment state machine.

    pending -> processing -> {paid | failed}
    paid -> refunded

Each transition names the payment statuses it may be applied from. The
stores turn that set into the WHERE clause of a conditional update, so a
transition whose source does not match is a no-op rather than an error.
This keeps the machine safe under event reordering: a late "failed"
event can never regress a paid order.
"""
from dataclasses import dataclass
from typing import Dict, FrozenSet, Optional

from .models import PaymentStatus


@dataclass(frozen=True)
class Transition:
    """A payment status transition and the statuses it is valid from."""

    name: str
    sources: FrozenSet[PaymentStatus]
    target: PaymentStatus
    marks_paid: bool = False

    def allows(self, status: PaymentStatus) -> bool:
        return status in self.sources


# A repeated payment attempt while the previous one is still in flight
# replaces that authorization, so processing is an accepted source here.
AUTHORIZATION_CREATED = Transition(
    name="authorization_created",
    sources=frozenset(
        {PaymentStatus.PENDING, PaymentStatus.FAILED, PaymentStatus.PROCESSING}
    ),
    target=PaymentStatus.PROCESSING,
)

AUTHORIZATION_SUCCEEDED = Transition(
    name="authorization_succeeded",
    sources=frozenset({PaymentStatus.PROCESSING, PaymentStatus.PENDING}),
    target=PaymentStatus.PAID,
    marks_paid=True,
)

AUTHORIZATION_FAILED = Transition(
    name="authorization_failed",
    sources=frozenset({PaymentStatus.PROCESSING}),
    target=PaymentStatus.FAILED,
)

AUTHORIZATION_CANCELED = Transition(
    name="authorization_canceled",
    sources=frozenset({PaymentStatus.PROCESSING, PaymentStatus.PENDING}),
    target=PaymentStatus.FAILED,
)

CHARGE_REFUNDED = Transition(
    name="charge_refunded",
    sources=frozenset({PaymentStatus.PAID}),
    target=PaymentStatus.REFUNDED,
)

EVENT_TRANSITIONS: Dict[str, Transition] = {
    "payment_intent.succeeded": AUTHORIZATION_SUCCEEDED,
    "payment_intent.payment_failed": AUTHORIZATION_FAILED,
    "payment_intent.canceled": AUTHORIZATION_CANCELED,
    "charge.refunded": CHARGE_REFUNDED,
}

# Payment statuses after which no further payment attempt may start.
SETTLED_STATUSES = frozenset({PaymentStatus.PAID, PaymentStatus.REFUNDED})


def transition_for_event(event_type: str) -> Optional[Transition]:
    """Return the transition an event type drives, or None if unhandled."""
    return EVENT_TRANSITIONS.get(event_type)
