"""Value types exchanged with the payment gateway adapter."""
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field

from order_payments.core.exceptions import ValidationError
from order_payments.integrations.currency import to_major_units


@dataclass(frozen=True)
class CustomerProfile:
    """Customer details forwarded to the gateway when a customer is created."""

    user_id: str
    email: str
    name: str
    phone: Optional[str] = None
    customer_id: Optional[str] = None  # cached id, if the user already has one


@dataclass(frozen=True)
class CustomerRef:
    id: str
    created: bool = False


@dataclass(frozen=True)
class ShippingInfo:
    name: str
    line1: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    postal_code: Optional[str] = None
    country: Optional[str] = None
    phone: Optional[str] = None

    def to_params(self) -> Dict[str, Any]:
        address = {
            "line1": self.line1,
            "city": self.city,
            "state": self.state,
            "postal_code": self.postal_code,
            "country": self.country,
        }
        params: Dict[str, Any] = {
            "name": self.name,
            "address": {k: v for k, v in address.items() if v},
        }
        if self.phone:
            params["phone"] = self.phone
        return params


@dataclass(frozen=True)
class AuthorizationRef:
    """A freshly created authorization. client_secret goes to the front end only."""

    id: str
    client_secret: str
    status: str
    amount_minor: int
    currency: str


@dataclass(frozen=True)
class AuthorizationSnapshot:
    id: str
    status: str
    amount_minor: int
    currency: str
    created: Optional[int] = None
    metadata: Dict[str, str] = field(default_factory=dict)

    @property
    def amount(self) -> Decimal:
        return to_major_units(self.amount_minor, self.currency)


@dataclass(frozen=True)
class PaymentMethodDetails:
    type: str
    brand: str = ""
    last4: str = ""

    def to_dict(self) -> Dict[str, str]:
        return {"payment_method": self.type, "brand": self.brand, "last4": self.last4}


class GatewayEvent(BaseModel):
    """
    A gateway notification, reduced to what reconciliation needs.

    `verified` is False when the event was parsed without a signing secret.
    """

    id: str
    type: str
    data_object: Dict[str, Any] = Field(default_factory=dict)
    created: Optional[int] = None
    livemode: bool = False
    verified: bool = True

    @classmethod
    def from_payload(cls, payload: Dict[str, Any], verified: bool = True) -> "GatewayEvent":
        """
        Raises:
            ValidationError: If `data` or `data.object` is not a JSON object
        """
        data = payload.get("data") or {}
        data_object = (data.get("object") or {}) if isinstance(data, dict) else None
        if not isinstance(data_object, dict):
            raise ValidationError("Webhook payload data.object must be an object")
        return cls(
            id=payload["id"],
            type=payload["type"],
            data_object=data_object,
            created=payload.get("created"),
            livemode=bool(payload.get("livemode", False)),
            verified=verified,
        )

    @property
    def authorization_id(self) -> Optional[str]:
        """The payment intent this event refers to."""
        if self.data_object.get("object") == "payment_intent" or self.type.startswith(
            "payment_intent."
        ):
            value = self.data_object.get("id")
        else:
            value = self.data_object.get("payment_intent")
        if isinstance(value, dict):
            value = value.get("id")
        return value if isinstance(value, str) else None

    @property
    def metadata(self) -> Dict[str, str]:
        metadata = self.data_object.get("metadata")
        return metadata if isinstance(metadata, dict) else {}

    @property
    def order_id(self) -> Optional[str]:
        return self.metadata.get("order_id")

    @property
    def payment_method_id(self) -> Optional[str]:
        payment_method = self.data_object.get("payment_method")
        if isinstance(payment_method, dict):
            return payment_method.get("id")
        return payment_method
