"""Local schemas for the Stripe objects this service reads.

Only the fields we use are declared. Expandable references (customer,
charge, invoice, ...) arrive either as an id string or as an expanded
object; validators normalise both to the id so handlers never branch on it.
"""

from collections.abc import Mapping
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from creditsync.core.exceptions import WebhookValidationError


def to_payload(obj: Any) -> Mapping[str, Any]:
    """Convert a Stripe SDK object (or plain dict) into a mapping."""
    if isinstance(obj, Mapping):
        return obj
    to_dict = getattr(obj, "to_dict", None)
    if callable(to_dict):
        return to_dict()
    raise WebhookValidationError(f"Unsupported Stripe payload type: {type(obj).__name__}")


def _expandable_id(value: Any) -> Any:
    if isinstance(value, Mapping):
        return value.get("id")
    if value is not None and not isinstance(value, str):
        return getattr(value, "id", value)
    return value


class StripeModel(BaseModel):
    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_stripe(cls, obj: Any):
        """Validate a Stripe object at the boundary.

        Raises WebhookValidationError instead of pydantic's ValidationError,
        so malformed payloads land in the non-retryable error class.
        """
        try:
            return cls.model_validate(to_payload(obj))
        except ValidationError as e:
            raise WebhookValidationError(f"Malformed {cls.__name__} payload: {e}") from e


# ─────────────────────────────────────────────────────────────────────────────
# Subscription
# ─────────────────────────────────────────────────────────────────────────────


class StripePrice(StripeModel):
    id: str


class StripeSubscriptionItem(StripeModel):
    id: str | None = None
    price: StripePrice
    # Newer API versions report the period per item instead of on the subscription
    current_period_start: Any = None
    current_period_end: Any = None


class StripeSubscriptionItems(StripeModel):
    data: list[StripeSubscriptionItem] = Field(default_factory=list)


class StripeSubscription(StripeModel):
    id: str
    customer: str
    status: str
    items: StripeSubscriptionItems = Field(default_factory=StripeSubscriptionItems)
    # Left untyped: the sync service validates them and raises its own error
    current_period_start: Any = None
    current_period_end: Any = None
    cancel_at_period_end: bool = False
    canceled_at: int | None = None
    schedule: str | None = None
    latest_invoice: str | None = None
    metadata: dict[str, str] = Field(default_factory=dict)

    @field_validator("customer", "schedule", "latest_invoice", mode="before")
    @classmethod
    def normalise_refs(cls, value: Any) -> Any:
        return _expandable_id(value)

    @model_validator(mode="after")
    def fill_period_from_items(self) -> "StripeSubscription":
        if self.items.data:
            first = self.items.data[0]
            if self.current_period_start is None:
                self.current_period_start = first.current_period_start
            if self.current_period_end is None:
                self.current_period_end = first.current_period_end
        return self

    @property
    def price_id(self) -> str | None:
        return self.items.data[0].price.id if self.items.data else None

    @property
    def item_id(self) -> str | None:
        return self.items.data[0].id if self.items.data else None


# ─────────────────────────────────────────────────────────────────────────────
# Payments
# ─────────────────────────────────────────────────────────────────────────────


class StripeCheckoutSession(StripeModel):
    id: str
    mode: str | None = None
    customer: str | None = None
    subscription: str | None = None
    invoice: str | None = None
    payment_intent: str | None = None
    client_reference_id: str | None = None
    metadata: dict[str, str] = Field(default_factory=dict)

    @field_validator("customer", "subscription", "invoice", "payment_intent", mode="before")
    @classmethod
    def normalise_refs(cls, value: Any) -> Any:
        return _expandable_id(value)

    @property
    def user_id(self) -> str | None:
        return self.metadata.get("user_id") or self.client_reference_id


class StripeCharge(StripeModel):
    id: str
    customer: str | None = None
    invoice: str | None = None
    payment_intent: str | None = None
    amount: int = 0
    amount_refunded: int = 0

    @field_validator("customer", "invoice", "payment_intent", mode="before")
    @classmethod
    def normalise_refs(cls, value: Any) -> Any:
        return _expandable_id(value)


class StripeInvoice(StripeModel):
    id: str
    customer: str | None = None
    subscription: str | None = None
    billing_reason: str | None = None
    amount_paid: int = 0
    parent: dict[str, Any] | None = None

    @field_validator("customer", "subscription", mode="before")
    @classmethod
    def normalise_refs(cls, value: Any) -> Any:
        return _expandable_id(value)

    @model_validator(mode="after")
    def fill_subscription_from_parent(self) -> "StripeInvoice":
        # Newer API versions nest the subscription under parent.subscription_details
        if self.subscription is None and self.parent:
            details = self.parent.get("subscription_details") or {}
            self.subscription = _expandable_id(details.get("subscription"))
        return self


class StripeDispute(StripeModel):
    id: str
    charge: str | None = None
    amount: int = 0
    status: str | None = None
    reason: str | None = None

    @field_validator("charge", mode="before")
    @classmethod
    def normalise_refs(cls, value: Any) -> Any:
        return _expandable_id(value)


# ─────────────────────────────────────────────────────────────────────────────
# Event envelope
# ─────────────────────────────────────────────────────────────────────────────


class StripeEventData(StripeModel):
    object: dict[str, Any]


class StripeEvent(StripeModel):
    id: str
    type: str
    created: int | None = None
    data: StripeEventData

    @property
    def data_object(self) -> dict[str, Any]:
        return self.data.object
