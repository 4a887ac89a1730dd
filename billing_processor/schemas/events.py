from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator
from typing import Annotated, Any, Dict, Literal, Optional, Union
from datetime import datetime, timezone
from enum import Enum


class EventType(str, Enum):
    CHECKOUT_COMPLETED = "checkout_completed"
    SUBSCRIPTION_CREATED = "subscription_created"
    SUBSCRIPTION_UPDATED = "subscription_updated"
    SUBSCRIPTION_DELETED = "subscription_deleted"
    INVOICE_PAID = "invoice_paid"
    INVOICE_PAYMENT_FAILED = "invoice_payment_failed"


def _naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


class _Payload(BaseModel):
    model_config = ConfigDict(frozen=True)


# Payload shapes
class CheckoutSessionPayload(_Payload):
    session_ref: str
    customer_ref: Optional[str] = None
    subscription_ref: Optional[str] = None
    customer_email: Optional[str] = None
    account_ref: Optional[str] = Field(None, description="Explicit account id (client_reference_id)")
    price_ref: Optional[str] = None
    metadata: Dict[str, str] = Field(default_factory=dict)
    # Filled from the subscription behind the session, when available
    subscription_status: Optional[str] = None
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    trial_start: Optional[datetime] = None
    trial_end: Optional[datetime] = None

    @field_validator("current_period_start", "current_period_end", "trial_start", "trial_end")
    @classmethod
    def normalize_times(cls, value):
        return _naive_utc(value)


class SubscriptionPayload(_Payload):
    subscription_ref: str
    customer_ref: str
    status: str
    price_ref: Optional[str] = None
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    trial_start: Optional[datetime] = None
    trial_end: Optional[datetime] = None
    metadata: Dict[str, str] = Field(default_factory=dict)

    @field_validator("current_period_start", "current_period_end", "trial_start", "trial_end")
    @classmethod
    def normalize_times(cls, value):
        return _naive_utc(value)


class InvoicePayload(_Payload):
    invoice_ref: str
    customer_ref: str
    subscription_ref: Optional[str] = None
    price_ref: Optional[str] = None
    billing_reason: Optional[str] = None
    period_start: Optional[datetime] = None
    period_end: Optional[datetime] = None

    @field_validator("period_start", "period_end")
    @classmethod
    def normalize_times(cls, value):
        return _naive_utc(value)


# Event variants
class _BillingEventBase(BaseModel):
    model_config = ConfigDict(frozen=True)

    external_id: str = Field(..., min_length=1)
    received_at: datetime
    provider_created_at: Optional[datetime] = None

    @field_validator("received_at", "provider_created_at")
    @classmethod
    def normalize_times(cls, value):
        return _naive_utc(value)


class CheckoutCompletedEvent(_BillingEventBase):
    event_type: Literal["checkout_completed"]
    payload: CheckoutSessionPayload


class SubscriptionCreatedEvent(_BillingEventBase):
    event_type: Literal["subscription_created"]
    payload: SubscriptionPayload


class SubscriptionUpdatedEvent(_BillingEventBase):
    event_type: Literal["subscription_updated"]
    payload: SubscriptionPayload


class SubscriptionDeletedEvent(_BillingEventBase):
    event_type: Literal["subscription_deleted"]
    payload: SubscriptionPayload


class InvoicePaidEvent(_BillingEventBase):
    event_type: Literal["invoice_paid"]
    payload: InvoicePayload


class InvoicePaymentFailedEvent(_BillingEventBase):
    event_type: Literal["invoice_payment_failed"]
    payload: InvoicePayload


BillingEvent = Annotated[
    Union[
        CheckoutCompletedEvent,
        SubscriptionCreatedEvent,
        SubscriptionUpdatedEvent,
        SubscriptionDeletedEvent,
        InvoicePaidEvent,
        InvoicePaymentFailedEvent,
    ],
    Field(discriminator="event_type"),
]

billing_event_adapter: TypeAdapter = TypeAdapter(BillingEvent)


def parse_billing_event(data: Dict[str, Any]):
    """Validate a normalized event dict into its BillingEvent variant.

    Raises pydantic.ValidationError when the payload does not fit the shape
    of its event_type.
    """
    return billing_event_adapter.validate_python(data)
