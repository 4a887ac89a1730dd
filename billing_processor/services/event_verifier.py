from typing import Any, Dict, Optional
import json
import logging

import stripe
from pydantic import ValidationError

from billing_processor.core.config import settings
from billing_processor.core.exceptions import EventRejectedError, UnsupportedEventError
from billing_processor.models.base import utcnow
from billing_processor.schemas.events import EventType, parse_billing_event

logger = logging.getLogger(__name__)

# Stripe event type -> BillingEvent type
PROVIDER_EVENT_TYPES = {
    "checkout.session.completed": EventType.CHECKOUT_COMPLETED,
    "customer.subscription.created": EventType.SUBSCRIPTION_CREATED,
    "customer.subscription.updated": EventType.SUBSCRIPTION_UPDATED,
    "customer.subscription.deleted": EventType.SUBSCRIPTION_DELETED,
    "invoice.paid": EventType.INVOICE_PAID,
    "invoice.payment_succeeded": EventType.INVOICE_PAID,
    "invoice.payment_failed": EventType.INVOICE_PAYMENT_FAILED,
}


def _ref(value: Any) -> Optional[str]:
    """Stripe fields hold either an id or the expanded object"""
    if value is None:
        return None
    if isinstance(value, dict):
        return value.get("id")
    return str(value)


def _metadata(obj: Dict[str, Any]) -> Dict[str, str]:
    return {str(k): str(v) for k, v in (obj.get("metadata") or {}).items() if v is not None}


def _first(items: Any) -> Dict[str, Any]:
    data = (items or {}).get("data") or []
    return data[0] if data else {}


def _period(obj: Dict[str, Any], item: Dict[str, Any]):
    """Period window of a subscription; newer API versions only carry it per item"""
    start = obj.get("current_period_start") or item.get("current_period_start")
    end = obj.get("current_period_end") or item.get("current_period_end")
    return start, end


class StripeEventVerifier:
    """Authenticates Stripe webhook deliveries and normalizes them to BillingEvents"""

    def __init__(self, webhook_secret: Optional[str], tolerance: int = 300, stripe_secret: Optional[str] = None):
        self.webhook_secret = webhook_secret
        self.tolerance = tolerance
        self.stripe_secret = stripe_secret
        if stripe_secret:
            stripe.api_key = stripe_secret

    def verify(self, payload: bytes, signature: str):
        if not self.webhook_secret:
            raise EventRejectedError("Webhook secret not configured")

        try:
            stripe.WebhookSignature.verify_header(
                payload.decode("utf-8"), signature, self.webhook_secret, tolerance=self.tolerance
            )
        except stripe.SignatureVerificationError as e:
            logger.warning(f"Rejected webhook with invalid signature: {e}")
            raise EventRejectedError("Invalid Stripe signature") from e
        except UnicodeDecodeError as e:
            raise EventRejectedError("Payload is not valid UTF-8") from e

        try:
            raw = json.loads(payload)
        except json.JSONDecodeError as e:
            raise EventRejectedError("Payload is not valid JSON") from e
        if not isinstance(raw, dict):
            raise EventRejectedError("Payload is not a JSON object")

        event_id = raw.get("id")
        provider_type = raw.get("type")
        if not event_id or not provider_type:
            raise EventRejectedError("Event is missing id or type")

        event_type = PROVIDER_EVENT_TYPES.get(provider_type)
        if event_type is None:
            logger.info(f"Ignoring unhandled event type {provider_type} ({event_id})")
            raise UnsupportedEventError(provider_type)

        obj = (raw.get("data") or {}).get("object") or {}
        if event_type == EventType.CHECKOUT_COMPLETED:
            normalized = self._checkout(obj)
        elif event_type in (EventType.INVOICE_PAID, EventType.INVOICE_PAYMENT_FAILED):
            normalized = self._invoice(obj)
        else:
            normalized = self._subscription(obj)

        try:
            return parse_billing_event({
                "external_id": event_id,
                "event_type": event_type.value,
                "received_at": utcnow(),
                "provider_created_at": raw.get("created"),
                "payload": normalized,
            })
        except ValidationError as e:
            logger.warning(f"Rejected malformed {provider_type} event {event_id}: {e.error_count()} error(s)")
            raise EventRejectedError(f"Malformed {provider_type} event") from e

    def _subscription(self, obj: Dict[str, Any]) -> Dict[str, Any]:
        item = _first(obj.get("items"))
        start, end = _period(obj, item)
        return {
            "subscription_ref": obj.get("id"),
            "customer_ref": _ref(obj.get("customer")),
            "status": obj.get("status"),
            "price_ref": _ref(item.get("price")),
            "current_period_start": start,
            "current_period_end": end,
            "trial_start": obj.get("trial_start"),
            "trial_end": obj.get("trial_end"),
            "metadata": _metadata(obj),
        }

    def _checkout(self, obj: Dict[str, Any]) -> Dict[str, Any]:
        metadata = _metadata(obj)
        subscription_ref = _ref(obj.get("subscription"))
        price_ref = metadata.get("price_id") or _ref(_first(obj.get("line_items")).get("price"))
        customer_details = obj.get("customer_details") or {}

        normalized = {
            "session_ref": obj.get("id"),
            "customer_ref": _ref(obj.get("customer")),
            "subscription_ref": subscription_ref,
            "customer_email": obj.get("customer_email") or customer_details.get("email"),
            "account_ref": obj.get("client_reference_id"),
            "price_ref": price_ref,
            "metadata": metadata,
        }

        subscription = obj.get("subscription") if isinstance(obj.get("subscription"), dict) else None
        if subscription is None and subscription_ref and self.stripe_secret:
            subscription = self._retrieve_subscription(subscription_ref)
        if subscription:
            details = self._subscription(subscription)
            normalized.update({
                "subscription_status": details["status"],
                "current_period_start": details["current_period_start"],
                "current_period_end": details["current_period_end"],
                "trial_start": details["trial_start"],
                "trial_end": details["trial_end"],
            })
            if not normalized["price_ref"]:
                normalized["price_ref"] = details["price_ref"]
        return normalized

    def _retrieve_subscription(self, subscription_ref: str) -> Optional[Dict[str, Any]]:
        try:
            return stripe.Subscription.retrieve(subscription_ref).to_dict()
        except stripe.StripeError as e:
            logger.error(f"Failed to retrieve subscription {subscription_ref}: {e}")
            return None

    def _invoice(self, obj: Dict[str, Any]) -> Dict[str, Any]:
        line = _first(obj.get("lines"))
        subscription_ref = _ref(obj.get("subscription"))
        if not subscription_ref:
            details = (obj.get("parent") or {}).get("subscription_details") or {}
            subscription_ref = _ref(details.get("subscription"))

        price_ref = _ref(line.get("price"))
        if not price_ref:
            pricing = (line.get("pricing") or {}).get("price_details") or {}
            price_ref = _ref(pricing.get("price"))

        period = line.get("period") or {}
        return {
            "invoice_ref": obj.get("id"),
            "customer_ref": _ref(obj.get("customer")),
            "subscription_ref": subscription_ref,
            "price_ref": price_ref,
            "billing_reason": obj.get("billing_reason"),
            "period_start": period.get("start"),
            "period_end": period.get("end"),
        }


def get_event_verifier() -> StripeEventVerifier:
    """FastAPI dependency"""
    return StripeEventVerifier(
        settings.stripe_webhook_secret,
        tolerance=settings.stripe_webhook_tolerance,
        stripe_secret=settings.stripe_secret,
    )
