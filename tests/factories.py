"""Builders for normalized billing events used across the test suite"""

from datetime import timedelta
from itertools import count
from typing import Dict, Optional

from billing_processor.models.base import utcnow
from billing_processor.schemas.events import parse_billing_event

_ids = count(1)


def next_event_id() -> str:
    return f"evt_test_{next(_ids)}"


def future(days: int = 20):
    return utcnow() + timedelta(days=days)


def _event(event_type: str, payload: Dict, external_id: Optional[str]):
    return parse_billing_event({
        "external_id": external_id or next_event_id(),
        "event_type": event_type,
        "received_at": utcnow(),
        "payload": payload,
    })


def subscription_event(
    event_type: str = "subscription_updated",
    *,
    external_id: Optional[str] = None,
    subscription_ref: str = "sub_base",
    customer_ref: str = "cus_A",
    status: str = "active",
    price_ref: Optional[str] = "price_pro",
    period_end=None,
    metadata: Optional[Dict[str, str]] = None
):
    return _event(
        event_type,
        {
            "subscription_ref": subscription_ref,
            "customer_ref": customer_ref,
            "status": status,
            "price_ref": price_ref,
            "current_period_start": utcnow(),
            "current_period_end": period_end,
            "metadata": metadata or {},
        },
        external_id,
    )


def checkout_event(
    *,
    external_id: Optional[str] = None,
    customer_ref: Optional[str] = "cus_A",
    subscription_ref: Optional[str] = "sub_base",
    price_ref: Optional[str] = "price_pro",
    account_ref: Optional[str] = None,
    customer_email: Optional[str] = None,
    metadata: Optional[Dict[str, str]] = None,
    subscription_status: Optional[str] = "active",
    period_end=None
):
    return _event(
        "checkout_completed",
        {
            "session_ref": f"cs_{next(_ids)}",
            "customer_ref": customer_ref,
            "subscription_ref": subscription_ref,
            "customer_email": customer_email,
            "account_ref": account_ref,
            "price_ref": price_ref,
            "metadata": metadata or {},
            "subscription_status": subscription_status,
            "current_period_start": utcnow(),
            "current_period_end": period_end,
        },
        external_id,
    )


def invoice_event(
    event_type: str = "invoice_paid",
    *,
    external_id: Optional[str] = None,
    customer_ref: str = "cus_A",
    subscription_ref: Optional[str] = "sub_base",
    price_ref: Optional[str] = "price_pro",
    billing_reason: Optional[str] = "subscription_cycle",
    period_end=None
):
    return _event(
        event_type,
        {
            "invoice_ref": f"in_{next(_ids)}",
            "customer_ref": customer_ref,
            "subscription_ref": subscription_ref,
            "price_ref": price_ref,
            "billing_reason": billing_reason,
            "period_start": utcnow(),
            "period_end": period_end,
        },
        external_id,
    )
