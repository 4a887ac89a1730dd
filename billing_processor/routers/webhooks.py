from fastapi import APIRouter, Depends, Request
from datetime import datetime
import logging

from billing_processor.core.config import settings
from billing_processor.core.exceptions import (
    EventRejectedError,
    LedgerUnavailableError,
    UnsupportedEventError,
    WebhookRejected,
)
from billing_processor.schemas.billing import BillingHealthResponse, WebhookAck
from billing_processor.services.dispatcher import BillingEventDispatcher, DispatchKind, get_dispatcher
from billing_processor.services.event_verifier import StripeEventVerifier, get_event_verifier

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/webhook/stripe", response_model=WebhookAck, response_model_exclude_none=True)
async def stripe_webhook(
    request: Request,
    verifier: StripeEventVerifier = Depends(get_event_verifier),
    dispatcher: BillingEventDispatcher = Depends(get_dispatcher)
):
    """
    Handle Stripe webhook events.

    A 400 response makes Stripe redeliver the event; everything the
    processor has durably decided about (applied, skipped, duplicate,
    dead-lettered) is acknowledged with a 200.
    """
    payload = await request.body()
    signature = request.headers.get("stripe-signature")

    if not signature:
        raise WebhookRejected("Missing Stripe signature")

    try:
        event = verifier.verify(payload, signature)
    except UnsupportedEventError as e:
        return WebhookAck(skipped=True, reason=e.reason)
    except EventRejectedError as e:
        raise WebhookRejected(e.reason)

    try:
        result = await dispatcher.dispatch(event)
    except LedgerUnavailableError as e:
        logger.error(f"Rejecting event {event.external_id}: {e.reason}")
        raise WebhookRejected("Event ledger unavailable, retry later")

    if not result.acknowledged:
        logger.warning(f"Event {event.external_id} not processed ({result.kind.value}): {result.reason}")
        raise WebhookRejected(result.reason or "Webhook processing failed")

    if result.kind == DispatchKind.PROCESSED:
        return WebhookAck()
    return WebhookAck(skipped=True, reason=result.reason or result.kind.value)


@router.get("/health", response_model=BillingHealthResponse)
async def billing_health_check():
    """Check billing service health"""
    return BillingHealthResponse(
        success=True,
        message="Billing event processor is operational",
        timestamp=datetime.utcnow().isoformat(),
        price_catalog_version=settings.price_catalog_version,
    )
