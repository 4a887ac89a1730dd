from fastapi import HTTPException, status


class BillingProcessorError(Exception):
    """Base class for billing event processing errors"""

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class EventRejectedError(BillingProcessorError):
    """Raised by the event verifier when a delivery cannot be trusted or parsed"""


class UnsupportedEventError(BillingProcessorError):
    """Raised for authenticated events whose type this processor does not handle"""

    def __init__(self, provider_type: str):
        super().__init__(f"Unhandled event type: {provider_type}")
        self.provider_type = provider_type


class LedgerUnavailableError(BillingProcessorError):
    """The idempotency ledger could not be read or written; callers must fail closed"""


class WebhookRejected(HTTPException):
    """Client error returned to the sender so that it retries the delivery"""
    def __init__(self, detail: str = "Webhook rejected"):
        super().__init__(status_code=status.HTTP_400_BAD_REQUEST, detail=detail)
