from pydantic import BaseModel, Field
from typing import Optional


class WebhookAck(BaseModel):
    """Acknowledgment body returned to the billing provider"""
    received: bool = True
    skipped: Optional[bool] = Field(None, description="Set when the event was intentionally not applied")
    reason: Optional[str] = None


class BillingHealthResponse(BaseModel):
    success: bool
    message: str
    timestamp: str
    price_catalog_version: Optional[str] = None
