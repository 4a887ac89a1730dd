from typing import Protocol
from uuid import UUID
import logging

import httpx

from billing_processor.core.config import settings
from billing_processor.models.account import AccountStatus, SubscriptionTier

logger = logging.getLogger(__name__)


class EntitlementSynchronizer(Protocol):
    """Derives resource limits from (tier, status); owned outside this service"""

    async def sync(self, account_id: UUID, tier: SubscriptionTier, status: AccountStatus) -> None:
        ...


class LoggingEntitlementSynchronizer:
    """Used when no entitlement service is configured"""

    async def sync(self, account_id: UUID, tier: SubscriptionTier, status: AccountStatus) -> None:
        logger.info(f"[ENTITLEMENTS] account={account_id} tier={tier.value} status={status.value}")


class HttpEntitlementSynchronizer:
    """Pushes the entitlement snapshot to the entitlement service"""

    def __init__(self, url: str, timeout: float = 5.0):
        self.url = url
        self.timeout = timeout

    async def sync(self, account_id: UUID, tier: SubscriptionTier, status: AccountStatus) -> None:
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            response = await client.post(
                self.url,
                json={
                    "account_id": str(account_id),
                    "subscription_tier": tier.value,
                    "subscription_status": status.value,
                },
            )
            response.raise_for_status()
        logger.info(f"[ENTITLEMENTS] Synced account {account_id}: {tier.value}/{status.value}")


def get_entitlement_synchronizer() -> EntitlementSynchronizer:
    if settings.entitlement_sync_url:
        return HttpEntitlementSynchronizer(settings.entitlement_sync_url, timeout=settings.entitlement_sync_timeout)
    return LoggingEntitlementSynchronizer()
