from typing import Optional
from uuid import UUID
from datetime import datetime
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, and_
from pydantic import BaseModel

from billing_processor.crud.base import CRUDBase
from billing_processor.models.account import SubscriptionTier
from billing_processor.models.entitlement_freeze import EntitlementFreeze, FreezeReason


class EntitlementFreezeCreate(BaseModel):
    account_id: UUID
    frozen_tier: SubscriptionTier
    target_tier: SubscriptionTier
    reason: FreezeReason
    frozen_until: datetime
    external_event_id: Optional[str] = None


class CRUDEntitlementFreeze(CRUDBase[EntitlementFreeze, EntitlementFreezeCreate]):
    async def get_active(self, db: AsyncSession, account_id: UUID) -> Optional[EntitlementFreeze]:
        """Get the unreleased freeze for an account, if any"""
        result = await db.execute(
            select(self.model)
            .where(
                and_(
                    self.model.account_id == account_id,
                    self.model.released_at.is_(None),
                )
            )
            .order_by(self.model.created_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()


entitlement_freeze_crud = CRUDEntitlementFreeze(EntitlementFreeze)
