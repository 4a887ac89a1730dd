from typing import List, Optional
from uuid import UUID
from datetime import datetime
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, and_
from pydantic import BaseModel

from billing_processor.crud.base import CRUDBase
from billing_processor.models.addon_entitlement import AddonEntitlement, AddonStatus


class AddonEntitlementCreate(BaseModel):
    account_id: UUID
    addon_name: str
    addon_category: str = "custom"
    status: AddonStatus = AddonStatus.ACTIVE
    billing_subscription_ref: Optional[str] = None
    billing_price_ref: Optional[str] = None
    activated_at: datetime


class CRUDAddonEntitlement(CRUDBase[AddonEntitlement, AddonEntitlementCreate]):
    async def get_for_account(
        self, db: AsyncSession, account_id: UUID, addon_name: str
    ) -> Optional[AddonEntitlement]:
        """Get the (single) entitlement row for an account and add-on"""
        result = await db.execute(
            select(self.model).where(
                and_(
                    self.model.account_id == account_id,
                    self.model.addon_name == addon_name,
                )
            )
        )
        return result.scalar_one_or_none()

    async def list_for_account(self, db: AsyncSession, account_id: UUID) -> List[AddonEntitlement]:
        result = await db.execute(
            select(self.model)
            .where(self.model.account_id == account_id)
            .order_by(self.model.addon_name.asc())
        )
        return list(result.scalars().all())

    async def get_by_subscription_ref(self, db: AsyncSession, subscription_ref: str) -> List[AddonEntitlement]:
        """Get add-on rows billed through a provider subscription"""
        return await self.get_by_field(db, field="billing_subscription_ref", value=subscription_ref)


addon_entitlement_crud = CRUDAddonEntitlement(AddonEntitlement)
