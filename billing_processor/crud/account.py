from typing import Optional
from uuid import UUID
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, func
from pydantic import BaseModel

from billing_processor.crud.base import CRUDBase
from billing_processor.models.account import Account, AccountStatus, SubscriptionTier


class AccountCreate(BaseModel):
    email: Optional[str] = None
    billing_customer_ref: Optional[str] = None
    billing_subscription_ref: Optional[str] = None
    tier: SubscriptionTier = SubscriptionTier.NONE
    status: AccountStatus = AccountStatus.INACTIVE


class CRUDAccount(CRUDBase[Account, AccountCreate]):
    async def get_for_update(self, db: AsyncSession, account_id: UUID) -> Optional[Account]:
        """Get an account row, locking it for the rest of the transaction where supported"""
        result = await db.execute(
            select(self.model).where(self.model.id == account_id).with_for_update()
        )
        return result.scalar_one_or_none()

    async def get_by_customer_ref(
        self, db: AsyncSession, customer_ref: str, *, for_update: bool = False
    ) -> Optional[Account]:
        """Get account by billing provider customer reference"""
        query = select(self.model).where(self.model.billing_customer_ref == customer_ref)
        if for_update:
            query = query.with_for_update()
        result = await db.execute(query)
        return result.scalar_one_or_none()

    async def get_by_subscription_ref(self, db: AsyncSession, subscription_ref: str) -> Optional[Account]:
        """Get account whose base plan subscription is subscription_ref"""
        result = await db.execute(
            select(self.model)
            .where(self.model.billing_subscription_ref == subscription_ref)
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def get_by_email(self, db: AsyncSession, email: str, *, for_update: bool = False) -> Optional[Account]:
        """Get account by e-mail (case-insensitive)"""
        query = (
            select(self.model)
            .where(func.lower(self.model.email) == email.lower())
            .order_by(self.model.created_at.asc())
            .limit(1)
        )
        if for_update:
            query = query.with_for_update()
        result = await db.execute(query)
        return result.scalar_one_or_none()


account_crud = CRUDAccount(Account)
