from typing import List, Optional
from uuid import UUID
from datetime import datetime
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select
from pydantic import BaseModel

from billing_processor.crud.base import CRUDBase
from billing_processor.models.subscription_history import SubscriptionHistoryEntry


class SubscriptionHistoryCreate(BaseModel):
    account_id: Optional[UUID] = None
    external_event_id: str
    event_type: str
    lifecycle_event: Optional[str] = None
    previous_tier: Optional[str] = None
    new_tier: Optional[str] = None
    previous_status: Optional[str] = None
    new_status: Optional[str] = None
    outcome: str
    detail: Optional[str] = None
    period_end_at: Optional[datetime] = None


class CRUDSubscriptionHistory(CRUDBase[SubscriptionHistoryEntry, SubscriptionHistoryCreate]):
    """Append-only: exposes create and reads, never update or delete"""

    async def list_for_account(self, db: AsyncSession, account_id: UUID) -> List[SubscriptionHistoryEntry]:
        result = await db.execute(
            select(self.model)
            .where(self.model.account_id == account_id)
            .order_by(self.model.recorded_at.asc())
        )
        return list(result.scalars().all())

    async def list_for_event(self, db: AsyncSession, external_event_id: str) -> List[SubscriptionHistoryEntry]:
        return await self.get_by_field(db, field="external_event_id", value=external_event_id)


subscription_history_crud = CRUDSubscriptionHistory(SubscriptionHistoryEntry)
