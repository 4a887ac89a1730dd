from typing import Iterable, Optional
from datetime import datetime
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, update, and_
from pydantic import BaseModel

from billing_processor.crud.base import CRUDBase
from billing_processor.models.base import utcnow
from billing_processor.models.processing_record import ProcessingRecord, ProcessingStatus


class ProcessingRecordCreate(BaseModel):
    external_id: str
    event_type: str
    status: ProcessingStatus = ProcessingStatus.PROCESSING
    customer_ref: Optional[str] = None
    subscription_ref: Optional[str] = None
    attempts: int = 1


class CRUDProcessingRecord(CRUDBase[ProcessingRecord, ProcessingRecordCreate]):
    async def get_by_external_id(self, db: AsyncSession, external_id: str) -> Optional[ProcessingRecord]:
        result = await db.execute(select(self.model).where(self.model.external_id == external_id))
        return result.scalar_one_or_none()

    async def claim(
        self,
        db: AsyncSession,
        external_id: str,
        *,
        from_statuses: Iterable[ProcessingStatus],
        touched_before: Optional[datetime] = None
    ) -> bool:
        """Atomically move a record back into processing for a new attempt.

        Only succeeds while the record is still in one of from_statuses (and,
        when touched_before is given, has not been updated since), so two
        deliveries racing for the same record cannot both win.
        """
        conditions = [
            self.model.external_id == external_id,
            self.model.status.in_(list(from_statuses)),
        ]
        if touched_before is not None:
            conditions.append(self.model.last_updated_at < touched_before)

        result = await db.execute(
            update(self.model)
            .where(and_(*conditions))
            .values(
                status=ProcessingStatus.PROCESSING,
                attempts=self.model.attempts + 1,
                error_detail=None,
                last_updated_at=utcnow(),
            )
        )
        await db.commit()
        return result.rowcount == 1

    async def set_status(
        self,
        db: AsyncSession,
        external_id: str,
        *,
        status: ProcessingStatus,
        only_from: Iterable[ProcessingStatus],
        error_detail: Optional[str] = None,
        account_id=None
    ) -> bool:
        """Write a status if the record is currently in one of only_from"""
        now = utcnow()
        values = {
            "status": status,
            "error_detail": error_detail,
            "last_updated_at": now,
            "processed_at": now,
        }
        if account_id is not None:
            values["account_id"] = account_id

        result = await db.execute(
            update(self.model)
            .where(
                and_(
                    self.model.external_id == external_id,
                    self.model.status.in_(list(only_from)),
                )
            )
            .values(**values)
        )
        await db.commit()
        return result.rowcount == 1


processing_record_crud = CRUDProcessingRecord(ProcessingRecord)
