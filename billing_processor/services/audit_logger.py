from datetime import datetime
from typing import Optional
from uuid import UUID
import logging

from sqlalchemy.ext.asyncio import async_sessionmaker

from billing_processor.crud.subscription_history import subscription_history_crud, SubscriptionHistoryCreate
from billing_processor.models.subscription_history import SubscriptionHistoryEntry, TransitionOutcome

logger = logging.getLogger(__name__)


def _value(item) -> Optional[str]:
    if item is None:
        return None
    return getattr(item, "value", item)


class AuditLogger:
    """Append-only subscription history.

    Best-effort observability: a failed write is logged and dropped, it never
    rolls back or fails the transition it describes.
    """

    def __init__(self, session_factory: async_sessionmaker):
        self.session_factory = session_factory

    async def record(
        self,
        external_event_id: str,
        event_type: str,
        *,
        account_id: Optional[UUID] = None,
        lifecycle_event=None,
        previous_tier=None,
        new_tier=None,
        previous_status=None,
        new_status=None,
        outcome: TransitionOutcome = TransitionOutcome.APPLIED,
        detail: Optional[str] = None,
        period_end_at: Optional[datetime] = None
    ) -> Optional[SubscriptionHistoryEntry]:
        try:
            async with self.session_factory() as db:
                return await subscription_history_crud.create(
                    db,
                    obj_in=SubscriptionHistoryCreate(
                        account_id=account_id,
                        external_event_id=external_event_id,
                        event_type=_value(event_type),
                        lifecycle_event=_value(lifecycle_event),
                        previous_tier=_value(previous_tier),
                        new_tier=_value(new_tier),
                        previous_status=_value(previous_status),
                        new_status=_value(new_status),
                        outcome=_value(outcome),
                        detail=detail,
                        period_end_at=period_end_at,
                    ),
                )
        except Exception:
            logger.exception(f"[AUDIT] Failed to write subscription history for event {external_event_id}")
            return None
