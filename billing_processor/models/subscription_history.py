from sqlalchemy import Column, String, Text, DateTime, Uuid
import uuid
import enum
from .base import Base, utcnow


class LifecycleEvent(str, enum.Enum):
    """Audit label attached to a base plan transition"""
    UPGRADE = "upgrade"
    DOWNGRADE = "downgrade"
    CANCEL = "cancel"
    RENEW = "renew"
    RECOVER = "recover"


class TransitionOutcome(str, enum.Enum):
    APPLIED = "applied"
    FAILED = "failed"


class SubscriptionHistoryEntry(Base):
    """Append-only audit row; written for attempted as well as applied transitions"""
    __tablename__ = "subscription_history"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4, index=True)
    account_id = Column(Uuid, nullable=True, index=True)
    external_event_id = Column(String(255), nullable=False, index=True)
    event_type = Column(String(64), nullable=False)
    lifecycle_event = Column(String(32), nullable=True)

    previous_tier = Column(String(32), nullable=True)
    new_tier = Column(String(32), nullable=True)
    previous_status = Column(String(32), nullable=True)
    new_status = Column(String(32), nullable=True)

    outcome = Column(String(16), nullable=False, default=TransitionOutcome.APPLIED.value)
    detail = Column(Text, nullable=True)
    period_end_at = Column(DateTime, nullable=True)
    recorded_at = Column(DateTime, default=utcnow, nullable=False)
