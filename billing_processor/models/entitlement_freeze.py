from sqlalchemy import Column, String, DateTime, ForeignKey, Enum as SQLEnum, Uuid
import uuid
import enum
from .base import Base, TimestampMixin
from .account import SubscriptionTier


class FreezeReason(str, enum.Enum):
    DOWNGRADE = "downgrade"
    CANCEL = "cancel"


class EntitlementFreeze(Base, TimestampMixin):
    """Entitlements held at frozen_tier until frozen_until (grace period).

    Released by the external reconciliation sweep once the deadline passes,
    or here when a later paid transition supersedes it.
    """
    __tablename__ = "entitlement_freezes"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4, index=True)
    account_id = Column(Uuid, ForeignKey("accounts.id"), nullable=False, index=True)
    frozen_tier = Column(SQLEnum(SubscriptionTier), nullable=False)
    target_tier = Column(SQLEnum(SubscriptionTier), nullable=False)
    reason = Column(SQLEnum(FreezeReason), nullable=False)
    frozen_until = Column(DateTime, nullable=False)
    external_event_id = Column(String(255), nullable=True)

    released_at = Column(DateTime, nullable=True)
    release_reason = Column(String(100), nullable=True)
