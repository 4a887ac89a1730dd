from sqlalchemy import Column, String, DateTime, Enum as SQLEnum, Uuid
import uuid
import enum
from .base import Base, TimestampMixin


class SubscriptionTier(str, enum.Enum):
    """Base plan tier, ranked none < starter < professional < enterprise"""
    NONE = "none"
    STARTER = "starter"
    PROFESSIONAL = "professional"
    ENTERPRISE = "enterprise"


class AccountStatus(str, enum.Enum):
    """Base plan subscription status"""
    INACTIVE = "inactive"
    TRIALING = "trialing"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    UNPAID = "unpaid"


class Account(Base, TimestampMixin):
    """A paying entity and its base plan state"""
    __tablename__ = "accounts"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4, index=True)
    email = Column(String(320), nullable=True, index=True)  # Fallback lookup for checkout sessions

    # Billing provider references
    billing_customer_ref = Column(String(255), nullable=True, unique=True, index=True)
    billing_subscription_ref = Column(String(255), nullable=True, index=True)
    billing_price_ref = Column(String(255), nullable=True)  # Last base plan price applied

    # Entitlement snapshot: tier + status
    tier = Column(SQLEnum(SubscriptionTier), default=SubscriptionTier.NONE, nullable=False)
    status = Column(SQLEnum(AccountStatus), default=AccountStatus.INACTIVE, nullable=False)

    # Period windows, copied verbatim from provider events
    current_period_start = Column(DateTime, nullable=True)
    current_period_end = Column(DateTime, nullable=True)
    trial_start = Column(DateTime, nullable=True)
    trial_end = Column(DateTime, nullable=True)
