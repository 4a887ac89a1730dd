from sqlalchemy import Column, String, DateTime, ForeignKey, UniqueConstraint, Enum as SQLEnum, Uuid
import uuid
import enum
from .base import Base, TimestampMixin


class AddonStatus(str, enum.Enum):
    """Add-on entitlement lifecycle"""
    ACTIVE = "active"
    CANCELED = "canceled"
    EXPIRED = "expired"


class AddonEntitlement(Base, TimestampMixin):
    """One row per (account, add-on); reactivated in place rather than duplicated"""
    __tablename__ = "addon_entitlements"
    __table_args__ = (
        UniqueConstraint("account_id", "addon_name", name="uq_addon_entitlements_account_addon"),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4, index=True)
    account_id = Column(Uuid, ForeignKey("accounts.id"), nullable=False, index=True)
    addon_name = Column(String(100), nullable=False)
    addon_category = Column(String(100), nullable=False, default="custom")
    status = Column(SQLEnum(AddonStatus), default=AddonStatus.ACTIVE, nullable=False)

    billing_subscription_ref = Column(String(255), nullable=True, index=True)
    billing_price_ref = Column(String(255), nullable=True)

    activated_at = Column(DateTime, nullable=False)
    expires_at = Column(DateTime, nullable=True)

    # Add-on payment markers (never touch the base plan)
    last_invoice_ref = Column(String(255), nullable=True)
    last_payment_at = Column(DateTime, nullable=True)
    payment_failed_at = Column(DateTime, nullable=True)
