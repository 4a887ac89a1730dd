from sqlalchemy import Column, String, Integer, Text, DateTime, Enum as SQLEnum, Uuid
import uuid
import enum
from .base import Base, utcnow


class ProcessingStatus(str, enum.Enum):
    """Idempotency ledger status for one externally issued event"""
    PENDING = "pending"
    PROCESSING = "processing"
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"
    DEAD = "dead"


class ProcessingRecord(Base):
    """Idempotency ledger row, keyed by the provider event id"""
    __tablename__ = "processing_records"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4, index=True)
    # Provider event id; the unique constraint is the insert-if-absent linearization point
    external_id = Column(String(255), nullable=False, unique=True, index=True)
    event_type = Column(String(64), nullable=False, index=True)
    status = Column(SQLEnum(ProcessingStatus), default=ProcessingStatus.PENDING, nullable=False, index=True)

    account_id = Column(Uuid, nullable=True, index=True)  # Unknown until processing resolves it
    customer_ref = Column(String(255), nullable=True)
    subscription_ref = Column(String(255), nullable=True)

    error_detail = Column(Text, nullable=True)
    attempts = Column(Integer, default=0, nullable=False)

    first_seen_at = Column(DateTime, default=utcnow, nullable=False)
    last_updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)
    processed_at = Column(DateTime, nullable=True)
