from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional
from uuid import UUID

from billing_processor.models.account import AccountStatus, SubscriptionTier
from billing_processor.models.processing_record import ProcessingStatus
from billing_processor.models.subscription_history import LifecycleEvent


class OutcomeStatus(str, Enum):
    APPLIED = "applied"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass(frozen=True)
class TransitionRecord:
    """Old/new base plan values of one transition, as read inside its transaction"""
    lifecycle_event: Optional[LifecycleEvent] = None
    previous_tier: Optional[SubscriptionTier] = None
    new_tier: Optional[SubscriptionTier] = None
    previous_status: Optional[AccountStatus] = None
    new_status: Optional[AccountStatus] = None
    period_end_at: Optional[datetime] = None


@dataclass(frozen=True)
class EntitlementSnapshot:
    tier: SubscriptionTier
    status: AccountStatus


@dataclass(frozen=True)
class Outcome:
    """Result of applying one event's primary effect.

    Business conditions (unknown price, account not found, store rejected the
    write) are values of this type rather than exceptions, so the dispatcher
    can always finalize the ledger with the primary outcome.
    """
    status: OutcomeStatus
    reason: Optional[str] = None
    account_id: Optional[UUID] = None
    transition: Optional[TransitionRecord] = None
    entitlements: Optional[EntitlementSnapshot] = None
    unexpected: bool = False

    @classmethod
    def applied(
        cls,
        account_id: Optional[UUID] = None,
        *,
        transition: Optional[TransitionRecord] = None,
        entitlements: Optional[EntitlementSnapshot] = None,
        reason: Optional[str] = None
    ) -> "Outcome":
        return cls(
            status=OutcomeStatus.APPLIED,
            reason=reason,
            account_id=account_id,
            transition=transition,
            entitlements=entitlements,
        )

    @classmethod
    def skipped(cls, reason: str, account_id: Optional[UUID] = None) -> "Outcome":
        return cls(status=OutcomeStatus.SKIPPED, reason=reason, account_id=account_id)

    @classmethod
    def failed(
        cls,
        reason: str,
        account_id: Optional[UUID] = None,
        *,
        transition: Optional[TransitionRecord] = None,
        unexpected: bool = False
    ) -> "Outcome":
        return cls(
            status=OutcomeStatus.FAILED,
            reason=reason,
            account_id=account_id,
            transition=transition,
            unexpected=unexpected,
        )

    @property
    def ledger_status(self) -> ProcessingStatus:
        return {
            OutcomeStatus.APPLIED: ProcessingStatus.SUCCESS,
            OutcomeStatus.SKIPPED: ProcessingStatus.SKIPPED,
            OutcomeStatus.FAILED: ProcessingStatus.FAILED,
        }[self.status]
