# Database models package

from .base import Base
from .account import Account, AccountStatus, SubscriptionTier
from .addon_entitlement import AddonEntitlement, AddonStatus
from .processing_record import ProcessingRecord, ProcessingStatus
from .subscription_history import SubscriptionHistoryEntry, LifecycleEvent, TransitionOutcome
from .entitlement_freeze import EntitlementFreeze, FreezeReason

__all__ = [
    'Base',
    'Account',
    'AccountStatus',
    'SubscriptionTier',
    'AddonEntitlement',
    'AddonStatus',
    'ProcessingRecord',
    'ProcessingStatus',
    'SubscriptionHistoryEntry',
    'LifecycleEvent',
    'TransitionOutcome',
    'EntitlementFreeze',
    'FreezeReason',
]
