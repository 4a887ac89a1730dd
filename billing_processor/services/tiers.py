from enum import Enum
from typing import Optional, Union

from billing_processor.models.account import AccountStatus, SubscriptionTier

TIER_RANK = {
    SubscriptionTier.NONE: 0,
    SubscriptionTier.STARTER: 1,
    SubscriptionTier.PROFESSIONAL: 2,
    SubscriptionTier.ENTERPRISE: 3,
}

# Stripe subscription status -> account status
PROVIDER_STATUS_MAP = {
    "active": AccountStatus.ACTIVE,
    "trialing": AccountStatus.TRIALING,
    "past_due": AccountStatus.PAST_DUE,
    "canceled": AccountStatus.CANCELED,
    "unpaid": AccountStatus.UNPAID,
    "incomplete": AccountStatus.INACTIVE,
    "incomplete_expired": AccountStatus.INACTIVE,
    "paused": AccountStatus.INACTIVE,
}


class TierChange(str, Enum):
    UPGRADE = "upgrade"
    DOWNGRADE = "downgrade"
    SAME = "same"


def tier_rank(tier: Optional[Union[SubscriptionTier, str]]) -> int:
    if tier is None:
        return 0
    return TIER_RANK.get(SubscriptionTier(tier), 0)


def compare_tier(old: Optional[SubscriptionTier], new: Optional[SubscriptionTier]) -> TierChange:
    """Classify a base plan move by tier rank"""
    old_rank, new_rank = tier_rank(old), tier_rank(new)
    if new_rank > old_rank:
        return TierChange.UPGRADE
    if new_rank < old_rank:
        return TierChange.DOWNGRADE
    return TierChange.SAME


def map_provider_status(status: Optional[str]) -> AccountStatus:
    return PROVIDER_STATUS_MAP.get((status or "").lower(), AccountStatus.INACTIVE)
