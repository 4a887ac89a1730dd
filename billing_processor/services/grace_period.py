from datetime import datetime
from typing import Optional
from uuid import UUID
import logging

from sqlalchemy.ext.asyncio import AsyncSession

from billing_processor.crud.entitlement_freeze import entitlement_freeze_crud, EntitlementFreezeCreate
from billing_processor.models.account import Account, SubscriptionTier
from billing_processor.models.base import utcnow
from billing_processor.models.entitlement_freeze import EntitlementFreeze, FreezeReason
from billing_processor.services.tiers import tier_rank

logger = logging.getLogger(__name__)


class GracePeriodHandler:
    """Holds entitlements at the paid tier until the paid period ends.

    Downgrades and cancellations never strip access synchronously. This
    handler only writes the frozen tier and its deadline; demoting the
    entitlements once the deadline passes is the job of the periodic
    reconciliation sweep.
    """

    async def freeze(
        self,
        db: AsyncSession,
        account_id: UUID,
        old_tier: SubscriptionTier,
        new_tier: SubscriptionTier,
        period_end_at: Optional[datetime],
        *,
        reason: FreezeReason,
        external_event_id: Optional[str] = None,
        now: Optional[datetime] = None
    ) -> Optional[EntitlementFreeze]:
        """Write the freeze in the caller's transaction (flush only, no commit).

        new_tier is the tier the account drops to once released; none for a
        cancellation. Returns None when there is nothing to hold: no deadline,
        a deadline already in the past, or an old tier of none.
        """
        now = now or utcnow()
        if old_tier == SubscriptionTier.NONE:
            return None
        if period_end_at is None or period_end_at <= now:
            logger.warning(
                f"[GRACE] No future period end for account {account_id} ({reason.value}), "
                f"entitlements drop to {new_tier.value} immediately"
            )
            return None

        existing = await entitlement_freeze_crud.get_active(db, account_id)
        if existing is not None:
            # Keep holding the highest tier paid for in this period
            frozen_tier = existing.frozen_tier
            if tier_rank(old_tier) > tier_rank(frozen_tier):
                frozen_tier = old_tier
            freeze = await entitlement_freeze_crud.update(
                db,
                db_obj=existing,
                obj_in={
                    "frozen_tier": frozen_tier,
                    "target_tier": new_tier,
                    "reason": reason,
                    "frozen_until": period_end_at,
                    "external_event_id": external_event_id,
                },
                commit=False,
            )
        else:
            freeze = await entitlement_freeze_crud.create(
                db,
                obj_in=EntitlementFreezeCreate(
                    account_id=account_id,
                    frozen_tier=old_tier,
                    target_tier=new_tier,
                    reason=reason,
                    frozen_until=period_end_at,
                    external_event_id=external_event_id,
                ),
                commit=False,
            )

        logger.info(
            f"[GRACE] Account {account_id} entitlements frozen at {freeze.frozen_tier.value} "
            f"until {period_end_at.isoformat()} ({reason.value} to {new_tier.value})"
        )
        return freeze

    async def release(
        self,
        db: AsyncSession,
        account_id: UUID,
        *,
        reason: str,
        now: Optional[datetime] = None
    ) -> Optional[EntitlementFreeze]:
        """Release the unreleased freeze of an account, if any (flush only)"""
        existing = await entitlement_freeze_crud.get_active(db, account_id)
        if existing is None:
            return None
        logger.info(f"[GRACE] Releasing {existing.reason.value} freeze for account {account_id}: {reason}")
        return await entitlement_freeze_crud.update(
            db,
            db_obj=existing,
            obj_in={"released_at": now or utcnow(), "release_reason": reason},
            commit=False,
        )

    async def active_freeze(self, db: AsyncSession, account_id: UUID) -> Optional[EntitlementFreeze]:
        return await entitlement_freeze_crud.get_active(db, account_id)


def effective_tier(
    account: Account,
    freeze: Optional[EntitlementFreeze],
    now: Optional[datetime] = None
) -> SubscriptionTier:
    """Tier the account is entitled to right now, honoring an unexpired freeze"""
    now = now or utcnow()
    if freeze is not None and freeze.released_at is None and now < freeze.frozen_until:
        if tier_rank(freeze.frozen_tier) > tier_rank(account.tier):
            return freeze.frozen_tier
    return account.tier


grace_period_handler = GracePeriodHandler()
