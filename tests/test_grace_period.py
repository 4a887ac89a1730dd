from datetime import timedelta
from types import SimpleNamespace

import pytest

from billing_processor.models.account import SubscriptionTier
from billing_processor.models.base import utcnow
from billing_processor.models.entitlement_freeze import FreezeReason
from billing_processor.services.grace_period import effective_tier, grace_period_handler


class TestFreeze:
    @pytest.mark.asyncio
    async def test_freeze_holds_old_tier_until_deadline(self, session_factory, make_account):
        account = await make_account(tier=SubscriptionTier.ENTERPRISE)
        deadline = utcnow() + timedelta(days=10)

        async with session_factory() as db:
            freeze = await grace_period_handler.freeze(
                db, account.id, SubscriptionTier.ENTERPRISE, SubscriptionTier.STARTER, deadline,
                reason=FreezeReason.DOWNGRADE, external_event_id="evt_1",
            )
            await db.commit()

        assert freeze.frozen_tier == SubscriptionTier.ENTERPRISE
        assert freeze.target_tier == SubscriptionTier.STARTER
        assert freeze.frozen_until == deadline

    @pytest.mark.asyncio
    async def test_no_freeze_without_future_deadline(self, session_factory, make_account):
        account = await make_account()
        async with session_factory() as db:
            missing = await grace_period_handler.freeze(
                db, account.id, SubscriptionTier.PROFESSIONAL, SubscriptionTier.STARTER, None,
                reason=FreezeReason.DOWNGRADE,
            )
            past = await grace_period_handler.freeze(
                db, account.id, SubscriptionTier.PROFESSIONAL, SubscriptionTier.STARTER,
                utcnow() - timedelta(days=1), reason=FreezeReason.DOWNGRADE,
            )
            assert await grace_period_handler.active_freeze(db, account.id) is None

        assert missing is None
        assert past is None

    @pytest.mark.asyncio
    async def test_nothing_to_hold_for_tier_none(self, session_factory, make_account):
        account = await make_account(tier=SubscriptionTier.NONE)
        async with session_factory() as db:
            freeze = await grace_period_handler.freeze(
                db, account.id, SubscriptionTier.NONE, SubscriptionTier.NONE,
                utcnow() + timedelta(days=3), reason=FreezeReason.CANCEL,
            )
        assert freeze is None

    @pytest.mark.asyncio
    async def test_second_downgrade_keeps_highest_paid_tier(self, session_factory, make_account):
        account = await make_account(tier=SubscriptionTier.ENTERPRISE)
        deadline = utcnow() + timedelta(days=10)

        async with session_factory() as db:
            await grace_period_handler.freeze(
                db, account.id, SubscriptionTier.ENTERPRISE, SubscriptionTier.PROFESSIONAL, deadline,
                reason=FreezeReason.DOWNGRADE,
            )
            freeze = await grace_period_handler.freeze(
                db, account.id, SubscriptionTier.PROFESSIONAL, SubscriptionTier.STARTER, deadline,
                reason=FreezeReason.DOWNGRADE,
            )
            await db.commit()

        assert freeze.frozen_tier == SubscriptionTier.ENTERPRISE
        assert freeze.target_tier == SubscriptionTier.STARTER

    @pytest.mark.asyncio
    async def test_release(self, session_factory, make_account):
        account = await make_account(tier=SubscriptionTier.PROFESSIONAL)
        async with session_factory() as db:
            await grace_period_handler.freeze(
                db, account.id, SubscriptionTier.PROFESSIONAL, SubscriptionTier.NONE,
                utcnow() + timedelta(days=5), reason=FreezeReason.CANCEL,
            )
            released = await grace_period_handler.release(db, account.id, reason="activated")
            await db.commit()

            assert released.released_at is not None
            assert released.release_reason == "activated"
            assert await grace_period_handler.active_freeze(db, account.id) is None


class TestEffectiveTier:
    def _freeze(self, tier, until, released_at=None):
        return SimpleNamespace(frozen_tier=tier, frozen_until=until, released_at=released_at)

    def test_frozen_tier_applies_before_deadline(self):
        account = SimpleNamespace(tier=SubscriptionTier.STARTER)
        now = utcnow()
        freeze = self._freeze(SubscriptionTier.ENTERPRISE, now + timedelta(hours=1))
        assert effective_tier(account, freeze, now) == SubscriptionTier.ENTERPRISE

    def test_account_tier_applies_after_deadline(self):
        account = SimpleNamespace(tier=SubscriptionTier.STARTER)
        now = utcnow()
        freeze = self._freeze(SubscriptionTier.ENTERPRISE, now - timedelta(seconds=1))
        assert effective_tier(account, freeze, now) == SubscriptionTier.STARTER

    def test_released_freeze_is_ignored(self):
        account = SimpleNamespace(tier=SubscriptionTier.STARTER)
        now = utcnow()
        freeze = self._freeze(SubscriptionTier.ENTERPRISE, now + timedelta(hours=1), released_at=now)
        assert effective_tier(account, freeze, now) == SubscriptionTier.STARTER

    def test_no_freeze(self):
        account = SimpleNamespace(tier=SubscriptionTier.PROFESSIONAL)
        assert effective_tier(account, None) == SubscriptionTier.PROFESSIONAL
