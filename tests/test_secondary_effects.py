"""
Tests for the audit logger and entitlement synchronizers.
Both are best-effort collaborators of the dispatcher.
"""

from unittest.mock import AsyncMock, MagicMock, patch
from uuid import uuid4

import httpx
import pytest
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from billing_processor.crud.subscription_history import subscription_history_crud
from billing_processor.models import AccountStatus, LifecycleEvent, SubscriptionTier, TransitionOutcome
from billing_processor.services import entitlement_sync
from billing_processor.services.audit_logger import AuditLogger
from billing_processor.services.entitlement_sync import (
    HttpEntitlementSynchronizer,
    LoggingEntitlementSynchronizer,
    get_entitlement_synchronizer,
)


class TestAuditLogger:
    @pytest.mark.asyncio
    async def test_records_enum_values(self, session_factory):
        account_id = uuid4()
        entry = await AuditLogger(session_factory).record(
            "evt_1",
            "subscription_updated",
            account_id=account_id,
            lifecycle_event=LifecycleEvent.DOWNGRADE,
            previous_tier=SubscriptionTier.ENTERPRISE,
            new_tier=SubscriptionTier.STARTER,
            previous_status=AccountStatus.ACTIVE,
            new_status=AccountStatus.ACTIVE,
        )

        assert entry is not None
        async with session_factory() as db:
            [stored] = await subscription_history_crud.list_for_account(db, account_id)
        assert stored.lifecycle_event == "downgrade"
        assert (stored.previous_tier, stored.new_tier) == ("enterprise", "starter")
        assert stored.outcome == TransitionOutcome.APPLIED.value

    @pytest.mark.asyncio
    async def test_write_failure_is_swallowed(self, tmp_path):
        engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'missing' / 'audit.db'}")
        try:
            entry = await AuditLogger(async_sessionmaker(engine)).record("evt_1", "invoice_paid")
        finally:
            await engine.dispose()
        assert entry is None


class TestEntitlementSync:
    @pytest.mark.asyncio
    async def test_http_synchronizer_posts_snapshot(self):
        account_id = uuid4()
        mock_resp = MagicMock()
        mock_resp.raise_for_status = MagicMock()

        with patch("httpx.AsyncClient") as MockClient:
            mock_instance = AsyncMock()
            mock_instance.post = AsyncMock(return_value=mock_resp)
            mock_instance.__aenter__ = AsyncMock(return_value=mock_instance)
            mock_instance.__aexit__ = AsyncMock(return_value=False)
            MockClient.return_value = mock_instance

            await HttpEntitlementSynchronizer("https://entitlements.test/sync", timeout=2.0).sync(
                account_id, SubscriptionTier.PROFESSIONAL, AccountStatus.PAST_DUE
            )

        MockClient.assert_called_once_with(timeout=2.0)
        mock_instance.post.assert_awaited_once_with(
            "https://entitlements.test/sync",
            json={
                "account_id": str(account_id),
                "subscription_tier": "professional",
                "subscription_status": "past_due",
            },
        )
        mock_resp.raise_for_status.assert_called_once()

    @pytest.mark.asyncio
    async def test_http_errors_propagate(self):
        request = httpx.Request("POST", "https://entitlements.test/sync")
        mock_resp = MagicMock()
        mock_resp.raise_for_status = MagicMock(
            side_effect=httpx.HTTPStatusError("boom", request=request, response=httpx.Response(503, request=request))
        )

        with patch("httpx.AsyncClient") as MockClient:
            mock_instance = AsyncMock()
            mock_instance.post = AsyncMock(return_value=mock_resp)
            mock_instance.__aenter__ = AsyncMock(return_value=mock_instance)
            mock_instance.__aexit__ = AsyncMock(return_value=False)
            MockClient.return_value = mock_instance

            with pytest.raises(httpx.HTTPStatusError):
                await HttpEntitlementSynchronizer("https://entitlements.test/sync").sync(
                    uuid4(), SubscriptionTier.STARTER, AccountStatus.ACTIVE
                )

    def test_factory_picks_implementation_from_settings(self, monkeypatch):
        monkeypatch.setattr(entitlement_sync.settings, "entitlement_sync_url", "")
        assert isinstance(get_entitlement_synchronizer(), LoggingEntitlementSynchronizer)

        monkeypatch.setattr(entitlement_sync.settings, "entitlement_sync_url", "https://entitlements.test/sync")
        assert isinstance(get_entitlement_synchronizer(), HttpEntitlementSynchronizer)
