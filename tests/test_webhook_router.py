import importlib
import os
import sys
from unittest.mock import patch

import httpx
import pytest
import pytest_asyncio

from billing_processor.core.exceptions import LedgerUnavailableError
from billing_processor.main import app
from billing_processor.models.account import SubscriptionTier
from billing_processor.services.dispatcher import DispatchKind, DispatchResult, get_dispatcher
from billing_processor.services.event_verifier import StripeEventVerifier, get_event_verifier
from tests.test_event_verifier import SECRET, sign, stripe_event, subscription_object

WEBHOOK_URL = "/api/billing/webhook/stripe"


class StubDispatcher:
    def __init__(self, result=None, error=None):
        self.result = result
        self.error = error
        self.events = []

    async def dispatch(self, event):
        self.events.append(event)
        if self.error is not None:
            raise self.error
        return self.result


@pytest_asyncio.fixture
async def client():
    app.dependency_overrides[get_event_verifier] = lambda: StripeEventVerifier(SECRET)
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
    app.dependency_overrides.clear()


def use_dispatcher(dispatcher):
    app.dependency_overrides[get_dispatcher] = lambda: dispatcher
    return dispatcher


async def post_event(client, body: str, signature=None):
    headers = {"Content-Type": "application/json"}
    if signature is not False:
        headers["stripe-signature"] = signature or sign(body)
    return await client.post(WEBHOOK_URL, content=body, headers=headers)


BODY = stripe_event("customer.subscription.updated", subscription_object())


class TestWebhookResponses:
    @pytest.mark.asyncio
    async def test_only_post_is_allowed(self, client):
        response = await client.get(WEBHOOK_URL)
        assert response.status_code == 405

    @pytest.mark.asyncio
    async def test_missing_signature(self, client):
        use_dispatcher(StubDispatcher(DispatchResult(DispatchKind.PROCESSED)))
        response = await post_event(client, BODY, signature=False)

        assert response.status_code == 400
        assert response.json() == {"detail": "Missing Stripe signature"}

    @pytest.mark.asyncio
    async def test_invalid_signature(self, client):
        dispatcher = use_dispatcher(StubDispatcher(DispatchResult(DispatchKind.PROCESSED)))
        response = await post_event(client, BODY, signature=sign(BODY, secret="whsec_wrong"))

        assert response.status_code == 400
        assert response.json()["detail"] == "Invalid Stripe signature"
        assert dispatcher.events == []

    @pytest.mark.asyncio
    async def test_unsupported_type_is_acknowledged(self, client):
        dispatcher = use_dispatcher(StubDispatcher(DispatchResult(DispatchKind.PROCESSED)))
        response = await post_event(client, stripe_event("customer.created", {"id": "cus_A"}))

        assert response.status_code == 200
        assert response.json() == {
            "received": True,
            "skipped": True,
            "reason": "Unhandled event type: customer.created",
        }
        assert dispatcher.events == []

    @pytest.mark.asyncio
    async def test_processed(self, client):
        dispatcher = use_dispatcher(StubDispatcher(DispatchResult(DispatchKind.PROCESSED)))
        response = await post_event(client, BODY)

        assert response.status_code == 200
        assert response.json() == {"received": True}
        assert dispatcher.events[0].external_id == "evt_1"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("kind", [
        DispatchKind.SKIPPED,
        DispatchKind.DUPLICATE,
        DispatchKind.IN_FLIGHT,
        DispatchKind.DEAD_LETTERED,
    ])
    async def test_acknowledged_without_applying(self, client, kind):
        use_dispatcher(StubDispatcher(DispatchResult(kind, reason="already success")))
        response = await post_event(client, BODY)

        assert response.status_code == 200
        assert response.json() == {"received": True, "skipped": True, "reason": "already success"}

    @pytest.mark.asyncio
    @pytest.mark.parametrize("kind", [DispatchKind.FAILED, DispatchKind.ERROR])
    async def test_failures_ask_for_redelivery(self, client, kind):
        use_dispatcher(StubDispatcher(DispatchResult(kind, reason="account not found for customer cus_A")))
        response = await post_event(client, BODY)

        assert response.status_code == 400
        assert response.json() == {"detail": "account not found for customer cus_A"}

    @pytest.mark.asyncio
    async def test_ledger_outage_fails_closed(self, client):
        use_dispatcher(StubDispatcher(error=LedgerUnavailableError("database is down")))
        response = await post_event(client, BODY)

        assert response.status_code == 400


class TestEndToEnd:
    @pytest.mark.asyncio
    async def test_signed_upgrade_is_applied_once(self, client, dispatcher, make_account, load_account):
        account = await make_account(tier=SubscriptionTier.STARTER, subscription_ref="sub_123")
        use_dispatcher(dispatcher)

        first = await post_event(client, BODY)
        second = await post_event(client, BODY)

        assert first.json() == {"received": True}
        assert second.status_code == 200
        assert second.json()["skipped"] is True
        assert (await load_account(account.id)).tier == SubscriptionTier.PROFESSIONAL


class TestHealth:
    @pytest.mark.asyncio
    async def test_app_health(self, client):
        response = await client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    @pytest.mark.asyncio
    async def test_billing_health(self, client):
        response = await client.get("/api/billing/health")
        body = response.json()
        assert response.status_code == 200
        assert body["success"] is True
        assert "price_catalog_version" in body


class TestStartup:
    def test_dotenv_is_loaded_before_settings(self, monkeypatch):
        monkeypatch.setenv("PRICE_CATALOG_VERSION", "from-environment")
        monkeypatch.delitem(sys.modules, "billing_processor.core.config")
        monkeypatch.delitem(sys.modules, "billing_processor.main")

        def fake_load_dotenv(*args, **kwargs):
            os.environ["PRICE_CATALOG_VERSION"] = "from-dotenv"
            return True

        with patch("dotenv.load_dotenv", side_effect=fake_load_dotenv):
            main = importlib.import_module("billing_processor.main")

        assert main.settings.price_catalog_version == "from-dotenv"
