"""
Pytest configuration for billing processor tests.
Every test gets its own SQLite file database through aiosqlite.
"""

import os

# Keep the process-wide engine unconfigured; tests build their own
os.environ["DATABASE_URL"] = ""
os.environ.setdefault("ENVIRONMENT", "test")

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from billing_processor.crud.account import account_crud, AccountCreate
from billing_processor.core.database import init_db
from billing_processor.models import AccountStatus, SubscriptionTier
from billing_processor.services.audit_logger import AuditLogger
from billing_processor.services.dispatcher import BillingEventDispatcher
from billing_processor.services.idempotency_ledger import IdempotencyLedger
from billing_processor.services.price_classifier import PriceCatalog, PriceClassifier
from billing_processor.services.subscription_state_machine import SubscriptionStateMachine


class RecordingSynchronizer:
    """Entitlement synchronizer that remembers every snapshot it was given"""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.calls = []

    async def sync(self, account_id, tier, status):
        self.calls.append((account_id, tier, status))
        if self.fail:
            raise RuntimeError("entitlement service down")


@pytest_asyncio.fixture
async def engine(tmp_path):
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'billing.db'}",
        poolclass=NullPool,
        connect_args={"timeout": 30},
    )
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
def catalog():
    return PriceCatalog(
        version="test-1",
        base_prices={
            "price_starter": SubscriptionTier.STARTER,
            "price_pro": SubscriptionTier.PROFESSIONAL,
            "price_enterprise": SubscriptionTier.ENTERPRISE,
        },
        addon_prices={"price_data_export": "data_export"},
    )


@pytest.fixture
def classifier(catalog):
    return PriceClassifier(catalog)


@pytest.fixture
def synchronizer():
    return RecordingSynchronizer()


@pytest.fixture
def ledger(session_factory):
    return IdempotencyLedger(session_factory, max_failed_attempts=3, stale_after_seconds=900)


@pytest.fixture
def state_machine(session_factory, classifier):
    return SubscriptionStateMachine(session_factory, classifier)


@pytest.fixture
def dispatcher(session_factory, ledger, state_machine, synchronizer):
    return BillingEventDispatcher(
        ledger=ledger,
        state_machine=state_machine,
        audit=AuditLogger(session_factory),
        synchronizer=synchronizer,
    )


@pytest.fixture
def make_account(session_factory):
    async def _make(
        customer_ref="cus_A",
        tier=SubscriptionTier.STARTER,
        status=AccountStatus.ACTIVE,
        subscription_ref="sub_base",
        email=None
    ):
        async with session_factory() as db:
            return await account_crud.create(
                db,
                obj_in=AccountCreate(
                    email=email,
                    billing_customer_ref=customer_ref,
                    billing_subscription_ref=subscription_ref,
                    tier=tier,
                    status=status,
                ),
            )
    return _make


@pytest.fixture
def load_account(session_factory):
    async def _load(account_id):
        async with session_factory() as db:
            return await account_crud.get(db, account_id)
    return _load
