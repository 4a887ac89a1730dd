from datetime import datetime
from typing import Optional, Tuple
from uuid import UUID
import logging

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from billing_processor.crud.account import account_crud
from billing_processor.models.account import Account, AccountStatus, SubscriptionTier
from billing_processor.models.base import utcnow
from billing_processor.models.entitlement_freeze import FreezeReason
from billing_processor.models.subscription_history import LifecycleEvent
from billing_processor.schemas.events import (
    CheckoutCompletedEvent,
    InvoicePaidEvent,
    InvoicePaymentFailedEvent,
    InvoicePayload,
    SubscriptionCreatedEvent,
    SubscriptionDeletedEvent,
    SubscriptionUpdatedEvent,
)
from billing_processor.services.addon_manager import AddonEntitlementManager, addon_manager
from billing_processor.services.grace_period import GracePeriodHandler, effective_tier, grace_period_handler
from billing_processor.services.outcomes import EntitlementSnapshot, Outcome, TransitionRecord
from billing_processor.services.price_classifier import PriceClassification, PriceClassifier
from billing_processor.services.tiers import TIER_RANK, TierChange, compare_tier, map_provider_status, tier_rank  # noqa: F401

logger = logging.getLogger(__name__)

# Statuses an invoice payment brings back to active
RECOVERABLE_STATUSES = frozenset({AccountStatus.PAST_DUE, AccountStatus.UNPAID, AccountStatus.INACTIVE})

# Add-on subscription statuses that end the add-on entitlement
ADDON_ENDING_STATUSES = frozenset({"canceled", "unpaid"})


def _parse_uuid(value: Optional[str]) -> Optional[UUID]:
    if not value:
        return None
    try:
        return UUID(str(value))
    except ValueError:
        return None


def _explicit_account_ref(*candidates: Optional[str]) -> Optional[str]:
    for candidate in candidates:
        if candidate:
            return candidate
    return None


class SubscriptionStateMachine:
    """Applies base plan and add-on transitions derived from billing events.

    Each handler runs its primary effect in one transaction and returns an
    Outcome. Audit history and entitlement sync are left to the dispatcher.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker,
        classifier: PriceClassifier,
        *,
        grace: GracePeriodHandler = grace_period_handler,
        addons: AddonEntitlementManager = addon_manager
    ):
        self.session_factory = session_factory
        self.classifier = classifier
        self.grace = grace
        self.addons = addons

    # ------------------------------------------------------------------
    # Account lookup
    # ------------------------------------------------------------------

    async def _locate_account(
        self,
        db: AsyncSession,
        *,
        account_ref: Optional[str] = None,
        customer_ref: Optional[str] = None,
        email: Optional[str] = None
    ) -> Optional[Account]:
        """Explicit account id first, then customer reference, then e-mail"""
        account_id = _parse_uuid(account_ref)
        if account_id is not None:
            account = await account_crud.get_for_update(db, account_id)
            if account is not None:
                return account
        if customer_ref:
            account = await account_crud.get_by_customer_ref(db, customer_ref, for_update=True)
            if account is not None:
                return account
        if email:
            return await account_crud.get_by_email(db, email, for_update=True)
        return None

    @staticmethod
    def _not_found(what: str, transition: Optional[TransitionRecord] = None) -> Outcome:
        reason = f"account not found for {what}"
        logger.error(f"[STATE] {reason}; leaving billing state untouched for manual reconciliation")
        return Outcome.failed(reason, transition=transition)

    @staticmethod
    async def _store_failure(
        db: AsyncSession,
        error: SQLAlchemyError,
        account_id: Optional[UUID],
        transition: Optional[TransitionRecord]
    ) -> Outcome:
        await db.rollback()
        logger.error(f"[STATE] Store rejected write for account {account_id}: {error}")
        return Outcome.failed(f"store rejected write: {error}", account_id, transition=transition)

    async def _entitlements(self, db: AsyncSession, account: Account) -> EntitlementSnapshot:
        freeze = await self.grace.active_freeze(db, account.id)
        return EntitlementSnapshot(tier=effective_tier(account, freeze), status=account.status)

    # ------------------------------------------------------------------
    # checkout_completed / subscription_created
    # ------------------------------------------------------------------

    async def checkout_completed(self, event: CheckoutCompletedEvent) -> Outcome:
        session = event.payload
        classification = self.classifier.classify(session.price_ref)
        declared_addon = session.metadata.get("kind") == "addon" or session.metadata.get("type") == "addon"

        if classification.is_addon or declared_addon:
            logger.info(
                f"[CHECKOUT] Add-on detected (price kind={classification.kind.value}, "
                f"metadata kind={session.metadata.get('kind')}), routing to add-on manager"
            )
            return await self._addon_checkout(event, classification)

        if not classification.is_base:
            logger.info(f"[CHECKOUT] Unknown price {session.price_ref}, not modifying base plan")
            return Outcome.skipped(f"unknown price {session.price_ref}")

        logger.info(f"[CHECKOUT] Base plan checkout: tier={classification.tier.value}, price={session.price_ref}")
        return await self._activate_base(
            event,
            tier=classification.tier,
            provider_status=session.subscription_status,
            price_ref=session.price_ref,
            customer_ref=session.customer_ref,
            subscription_ref=session.subscription_ref,
            period=(session.current_period_start, session.current_period_end),
            trial=(session.trial_start, session.trial_end),
            account_ref=_explicit_account_ref(
                session.account_ref, session.metadata.get("account_id"), session.metadata.get("user_id")
            ),
            email=session.customer_email,
        )

    async def subscription_created(self, event: SubscriptionCreatedEvent) -> Outcome:
        subscription = event.payload
        classification = self.classifier.classify(subscription.price_ref)

        if classification.is_addon:
            # Add-on entitlements are granted on checkout completion
            return Outcome.skipped("add-on subscription created, no base plan effect")
        if not classification.is_base:
            logger.info(f"[SUB_CREATED] Unknown price {subscription.price_ref} on {subscription.subscription_ref}")
            return Outcome.skipped(f"unknown price {subscription.price_ref}")

        return await self._activate_base(
            event,
            tier=classification.tier,
            provider_status=subscription.status,
            price_ref=subscription.price_ref,
            customer_ref=subscription.customer_ref,
            subscription_ref=subscription.subscription_ref,
            period=(subscription.current_period_start, subscription.current_period_end),
            trial=(subscription.trial_start, subscription.trial_end),
            account_ref=_explicit_account_ref(
                subscription.metadata.get("account_id"), subscription.metadata.get("user_id")
            ),
            prefer_customer_ref=True,
        )

    async def _activate_base(
        self,
        event,
        *,
        tier: SubscriptionTier,
        provider_status: Optional[str],
        price_ref: Optional[str],
        customer_ref: Optional[str],
        subscription_ref: Optional[str],
        period: Tuple[Optional[datetime], Optional[datetime]],
        trial: Tuple[Optional[datetime], Optional[datetime]],
        account_ref: Optional[str] = None,
        email: Optional[str] = None,
        prefer_customer_ref: bool = False
    ) -> Outcome:
        new_status = map_provider_status(provider_status) if provider_status else AccountStatus.ACTIVE
        attempted = TransitionRecord(new_tier=tier, new_status=new_status, period_end_at=period[1])

        async with self.session_factory() as db:
            if prefer_customer_ref:
                account = await self._locate_account(db, customer_ref=customer_ref)
                if account is None:
                    account = await self._locate_account(db, account_ref=account_ref)
            else:
                account = await self._locate_account(
                    db, account_ref=account_ref, customer_ref=customer_ref, email=email
                )
            if account is None:
                return self._not_found(f"customer {customer_ref}", attempted)

            if not provider_status and subscription_ref and subscription_ref == account.billing_subscription_ref:
                # The subscription's own events already set its status
                new_status = account.status
            period_start = period[0] or account.current_period_start
            period_end = period[1] or account.current_period_end

            transition = TransitionRecord(
                previous_tier=account.tier,
                new_tier=tier,
                previous_status=account.status,
                new_status=new_status,
                period_end_at=period_end,
            )
            if customer_ref and account.billing_customer_ref not in (None, customer_ref):
                logger.warning(
                    f"[STATE] Account {account.id} customer ref changes "
                    f"{account.billing_customer_ref} -> {customer_ref}"
                )

            account_id = account.id
            try:
                await account_crud.update(
                    db,
                    db_obj=account,
                    obj_in={
                        "billing_customer_ref": customer_ref or account.billing_customer_ref,
                        "billing_subscription_ref": subscription_ref or account.billing_subscription_ref,
                        "billing_price_ref": price_ref,
                        "tier": tier,
                        "status": new_status,
                        "current_period_start": period_start,
                        "current_period_end": period_end,
                        "trial_start": trial[0] or account.trial_start,
                        "trial_end": trial[1] or account.trial_end,
                    },
                    commit=False,
                )
                # A paid (re)activation supersedes any pending grace period
                await self.grace.release(db, account.id, reason="activated")
                entitlements = await self._entitlements(db, account)
                await db.commit()
            except SQLAlchemyError as e:
                return await self._store_failure(db, e, account_id, transition)

            logger.info(f"[STATE] Account {account.id} activated on {tier.value} ({new_status.value})")
            return Outcome.applied(account.id, transition=transition, entitlements=entitlements)

    async def _addon_checkout(self, event: CheckoutCompletedEvent, classification: PriceClassification) -> Outcome:
        session = event.payload
        addon_name = session.metadata.get("addon_name") or classification.addon_name
        if not addon_name:
            return Outcome.failed(f"add-on checkout {session.session_ref} has no add-on name")

        async with self.session_factory() as db:
            account = await self._locate_account(
                db,
                account_ref=_explicit_account_ref(
                    session.account_ref, session.metadata.get("account_id"), session.metadata.get("user_id")
                ),
                customer_ref=session.customer_ref,
            )
            if account is None:
                return self._not_found(f"add-on checkout {session.session_ref}")

            account_id = account.id
            try:
                await self.addons.upsert(
                    db,
                    account.id,
                    addon_name,
                    session.metadata.get("addon_category"),
                    session.subscription_ref,
                    billing_price_ref=session.price_ref,
                )
                await db.commit()
            except SQLAlchemyError as e:
                return await self._store_failure(db, e, account_id, None)

            return Outcome.applied(account.id, reason=f"add-on {addon_name} active")

    # ------------------------------------------------------------------
    # subscription_updated / subscription_deleted
    # ------------------------------------------------------------------

    async def subscription_updated(self, event: SubscriptionUpdatedEvent) -> Outcome:
        subscription = event.payload
        classification = self.classifier.classify(subscription.price_ref)

        if classification.is_addon:
            logger.info(
                f"[SUB_UPDATED] Add-on subscription {subscription.subscription_ref} updated, not modifying base plan"
            )
            if subscription.status not in ADDON_ENDING_STATUSES:
                return Outcome.skipped("add-on subscription still active")
            return await self._cancel_addons(subscription.subscription_ref)

        if not classification.is_base:
            logger.info(
                f"[SUB_UPDATED] Unknown price {subscription.price_ref} on {subscription.subscription_ref}, "
                f"not modifying base plan"
            )
            return Outcome.skipped(f"unknown price {subscription.price_ref}")

        new_tier = classification.tier
        new_status = map_provider_status(subscription.status)
        period_start, period_end = subscription.current_period_start, subscription.current_period_end

        async with self.session_factory() as db:
            account = await self._locate_account(db, customer_ref=subscription.customer_ref)
            if account is None:
                account = await self._locate_account(
                    db,
                    account_ref=_explicit_account_ref(
                        subscription.metadata.get("account_id"), subscription.metadata.get("user_id")
                    ),
                )
            if account is None:
                return self._not_found(
                    f"customer {subscription.customer_ref}",
                    TransitionRecord(new_tier=new_tier, new_status=new_status, period_end_at=period_end),
                )

            if account.billing_subscription_ref and account.billing_subscription_ref != subscription.subscription_ref:
                logger.info(
                    f"[SUB_UPDATED] Subscription {subscription.subscription_ref} is not the current base plan "
                    f"of account {account.id} ({account.billing_subscription_ref})"
                )
                return Outcome.skipped("updated subscription is not the account's current base plan", account.id)

            old_tier, old_status = account.tier, account.status
            # Without a period in the event the stored period end still bounds the grace period
            freeze_until = period_end or account.current_period_end
            change = compare_tier(old_tier, new_tier)
            lifecycle = {
                TierChange.UPGRADE: LifecycleEvent.UPGRADE,
                TierChange.DOWNGRADE: LifecycleEvent.DOWNGRADE,
                TierChange.SAME: None,
            }[change]
            transition = TransitionRecord(
                lifecycle_event=lifecycle,
                previous_tier=old_tier,
                new_tier=new_tier,
                previous_status=old_status,
                new_status=new_status,
                period_end_at=freeze_until,
            )

            account_id = account.id
            try:
                if change == TierChange.UPGRADE:
                    logger.info(f"[SUB_UPDATED] UPGRADE detected: {old_tier.value} -> {new_tier.value}")
                    freeze = await self.grace.active_freeze(db, account.id)
                    if freeze is not None and tier_rank(freeze.frozen_tier) <= tier_rank(new_tier):
                        await self.grace.release(db, account.id, reason="superseded")
                elif change == TierChange.DOWNGRADE:
                    logger.info(f"[SUB_UPDATED] DOWNGRADE detected: {old_tier.value} -> {new_tier.value}")
                    # Entitlements stay at the old tier until the paid period ends
                    await self.grace.freeze(
                        db,
                        account.id,
                        old_tier,
                        new_tier,
                        freeze_until,
                        reason=FreezeReason.DOWNGRADE,
                        external_event_id=event.external_id,
                    )
                else:
                    logger.info(
                        f"[SUB_UPDATED] Same tier refresh: tier={new_tier.value}, "
                        f"status {old_status.value} -> {new_status.value}"
                    )

                await account_crud.update(
                    db,
                    db_obj=account,
                    obj_in={
                        "billing_subscription_ref": subscription.subscription_ref,
                        "billing_price_ref": subscription.price_ref,
                        "tier": new_tier,
                        "status": new_status,
                        "current_period_start": period_start or account.current_period_start,
                        "current_period_end": period_end or account.current_period_end,
                        "trial_start": subscription.trial_start,
                        "trial_end": subscription.trial_end,
                    },
                    commit=False,
                )
                entitlements = await self._entitlements(db, account)
                await db.commit()
            except SQLAlchemyError as e:
                return await self._store_failure(db, e, account_id, transition)

            return Outcome.applied(account.id, transition=transition, entitlements=entitlements)

    async def subscription_deleted(self, event: SubscriptionDeletedEvent) -> Outcome:
        subscription = event.payload
        classification = self.classifier.classify(subscription.price_ref)

        if classification.is_addon:
            logger.info(
                f"[SUB_DELETED] Add-on subscription {subscription.subscription_ref} deleted, not modifying base plan"
            )
            return await self._cancel_addons(subscription.subscription_ref)

        if not classification.is_base:
            logger.info(
                f"[SUB_DELETED] Unknown price {subscription.price_ref} on {subscription.subscription_ref}, "
                f"not modifying base plan"
            )
            return Outcome.skipped(f"unknown price {subscription.price_ref}")

        now = utcnow()
        period_end = subscription.current_period_end or now

        async with self.session_factory() as db:
            account = await self._locate_account(db, customer_ref=subscription.customer_ref)
            if account is None:
                return self._not_found(
                    f"customer {subscription.customer_ref}",
                    TransitionRecord(
                        lifecycle_event=LifecycleEvent.CANCEL,
                        new_status=AccountStatus.CANCELED,
                        period_end_at=period_end,
                    ),
                )

            if account.billing_subscription_ref and account.billing_subscription_ref != subscription.subscription_ref:
                logger.info(
                    f"[SUB_DELETED] Subscription {subscription.subscription_ref} is not the current base plan "
                    f"of account {account.id} ({account.billing_subscription_ref})"
                )
                return Outcome.skipped("deleted subscription is not the account's current base plan", account.id)

            current_tier = account.tier if account.tier != SubscriptionTier.NONE else classification.tier
            transition = TransitionRecord(
                lifecycle_event=LifecycleEvent.CANCEL,
                previous_tier=account.tier,
                new_tier=current_tier,  # Tier stays until the period ends
                previous_status=account.status,
                new_status=AccountStatus.CANCELED,
                period_end_at=period_end,
            )

            account_id = account.id
            try:
                await self.grace.freeze(
                    db,
                    account.id,
                    current_tier,
                    SubscriptionTier.NONE,
                    period_end,
                    reason=FreezeReason.CANCEL,
                    external_event_id=event.external_id,
                    now=now,
                )
                await account_crud.update(
                    db,
                    db_obj=account,
                    obj_in={"tier": current_tier, "status": AccountStatus.CANCELED},
                    commit=False,
                )
                entitlements = await self._entitlements(db, account)
                await db.commit()
            except SQLAlchemyError as e:
                return await self._store_failure(db, e, account_id, transition)

            logger.info(f"[SUB_DELETED] Account {account.id} canceled, access held until {period_end.isoformat()}")
            return Outcome.applied(account.id, transition=transition, entitlements=entitlements)

    async def _cancel_addons(self, subscription_ref: str) -> Outcome:
        async with self.session_factory() as db:
            addons = await self.addons.find_by_subscription(db, subscription_ref)
            if not addons:
                return Outcome.skipped(f"no add-on entitlement for subscription {subscription_ref}")
            account_id = addons[0].account_id
            try:
                canceled = await self.addons.cancel_by_subscription(db, subscription_ref)
                await db.commit()
            except SQLAlchemyError as e:
                return await self._store_failure(db, e, account_id, None)
            return Outcome.applied(canceled[0].account_id, reason=f"{len(canceled)} add-on(s) canceled")

    # ------------------------------------------------------------------
    # invoices
    # ------------------------------------------------------------------

    async def _resolve_invoice_target(
        self, db: AsyncSession, invoice: InvoicePayload
    ) -> Tuple[str, Optional[Account]]:
        """Decide whether an invoice bills the base plan or an add-on.

        Returns ("base", account), ("addon", None), ("unknown", None) or
        ("missing", None) when the invoice is base plan but no account
        matches. A price that is present but unrecognized is never guessed at.
        """
        classification = self.classifier.classify(invoice.price_ref)
        if classification.is_addon:
            return "addon", None
        if classification.is_base:
            account = await self._locate_account(db, customer_ref=invoice.customer_ref)
            return ("base", account) if account is not None else ("missing", None)
        if invoice.price_ref or not invoice.subscription_ref:
            return "unknown", None

        account = await account_crud.get_by_subscription_ref(db, invoice.subscription_ref)
        if account is not None:
            return "base", await account_crud.get_for_update(db, account.id)
        if await self.addons.find_by_subscription(db, invoice.subscription_ref):
            return "addon", None
        return "unknown", None

    async def invoice_payment_failed(self, event: InvoicePaymentFailedEvent) -> Outcome:
        invoice = event.payload

        async with self.session_factory() as db:
            target, account = await self._resolve_invoice_target(db, invoice)

            if target == "addon":
                logger.info(
                    f"[PAYMENT_FAILED] Add-on subscription {invoice.subscription_ref} payment failed, "
                    f"not marking base plan past_due"
                )
                try:
                    marked = await self.addons.mark_payment_failed(db, invoice.subscription_ref)
                    await db.commit()
                except SQLAlchemyError as e:
                    return await self._store_failure(db, e, None, None)
                if not marked:
                    return Outcome.skipped(f"no add-on entitlement for subscription {invoice.subscription_ref}")
                return Outcome.applied(marked[0].account_id, reason="add-on payment failure recorded")

            if target == "unknown":
                logger.info(f"[PAYMENT_FAILED] Unknown price {invoice.price_ref}, not modifying base plan")
                return Outcome.skipped(f"unknown price {invoice.price_ref}")

            if target == "missing":
                return self._not_found(
                    f"customer {invoice.customer_ref}",
                    TransitionRecord(new_status=AccountStatus.PAST_DUE),
                )

            if account.status == AccountStatus.CANCELED:
                return Outcome.skipped("account already canceled", account.id)

            transition = TransitionRecord(
                previous_tier=account.tier,
                new_tier=account.tier,
                previous_status=account.status,
                new_status=AccountStatus.PAST_DUE,
                period_end_at=account.current_period_end,
            )
            account_id = account.id
            try:
                await account_crud.update(db, db_obj=account, obj_in={"status": AccountStatus.PAST_DUE}, commit=False)
                entitlements = await self._entitlements(db, account)
                await db.commit()
            except SQLAlchemyError as e:
                return await self._store_failure(db, e, account_id, transition)

            logger.info(f"[PAYMENT_FAILED] Base plan payment failed, account {account.id} is past_due")
            return Outcome.applied(account.id, transition=transition, entitlements=entitlements)

    async def invoice_paid(self, event: InvoicePaidEvent) -> Outcome:
        invoice = event.payload

        async with self.session_factory() as db:
            target, account = await self._resolve_invoice_target(db, invoice)

            if target == "addon":
                try:
                    marked = await self.addons.mark_payment(db, invoice.subscription_ref, invoice.invoice_ref)
                    await db.commit()
                except SQLAlchemyError as e:
                    return await self._store_failure(db, e, None, None)
                if not marked:
                    return Outcome.skipped(f"no active add-on for subscription {invoice.subscription_ref}")
                return Outcome.applied(marked[0].account_id, reason=f"{len(marked)} add-on payment(s) recorded")

            if target == "unknown":
                logger.info(f"[INVOICE_PAID] Unknown price {invoice.price_ref}, not modifying base plan")
                return Outcome.skipped(f"unknown price {invoice.price_ref}")

            if target == "missing":
                return self._not_found(
                    f"customer {invoice.customer_ref}",
                    TransitionRecord(new_status=AccountStatus.ACTIVE, period_end_at=invoice.period_end),
                )

            if account.status == AccountStatus.CANCELED:
                return Outcome.skipped("account already canceled", account.id)

            if account.status in RECOVERABLE_STATUSES:
                lifecycle = LifecycleEvent.RECOVER
                new_status = AccountStatus.ACTIVE
            else:
                lifecycle = None if invoice.billing_reason == "subscription_create" else LifecycleEvent.RENEW
                new_status = account.status

            transition = TransitionRecord(
                lifecycle_event=lifecycle,
                previous_tier=account.tier,
                new_tier=account.tier,
                previous_status=account.status,
                new_status=new_status,
                period_end_at=invoice.period_end or account.current_period_end,
            )
            account_id = account.id
            try:
                await account_crud.update(
                    db,
                    db_obj=account,
                    obj_in={
                        "status": new_status,
                        "current_period_start": invoice.period_start or account.current_period_start,
                        "current_period_end": invoice.period_end or account.current_period_end,
                    },
                    commit=False,
                )
                entitlements = await self._entitlements(db, account)
                await db.commit()
            except SQLAlchemyError as e:
                return await self._store_failure(db, e, account_id, transition)

            if lifecycle == LifecycleEvent.RECOVER:
                logger.info(f"[INVOICE_PAID] Account {account.id} recovered from {transition.previous_status.value}")
            return Outcome.applied(account.id, transition=transition, entitlements=entitlements)
