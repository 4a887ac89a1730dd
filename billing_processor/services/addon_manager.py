from datetime import datetime
from typing import List, Optional
from uuid import UUID
import logging

from sqlalchemy.ext.asyncio import AsyncSession

from billing_processor.crud.addon_entitlement import addon_entitlement_crud, AddonEntitlementCreate
from billing_processor.models.addon_entitlement import AddonEntitlement, AddonStatus
from billing_processor.models.base import utcnow

logger = logging.getLogger(__name__)

DEFAULT_ADDON_CATEGORY = "custom"


class AddonEntitlementManager:
    """Lifecycle of add-on purchases, fully independent of the base plan.

    All methods write in the caller's transaction (flush only); the state
    machine commits.
    """

    async def upsert(
        self,
        db: AsyncSession,
        account_id: UUID,
        addon_name: str,
        addon_category: Optional[str],
        billing_subscription_ref: Optional[str],
        *,
        billing_price_ref: Optional[str] = None,
        now: Optional[datetime] = None
    ) -> AddonEntitlement:
        """Converge repeated purchases of the same add-on onto a single row"""
        now = now or utcnow()
        existing = await addon_entitlement_crud.get_for_account(db, account_id, addon_name)

        if existing is not None and existing.status == AddonStatus.ACTIVE:
            # Provider re-issued a subscription for an add-on we already grant
            logger.info(f"[ADDON] {addon_name} already active for account {account_id}, updating subscription ref")
            return await addon_entitlement_crud.update(
                db,
                db_obj=existing,
                obj_in={
                    "billing_subscription_ref": billing_subscription_ref,
                    "billing_price_ref": billing_price_ref or existing.billing_price_ref,
                },
                commit=False,
            )

        if existing is not None:
            logger.info(f"[ADDON] Reactivating {existing.status.value} add-on {addon_name} for account {account_id}")
            return await addon_entitlement_crud.update(
                db,
                db_obj=existing,
                obj_in={
                    "status": AddonStatus.ACTIVE,
                    "billing_subscription_ref": billing_subscription_ref,
                    "billing_price_ref": billing_price_ref or existing.billing_price_ref,
                    "activated_at": now,
                    "expires_at": None,
                    "payment_failed_at": None,
                },
                commit=False,
            )

        logger.info(f"[ADDON] Creating add-on entitlement {addon_name} for account {account_id}")
        return await addon_entitlement_crud.create(
            db,
            obj_in=AddonEntitlementCreate(
                account_id=account_id,
                addon_name=addon_name,
                addon_category=addon_category or DEFAULT_ADDON_CATEGORY,
                status=AddonStatus.ACTIVE,
                billing_subscription_ref=billing_subscription_ref,
                billing_price_ref=billing_price_ref,
                activated_at=now,
            ),
            commit=False,
        )

    async def find_by_subscription(self, db: AsyncSession, subscription_ref: Optional[str]) -> List[AddonEntitlement]:
        if not subscription_ref:
            return []
        return await addon_entitlement_crud.get_by_subscription_ref(db, subscription_ref)

    async def cancel_by_subscription(
        self,
        db: AsyncSession,
        subscription_ref: str,
        *,
        now: Optional[datetime] = None
    ) -> List[AddonEntitlement]:
        now = now or utcnow()
        canceled = []
        for addon in await self.find_by_subscription(db, subscription_ref):
            if addon.status == AddonStatus.CANCELED:
                canceled.append(addon)
                continue
            canceled.append(
                await addon_entitlement_crud.update(
                    db,
                    db_obj=addon,
                    obj_in={"status": AddonStatus.CANCELED, "expires_at": now},
                    commit=False,
                )
            )
            logger.info(f"[ADDON] Canceled add-on {addon.addon_name} (subscription {subscription_ref})")
        return canceled

    async def mark_payment(
        self,
        db: AsyncSession,
        subscription_ref: str,
        invoice_ref: str,
        *,
        paid_at: Optional[datetime] = None
    ) -> List[AddonEntitlement]:
        paid_at = paid_at or utcnow()
        updated = []
        for addon in await self.find_by_subscription(db, subscription_ref):
            if addon.status != AddonStatus.ACTIVE:
                continue
            updated.append(
                await addon_entitlement_crud.update(
                    db,
                    db_obj=addon,
                    obj_in={"last_invoice_ref": invoice_ref, "last_payment_at": paid_at, "payment_failed_at": None},
                    commit=False,
                )
            )
        return updated

    async def mark_payment_failed(
        self,
        db: AsyncSession,
        subscription_ref: str,
        *,
        failed_at: Optional[datetime] = None
    ) -> List[AddonEntitlement]:
        failed_at = failed_at or utcnow()
        updated = []
        for addon in await self.find_by_subscription(db, subscription_ref):
            updated.append(
                await addon_entitlement_crud.update(
                    db,
                    db_obj=addon,
                    obj_in={"payment_failed_at": failed_at},
                    commit=False,
                )
            )
            logger.warning(f"[ADDON] Payment failed for add-on {addon.addon_name} (subscription {subscription_ref})")
        return updated


addon_manager = AddonEntitlementManager()
