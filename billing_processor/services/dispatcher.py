from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Dict, Optional
import logging

from billing_processor.core.config import settings
from billing_processor.core.database import get_session_factory
from billing_processor.core.exceptions import LedgerUnavailableError
from billing_processor.models.processing_record import ProcessingStatus
from billing_processor.models.subscription_history import TransitionOutcome
from billing_processor.schemas.events import EventType
from billing_processor.services.audit_logger import AuditLogger
from billing_processor.services.entitlement_sync import EntitlementSynchronizer, get_entitlement_synchronizer
from billing_processor.services.idempotency_ledger import IdempotencyLedger, TERMINAL_STATUSES
from billing_processor.services.outcomes import Outcome, OutcomeStatus
from billing_processor.services.price_classifier import PriceCatalog, PriceClassifier
from billing_processor.services.subscription_state_machine import SubscriptionStateMachine

logger = logging.getLogger(__name__)


class DispatchKind(str, Enum):
    PROCESSED = "processed"
    SKIPPED = "skipped"
    DUPLICATE = "duplicate"
    IN_FLIGHT = "in_flight"
    FAILED = "failed"
    DEAD_LETTERED = "dead_lettered"
    ERROR = "error"


@dataclass(frozen=True)
class DispatchResult:
    kind: DispatchKind
    reason: Optional[str] = None
    ledger_status: Optional[ProcessingStatus] = None

    @property
    def acknowledged(self) -> bool:
        """Whether the sender should stop redelivering this event"""
        return self.kind not in (DispatchKind.FAILED, DispatchKind.ERROR)


def _refs(event):
    payload = event.payload
    return getattr(payload, "customer_ref", None), getattr(payload, "subscription_ref", None)


class BillingEventDispatcher:
    """Runs one verified event through ledger, state machine, audit and sync.

    The ledger is finalized with the primary outcome only; audit and
    entitlement sync failures are logged and never change it.
    """

    def __init__(
        self,
        ledger: IdempotencyLedger,
        state_machine: SubscriptionStateMachine,
        audit: AuditLogger,
        synchronizer: EntitlementSynchronizer
    ):
        self.ledger = ledger
        self.state_machine = state_machine
        self.audit = audit
        self.synchronizer = synchronizer
        self.handlers: Dict[str, Callable[..., Awaitable[Outcome]]] = {
            EventType.CHECKOUT_COMPLETED.value: state_machine.checkout_completed,
            EventType.SUBSCRIPTION_CREATED.value: state_machine.subscription_created,
            EventType.SUBSCRIPTION_UPDATED.value: state_machine.subscription_updated,
            EventType.SUBSCRIPTION_DELETED.value: state_machine.subscription_deleted,
            EventType.INVOICE_PAID.value: state_machine.invoice_paid,
            EventType.INVOICE_PAYMENT_FAILED.value: state_machine.invoice_payment_failed,
        }

    async def dispatch(self, event) -> DispatchResult:
        """Process a verified event.

        Raises LedgerUnavailableError when the event cannot be admitted; the
        caller must then reject the delivery so that it is retried.
        """
        customer_ref, subscription_ref = _refs(event)
        admission = await self.ledger.admit(
            event.external_id,
            event.event_type,
            customer_ref=customer_ref,
            subscription_ref=subscription_ref,
        )
        if not admission.admitted:
            if admission.prior_status in TERMINAL_STATUSES:
                return DispatchResult(
                    DispatchKind.DUPLICATE,
                    reason=f"already {admission.prior_status.value}",
                    ledger_status=admission.prior_status,
                )
            return DispatchResult(
                DispatchKind.IN_FLIGHT,
                reason="already being processed",
                ledger_status=ProcessingStatus.PROCESSING,
            )

        logger.info(f"Processing {event.event_type} event {event.external_id} (attempt {admission.attempt})")
        outcome = await self._apply(event)

        if outcome.status == OutcomeStatus.APPLIED and outcome.transition is not None:
            await self._audit(event, outcome, TransitionOutcome.APPLIED)
        elif outcome.status == OutcomeStatus.FAILED:
            await self._audit(event, outcome, TransitionOutcome.FAILED)

        if outcome.status == OutcomeStatus.APPLIED and outcome.entitlements is not None:
            await self._sync(outcome)

        try:
            persisted = await self.ledger.finalize(
                event.external_id,
                outcome.ledger_status,
                error_detail=outcome.reason if outcome.status == OutcomeStatus.FAILED else None,
                account_id=outcome.account_id,
            )
        except LedgerUnavailableError as e:
            # Effects are applied; the record stays in-flight until it goes stale
            logger.error(f"Could not finalize event {event.external_id}: {e.reason}")
            return DispatchResult(DispatchKind.ERROR, reason=e.reason)

        return self._result(outcome, persisted)

    async def _apply(self, event) -> Outcome:
        handler = self.handlers.get(event.event_type)
        if handler is None:
            return Outcome.skipped(f"no handler for {event.event_type}")
        try:
            return await handler(event)
        except Exception as e:
            logger.exception(f"Unexpected error handling {event.event_type} event {event.external_id}")
            return Outcome.failed(f"unexpected error: {e}", unexpected=True)

    async def _audit(self, event, outcome: Outcome, result: TransitionOutcome) -> None:
        transition = outcome.transition
        try:
            await self.audit.record(
                event.external_id,
                event.event_type,
                account_id=outcome.account_id,
                lifecycle_event=transition.lifecycle_event if transition else None,
                previous_tier=transition.previous_tier if transition else None,
                new_tier=transition.new_tier if transition else None,
                previous_status=transition.previous_status if transition else None,
                new_status=transition.new_status if transition else None,
                outcome=result,
                detail=outcome.reason,
                period_end_at=transition.period_end_at if transition else None,
            )
        except Exception:
            logger.exception(f"Audit history write failed for event {event.external_id}")

    async def _sync(self, outcome: Outcome) -> None:
        snapshot = outcome.entitlements
        try:
            await self.synchronizer.sync(outcome.account_id, snapshot.tier, snapshot.status)
        except Exception:
            logger.exception(f"Entitlement sync failed for account {outcome.account_id}")

    @staticmethod
    def _result(outcome: Outcome, persisted: ProcessingStatus) -> DispatchResult:
        if persisted == ProcessingStatus.DEAD:
            return DispatchResult(DispatchKind.DEAD_LETTERED, reason=outcome.reason, ledger_status=persisted)
        if outcome.status == OutcomeStatus.APPLIED:
            return DispatchResult(DispatchKind.PROCESSED, reason=outcome.reason, ledger_status=persisted)
        if outcome.status == OutcomeStatus.SKIPPED:
            return DispatchResult(DispatchKind.SKIPPED, reason=outcome.reason, ledger_status=persisted)
        kind = DispatchKind.ERROR if outcome.unexpected else DispatchKind.FAILED
        return DispatchResult(kind, reason=outcome.reason, ledger_status=persisted)


_dispatcher: Optional[BillingEventDispatcher] = None


def get_dispatcher() -> BillingEventDispatcher:
    """FastAPI dependency returning the process-wide dispatcher"""
    global _dispatcher
    if _dispatcher is None:
        session_factory = get_session_factory()
        classifier = PriceClassifier(PriceCatalog.from_settings(settings))
        _dispatcher = BillingEventDispatcher(
            ledger=IdempotencyLedger(
                session_factory,
                max_failed_attempts=settings.max_failed_attempts,
                stale_after_seconds=settings.processing_stale_after_seconds,
            ),
            state_machine=SubscriptionStateMachine(session_factory, classifier),
            audit=AuditLogger(session_factory),
            synchronizer=get_entitlement_synchronizer(),
        )
    return _dispatcher
