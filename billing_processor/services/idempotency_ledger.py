from dataclasses import dataclass
from datetime import timedelta
from typing import Optional
from uuid import UUID
import logging

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker

from billing_processor.core.exceptions import LedgerUnavailableError
from billing_processor.crud.processing_record import processing_record_crud, ProcessingRecordCreate
from billing_processor.models.base import utcnow
from billing_processor.models.processing_record import ProcessingStatus

logger = logging.getLogger(__name__)

# A redelivery of an event in one of these states is acknowledged without any side effect
TERMINAL_STATUSES = frozenset({ProcessingStatus.SUCCESS, ProcessingStatus.SKIPPED, ProcessingStatus.DEAD})

# A redelivery of an event in one of these states is processed again from scratch
RETRYABLE_STATUSES = frozenset({ProcessingStatus.FAILED})

# Another delivery of the same event is (or was, until it went stale) working on it
IN_FLIGHT_STATUSES = frozenset({ProcessingStatus.PENDING, ProcessingStatus.PROCESSING})


@dataclass(frozen=True)
class Admission:
    admitted: bool
    prior_status: Optional[ProcessingStatus] = None
    attempt: int = 0


class IdempotencyLedger:
    """Durable gatekeeper keyed by the provider's event id.

    Every call opens and commits its own session: ledger state must be
    durable before (admit) and independent of (finalize) the billing
    transaction it guards.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker,
        *,
        max_failed_attempts: int = 5,
        stale_after_seconds: Optional[int] = 900
    ):
        self.session_factory = session_factory
        self.max_failed_attempts = max_failed_attempts
        self.stale_after = timedelta(seconds=stale_after_seconds) if stale_after_seconds else None

    async def admit(
        self,
        external_id: str,
        event_type: str,
        *,
        customer_ref: Optional[str] = None,
        subscription_ref: Optional[str] = None
    ) -> Admission:
        try:
            async with self.session_factory() as db:
                existing = await processing_record_crud.get_by_external_id(db, external_id)
                if existing is None:
                    try:
                        record = await processing_record_crud.create(
                            db,
                            obj_in=ProcessingRecordCreate(
                                external_id=external_id,
                                event_type=event_type,
                                status=ProcessingStatus.PROCESSING,
                                customer_ref=customer_ref,
                                subscription_ref=subscription_ref,
                                attempts=1,
                            ),
                        )
                        logger.info(f"[LEDGER] Admitted {event_type} event {external_id}")
                        return Admission(admitted=True, attempt=record.attempts)
                    except IntegrityError:
                        # A concurrent delivery inserted the same event id first
                        await db.rollback()
                        existing = await processing_record_crud.get_by_external_id(db, external_id)
                        if existing is None:
                            raise
                        logger.info(f"[LEDGER] Lost admission race for {external_id} ({existing.status.value})")
                        return self._not_admitted(existing.status)

                return await self._readmit(db, existing)
        except LedgerUnavailableError:
            raise
        except SQLAlchemyError as e:
            logger.error(f"[LEDGER] Admission failed for {external_id}: {e}")
            raise LedgerUnavailableError(f"Idempotency ledger unavailable: {e}") from e

    async def _readmit(self, db, record) -> Admission:
        external_id = record.external_id
        # claim() synchronizes the incremented counter back onto record
        next_attempt = record.attempts + 1

        if record.status in TERMINAL_STATUSES:
            logger.info(f"[LEDGER] Event {external_id} already {record.status.value}, skipping")
            return self._not_admitted(record.status)

        if record.status in RETRYABLE_STATUSES:
            if await processing_record_crud.claim(db, external_id, from_statuses=RETRYABLE_STATUSES):
                logger.info(f"[LEDGER] Retrying failed event {external_id} (attempt {next_attempt})")
                return Admission(admitted=True, prior_status=ProcessingStatus.FAILED, attempt=next_attempt)
            return await self._report_current(db, external_id)

        if self.stale_after is not None and record.last_updated_at < utcnow() - self.stale_after:
            claimed = await processing_record_crud.claim(
                db,
                external_id,
                from_statuses=IN_FLIGHT_STATUSES,
                touched_before=utcnow() - self.stale_after,
            )
            if claimed:
                logger.warning(f"[LEDGER] Reclaimed stale in-flight event {external_id} (attempt {next_attempt})")
                return Admission(admitted=True, prior_status=ProcessingStatus.PROCESSING, attempt=next_attempt)
            return await self._report_current(db, external_id)

        logger.info(f"[LEDGER] Event {external_id} is already being processed")
        return self._not_admitted(record.status)

    async def _report_current(self, db, external_id: str) -> Admission:
        db.expire_all()
        current = await processing_record_crud.get_by_external_id(db, external_id)
        return self._not_admitted(current.status if current else ProcessingStatus.PROCESSING)

    @staticmethod
    def _not_admitted(status: ProcessingStatus) -> Admission:
        if status in IN_FLIGHT_STATUSES or status in RETRYABLE_STATUSES:
            # Someone else holds (or just re-claimed) the event
            return Admission(admitted=False, prior_status=ProcessingStatus.PROCESSING)
        return Admission(admitted=False, prior_status=status)

    async def finalize(
        self,
        external_id: str,
        status: ProcessingStatus,
        *,
        error_detail: Optional[str] = None,
        account_id: Optional[UUID] = None
    ) -> ProcessingStatus:
        """Record the outcome of an admitted attempt and return the persisted status.

        Repeating a call with the same status is a no-op. A failed attempt
        that used up max_failed_attempts is escalated to dead.
        """
        if status in IN_FLIGHT_STATUSES:
            raise ValueError(f"Cannot finalize event {external_id} with non-final status {status.value}")

        try:
            async with self.session_factory() as db:
                record = await processing_record_crud.get_by_external_id(db, external_id)
                if record is None:
                    raise LedgerUnavailableError(f"No ledger record for event {external_id}")

                target = status
                if status == ProcessingStatus.FAILED and record.attempts >= self.max_failed_attempts:
                    target = ProcessingStatus.DEAD
                    logger.error(
                        f"[LEDGER] Event {external_id} failed {record.attempts} time(s), moving to dead: {error_detail}"
                    )

                if record.status == target:
                    return target

                updated = await processing_record_crud.set_status(
                    db,
                    external_id,
                    status=target,
                    only_from=IN_FLIGHT_STATUSES,
                    error_detail=error_detail,
                    account_id=account_id,
                )
                if not updated:
                    db.expire_all()
                    current = await processing_record_crud.get_by_external_id(db, external_id)
                    logger.warning(
                        f"[LEDGER] Event {external_id} already finalized as {current.status.value}, "
                        f"not overwriting with {target.value}"
                    )
                    return current.status

                logger.info(f"[LEDGER] Event {external_id} finalized as {target.value}")
                return target
        except LedgerUnavailableError:
            raise
        except SQLAlchemyError as e:
            logger.error(f"[LEDGER] Finalize failed for {external_id}: {e}")
            raise LedgerUnavailableError(f"Idempotency ledger unavailable: {e}") from e
