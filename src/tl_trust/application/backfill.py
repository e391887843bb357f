"""TrustBackfillService — build trust accounts for sales recorded before the ledger existed.

Walks the property registry in id order, `limit` properties per batch. For
every property with completed sale payments it makes sure a trust account
exists and that each of those payments has its BUYER_PAYMENT row, posting the
missing ones oldest first through TrustAccountService so balances, audit and
invariants follow the normal path.

A real run holds the `trust_backfill_v1` row in job_leases for its whole
duration and extends it after every batch, together with the resume cursor in
trust_backfill_state. A run interrupted by a crash or a failure resumes after
the last finished batch; a run after a completed one starts over, which only
counts what already exists. A dry run takes no lease and writes nothing.
"""

import logging
import time
import uuid
from collections.abc import Callable
from datetime import datetime

from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from config.settings import settings
from src.tl_audit.domain.repository import AuditLogWriterProtocol
from src.tl_audit.infrastructure.persistence import AuditLogWriter
from src.tl_common.datetime_utils import utc_now
from src.tl_common.enums import AuditAction, AuditEntityType, BackfillStatus
from src.tl_common.errors import BackfillInProgressError
from src.tl_reconciliation.domain.repository import JobLeaseRepositoryProtocol
from src.tl_reconciliation.infrastructure.persistence import JobLeaseRepository
from src.tl_trust.application.service import TrustAccountService
from src.tl_trust.domain.models import BackfillResult, BackfillState, PropertyRecord
from src.tl_trust.domain.repository import (
    BackfillStateRepositoryProtocol,
    PropertyDirectoryProtocol,
    SalePaymentSourceProtocol,
    TrustAccountRepositoryProtocol,
    TrustTransactionRepositoryProtocol,
)
from src.tl_trust.infrastructure.job_state import BackfillStateRepository
from src.tl_trust.infrastructure.persistence import (
    TrustAccountRepository,
    TrustTransactionRepository,
)
from src.tl_trust.infrastructure.upstream import SqlPropertyDirectory, SqlSalePaymentSource

logger = logging.getLogger(__name__)

BACKFILL_NAME = "trust_backfill_v1"
SOURCE_EVENT = "migration.trust.backfill"
MAX_BATCH_LIMIT = 50


class TrustBackfillService:
    def __init__(
        self,
        service: TrustAccountService,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        properties: PropertyDirectoryProtocol | None = None,
        sale_payments: SalePaymentSourceProtocol | None = None,
        accounts: TrustAccountRepositoryProtocol | None = None,
        transactions: TrustTransactionRepositoryProtocol | None = None,
        states: BackfillStateRepositoryProtocol | None = None,
        leases: JobLeaseRepositoryProtocol | None = None,
        audit: AuditLogWriterProtocol | None = None,
        lease_seconds: int = settings.BACKFILL_LEASE_SECONDS,
        default_limit: int = settings.BACKFILL_BATCH_LIMIT,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._service = service
        self._session_factory = session_factory
        self._properties: PropertyDirectoryProtocol = properties or SqlPropertyDirectory()
        self._sale_payments: SalePaymentSourceProtocol = sale_payments or SqlSalePaymentSource()
        self._accounts: TrustAccountRepositoryProtocol = accounts or TrustAccountRepository()
        self._transactions: TrustTransactionRepositoryProtocol = (
            transactions or TrustTransactionRepository()
        )
        self._states: BackfillStateRepositoryProtocol = states or BackfillStateRepository()
        self._leases: JobLeaseRepositoryProtocol = leases or JobLeaseRepository()
        self._audit: AuditLogWriterProtocol = audit or AuditLogWriter()
        self._lease_seconds = lease_seconds
        self._default_limit = default_limit
        self._clock = clock

    async def get_state(self, db: AsyncSession) -> BackfillState | None:
        return await self._states.get(db, BACKFILL_NAME)

    async def run(
        self,
        *,
        dry_run: bool = False,
        limit: int | None = None,
        performed_by: str | None = None,
    ) -> BackfillResult:
        started = time.monotonic()
        limit = min(MAX_BATCH_LIMIT, max(1, limit or self._default_limit))
        result = BackfillResult(name=BACKFILL_NAME, dry_run=dry_run)

        if dry_run:
            await self._walk(result, None, limit, performed_by, holder=None, state=None)
        else:
            holder = f"backfill-{uuid.uuid4().hex[:12]}"
            async with self._session_factory() as db:
                if not await self._leases.try_acquire(
                    db, BACKFILL_NAME, holder, self._clock(), self._lease_seconds
                ):
                    raise BackfillInProgressError()
            try:
                state = await self._start_state()
                await self._walk(
                    result, state.last_processed_id, limit, performed_by, holder, state
                )
            finally:
                async with self._session_factory() as db:
                    await self._leases.release(db, BACKFILL_NAME, holder)

        result.duration_ms = int((time.monotonic() - started) * 1000)
        logger.info(
            "Trust backfill %s: dry_run=%s properties=%d accounts_created=%d "
            "transactions_created=%d skipped_existing=%d errors=%d interrupted=%s",
            BACKFILL_NAME,
            dry_run,
            result.processed_properties,
            result.accounts_created,
            result.transactions_created,
            result.skipped_existing,
            len(result.errors),
            result.interrupted,
        )
        return result

    async def _start_state(self) -> BackfillState:
        async with self._session_factory() as db:
            previous = await self._states.get(db, BACKFILL_NAME)
            if previous is not None and previous.status == BackfillStatus.COMPLETED.value:
                previous = None
            state = BackfillState(
                name=BACKFILL_NAME,
                status=BackfillStatus.RUNNING.value,
                processed_count=previous.processed_count if previous else 0,
                last_processed_id=previous.last_processed_id if previous else None,
                started_at=self._clock(),
            )
            await self._states.save(db, state)
        if state.last_processed_id:
            logger.info("Trust backfill resuming after property %s", state.last_processed_id)
        return state

    async def _walk(
        self,
        result: BackfillResult,
        cursor: str | None,
        limit: int,
        performed_by: str | None,
        holder: str | None,
        state: BackfillState | None,
    ) -> None:
        base_count = state.processed_count if state is not None else 0
        try:
            while True:
                async with self._session_factory() as db:
                    batch = await self._properties.list_properties(db, cursor, limit)
                if not batch:
                    break

                for prop in batch:
                    cursor = prop.property_id
                    await self._process_guarded(result, prop, performed_by)

                if holder is not None and state is not None:
                    state.processed_count = base_count + result.processed_properties
                    if not await self._checkpoint(holder, state, cursor):
                        result.interrupted = True
                        logger.error(
                            "Trust backfill lease lost after property %s; stopping", cursor
                        )
                        return
        except Exception as exc:
            if state is not None:
                state.processed_count = base_count + result.processed_properties
                await self._finish(
                    state, BackfillStatus.FAILED, cursor, f"{type(exc).__name__}: {exc}"
                )
            raise

        if state is not None:
            state.processed_count = base_count + result.processed_properties
            await self._finish(state, BackfillStatus.COMPLETED, cursor, "")

    async def _process_guarded(
        self, result: BackfillResult, prop: PropertyRecord, performed_by: str | None
    ) -> None:
        try:
            async with self._session_factory() as db:
                await self._process_property(db, result, prop, performed_by)
        except OperationalError:
            raise
        except Exception as exc:  # one property must not stop the backfill
            logger.warning(
                "Trust backfill failed for property %s: %s", prop.property_id, exc, exc_info=True
            )
            result.errors.append(
                {"property_id": prop.property_id, "error": f"{type(exc).__name__}: {exc}"}
            )

    async def _process_property(
        self,
        db: AsyncSession,
        result: BackfillResult,
        prop: PropertyRecord,
        performed_by: str | None,
    ) -> None:
        # oldest first, so running balances build up in payment order
        payments = list(
            reversed(
                await self._sale_payments.find_completed_sale_payments(
                    db, prop.company_id, prop.property_id
                )
            )
        )
        if not payments:
            result.skipped_properties += 1
            return

        account = await self._accounts.find_latest_by_property(
            db, prop.company_id, prop.property_id
        )
        if account is None:
            result.accounts_created += 1
            if result.dry_run:
                result.transactions_created += len(payments)
                result.processed_properties += 1
                return
            account = await self._service.create_trust_account(
                db,
                prop.company_id,
                prop.property_id,
                buyer_id=payments[0].payer_id,
                performed_by=performed_by,
            )
        else:
            result.skipped_existing += 1
            if not result.dry_run:
                await self._record_skip(
                    db, prop.company_id, account.id,
                    {"reason": "trust_account_exists", "property_id": prop.property_id},
                    performed_by,
                )

        posted = await self._transactions.find_posted_payment_ids(
            db, prop.company_id, [p.payment_id for p in payments]
        )
        for payment in payments:
            if payment.payment_id in posted:
                result.skipped_existing += 1
                continue
            if result.dry_run:
                result.transactions_created += 1
                continue
            posting = await self._service.record_buyer_payment(
                db,
                prop.company_id,
                prop.property_id,
                payment.amount,
                payment.payment_id,
                reference=payment.reference,
                trust_account_id=account.id,
                source_event=SOURCE_EVENT,
                performed_by=performed_by,
            )
            if posting.duplicate:
                result.skipped_existing += 1
            else:
                result.transactions_created += 1
        result.processed_properties += 1

    async def _record_skip(
        self,
        db: AsyncSession,
        company_id: str,
        entity_id: str,
        details: dict[str, str],
        performed_by: str | None,
    ) -> None:
        await self._audit.record(
            db,
            company_id=company_id,
            entity_type=AuditEntityType.MIGRATION.value,
            entity_id=entity_id,
            action=AuditAction.SKIPPED_EXISTING.value,
            source_event=SOURCE_EVENT,
            new_value=details,
            performed_by=performed_by,
        )
        await db.commit()

    async def _checkpoint(self, holder: str, state: BackfillState, cursor: str | None) -> bool:
        async with self._session_factory() as db:
            if not await self._leases.extend(
                db, BACKFILL_NAME, holder, self._clock(), self._lease_seconds
            ):
                return False
            state.last_processed_id = cursor
            await self._states.save(db, state)
        return True

    async def _finish(
        self, state: BackfillState, status: BackfillStatus, cursor: str | None, error: str
    ) -> None:
        state.status = status.value
        state.last_processed_id = cursor
        state.completed_at = self._clock()
        state.error = error
        async with self._session_factory() as db:
            await self._states.save(db, state)
