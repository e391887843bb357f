"""TrustReconciliationJob — nightly safety net for the trust ledger.

For every company with sale payments:
  1. completed sale payments with no ledger row are re-published as
     "payment.confirmed" so the normal posting path creates them;
  2. each account's stored running balance is compared with its latest
     ledger snapshot (opening balance when it has no rows) and reset if
     they differ;
  3. one result row is stored with the counts and (capped) details.

Runs never overlap: a row in job_leases is taken before any work, extended
after every company and released at the end. A run that finds its lease taken
over stops before the next company. Failures are isolated per payment/account
and per company; only transient store errors escape to the company retry.
"""

import asyncio
import logging
import uuid
from collections.abc import Awaitable, Callable
from datetime import datetime

from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from config.settings import settings
from src.tl_common.datetime_utils import utc_now
from src.tl_common.event_bus import PAYMENT_CONFIRMED, EventBus
from src.tl_common.unit_of_work import UnitOfWork
from src.tl_reconciliation.domain.models import (
    BALANCE_MISMATCH,
    MISSING_POSTING,
    REPAIR_FAILED,
    ReconciliationResult,
    ReconciliationRunSummary,
)
from src.tl_reconciliation.domain.repository import (
    JobLeaseRepositoryProtocol,
    ReconciliationResultRepositoryProtocol,
)
from src.tl_reconciliation.infrastructure.persistence import (
    JobLeaseRepository,
    ReconciliationResultRepository,
)
from src.tl_trust.application.events import PaymentConfirmedEvent
from src.tl_trust.application.service import TrustAccountService
from src.tl_trust.domain.models import SalePayment, TrustAccount
from src.tl_trust.domain.repository import (
    SalePaymentSourceProtocol,
    TrustAccountRepositoryProtocol,
    TrustTransactionRepositoryProtocol,
)
from src.tl_trust.infrastructure.persistence import (
    TrustAccountRepository,
    TrustTransactionRepository,
)
from src.tl_trust.infrastructure.upstream import SqlSalePaymentSource

logger = logging.getLogger(__name__)

LEASE_NAME = "trust-reconciliation"
_SOURCE_EVENT = "trust.reconciliation"


class TrustReconciliationJob:
    def __init__(
        self,
        service: TrustAccountService,
        session_factory: async_sessionmaker[AsyncSession],
        bus: EventBus,
        *,
        sale_payments: SalePaymentSourceProtocol | None = None,
        accounts: TrustAccountRepositoryProtocol | None = None,
        transactions: TrustTransactionRepositoryProtocol | None = None,
        leases: JobLeaseRepositoryProtocol | None = None,
        results: ReconciliationResultRepositoryProtocol | None = None,
        unit_of_work: UnitOfWork | None = None,
        lease_seconds: int = settings.RECONCILIATION_LEASE_SECONDS,
        company_timeout_seconds: float = settings.RECONCILIATION_COMPANY_TIMEOUT_SECONDS,
        max_attempts: int = settings.RECONCILIATION_MAX_ATTEMPTS,
        retry_base_seconds: float = settings.RECONCILIATION_RETRY_BASE_SECONDS,
        detail_cap: int = settings.RECONCILIATION_DETAIL_CAP,
        clock: Callable[[], datetime] = utc_now,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        holder: str | None = None,
    ) -> None:
        self._service = service
        self._session_factory = session_factory
        self._bus = bus
        self._sale_payments: SalePaymentSourceProtocol = sale_payments or SqlSalePaymentSource()
        self._accounts: TrustAccountRepositoryProtocol = accounts or TrustAccountRepository()
        self._transactions: TrustTransactionRepositoryProtocol = (
            transactions or TrustTransactionRepository()
        )
        self._leases: JobLeaseRepositoryProtocol = leases or JobLeaseRepository()
        self._results: ReconciliationResultRepositoryProtocol = (
            results or ReconciliationResultRepository()
        )
        self._uow = unit_of_work or UnitOfWork(settings.STORE_TRANSACTIONS)
        self._lease_seconds = lease_seconds
        self._company_timeout = company_timeout_seconds
        self._max_attempts = max(1, max_attempts)
        self._retry_base = retry_base_seconds
        self._detail_cap = detail_cap
        self._clock = clock
        self._sleep = sleep
        self._holder = holder or f"reconciler-{uuid.uuid4().hex[:12]}"

    async def run(self) -> ReconciliationRunSummary:
        summary = ReconciliationRunSummary(run_id=uuid.uuid4().hex, started_at=self._clock())

        async with self._session_factory() as db:
            acquired = await self._leases.try_acquire(
                db, LEASE_NAME, self._holder, summary.started_at, self._lease_seconds
            )
        if not acquired:
            logger.info("Reconciliation skipped: lease %s is held", LEASE_NAME)
            summary.skipped = True
            summary.finished_at = self._clock()
            return summary

        try:
            async with self._session_factory() as db:
                companies = await self._sale_payments.list_companies_with_sale_payments(db)

            for company_id in companies:
                try:
                    summary.results.append(await self._run_company_with_retry(company_id))
                except Exception as exc:  # one company must not abort the run
                    logger.exception("Reconciliation failed for company=%s", company_id)
                    summary.failed_companies[company_id] = _describe(exc)
                if not await self._extend_lease():
                    logger.error(
                        "Reconciliation lease %s lost after company=%s; stopping run",
                        LEASE_NAME,
                        company_id,
                    )
                    summary.lease_lost = True
                    break
        finally:
            async with self._session_factory() as db:
                await self._leases.release(db, LEASE_NAME, self._holder)

        summary.finished_at = self._clock()
        logger.info(
            "Reconciliation run %s: companies=%d failed=%d auto_repairs=%d repair_failures=%d",
            summary.run_id,
            len(summary.results),
            len(summary.failed_companies),
            summary.auto_repairs,
            summary.repair_failures,
        )
        return summary

    async def _extend_lease(self) -> bool:
        async with self._session_factory() as db:
            return await self._leases.extend(
                db, LEASE_NAME, self._holder, self._clock(), self._lease_seconds
            )

    async def get_latest_result(
        self, db: AsyncSession, company_id: str
    ) -> ReconciliationResult | None:
        return await self._results.find_latest(db, company_id)

    async def _run_company_with_retry(self, company_id: str) -> ReconciliationResult:
        attempt = 0
        while True:
            attempt += 1
            try:
                return await asyncio.wait_for(
                    self._reconcile_company(company_id), timeout=self._company_timeout
                )
            except (OperationalError, TimeoutError) as exc:
                if attempt >= self._max_attempts:
                    raise
                delay = self._retry_base * (2 ** (attempt - 1))
                logger.warning(
                    "Transient reconciliation error for company=%s (attempt %d/%d), retrying in %.1fs: %s",
                    company_id,
                    attempt,
                    self._max_attempts,
                    delay,
                    exc,
                )
                await self._sleep(delay)

    async def _reconcile_company(self, company_id: str) -> ReconciliationResult:
        result = ReconciliationResult(id=0, company_id=company_id, run_at=self._clock())

        async with self._session_factory() as db:
            payments = await self._sale_payments.list_completed_sale_payments(db, company_id)
            result.checked_payments = len(payments)
            posted = await self._transactions.find_posted_payment_ids(
                db, company_id, [p.payment_id for p in payments]
            )
            # end the read transaction before handlers write through their own sessions
            await db.commit()

            for payment in payments:
                if payment.payment_id not in posted:
                    await self._republish(result, payment)

            for account in await self._accounts.list_for_company(db, company_id):
                await self._check_balance(db, result, account)

            async def persist() -> ReconciliationResult:
                return await self._results.insert(db, result)

            saved = await self._uow.run(db, persist)

        saved.details_truncated = result.details_truncated
        logger.info(
            "Reconciled company=%s checked=%d missing=%d mismatches=%d repaired=%d failed=%d",
            company_id,
            saved.checked_payments,
            saved.missing_postings,
            saved.balance_mismatches,
            saved.auto_repairs,
            saved.repair_failures,
        )
        return saved

    async def _republish(self, result: ReconciliationResult, payment: SalePayment) -> None:
        result.missing_postings += 1
        try:
            payload = PaymentConfirmedEvent.from_sale_payment(payment).model_dump(mode="json")
            handled = await self._bus.publish(PAYMENT_CONFIRMED, payload)
        except OperationalError:
            raise
        except Exception as exc:  # one payment must not abort the company
            self._repair_failed(
                result, MISSING_POSTING, _describe(exc), payment_id=payment.payment_id
            )
            return

        if handled == 0:
            self._repair_failed(
                result, MISSING_POSTING, "no subscriber", payment_id=payment.payment_id
            )
            return
        result.auto_repairs += 1
        result.add_detail(
            self._detail_cap,
            MISSING_POSTING,
            payment_id=payment.payment_id,
            property_id=payment.property_id,
            amount=payment.amount,
            repaired=True,
        )

    async def _check_balance(
        self, db: AsyncSession, result: ReconciliationResult, account: TrustAccount
    ) -> None:
        try:
            await self._compare_and_reset(db, result, account)
        except OperationalError:
            raise
        except Exception as exc:  # one account must not abort the company
            await db.rollback()
            self._repair_failed(
                result, BALANCE_MISMATCH, _describe(exc), trust_account_id=account.id
            )

    async def _compare_and_reset(
        self, db: AsyncSession, result: ReconciliationResult, account: TrustAccount
    ) -> None:
        latest = await self._transactions.find_latest(db, account.company_id, account.id)
        expected = latest.running_balance if latest is not None else account.opening_balance
        if account.running_balance == expected:
            return

        result.balance_mismatches += 1
        if account.is_closed:
            result.add_detail(
                self._detail_cap,
                BALANCE_MISMATCH,
                trust_account_id=account.id,
                stored=account.running_balance,
                expected=expected,
                repaired=False,
                reason="account closed",
            )
            return

        reset = await self._service.reset_running_balance(
            db, account.company_id, account.id, expected, source_event=_SOURCE_EVENT
        )
        if reset:
            result.auto_repairs += 1
        result.add_detail(
            self._detail_cap,
            BALANCE_MISMATCH,
            trust_account_id=account.id,
            stored=account.running_balance,
            expected=expected,
            repaired=reset,
        )

    def _repair_failed(
        self, result: ReconciliationResult, check: str, error: str, **fields: object
    ) -> None:
        result.repair_failures += 1
        result.add_detail(self._detail_cap, REPAIR_FAILED, check=check, error=error, **fields)
        logger.warning("Reconciliation repair failed: check=%s %s error=%s", check, fields, error)


def _describe(exc: Exception) -> str:
    return f"{type(exc).__name__}: {exc}"
