"""TrustReconciliationJob end to end: lease, republish, balance reset, results."""

from datetime import datetime, timedelta
from typing import Any

import pytest
from sqlalchemy import update
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from src.tl_audit.infrastructure.persistence import AuditLogWriter
from src.tl_common.datetime_utils import utc_now
from src.tl_common.enums import AuditAction, TrustTransactionType
from src.tl_common.event_bus import PAYMENT_CONFIRMED, EventBus
from src.tl_common.unit_of_work import UnitOfWork
from src.tl_reconciliation.application.job import LEASE_NAME, TrustReconciliationJob
from src.tl_reconciliation.domain.models import (
    BALANCE_MISMATCH,
    REPAIR_FAILED,
    ReconciliationRunSummary,
)
from src.tl_reconciliation.infrastructure.persistence import JobLeaseRepository
from src.tl_trust.application.events import TrustPaymentListener
from src.tl_trust.application.service import TrustAccountService
from src.tl_trust.infrastructure.db_models import TrustAccountORM
from src.tl_trust.infrastructure.persistence import TrustTransactionRepository
from src.tl_trust.infrastructure.upstream import SqlSalePaymentSource
from tests.support import COMPANY, OTHER_COMPANY, seed_property, seed_sale_payment


class _FlakyTransactions(TrustTransactionRepository):
    """Fails find_posted_payment_ids for chosen companies."""

    def __init__(self, failures: dict[str, list[Exception]]) -> None:
        self._failures = failures

    async def find_posted_payment_ids(
        self, db: AsyncSession, company_id: str, payment_ids: list[str]
    ) -> set[str]:
        pending = self._failures.get(company_id)
        if pending:
            raise pending.pop(0)
        return await super().find_posted_payment_ids(db, company_id, payment_ids)


class _SteppingClock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


class _RecordingSleep:
    def __init__(self) -> None:
        self.calls: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


@pytest.fixture
def bus(
    service: TrustAccountService, session_factory: async_sessionmaker[AsyncSession]
) -> EventBus:
    bus = EventBus()
    TrustPaymentListener(service, session_factory, SqlSalePaymentSource()).register(bus)
    return bus


def _make_job(
    service: TrustAccountService,
    session_factory: async_sessionmaker[AsyncSession],
    unit_of_work: UnitOfWork,
    bus: EventBus,
    **kwargs: object,
) -> TrustReconciliationJob:
    kwargs.setdefault("sleep", _RecordingSleep())
    kwargs.setdefault("holder", "test-reconciler")
    return TrustReconciliationJob(
        service,
        session_factory,
        bus,
        unit_of_work=unit_of_work,
        lease_seconds=600,
        company_timeout_seconds=30,
        max_attempts=3,
        retry_base_seconds=0.5,
        detail_cap=50,
        **kwargs,  # type: ignore[arg-type]
    )


@pytest.fixture
def job(
    service: TrustAccountService,
    session_factory: async_sessionmaker[AsyncSession],
    unit_of_work: UnitOfWork,
    bus: EventBus,
) -> TrustReconciliationJob:
    return _make_job(service, session_factory, unit_of_work, bus)


class TestMissingPostings:
    async def test_missing_posting_is_republished(
        self, db: AsyncSession, job: TrustReconciliationJob, service: TrustAccountService
    ) -> None:
        await seed_property(db, "prop-1", 8_000_000)
        await seed_sale_payment(db, "sale-1", "prop-1", 8_000_000, commission=400_000)

        summary = await job.run()

        assert not summary.skipped
        [result] = summary.results
        assert result.company_id == COMPANY
        assert result.checked_payments == 1
        assert result.missing_postings == 1
        assert result.auto_repairs == 1
        assert result.repair_failures == 0
        account = await service.get_by_property(db, COMPANY, "prop-1")
        assert account.running_balance == 8_000_000
        ledger = await service.get_ledger(db, COMPANY, account.id)
        assert [tx.payment_id for tx in ledger.items] == ["sale-1"]

    async def test_steady_state_reports_no_repairs(
        self, db: AsyncSession, job: TrustReconciliationJob
    ) -> None:
        await seed_sale_payment(db, "sale-1", "prop-1", 2_000_000)
        await job.run()

        summary = await job.run()

        [result] = summary.results
        assert result.checked_payments == 1
        assert result.missing_postings == 0
        assert result.balance_mismatches == 0
        assert result.auto_repairs == 0
        assert result.details == []

    async def test_unhandled_event_counts_as_failure(
        self,
        db: AsyncSession,
        service: TrustAccountService,
        session_factory: async_sessionmaker[AsyncSession],
        unit_of_work: UnitOfWork,
    ) -> None:
        await seed_sale_payment(db, "sale-1", "prop-1", 2_000_000)
        job = _make_job(service, session_factory, unit_of_work, EventBus())

        summary = await job.run()

        [result] = summary.results
        assert result.missing_postings == 1
        assert result.auto_repairs == 0
        assert result.repair_failures == 1
        assert result.details[0]["kind"] == REPAIR_FAILED
        assert result.details[0]["error"] == "no subscriber"

    async def test_provisional_payments_are_still_checked(
        self, db: AsyncSession, job: TrustReconciliationJob
    ) -> None:
        await seed_sale_payment(db, "sale-1", "prop-1", 2_000_000, is_provisional=True)
        await seed_sale_payment(db, "sale-2", "prop-1", 500_000, status="pending")

        summary = await job.run()

        assert summary.results[0].checked_payments == 1


class TestBalanceChecks:
    async def test_drifted_balance_is_reset(
        self, db: AsyncSession, job: TrustReconciliationJob, service: TrustAccountService
    ) -> None:
        await seed_sale_payment(db, "sale-1", "prop-1", 2_000_000)
        posted = await service.record_buyer_payment(db, COMPANY, "prop-1", 2_000_000, "sale-1")
        await db.execute(
            update(TrustAccountORM)
            .where(TrustAccountORM.id == posted.account.id)
            .values(running_balance=1_999_000, closing_balance=1_999_000)
        )
        await db.commit()

        summary = await job.run()

        [result] = summary.results
        assert result.balance_mismatches == 1
        assert result.auto_repairs == 1
        detail = result.details[0]
        assert detail["kind"] == BALANCE_MISMATCH
        assert (detail["stored"], detail["expected"], detail["repaired"]) == (
            1_999_000, 2_000_000, True,
        )
        account = await service.get_by_id(db, COMPANY, posted.account.id, repair=False)
        assert account.running_balance == 2_000_000
        assert account.closing_balance == 2_000_000
        resets = await AuditLogWriter().find_by_action(
            db, COMPANY, AuditAction.RECONCILIATION_BALANCE_RESET.value
        )
        assert [e.entity_id for e in resets] == [posted.account.id]
        assert resets[0].old_value["running_balance"] == 1_999_000
        assert resets[0].new_value["running_balance"] == 2_000_000

    async def test_account_without_rows_compares_opening_balance(
        self, db: AsyncSession, job: TrustReconciliationJob, service: TrustAccountService
    ) -> None:
        await seed_sale_payment(db, "sale-1", "prop-1", 2_000_000)
        await service.record_buyer_payment(db, COMPANY, "prop-1", 2_000_000, "sale-1")
        empty = await service.create_trust_account(db, COMPANY, "prop-2", opening_balance=30_000)
        await db.execute(
            update(TrustAccountORM)
            .where(TrustAccountORM.id == empty.id)
            .values(running_balance=0, closing_balance=0)
        )
        await db.commit()

        summary = await job.run()

        assert summary.results[0].auto_repairs == 1
        account = await service.get_by_id(db, COMPANY, empty.id, repair=False)
        assert account.running_balance == 30_000

    async def test_closed_account_mismatch_is_reported_not_reset(
        self, db: AsyncSession, job: TrustReconciliationJob, service: TrustAccountService
    ) -> None:
        await seed_sale_payment(db, "sale-1", "prop-1", 100_000)
        posted = await service.record_buyer_payment(db, COMPANY, "prop-1", 100_000, "sale-1")
        await service.post_transaction(
            db, COMPANY, posted.account.id, TrustTransactionType.REFUND.value, debit=100_000
        )
        await service.close_trust_account(db, COMPANY, posted.account.id)
        await db.execute(
            update(TrustAccountORM)
            .where(TrustAccountORM.id == posted.account.id)
            .values(running_balance=5)
        )
        await db.commit()

        summary = await job.run()

        [result] = summary.results
        assert result.balance_mismatches == 1
        assert result.auto_repairs == 0
        assert result.details[0]["repaired"] is False
        account = await service.get_by_id(db, COMPANY, posted.account.id, repair=False)
        assert account.running_balance == 5


class TestRunControl:
    async def test_held_lease_skips_run(
        self, db: AsyncSession, job: TrustReconciliationJob
    ) -> None:
        await seed_sale_payment(db, "sale-1", "prop-1", 2_000_000)
        assert await JobLeaseRepository().try_acquire(db, LEASE_NAME, "other", utc_now(), 600)

        summary = await job.run()

        assert summary.skipped
        assert summary.results == []

    async def test_expired_lease_is_taken_over(
        self, db: AsyncSession, job: TrustReconciliationJob
    ) -> None:
        await seed_sale_payment(db, "sale-1", "prop-1", 2_000_000)
        stale = utc_now() - timedelta(hours=2)
        assert await JobLeaseRepository().try_acquire(db, LEASE_NAME, "crashed", stale, 60)

        summary = await job.run()

        assert not summary.skipped
        assert len(summary.results) == 1

    async def test_lease_released_after_run(
        self, db: AsyncSession, job: TrustReconciliationJob
    ) -> None:
        await job.run()
        assert await JobLeaseRepository().try_acquire(db, LEASE_NAME, "next", utc_now(), 600)

    async def test_companies_are_isolated(
        self,
        db: AsyncSession,
        service: TrustAccountService,
        session_factory: async_sessionmaker[AsyncSession],
        unit_of_work: UnitOfWork,
        bus: EventBus,
    ) -> None:
        await seed_sale_payment(db, "sale-1", "prop-1", 2_000_000)
        await seed_sale_payment(db, "sale-2", "prop-1", 3_000_000, company_id=OTHER_COMPANY)
        job = _make_job(
            service, session_factory, unit_of_work, bus,
            transactions=_FlakyTransactions({OTHER_COMPANY: [RuntimeError("boom")]}),
        )

        summary = await job.run()

        assert [r.company_id for r in summary.results] == [COMPANY]
        assert "RuntimeError" in summary.failed_companies[OTHER_COMPANY]
        account = await service.get_by_property(db, COMPANY, "prop-1")
        assert account.running_balance == 2_000_000
        latest = await job.get_latest_result(db, COMPANY)
        assert latest is not None and latest.auto_repairs == 1
        assert await job.get_latest_result(db, OTHER_COMPANY) is None

    async def test_transient_store_error_is_retried(
        self,
        db: AsyncSession,
        service: TrustAccountService,
        session_factory: async_sessionmaker[AsyncSession],
        unit_of_work: UnitOfWork,
        bus: EventBus,
    ) -> None:
        await seed_sale_payment(db, "sale-1", "prop-1", 2_000_000)
        sleep = _RecordingSleep()
        transient = OperationalError("SELECT", {}, Exception("connection reset"))
        job = _make_job(
            service, session_factory, unit_of_work, bus,
            transactions=_FlakyTransactions({COMPANY: [transient, transient]}),
            sleep=sleep,
        )

        summary = await job.run()

        assert summary.failed_companies == {}
        assert summary.results[0].auto_repairs == 1
        assert sleep.calls == [0.5, 1.0]

    async def test_lease_extension_keeps_a_long_run_exclusive(
        self,
        db: AsyncSession,
        service: TrustAccountService,
        session_factory: async_sessionmaker[AsyncSession],
        unit_of_work: UnitOfWork,
    ) -> None:
        await seed_sale_payment(db, "sale-1", "prop-1", 2_000_000)
        await seed_sale_payment(db, "sale-2", "prop-2", 3_000_000, company_id=OTHER_COMPANY)
        t0 = utc_now()
        clock = _SteppingClock(t0)
        listener = TrustPaymentListener(service, session_factory, SqlSalePaymentSource())
        overlapping: list[ReconciliationRunSummary] = []
        second = _make_job(
            service, session_factory, unit_of_work, EventBus(),
            holder="second-reconciler", clock=lambda: t0 + timedelta(seconds=700),
        )

        async def slow_handler(payload: dict[str, Any]) -> Any:
            if payload["company_id"] == COMPANY:
                clock.now = t0 + timedelta(seconds=650)  # first company took most of the lease
            else:
                overlapping.append(await second.run())
            return await listener.on_payment_confirmed(payload)

        bus = EventBus()
        bus.subscribe(PAYMENT_CONFIRMED, slow_handler)
        first = _make_job(service, session_factory, unit_of_work, bus, clock=clock)

        summary = await first.run()

        assert [r.company_id for r in summary.results] == [COMPANY, OTHER_COMPANY]
        assert not summary.lease_lost
        [concurrent] = overlapping
        assert concurrent.skipped


class TestPerEntityIsolation:
    async def test_handler_crash_on_one_payment_spares_the_rest(
        self,
        db: AsyncSession,
        service: TrustAccountService,
        session_factory: async_sessionmaker[AsyncSession],
        unit_of_work: UnitOfWork,
    ) -> None:
        await seed_sale_payment(db, "sale-1", "prop-1", 1_000_000)
        await seed_sale_payment(db, "sale-2", "prop-1", 2_000_000)
        listener = TrustPaymentListener(service, session_factory, SqlSalePaymentSource())

        async def handler(payload: dict[str, Any]) -> Any:
            if payload["payment_id"] == "sale-1":
                raise RuntimeError("handler bug")
            return await listener.on_payment_confirmed(payload)

        bus = EventBus()
        bus.subscribe(PAYMENT_CONFIRMED, handler)
        job = _make_job(service, session_factory, unit_of_work, bus)

        summary = await job.run()

        assert summary.failed_companies == {}
        [result] = summary.results
        assert (result.missing_postings, result.repair_failures, result.auto_repairs) == (2, 1, 1)
        account = await service.get_by_property(db, COMPANY, "prop-1")
        assert account.running_balance == 2_000_000
        latest = await job.get_latest_result(db, COMPANY)
        assert latest is not None
        assert latest.repair_failures == 1
        failed = [d for d in latest.details if d["kind"] == REPAIR_FAILED]
        assert failed[0]["payment_id"] == "sale-1"
        assert failed[0]["error"] == "RuntimeError: handler bug"
