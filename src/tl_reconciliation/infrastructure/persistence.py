"""Concrete repositories for the reconciliation job.

Unlike the trust repositories, JobLeaseRepository owns its transaction: the
lease must be visible to other processes before the run starts, so acquire,
extend and release commit immediately.
"""

from datetime import datetime, timedelta

from sqlalchemy import delete, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from src.tl_common.datetime_utils import ensure_utc
from src.tl_reconciliation.domain.models import ReconciliationResult
from src.tl_reconciliation.infrastructure.db_models import JobLeaseORM, ReconciliationResultORM


def _row_to_result(row: ReconciliationResultORM) -> ReconciliationResult:
    return ReconciliationResult(
        id=row.id,
        company_id=row.company_id,
        run_at=ensure_utc(row.run_at),  # type: ignore[arg-type]
        checked_payments=row.checked_payments,
        missing_postings=row.missing_postings,
        balance_mismatches=row.balance_mismatches,
        auto_repairs=row.auto_repairs,
        repair_failures=row.repair_failures,
        details=list(row.details or []),
    )


class JobLeaseRepository:
    async def try_acquire(
        self, db: AsyncSession, name: str, holder: str, now: datetime, ttl_seconds: int
    ) -> bool:
        expires_at = now + timedelta(seconds=ttl_seconds)
        # Take over an expired lease (or refresh our own) in one conditional UPDATE
        taken = await db.execute(
            update(JobLeaseORM)
            .where(
                JobLeaseORM.name == name,
                or_(JobLeaseORM.expires_at <= now, JobLeaseORM.holder == holder),
            )
            .values(holder=holder, acquired_at=now, expires_at=expires_at)
            .execution_options(synchronize_session=False)
        )
        if taken.rowcount == 1:
            await db.commit()
            return True

        existing = (
            await db.execute(select(JobLeaseORM.name).where(JobLeaseORM.name == name))
        ).scalar_one_or_none()
        if existing is not None:
            await db.rollback()
            return False

        db.add(JobLeaseORM(name=name, holder=holder, acquired_at=now, expires_at=expires_at))
        try:
            await db.commit()
        except IntegrityError:
            # another process inserted the lease first
            await db.rollback()
            return False
        return True

    async def extend(
        self, db: AsyncSession, name: str, holder: str, now: datetime, ttl_seconds: int
    ) -> bool:
        """Push our lease's expiry to now + ttl. False once another holder has taken it over."""
        extended = await db.execute(
            update(JobLeaseORM)
            .where(JobLeaseORM.name == name, JobLeaseORM.holder == holder)
            .values(expires_at=now + timedelta(seconds=ttl_seconds))
            .execution_options(synchronize_session=False)
        )
        await db.commit()
        return extended.rowcount == 1

    async def release(self, db: AsyncSession, name: str, holder: str) -> None:
        await db.execute(
            delete(JobLeaseORM)
            .where(JobLeaseORM.name == name, JobLeaseORM.holder == holder)
            .execution_options(synchronize_session=False)
        )
        await db.commit()


class ReconciliationResultRepository:
    async def insert(
        self, db: AsyncSession, result: ReconciliationResult
    ) -> ReconciliationResult:
        row = ReconciliationResultORM(
            company_id=result.company_id,
            run_at=result.run_at,
            checked_payments=result.checked_payments,
            missing_postings=result.missing_postings,
            balance_mismatches=result.balance_mismatches,
            auto_repairs=result.auto_repairs,
            repair_failures=result.repair_failures,
            details=result.details,
        )
        db.add(row)
        await db.flush()
        return _row_to_result(row)

    async def find_latest(
        self, db: AsyncSession, company_id: str
    ) -> ReconciliationResult | None:
        stmt = (
            select(ReconciliationResultORM)
            .where(ReconciliationResultORM.company_id == company_id)
            .order_by(ReconciliationResultORM.run_at.desc(), ReconciliationResultORM.id.desc())
            .limit(1)
        )
        row = (await db.execute(stmt)).scalar_one_or_none()
        return _row_to_result(row) if row is not None else None
