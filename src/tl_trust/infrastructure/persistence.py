"""Concrete repositories for the trust ledger.

Transaction ownership: the CALLER (TrustAccountService via UnitOfWork) starts
and commits the transaction. Repositories only add/flush/select.

Account reads use populate_existing so a long-lived session never serves a
balance that another session has since changed.

TrustTransactionRepository and TaxRecordRepository are append-only: they
have no update or delete methods.
"""

from datetime import datetime

from sqlalchemy import func, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from src.tl_common.datetime_utils import ensure_utc
from src.tl_common.enums import ACTIVE_ACCOUNT_STATUSES, TrustAccountStatus
from src.tl_common.errors import ActiveTrustAccountExistsError, DuplicatePaymentError
from src.tl_trust.domain.models import (
    Deduction,
    TaxRecord,
    TrustAccount,
    TrustSettlement,
    TrustTransaction,
)
from src.tl_trust.infrastructure.db_models import (
    TaxRecordORM,
    TrustAccountORM,
    TrustSettlementORM,
    TrustTransactionORM,
)

_ACCOUNT_MUTABLE_FIELDS = (
    "buyer_id",
    "seller_id",
    "deal_id",
    "opening_balance",
    "running_balance",
    "closing_balance",
    "purchase_price",
    "amount_received",
    "amount_outstanding",
    "status",
    "workflow_state",
    "lock_reason",
    "closed_at",
    "last_transaction_at",
    "updated_at",
)


def _row_to_account(row: TrustAccountORM) -> TrustAccount:
    return TrustAccount(
        id=row.id,
        company_id=row.company_id,
        property_id=row.property_id,
        opening_balance=row.opening_balance,
        running_balance=row.running_balance,
        closing_balance=row.closing_balance,
        purchase_price=row.purchase_price,
        amount_received=row.amount_received,
        amount_outstanding=row.amount_outstanding,
        status=row.status,
        workflow_state=row.workflow_state,
        buyer_id=row.buyer_id,
        seller_id=row.seller_id,
        deal_id=row.deal_id,
        lock_reason=row.lock_reason,
        closed_at=ensure_utc(row.closed_at),
        last_transaction_at=ensure_utc(row.last_transaction_at),
        created_at=ensure_utc(row.created_at),
        updated_at=ensure_utc(row.updated_at),
    )


def _row_to_transaction(row: TrustTransactionORM) -> TrustTransaction:
    return TrustTransaction(
        id=row.id,
        company_id=row.company_id,
        trust_account_id=row.trust_account_id,
        property_id=row.property_id,
        type=row.type,
        debit=row.debit,
        credit=row.credit,
        running_balance=row.running_balance,
        payment_id=row.payment_id,
        reference=row.reference,
        source_event=row.source_event,
        created_by=row.created_by,
        created_at=ensure_utc(row.created_at),
    )


def _row_to_settlement(row: TrustSettlementORM) -> TrustSettlement:
    return TrustSettlement(
        id=row.id,
        company_id=row.company_id,
        trust_account_id=row.trust_account_id,
        sale_price=row.sale_price,
        gross_proceeds=row.gross_proceeds,
        deductions=[Deduction(type=d["type"], amount=int(d["amount"])) for d in row.deductions],
        net_payout=row.net_payout,
        settlement_date=ensure_utc(row.settlement_date),  # type: ignore[arg-type]
        locked=row.locked,
        created_at=ensure_utc(row.created_at),
        updated_at=ensure_utc(row.updated_at),
    )


def _row_to_tax_record(row: TaxRecordORM) -> TaxRecord:
    return TaxRecord(
        id=row.id,
        company_id=row.company_id,
        trust_account_id=row.trust_account_id,
        settlement_id=row.settlement_id,
        tax_type=row.tax_type,
        amount=row.amount,
        calculation_breakdown=dict(row.calculation_breakdown or {}),
        paid_to_authority=row.paid_to_authority,
        payment_reference=row.payment_reference,
        created_at=ensure_utc(row.created_at),
    )


class TrustAccountRepository:
    async def _get_row(
        self, db: AsyncSession, company_id: str, account_id: str, for_update: bool = False
    ) -> TrustAccountORM | None:
        stmt = (
            select(TrustAccountORM)
            .where(TrustAccountORM.id == account_id, TrustAccountORM.company_id == company_id)
            .execution_options(populate_existing=True)
        )
        if for_update:
            stmt = stmt.with_for_update()
        return (await db.execute(stmt)).scalar_one_or_none()

    async def get(
        self, db: AsyncSession, company_id: str, account_id: str, for_update: bool = False
    ) -> TrustAccount | None:
        row = await self._get_row(db, company_id, account_id, for_update)
        return _row_to_account(row) if row is not None else None

    async def find_active_by_property(
        self, db: AsyncSession, company_id: str, property_id: str
    ) -> TrustAccount | None:
        stmt = (
            select(TrustAccountORM)
            .where(
                TrustAccountORM.company_id == company_id,
                TrustAccountORM.property_id == property_id,
                TrustAccountORM.status.in_(ACTIVE_ACCOUNT_STATUSES),
            )
            .execution_options(populate_existing=True)
        )
        row = (await db.execute(stmt)).scalars().first()
        return _row_to_account(row) if row is not None else None

    async def find_latest_by_property(
        self, db: AsyncSession, company_id: str, property_id: str
    ) -> TrustAccount | None:
        stmt = (
            select(TrustAccountORM)
            .where(
                TrustAccountORM.company_id == company_id,
                TrustAccountORM.property_id == property_id,
            )
            .order_by(TrustAccountORM.created_at.desc())
            .limit(1)
            .execution_options(populate_existing=True)
        )
        row = (await db.execute(stmt)).scalars().first()
        return _row_to_account(row) if row is not None else None

    async def insert(self, db: AsyncSession, account: TrustAccount) -> TrustAccount:
        row = TrustAccountORM(
            id=account.id,
            company_id=account.company_id,
            property_id=account.property_id,
            created_at=account.created_at,
        )
        for name in _ACCOUNT_MUTABLE_FIELDS:
            setattr(row, name, getattr(account, name))
        db.add(row)
        try:
            await db.flush()
        except IntegrityError as exc:
            raise ActiveTrustAccountExistsError(account.property_id) from exc
        return _row_to_account(row)

    async def update(self, db: AsyncSession, account: TrustAccount) -> TrustAccount:
        row = await self._get_row(db, account.company_id, account.id)
        if row is None:
            raise LookupError(f"trust account vanished: {account.id}")
        for name in _ACCOUNT_MUTABLE_FIELDS:
            setattr(row, name, getattr(account, name))
        await db.flush()
        return _row_to_account(row)

    async def reset_running_balance(
        self, db: AsyncSession, company_id: str, account_id: str, balance: int, now: datetime
    ) -> bool:
        """Set running/closing balance unless the account is CLOSED. Returns False if skipped."""
        row = await self._get_row(db, company_id, account_id, for_update=True)
        if row is None or row.status == TrustAccountStatus.CLOSED.value:
            return False
        row.running_balance = balance
        row.closing_balance = balance
        row.updated_at = now
        await db.flush()
        return True

    async def list_page(
        self,
        db: AsyncSession,
        company_id: str,
        status: str | None,
        search: str | None,
        offset: int,
        limit: int,
    ) -> tuple[list[TrustAccount], int]:
        conditions = [TrustAccountORM.company_id == company_id]
        if status:
            conditions.append(TrustAccountORM.status == status)
        if search:
            needle = f"%{search.strip()}%"
            conditions.append(
                or_(
                    TrustAccountORM.property_id.ilike(needle),
                    TrustAccountORM.deal_id.ilike(needle),
                    TrustAccountORM.buyer_id.ilike(needle),
                    TrustAccountORM.seller_id.ilike(needle),
                )
            )
        total = (
            await db.execute(select(func.count()).select_from(TrustAccountORM).where(*conditions))
        ).scalar_one()
        stmt = (
            select(TrustAccountORM)
            .where(*conditions)
            .order_by(TrustAccountORM.created_at.desc(), TrustAccountORM.id.desc())
            .offset(offset)
            .limit(limit)
            .execution_options(populate_existing=True)
        )
        rows = (await db.execute(stmt)).scalars().all()
        return [_row_to_account(r) for r in rows], total

    async def list_for_company(self, db: AsyncSession, company_id: str) -> list[TrustAccount]:
        stmt = (
            select(TrustAccountORM)
            .where(TrustAccountORM.company_id == company_id)
            .order_by(TrustAccountORM.created_at)
            .execution_options(populate_existing=True)
        )
        rows = (await db.execute(stmt)).scalars().all()
        return [_row_to_account(r) for r in rows]


class TrustTransactionRepository:
    """Append-only: insert + find_* only."""

    async def insert(self, db: AsyncSession, tx: TrustTransaction) -> TrustTransaction:
        row = TrustTransactionORM(
            company_id=tx.company_id,
            trust_account_id=tx.trust_account_id,
            property_id=tx.property_id,
            payment_id=tx.payment_id,
            type=tx.type,
            debit=tx.debit,
            credit=tx.credit,
            running_balance=tx.running_balance,
            reference=tx.reference,
            source_event=tx.source_event,
            created_by=tx.created_by,
            created_at=tx.created_at,
        )
        db.add(row)
        try:
            await db.flush()
        except IntegrityError as exc:
            if tx.payment_id:
                raise DuplicatePaymentError(tx.payment_id) from exc
            raise
        return _row_to_transaction(row)

    async def find_by_payment_id(
        self, db: AsyncSession, company_id: str, payment_id: str
    ) -> TrustTransaction | None:
        stmt = select(TrustTransactionORM).where(
            TrustTransactionORM.company_id == company_id,
            TrustTransactionORM.payment_id == payment_id,
        )
        row = (await db.execute(stmt)).scalars().first()
        return _row_to_transaction(row) if row is not None else None

    async def find_posted_payment_ids(
        self, db: AsyncSession, company_id: str, payment_ids: list[str]
    ) -> set[str]:
        if not payment_ids:
            return set()
        stmt = select(TrustTransactionORM.payment_id).where(
            TrustTransactionORM.company_id == company_id,
            TrustTransactionORM.payment_id.in_(payment_ids),
        )
        return {pid for pid in (await db.execute(stmt)).scalars().all() if pid}

    async def find_for_account(
        self, db: AsyncSession, company_id: str, account_id: str
    ) -> list[TrustTransaction]:
        stmt = (
            select(TrustTransactionORM)
            .where(
                TrustTransactionORM.company_id == company_id,
                TrustTransactionORM.trust_account_id == account_id,
            )
            .order_by(TrustTransactionORM.id)
        )
        rows = (await db.execute(stmt)).scalars().all()
        return [_row_to_transaction(r) for r in rows]

    async def find_latest(
        self, db: AsyncSession, company_id: str, account_id: str
    ) -> TrustTransaction | None:
        stmt = (
            select(TrustTransactionORM)
            .where(
                TrustTransactionORM.company_id == company_id,
                TrustTransactionORM.trust_account_id == account_id,
            )
            .order_by(TrustTransactionORM.id.desc())
            .limit(1)
        )
        row = (await db.execute(stmt)).scalars().first()
        return _row_to_transaction(row) if row is not None else None

    async def find_by_reference_prefix(
        self, db: AsyncSession, company_id: str, account_id: str, prefix: str
    ) -> list[TrustTransaction]:
        stmt = (
            select(TrustTransactionORM)
            .where(
                TrustTransactionORM.company_id == company_id,
                TrustTransactionORM.trust_account_id == account_id,
                TrustTransactionORM.reference.startswith(prefix, autoescape=True),
            )
            .order_by(TrustTransactionORM.id)
        )
        rows = (await db.execute(stmt)).scalars().all()
        return [_row_to_transaction(r) for r in rows]

    async def find_page(
        self, db: AsyncSession, company_id: str, account_id: str, offset: int, limit: int
    ) -> tuple[list[TrustTransaction], int]:
        total = await self.count_for_account(db, company_id, account_id)
        stmt = (
            select(TrustTransactionORM)
            .where(
                TrustTransactionORM.company_id == company_id,
                TrustTransactionORM.trust_account_id == account_id,
            )
            .order_by(TrustTransactionORM.id.desc())
            .offset(offset)
            .limit(limit)
        )
        rows = (await db.execute(stmt)).scalars().all()
        return [_row_to_transaction(r) for r in rows], total

    async def count_for_account(
        self, db: AsyncSession, company_id: str, account_id: str
    ) -> int:
        stmt = select(func.count()).select_from(TrustTransactionORM).where(
            TrustTransactionORM.company_id == company_id,
            TrustTransactionORM.trust_account_id == account_id,
        )
        return (await db.execute(stmt)).scalar_one()


class TrustSettlementRepository:
    async def _get_row(
        self, db: AsyncSession, company_id: str, account_id: str
    ) -> TrustSettlementORM | None:
        stmt = (
            select(TrustSettlementORM)
            .where(
                TrustSettlementORM.company_id == company_id,
                TrustSettlementORM.trust_account_id == account_id,
            )
            .execution_options(populate_existing=True)
        )
        return (await db.execute(stmt)).scalar_one_or_none()

    async def get_for_account(
        self, db: AsyncSession, company_id: str, account_id: str
    ) -> TrustSettlement | None:
        row = await self._get_row(db, company_id, account_id)
        return _row_to_settlement(row) if row is not None else None

    async def upsert(self, db: AsyncSession, settlement: TrustSettlement) -> TrustSettlement:
        row = await self._get_row(db, settlement.company_id, settlement.trust_account_id)
        deductions = [{"type": d.type, "amount": d.amount} for d in settlement.deductions]
        if row is None:
            row = TrustSettlementORM(
                id=settlement.id,
                company_id=settlement.company_id,
                trust_account_id=settlement.trust_account_id,
                locked=False,
                created_at=settlement.updated_at,
            )
            db.add(row)
        row.sale_price = settlement.sale_price
        row.gross_proceeds = settlement.gross_proceeds
        row.deductions = deductions
        row.net_payout = settlement.net_payout
        row.settlement_date = settlement.settlement_date
        row.updated_at = settlement.updated_at  # type: ignore[assignment]
        await db.flush()
        return _row_to_settlement(row)

    async def lock_for_account(
        self, db: AsyncSession, company_id: str, account_id: str, now: datetime
    ) -> bool:
        row = await self._get_row(db, company_id, account_id)
        if row is None:
            return False
        row.locked = True
        row.updated_at = now
        await db.flush()
        return True


class TaxRecordRepository:
    """Append-only: insert + find_* only."""

    async def insert(self, db: AsyncSession, record: TaxRecord) -> TaxRecord:
        row = TaxRecordORM(
            company_id=record.company_id,
            trust_account_id=record.trust_account_id,
            settlement_id=record.settlement_id,
            tax_type=record.tax_type,
            amount=record.amount,
            calculation_breakdown=record.calculation_breakdown,
            paid_to_authority=record.paid_to_authority,
            payment_reference=record.payment_reference,
            created_at=record.created_at,
        )
        db.add(row)
        await db.flush()
        return _row_to_tax_record(row)

    async def find_for_account(
        self, db: AsyncSession, company_id: str, account_id: str
    ) -> list[TaxRecord]:
        stmt = (
            select(TaxRecordORM)
            .where(
                TaxRecordORM.company_id == company_id,
                TaxRecordORM.trust_account_id == account_id,
            )
            .order_by(TaxRecordORM.id)
        )
        rows = (await db.execute(stmt)).scalars().all()
        return [_row_to_tax_record(r) for r in rows]
