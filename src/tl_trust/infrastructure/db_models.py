"""SQLAlchemy ORM models for tl_trust.

These map to tables created by Alembic migrations 002-004 and 007.
DO NOT add/remove columns here without a corresponding migration.
"""

from datetime import datetime
from typing import Any

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    Index,
    Integer,
    String,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column

from src.tl_common.database import Base

_ACTIVE_STATUS_PREDICATE = text("status IN ('OPEN', 'SETTLED')")

_AUTO_ID = BigInteger().with_variant(Integer, "sqlite")


class TrustAccountORM(Base):
    __tablename__ = "trust_accounts"
    __table_args__ = (
        # at most one OPEN/SETTLED account per (company, property)
        Index(
            "uq_trust_accounts_active_property",
            "company_id",
            "property_id",
            unique=True,
            postgresql_where=_ACTIVE_STATUS_PREDICATE,
            sqlite_where=_ACTIVE_STATUS_PREDICATE,
        ),
        Index("idx_trust_accounts_company_status", "company_id", "status", "created_at"),
        CheckConstraint("running_balance >= 0", name="ck_trust_running_balance_gte_0"),
        CheckConstraint("status IN ('OPEN', 'SETTLED', 'CLOSED')", name="ck_trust_status"),
    )

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    company_id: Mapped[str] = mapped_column(String(64), nullable=False)
    property_id: Mapped[str] = mapped_column(String(64), nullable=False)
    buyer_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    seller_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    deal_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    opening_balance: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    running_balance: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    closing_balance: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    purchase_price: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    amount_received: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    amount_outstanding: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    workflow_state: Mapped[str] = mapped_column(String(30), nullable=False)
    lock_reason: Mapped[str | None] = mapped_column(String(200), nullable=True)
    closed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_transaction_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class TrustTransactionORM(Base):
    __tablename__ = "trust_transactions"
    __table_args__ = (
        Index("idx_trust_tx_account", "company_id", "trust_account_id", "id"),
        # idempotency key: NULLs are distinct, so rows without payment_id never collide
        Index("uq_trust_tx_payment_id", "payment_id", unique=True),
        CheckConstraint(
            "(debit > 0 AND credit = 0) OR (credit > 0 AND debit = 0)",
            name="ck_trust_tx_one_side",
        ),
        CheckConstraint("running_balance >= 0", name="ck_trust_tx_balance_gte_0"),
    )

    id: Mapped[int] = mapped_column(_AUTO_ID, primary_key=True, autoincrement=True)
    company_id: Mapped[str] = mapped_column(String(64), nullable=False)
    trust_account_id: Mapped[str] = mapped_column(String(64), nullable=False)
    property_id: Mapped[str] = mapped_column(String(64), nullable=False)
    payment_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    type: Mapped[str] = mapped_column(String(30), nullable=False)
    debit: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    credit: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    running_balance: Mapped[int] = mapped_column(BigInteger, nullable=False)
    reference: Mapped[str | None] = mapped_column(String(200), nullable=True)
    source_event: Mapped[str | None] = mapped_column(String(80), nullable=True)
    created_by: Mapped[str | None] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    # NOTE: No updated_at, trust_transactions is append-only


class TrustSettlementORM(Base):
    __tablename__ = "trust_settlements"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    company_id: Mapped[str] = mapped_column(String(64), nullable=False)
    trust_account_id: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    sale_price: Mapped[int] = mapped_column(BigInteger, nullable=False)
    gross_proceeds: Mapped[int] = mapped_column(BigInteger, nullable=False)
    deductions: Mapped[list[dict[str, Any]]] = mapped_column(JSON, nullable=False)
    net_payout: Mapped[int] = mapped_column(BigInteger, nullable=False)
    settlement_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    locked: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class TaxRecordORM(Base):
    __tablename__ = "tax_records"
    __table_args__ = (
        Index("idx_tax_records_account", "company_id", "trust_account_id", "tax_type"),
    )

    id: Mapped[int] = mapped_column(_AUTO_ID, primary_key=True, autoincrement=True)
    company_id: Mapped[str] = mapped_column(String(64), nullable=False)
    trust_account_id: Mapped[str] = mapped_column(String(64), nullable=False)
    settlement_id: Mapped[str] = mapped_column(String(64), nullable=False)
    tax_type: Mapped[str] = mapped_column(String(30), nullable=False)
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    calculation_breakdown: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)
    paid_to_authority: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    payment_reference: Mapped[str | None] = mapped_column(String(100), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    # NOTE: No updated_at, tax_records is append-only


class TrustEventFailureORM(Base):
    __tablename__ = "trust_event_failures"
    __table_args__ = (
        Index("idx_trust_event_failures_due", "status", "next_retry_at"),
        Index("idx_trust_event_failures_company", "company_id", "status", "created_at"),
    )

    id: Mapped[int] = mapped_column(_AUTO_ID, primary_key=True, autoincrement=True)
    event_id: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)
    event_name: Mapped[str] = mapped_column(String(40), nullable=False)
    company_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    payload: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)
    error_message: Mapped[str] = mapped_column(String(500), nullable=False, default="")
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    next_retry_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_tried_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class TrustBackfillStateORM(Base):
    __tablename__ = "trust_backfill_state"

    name: Mapped[str] = mapped_column(String(64), primary_key=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    processed_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_processed_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    error: Mapped[str] = mapped_column(String(500), nullable=False, default="")
