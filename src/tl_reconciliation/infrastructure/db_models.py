"""SQLAlchemy ORM models for tl_reconciliation.

These map to tables created by Alembic migration 006.
DO NOT add/remove columns here without a corresponding migration.
"""

from datetime import datetime
from typing import Any

from sqlalchemy import JSON, BigInteger, DateTime, Index, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from src.tl_common.database import Base


class JobLeaseORM(Base):
    __tablename__ = "job_leases"

    name: Mapped[str] = mapped_column(String(64), primary_key=True)
    holder: Mapped[str] = mapped_column(String(64), nullable=False)
    acquired_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class ReconciliationResultORM(Base):
    __tablename__ = "trust_reconciliation_results"
    __table_args__ = (
        Index("idx_trust_recon_company_run", "company_id", "run_at"),
    )

    id: Mapped[int] = mapped_column(
        BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True
    )
    company_id: Mapped[str] = mapped_column(String(64), nullable=False)
    run_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    checked_payments: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    missing_postings: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    balance_mismatches: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    auto_repairs: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    repair_failures: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    details: Mapped[list[dict[str, Any]]] = mapped_column(JSON, nullable=False)
