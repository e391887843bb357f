"""Pydantic schemas for tl_reconciliation API."""

from typing import Any

from pydantic import BaseModel

from src.tl_common.datetime_utils import isoformat_or_none
from src.tl_reconciliation.domain.models import ReconciliationResult, ReconciliationRunSummary


class ReconciliationResultResponse(BaseModel):
    id: int
    company_id: str
    run_at: str | None
    checked_payments: int
    missing_postings: int
    balance_mismatches: int
    auto_repairs: int
    repair_failures: int
    details: list[dict[str, Any]]

    @classmethod
    def from_domain(cls, result: ReconciliationResult) -> "ReconciliationResultResponse":
        return cls(
            id=result.id,
            company_id=result.company_id,
            run_at=isoformat_or_none(result.run_at),
            checked_payments=result.checked_payments,
            missing_postings=result.missing_postings,
            balance_mismatches=result.balance_mismatches,
            auto_repairs=result.auto_repairs,
            repair_failures=result.repair_failures,
            details=result.details,
        )


class ReconciliationRunResponse(BaseModel):
    run_id: str
    started_at: str | None
    finished_at: str | None
    companies: int
    auto_repairs: int
    repair_failures: int
    failed_companies: dict[str, str]
    lease_lost: bool = False
    result: ReconciliationResultResponse | None

    @classmethod
    def from_summary(
        cls, summary: ReconciliationRunSummary, company_id: str
    ) -> "ReconciliationRunResponse":
        """Run-wide counters plus the calling company's own result, if it had one."""
        own = next((r for r in summary.results if r.company_id == company_id), None)
        return cls(
            run_id=summary.run_id,
            started_at=isoformat_or_none(summary.started_at),
            finished_at=isoformat_or_none(summary.finished_at),
            companies=len(summary.results),
            auto_repairs=summary.auto_repairs,
            repair_failures=summary.repair_failures,
            failed_companies={
                k: v for k, v in summary.failed_companies.items() if k == company_id
            },
            lease_lost=summary.lease_lost,
            result=ReconciliationResultResponse.from_domain(own) if own is not None else None,
        )
