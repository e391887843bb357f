"""Domain models for tl_reconciliation — pure dataclasses, no SQLAlchemy dependency."""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

# Detail kinds recorded on a result row
MISSING_POSTING = "missing_posting"
BALANCE_MISMATCH = "balance_mismatch"
REPAIR_FAILED = "repair_failed"


@dataclass
class JobLease:
    name: str
    holder: str
    acquired_at: datetime
    expires_at: datetime


@dataclass
class ReconciliationResult:
    id: int
    company_id: str
    run_at: datetime
    checked_payments: int = 0
    missing_postings: int = 0
    balance_mismatches: int = 0
    auto_repairs: int = 0
    repair_failures: int = 0
    details: list[dict[str, Any]] = field(default_factory=list)
    details_truncated: bool = False

    def add_detail(self, cap: int, kind: str, **fields: Any) -> None:
        """Append a detail entry unless the cap is reached. Counters are kept by the caller."""
        if len(self.details) >= cap:
            self.details_truncated = True
            return
        self.details.append({"kind": kind, **fields})


@dataclass
class ReconciliationRunSummary:
    run_id: str
    started_at: datetime
    finished_at: datetime | None = None
    skipped: bool = False
    lease_lost: bool = False
    results: list[ReconciliationResult] = field(default_factory=list)
    failed_companies: dict[str, str] = field(default_factory=dict)

    @property
    def auto_repairs(self) -> int:
        return sum(r.auto_repairs for r in self.results)

    @property
    def repair_failures(self) -> int:
        return sum(r.repair_failures for r in self.results)
