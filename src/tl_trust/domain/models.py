"""Domain models for tl_trust — pure dataclasses, no SQLAlchemy dependency."""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from src.tl_common.enums import TrustAccountStatus, TrustTransactionType


@dataclass
class TrustAccount:
    id: str
    company_id: str
    property_id: str
    opening_balance: int      # cents
    running_balance: int      # cents, held funds right now
    closing_balance: int      # cents, mirrors running_balance until close
    purchase_price: int       # cents, from the property directory
    amount_received: int      # cents, buyer funds received net of reversals
    amount_outstanding: int   # cents, purchase_price - amount_received, floored at 0
    status: str               # TrustAccountStatus value
    workflow_state: str       # WorkflowState value
    buyer_id: str | None = None
    seller_id: str | None = None
    deal_id: str | None = None
    lock_reason: str | None = None
    closed_at: datetime | None = None
    last_transaction_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def is_closed(self) -> bool:
        return self.status == TrustAccountStatus.CLOSED.value


@dataclass
class TrustTransaction:
    id: int                          # BIGSERIAL, per-account total order
    company_id: str
    trust_account_id: str
    property_id: str
    type: str                        # TrustTransactionType value
    debit: int                       # cents, exactly one of debit/credit is non-zero
    credit: int                      # cents
    running_balance: int             # cents, account balance snapshot after this row
    payment_id: str | None = None    # idempotency key
    reference: str | None = None
    source_event: str | None = None
    created_by: str | None = None
    created_at: datetime | None = None

    @property
    def net_amount(self) -> int:
        return self.credit - self.debit

    @property
    def is_funding_credit(self) -> bool:
        return (
            self.type == TrustTransactionType.BUYER_PAYMENT.value
            and self.credit > 0
            and self.debit == 0
        )


@dataclass
class Deduction:
    type: str     # DeductionType value
    amount: int   # cents


@dataclass
class TrustSettlement:
    id: str
    company_id: str
    trust_account_id: str
    sale_price: int
    gross_proceeds: int
    deductions: list[Deduction]
    net_payout: int
    settlement_date: datetime
    locked: bool = False
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def total_deductions(self) -> int:
        return sum(d.amount for d in self.deductions)

    @property
    def reference_prefix(self) -> str:
        """Reference tag shared by every ledger row posted against this settlement."""
        return f"settlement:{self.id}:"


@dataclass
class TaxRecord:
    id: int
    company_id: str
    trust_account_id: str
    settlement_id: str
    tax_type: str                    # TaxType value
    amount: int                      # cents
    calculation_breakdown: dict[str, Any] = field(default_factory=dict)
    paid_to_authority: bool = False
    payment_reference: str | None = None
    created_at: datetime | None = None


@dataclass
class SalePayment:
    """Completed sale payment as recorded by the upstream payment pipeline."""
    payment_id: str
    company_id: str
    property_id: str
    amount: int                      # cents
    commission: int = 0              # cents, total commission recorded on the payment
    vat_on_commission: int = 0       # cents
    vat_on_sale: int = 0             # cents
    payer_id: str | None = None
    reference: str | None = None
    payment_date: datetime | None = None
    payment_type: str = "sale"
    status: str = "completed"


# ---------------------------------------------------------------------------
# Operation results
# ---------------------------------------------------------------------------


@dataclass
class PostingResult:
    account: TrustAccount
    transaction: TrustTransaction
    duplicate: bool = False


@dataclass
class TaxApplicationResult:
    account: TrustAccount
    posted: list[TrustTransaction] = field(default_factory=list)
    tax_records: list[TaxRecord] = field(default_factory=list)

    @property
    def already_applied(self) -> bool:
        return not self.posted


@dataclass
class RepairResult:
    account: TrustAccount
    repaired: bool
    changes: dict[str, Any] = field(default_factory=dict)


@dataclass
class TrustAccountPage:
    items: list[TrustAccount]
    total: int
    page: int
    limit: int


@dataclass
class LedgerPage:
    items: list[TrustTransaction]
    total: int
    page: int
    limit: int


@dataclass
class TaxSummary:
    cgt: int
    vat: int
    vat_on_commission: int
    records: list[TaxRecord]

    @property
    def total(self) -> int:
        return self.cgt + self.vat + self.vat_on_commission

    @property
    def paid_to_authority_count(self) -> int:
        return sum(1 for r in self.records if r.paid_to_authority)


@dataclass
class ReconciliationSnapshot:
    trust_bank_balance: int
    total_buyer_funds_held: int
    seller_liability: int

    @property
    def variance(self) -> int:
        return self.trust_bank_balance - self.total_buyer_funds_held

    @property
    def healthy(self) -> bool:
        return self.variance == 0


@dataclass
class PropertyRecord:
    property_id: str
    company_id: str
    price: int | None    # cents


@dataclass
class EventFailure:
    """A payment event whose handler failed, queued for retry."""
    id: int
    event_id: str                    # "<event name>:<payment id>", one row per event
    event_name: str
    company_id: str | None
    payload: dict[str, Any]
    error_message: str
    attempts: int
    status: str                      # pending | resolved | dead
    next_retry_at: datetime | None = None
    last_tried_at: datetime | None = None
    created_at: datetime | None = None


@dataclass
class BackfillState:
    name: str
    status: str                      # running | completed | failed
    processed_count: int = 0
    last_processed_id: str | None = None  # resume cursor over property ids
    started_at: datetime | None = None
    completed_at: datetime | None = None
    error: str = ""


@dataclass
class BackfillResult:
    name: str
    dry_run: bool
    accounts_created: int = 0
    transactions_created: int = 0
    skipped_existing: int = 0
    skipped_properties: int = 0      # no completed sale payments
    processed_properties: int = 0
    errors: list[dict[str, str]] = field(default_factory=list)
    interrupted: bool = False        # lease lost to another runner
    duration_ms: int = 0
