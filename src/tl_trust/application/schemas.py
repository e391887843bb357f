"""Pydantic schemas for tl_trust API."""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from src.tl_audit.domain.models import AuditEntry
from src.tl_common.datetime_utils import isoformat_or_none
from src.tl_common.enums import EventFailureStatus, TrustTransactionType, WorkflowState
from src.tl_common.money import bps_to_rate_display, cents_to_display
from src.tl_trust.domain.models import (
    BackfillResult,
    BackfillState,
    EventFailure,
    LedgerPage,
    PostingResult,
    ReconciliationSnapshot,
    TaxApplicationResult,
    TaxRecord,
    TaxSummary,
    TrustAccount,
    TrustAccountPage,
    TrustTransaction,
)
from src.tl_trust.domain.tax import SettlementCalculation, SettlementOverrides

# ---------------------------------------------------------------------------
# Request schemas
# ---------------------------------------------------------------------------


class CreateTrustAccountRequest(BaseModel):
    property_id: str = Field(..., min_length=1, max_length=64)
    opening_balance_cents: int = Field(0, ge=0)
    initial_workflow_state: WorkflowState | None = None
    buyer_id: str | None = Field(None, max_length=64)
    seller_id: str | None = Field(None, max_length=64)
    deal_id: str | None = Field(None, max_length=64)


class BuyerPaymentRequest(BaseModel):
    property_id: str = Field(..., min_length=1, max_length=64)
    amount_cents: int = Field(..., gt=0)
    payment_id: str | None = Field(None, max_length=64)
    reference: str | None = Field(None, max_length=200)
    trust_account_id: str | None = None
    buyer_id: str | None = None
    seller_id: str | None = None


class PostTransactionRequest(BaseModel):
    type: TrustTransactionType
    debit_cents: int = Field(0, ge=0)
    credit_cents: int = Field(0, ge=0)
    payment_id: str | None = Field(None, max_length=64)
    reference: str | None = Field(None, max_length=200)


class CalculateSettlementRequest(BaseModel):
    sale_price_cents: int | None = Field(None, ge=0)
    commission_amount_cents: int | None = Field(None, ge=0)
    cgt_amount_cents: int | None = Field(None, ge=0)
    apply_vat_on_sale: bool | None = None
    cgt_rate_bps: int | None = Field(None, ge=0, le=10_000)
    vat_sale_rate_bps: int | None = Field(None, ge=0, le=10_000)
    vat_on_commission_rate_bps: int | None = Field(None, ge=0, le=10_000)

    def to_overrides(self) -> SettlementOverrides:
        return SettlementOverrides(
            sale_price=self.sale_price_cents,
            commission_amount=self.commission_amount_cents,
            cgt_amount=self.cgt_amount_cents,
            apply_vat_on_sale=self.apply_vat_on_sale,
            cgt_rate_bps=self.cgt_rate_bps,
            vat_sale_rate_bps=self.vat_sale_rate_bps,
            vat_on_commission_rate_bps=self.vat_on_commission_rate_bps,
        )


class ApplyTaxRequest(BaseModel):
    authority_payment_reference: str | None = Field(None, max_length=100)


class TransferToSellerRequest(BaseModel):
    amount_cents: int = Field(..., gt=0)
    reference: str | None = Field(None, max_length=200)


class CloseTrustAccountRequest(BaseModel):
    lock_reason: str | None = Field(None, max_length=200)


class WorkflowTransitionRequest(BaseModel):
    to_state: WorkflowState


class BackfillRequest(BaseModel):
    dry_run: bool = False
    limit: int = Field(50, ge=1, le=50, description="Properties per batch")


# ---------------------------------------------------------------------------
# Response schemas
# ---------------------------------------------------------------------------


class TrustAccountResponse(BaseModel):
    id: str
    property_id: str
    buyer_id: str | None
    seller_id: str | None
    deal_id: str | None
    status: str
    workflow_state: str
    opening_balance_cents: int
    running_balance_cents: int
    running_balance_display: str
    closing_balance_cents: int
    purchase_price_cents: int
    purchase_price_display: str
    amount_received_cents: int
    amount_outstanding_cents: int
    amount_outstanding_display: str
    lock_reason: str | None
    closed_at: str | None
    last_transaction_at: str | None
    created_at: str | None

    @classmethod
    def from_domain(cls, account: TrustAccount) -> "TrustAccountResponse":
        return cls(
            id=account.id,
            property_id=account.property_id,
            buyer_id=account.buyer_id,
            seller_id=account.seller_id,
            deal_id=account.deal_id,
            status=account.status,
            workflow_state=account.workflow_state,
            opening_balance_cents=account.opening_balance,
            running_balance_cents=account.running_balance,
            running_balance_display=cents_to_display(account.running_balance),
            closing_balance_cents=account.closing_balance,
            purchase_price_cents=account.purchase_price,
            purchase_price_display=cents_to_display(account.purchase_price),
            amount_received_cents=account.amount_received,
            amount_outstanding_cents=account.amount_outstanding,
            amount_outstanding_display=cents_to_display(account.amount_outstanding),
            lock_reason=account.lock_reason,
            closed_at=isoformat_or_none(account.closed_at),
            last_transaction_at=isoformat_or_none(account.last_transaction_at),
            created_at=isoformat_or_none(account.created_at),
        )


class TrustAccountListResponse(BaseModel):
    items: list[TrustAccountResponse]
    total: int
    page: int
    limit: int

    @classmethod
    def from_page(cls, page: TrustAccountPage) -> "TrustAccountListResponse":
        return cls(
            items=[TrustAccountResponse.from_domain(a) for a in page.items],
            total=page.total,
            page=page.page,
            limit=page.limit,
        )


class TrustTransactionResponse(BaseModel):
    id: int
    type: str
    debit_cents: int
    credit_cents: int
    running_balance_cents: int
    running_balance_display: str
    payment_id: str | None
    reference: str | None
    source_event: str | None
    created_by: str | None
    created_at: str | None

    @classmethod
    def from_domain(cls, tx: TrustTransaction) -> "TrustTransactionResponse":
        return cls(
            id=tx.id,
            type=tx.type,
            debit_cents=tx.debit,
            credit_cents=tx.credit,
            running_balance_cents=tx.running_balance,
            running_balance_display=cents_to_display(tx.running_balance),
            payment_id=tx.payment_id,
            reference=tx.reference,
            source_event=tx.source_event,
            created_by=tx.created_by,
            created_at=isoformat_or_none(tx.created_at),
        )


class LedgerResponse(BaseModel):
    items: list[TrustTransactionResponse]
    total: int
    page: int
    limit: int

    @classmethod
    def from_page(cls, page: LedgerPage) -> "LedgerResponse":
        return cls(
            items=[TrustTransactionResponse.from_domain(t) for t in page.items],
            total=page.total,
            page=page.page,
            limit=page.limit,
        )


class PostingResponse(BaseModel):
    account: TrustAccountResponse
    transaction: TrustTransactionResponse
    duplicate: bool

    @classmethod
    def from_result(cls, result: PostingResult) -> "PostingResponse":
        return cls(
            account=TrustAccountResponse.from_domain(result.account),
            transaction=TrustTransactionResponse.from_domain(result.transaction),
            duplicate=result.duplicate,
        )


class DeductionResponse(BaseModel):
    type: str
    amount_cents: int
    amount_display: str


class SettlementResponse(BaseModel):
    id: str
    trust_account_id: str
    sale_price_cents: int
    gross_proceeds_cents: int
    deductions: list[DeductionResponse]
    total_deductions_cents: int
    net_payout_cents: int
    net_payout_display: str
    locked: bool
    settlement_date: str | None
    rates: dict[str, str]
    sources: dict[str, str]

    @classmethod
    def from_calculation(cls, calc: SettlementCalculation) -> "SettlementResponse":
        s, f = calc.settlement, calc.figures
        return cls(
            id=s.id,
            trust_account_id=s.trust_account_id,
            sale_price_cents=s.sale_price,
            gross_proceeds_cents=s.gross_proceeds,
            deductions=[
                DeductionResponse(
                    type=d.type, amount_cents=d.amount, amount_display=cents_to_display(d.amount)
                )
                for d in s.deductions
            ],
            total_deductions_cents=s.total_deductions,
            net_payout_cents=s.net_payout,
            net_payout_display=cents_to_display(s.net_payout),
            locked=s.locked,
            settlement_date=isoformat_or_none(s.settlement_date),
            rates={
                "cgt": bps_to_rate_display(f.rates.cgt_rate_bps),
                "vat_on_sale": bps_to_rate_display(f.rates.vat_sale_rate_bps)
                if f.rates.apply_vat_on_sale
                else "not-applied",
                "vat_on_commission": bps_to_rate_display(f.rates.vat_on_commission_rate_bps),
            },
            sources=dict(f.sources),
        )


class TaxRecordResponse(BaseModel):
    id: int
    tax_type: str
    amount_cents: int
    paid_to_authority: bool
    payment_reference: str | None
    calculation_breakdown: dict[str, Any]
    created_at: str | None

    @classmethod
    def from_domain(cls, record: TaxRecord) -> "TaxRecordResponse":
        return cls(
            id=record.id,
            tax_type=record.tax_type,
            amount_cents=record.amount,
            paid_to_authority=record.paid_to_authority,
            payment_reference=record.payment_reference,
            calculation_breakdown=record.calculation_breakdown,
            created_at=isoformat_or_none(record.created_at),
        )


class TaxApplicationResponse(BaseModel):
    account: TrustAccountResponse
    posted: list[TrustTransactionResponse]
    tax_records: list[TaxRecordResponse]
    already_applied: bool

    @classmethod
    def from_result(cls, result: TaxApplicationResult) -> "TaxApplicationResponse":
        return cls(
            account=TrustAccountResponse.from_domain(result.account),
            posted=[TrustTransactionResponse.from_domain(t) for t in result.posted],
            tax_records=[TaxRecordResponse.from_domain(r) for r in result.tax_records],
            already_applied=result.already_applied,
        )


class TaxSummaryResponse(BaseModel):
    cgt_cents: int
    vat_cents: int
    vat_on_commission_cents: int
    total_cents: int
    total_display: str
    paid_to_authority_count: int
    records: list[TaxRecordResponse]

    @classmethod
    def from_summary(cls, summary: TaxSummary) -> "TaxSummaryResponse":
        return cls(
            cgt_cents=summary.cgt,
            vat_cents=summary.vat,
            vat_on_commission_cents=summary.vat_on_commission,
            total_cents=summary.total,
            total_display=cents_to_display(summary.total),
            paid_to_authority_count=summary.paid_to_authority_count,
            records=[TaxRecordResponse.from_domain(r) for r in summary.records],
        )


class AuditEntryResponse(BaseModel):
    id: int
    entity_type: str
    entity_id: str
    action: str
    source_event: str | None
    old_value: dict[str, Any] | None
    new_value: dict[str, Any] | None
    performed_by: str | None
    timestamp: datetime | None

    @classmethod
    def from_domain(cls, entry: AuditEntry) -> "AuditEntryResponse":
        return cls(
            id=entry.id,
            entity_type=entry.entity_type,
            entity_id=entry.entity_id,
            action=entry.action,
            source_event=entry.source_event,
            old_value=entry.old_value,
            new_value=entry.new_value,
            performed_by=entry.performed_by,
            timestamp=entry.timestamp,
        )


class ReconciliationSnapshotResponse(BaseModel):
    trust_bank_balance_cents: int
    total_buyer_funds_held_cents: int
    seller_liability_cents: int
    variance_cents: int
    variance_display: str
    healthy: bool

    @classmethod
    def from_snapshot(cls, snap: ReconciliationSnapshot) -> "ReconciliationSnapshotResponse":
        return cls(
            trust_bank_balance_cents=snap.trust_bank_balance,
            total_buyer_funds_held_cents=snap.total_buyer_funds_held,
            seller_liability_cents=snap.seller_liability,
            variance_cents=snap.variance,
            variance_display=cents_to_display(snap.variance),
            healthy=snap.healthy,
        )


class BackfillResultResponse(BaseModel):
    name: str
    dry_run: bool
    accounts_created: int
    transactions_created: int
    skipped_existing: int
    skipped_properties: int
    processed_properties: int
    errors: list[dict[str, str]]
    interrupted: bool
    duration_ms: int

    @classmethod
    def from_result(cls, result: BackfillResult) -> "BackfillResultResponse":
        return cls(
            name=result.name,
            dry_run=result.dry_run,
            accounts_created=result.accounts_created,
            transactions_created=result.transactions_created,
            skipped_existing=result.skipped_existing,
            skipped_properties=result.skipped_properties,
            processed_properties=result.processed_properties,
            errors=result.errors,
            interrupted=result.interrupted,
            duration_ms=result.duration_ms,
        )


class BackfillStateResponse(BaseModel):
    name: str
    status: str
    processed_count: int
    last_processed_id: str | None
    started_at: str | None
    completed_at: str | None
    error: str

    @classmethod
    def from_domain(cls, state: BackfillState) -> "BackfillStateResponse":
        return cls(
            name=state.name,
            status=state.status,
            processed_count=state.processed_count,
            last_processed_id=state.last_processed_id,
            started_at=isoformat_or_none(state.started_at),
            completed_at=isoformat_or_none(state.completed_at),
            error=state.error,
        )


class EventFailureResponse(BaseModel):
    id: int
    event_id: str
    event_name: str
    status: EventFailureStatus
    attempts: int
    error_message: str
    payload: dict[str, Any]
    next_retry_at: str | None
    last_tried_at: str | None
    created_at: str | None

    @classmethod
    def from_domain(cls, failure: EventFailure) -> "EventFailureResponse":
        return cls(
            id=failure.id,
            event_id=failure.event_id,
            event_name=failure.event_name,
            status=EventFailureStatus(failure.status),
            attempts=failure.attempts,
            error_message=failure.error_message,
            payload=failure.payload,
            next_retry_at=isoformat_or_none(failure.next_retry_at),
            last_tried_at=isoformat_or_none(failure.last_tried_at),
            created_at=isoformat_or_none(failure.created_at),
        )
