"""Global enums — must match DB CHECK constraints exactly."""

from enum import Enum


class TrustAccountStatus(str, Enum):
    OPEN = "OPEN"
    SETTLED = "SETTLED"
    CLOSED = "CLOSED"


ACTIVE_ACCOUNT_STATUSES = (TrustAccountStatus.OPEN.value, TrustAccountStatus.SETTLED.value)


class WorkflowState(str, Enum):
    VALUED = "VALUED"
    LISTED = "LISTED"
    DEPOSIT_RECEIVED = "DEPOSIT_RECEIVED"
    TRUST_OPEN = "TRUST_OPEN"
    TAX_PENDING = "TAX_PENDING"
    SETTLED = "SETTLED"
    TRANSFER_COMPLETE = "TRANSFER_COMPLETE"
    TRUST_CLOSED = "TRUST_CLOSED"


class TrustTransactionType(str, Enum):
    BUYER_PAYMENT = "BUYER_PAYMENT"
    TRANSFER_TO_SELLER = "TRANSFER_TO_SELLER"
    CGT_DEDUCTION = "CGT_DEDUCTION"
    COMMISSION_DEDUCTION = "COMMISSION_DEDUCTION"
    VAT_DEDUCTION = "VAT_DEDUCTION"
    VAT_ON_COMMISSION = "VAT_ON_COMMISSION"
    REFUND = "REFUND"


class DeductionType(str, Enum):
    """Settlement deduction line. Order here is the order they are applied."""
    CGT = "CGT"
    COMMISSION = "COMMISSION"
    VAT_ON_COMMISSION = "VAT_ON_COMMISSION"
    VAT = "VAT"


class TaxType(str, Enum):
    CGT = "CGT"
    VAT = "VAT"
    VAT_ON_COMMISSION = "VAT_ON_COMMISSION"


class AuditEntityType(str, Enum):
    TRUST_ACCOUNT = "TRUST_ACCOUNT"
    TRUST_TRANSACTION = "TRUST_TRANSACTION"
    TRUST_SETTLEMENT = "TRUST_SETTLEMENT"
    TAX_RECORD = "TAX_RECORD"
    MIGRATION = "MIGRATION"


class AuditAction(str, Enum):
    CREATED = "CREATED"
    POSTED = "POSTED"
    BALANCE_UPDATED = "BALANCE_UPDATED"
    DUPLICATE_IGNORED = "DUPLICATE_IGNORED"
    DUPLICATE_KEY_IGNORED = "DUPLICATE_KEY_IGNORED"
    CALCULATED = "CALCULATED"
    TAX_RECORDED = "TAX_RECORDED"
    TAX_APPLIED = "TAX_APPLIED"
    SELLER_TRANSFERRED = "SELLER_TRANSFERRED"
    CLOSED = "CLOSED"
    WORKFLOW_STATE_CHANGED = "WORKFLOW_STATE_CHANGED"
    INVARIANT_AUTO_REPAIRED = "INVARIANT_AUTO_REPAIRED"
    RECONCILIATION_BALANCE_RESET = "RECONCILIATION_BALANCE_RESET"
    SKIPPED_EXISTING = "SKIPPED_EXISTING"


class EventFailureStatus(str, Enum):
    PENDING = "pending"
    RESOLVED = "resolved"
    DEAD = "dead"


class BackfillStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
