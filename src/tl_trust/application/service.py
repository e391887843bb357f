"""TrustAccountService — all business rules of the trust ledger.

Every mutating operation:
  1. holds the per-account lock (AccountLockProvider),
  2. runs its steps inside one UnitOfWork,
  3. writes audit entries for every state change in that same unit.

Locks are taken only by the public methods; internal helpers (`_post`,
`_require_account`) assume the caller already holds them, so composite
operations such as apply_tax_deductions never re-enter a lock.

Idempotency on payment_id is the primary safety net: a repeated payment is
absorbed (DUPLICATE_IGNORED), and a unique-index race is absorbed after the
failed unit has rolled back (DUPLICATE_KEY_IGNORED).
"""

import logging
import uuid
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import replace

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from config.settings import settings
from src.tl_audit.domain.models import AuditEntry, snapshot
from src.tl_audit.domain.repository import AuditLogWriterProtocol
from src.tl_audit.infrastructure.persistence import AuditLogWriter
from src.tl_common.datetime_utils import utc_now
from src.tl_common.enums import (
    AuditAction,
    AuditEntityType,
    TaxType,
    TrustAccountStatus,
    TrustTransactionType,
    WorkflowState,
)
from src.tl_common.errors import (
    ActiveTrustAccountExistsError,
    AppError,
    DuplicatePaymentError,
    InsufficientTrustBalanceError,
    InternalError,
    InvalidPostingAmountError,
    InvalidWorkflowTransitionError,
    NonZeroBalanceError,
    SettlementLockedError,
    SettlementNotCalculatedError,
    TransferExceedsNetPayoutError,
    TrustAccountClosedError,
    TrustAccountNotFoundError,
)
from src.tl_common.event_bus import PAYMENT_CONFIRMED, PAYMENT_REVERSED
from src.tl_common.locks import AccountLockProvider, build_lock_provider
from src.tl_common.unit_of_work import UnitOfWork
from src.tl_trust.domain.invariants import expected_balances
from src.tl_trust.domain.models import (
    LedgerPage,
    PostingResult,
    ReconciliationSnapshot,
    RepairResult,
    TaxApplicationResult,
    TaxRecord,
    TaxSummary,
    TrustAccount,
    TrustAccountPage,
    TrustSettlement,
    TrustTransaction,
)
from src.tl_trust.domain.repository import (
    PropertyDirectoryProtocol,
    SalePaymentSourceProtocol,
    TaxRecordRepositoryProtocol,
    TrustAccountRepositoryProtocol,
    TrustSettlementRepositoryProtocol,
    TrustTransactionRepositoryProtocol,
)
from src.tl_trust.domain.tax import (
    DEDUCTION_TRANSACTION_TYPES,
    TAX_DEDUCTIONS,
    SettlementCalculation,
    SettlementOverrides,
    TaxRates,
    applied_by_deduction,
    compute_settlement,
)
from src.tl_trust.domain.workflow import validate_transition
from src.tl_trust.infrastructure.persistence import (
    TaxRecordRepository,
    TrustAccountRepository,
    TrustSettlementRepository,
    TrustTransactionRepository,
)
from src.tl_trust.infrastructure.upstream import SqlPropertyDirectory, SqlSalePaymentSource

logger = logging.getLogger(__name__)

_EVT_ACCOUNT_CREATED = "trust.account.created"
_EVT_SETTLEMENT_CALCULATED = "trust.settlement.calculated"
_EVT_TAX_APPLIED = "trust.tax.applied"
_EVT_SELLER_TRANSFER = "trust.seller.transfer"
_EVT_ACCOUNT_CLOSED = "trust.account.closed"
_EVT_WORKFLOW = "trust.workflow.transition"
_EVT_REPAIR = "trust.invariant.repair"
_EVT_RECONCILIATION = "trust.reconciliation"

_DEFAULT_LOCK_REASON = "Closed by accountant"
_MAX_PAGE_SIZE = 200
_MAX_AUDIT_LIMIT = 500

_ACCOUNT = AuditEntityType.TRUST_ACCOUNT.value
_TRANSACTION = AuditEntityType.TRUST_TRANSACTION.value


def _validate_posting_amounts(debit: int, credit: int) -> None:
    if debit < 0 or credit < 0:
        raise InvalidPostingAmountError("Debit and credit must not be negative")
    if debit == 0 and credit == 0:
        raise InvalidPostingAmountError()
    if debit > 0 and credit > 0:
        raise InvalidPostingAmountError("Only one of debit or credit may be non-zero")


def _clamp_page(page: int, limit: int, default_limit: int, max_limit: int) -> tuple[int, int]:
    page = max(1, page or 1)
    limit = min(max_limit, max(1, limit or default_limit))
    return page, limit


class TrustAccountService:
    def __init__(
        self,
        accounts: TrustAccountRepositoryProtocol | None = None,
        transactions: TrustTransactionRepositoryProtocol | None = None,
        settlements: TrustSettlementRepositoryProtocol | None = None,
        tax_records: TaxRecordRepositoryProtocol | None = None,
        audit: AuditLogWriterProtocol | None = None,
        properties: PropertyDirectoryProtocol | None = None,
        sale_payments: SalePaymentSourceProtocol | None = None,
        unit_of_work: UnitOfWork | None = None,
        locks: AccountLockProvider | None = None,
        tax_rates: TaxRates | None = None,
    ) -> None:
        self._accounts: TrustAccountRepositoryProtocol = accounts or TrustAccountRepository()
        self._transactions: TrustTransactionRepositoryProtocol = (
            transactions or TrustTransactionRepository()
        )
        self._settlements: TrustSettlementRepositoryProtocol = (
            settlements or TrustSettlementRepository()
        )
        self._tax_records: TaxRecordRepositoryProtocol = tax_records or TaxRecordRepository()
        self._audit: AuditLogWriterProtocol = audit or AuditLogWriter()
        self._properties: PropertyDirectoryProtocol = properties or SqlPropertyDirectory()
        self._sale_payments: SalePaymentSourceProtocol = sale_payments or SqlSalePaymentSource()
        self._uow = unit_of_work or UnitOfWork(settings.STORE_TRANSACTIONS)
        self._locks: AccountLockProvider = locks or build_lock_provider(
            settings.ACCOUNT_LOCK_BACKEND,
            settings.ACCOUNT_LOCK_TTL_SECONDS,
            settings.ACCOUNT_LOCK_WAIT_SECONDS,
        )
        self._tax_rates = tax_rates or TaxRates.from_settings(settings)

    # ------------------------------------------------------------------
    # Creation & postings
    # ------------------------------------------------------------------

    async def create_trust_account(
        self,
        db: AsyncSession,
        company_id: str,
        property_id: str,
        *,
        opening_balance: int = 0,
        initial_workflow_state: str | None = None,
        buyer_id: str | None = None,
        seller_id: str | None = None,
        deal_id: str | None = None,
        performed_by: str | None = None,
    ) -> TrustAccount:
        """Return the OPEN/SETTLED account for the property, creating it if absent."""
        if opening_balance < 0:
            raise InvalidPostingAmountError("Opening balance must not be negative")
        state = initial_workflow_state or WorkflowState.TRUST_OPEN.value
        if state not in WorkflowState._value2member_map_:
            raise InvalidWorkflowTransitionError("(new)", state)

        async def work() -> TrustAccount:
            existing = await self._accounts.find_active_by_property(db, company_id, property_id)
            if existing is not None:
                logger.info(
                    "create_trust_account idempotency hit: property=%s account=%s",
                    property_id,
                    existing.id,
                )
                return existing

            now = utc_now()
            account = await self._accounts.insert(
                db,
                TrustAccount(
                    id=uuid.uuid4().hex,
                    company_id=company_id,
                    property_id=property_id,
                    opening_balance=opening_balance,
                    running_balance=opening_balance,
                    closing_balance=opening_balance,
                    purchase_price=0,
                    amount_received=opening_balance,
                    amount_outstanding=0,
                    status=TrustAccountStatus.OPEN.value,
                    workflow_state=state,
                    buyer_id=buyer_id,
                    seller_id=seller_id,
                    deal_id=deal_id,
                    created_at=now,
                    updated_at=now,
                ),
            )
            await self._record(
                db, account.company_id, _ACCOUNT, account.id, AuditAction.CREATED,
                _EVT_ACCOUNT_CREATED, None, account, performed_by,
            )
            logger.info(
                "Trust account created: id=%s company=%s property=%s opening=%d",
                account.id, company_id, property_id, opening_balance,
            )
            return account

        async with self._serialized(db, f"property:{company_id}:{property_id}"):
            try:
                return await self._uow.run(db, work)
            except ActiveTrustAccountExistsError:
                # another process created it between our read and insert
                existing = await self._accounts.find_active_by_property(db, company_id, property_id)
                if existing is None:
                    raise
                logger.info(
                    "create_trust_account race resolved: property=%s account=%s",
                    property_id,
                    existing.id,
                )
                return existing

    async def record_buyer_payment(
        self,
        db: AsyncSession,
        company_id: str,
        property_id: str,
        amount: int,
        payment_id: str | None,
        *,
        reference: str | None = None,
        trust_account_id: str | None = None,
        buyer_id: str | None = None,
        seller_id: str | None = None,
        source_event: str = PAYMENT_CONFIRMED,
        performed_by: str | None = None,
    ) -> PostingResult:
        if amount <= 0:
            raise InvalidPostingAmountError("Payment amount must be greater than zero")
        account = await self._resolve_or_create(
            db, company_id, property_id, trust_account_id, buyer_id, seller_id, performed_by
        )
        return await self.post_transaction(
            db,
            company_id,
            account.id,
            TrustTransactionType.BUYER_PAYMENT.value,
            credit=amount,
            payment_id=payment_id,
            reference=reference,
            source_event=source_event,
            performed_by=performed_by,
        )

    async def reverse_buyer_payment(
        self,
        db: AsyncSession,
        company_id: str,
        property_id: str,
        amount: int,
        *,
        reversal_payment_id: str | None = None,
        reference: str | None = None,
        trust_account_id: str | None = None,
        source_event: str = PAYMENT_REVERSED,
        performed_by: str | None = None,
    ) -> PostingResult:
        """Post a BUYER_PAYMENT debit, then refresh the settlement and repair invariants."""
        amount = abs(amount)
        if amount == 0:
            raise InvalidPostingAmountError("Reversal amount must be greater than zero")
        account = await self._resolve_or_create(
            db, company_id, property_id, trust_account_id, None, None, performed_by
        )
        result = await self.post_transaction(
            db,
            company_id,
            account.id,
            TrustTransactionType.BUYER_PAYMENT.value,
            debit=amount,
            payment_id=reversal_payment_id,
            reference=reference,
            source_event=source_event,
            performed_by=performed_by,
        )
        if result.duplicate:
            return result

        try:
            await self.calculate_settlement(db, company_id, account.id, performed_by=performed_by)
        except (AppError, SQLAlchemyError) as exc:
            logger.warning(
                "Skipping settlement refresh after reversal: account=%s reason=%s",
                account.id,
                exc,
            )
        result.account = await self._repair_best_effort(db, result.account, source_event)
        return result

    async def post_transaction(
        self,
        db: AsyncSession,
        company_id: str,
        account_id: str,
        tx_type: str,
        *,
        debit: int = 0,
        credit: int = 0,
        payment_id: str | None = None,
        reference: str | None = None,
        source_event: str | None = None,
        performed_by: str | None = None,
    ) -> PostingResult:
        """The single choke point for ledger rows. See module docstring for guarantees."""
        _validate_posting_amounts(debit, credit)
        if tx_type not in TrustTransactionType._value2member_map_:
            raise InvalidPostingAmountError(f"Unknown transaction type: {tx_type}")

        async def work() -> PostingResult:
            return await self._post(
                db, company_id, account_id, tx_type, debit, credit,
                payment_id, reference, source_event, performed_by,
            )

        async with self._serialized(db, account_id):
            try:
                return await self._uow.run(db, work)
            except DuplicatePaymentError as exc:
                return await self._absorb_duplicate_key(
                    db, company_id, exc.payment_id, source_event, performed_by
                )

    async def _post(
        self,
        db: AsyncSession,
        company_id: str,
        account_id: str,
        tx_type: str,
        debit: int,
        credit: int,
        payment_id: str | None,
        reference: str | None,
        source_event: str | None,
        performed_by: str | None,
    ) -> PostingResult:
        account = await self._require_account(db, company_id, account_id, for_update=True)
        if account.is_closed:
            raise TrustAccountClosedError(account.id)
        settlement = await self._settlements.get_for_account(db, company_id, account.id)
        if settlement is not None and settlement.locked:
            raise SettlementLockedError(account.id)

        if payment_id:
            existing = await self._transactions.find_by_payment_id(db, company_id, payment_id)
            if existing is not None:
                logger.info("post_transaction idempotency hit: payment_id=%s", payment_id)
                await self._record(
                    db, company_id, _TRANSACTION, str(existing.id),
                    AuditAction.DUPLICATE_IGNORED, source_event or PAYMENT_CONFIRMED,
                    existing, existing, performed_by,
                )
                return PostingResult(account=account, transaction=existing, duplicate=True)

        prior_rows = await self._transactions.count_for_account(db, company_id, account.id)
        next_balance = account.running_balance + credit - debit
        if next_balance < 0:
            raise InsufficientTrustBalanceError(required=debit, available=account.running_balance)

        now = utc_now()
        tx = await self._transactions.insert(
            db,
            TrustTransaction(
                id=0,
                company_id=company_id,
                trust_account_id=account.id,
                property_id=account.property_id,
                type=tx_type,
                debit=debit,
                credit=credit,
                running_balance=next_balance,
                payment_id=payment_id,
                reference=reference,
                source_event=source_event,
                created_by=performed_by,
                created_at=now,
            ),
        )

        before = snapshot(account)
        is_buyer_payment = tx_type == TrustTransactionType.BUYER_PAYMENT.value
        # First funding of an account opened at zero: the deposit becomes its opening balance
        if prior_rows == 0 and account.opening_balance == 0 and tx.is_funding_credit:
            account.opening_balance = next_balance
        account.running_balance = next_balance
        account.closing_balance = next_balance
        account.last_transaction_at = tx.created_at
        account.updated_at = now
        if is_buyer_payment:
            price = await self._properties.get_purchase_price(db, company_id, account.property_id)
            if price is not None:
                account.purchase_price = price
            account.amount_received = max(0, account.amount_received + credit - debit)
            account.amount_outstanding = max(0, account.purchase_price - account.amount_received)
            if account.workflow_state == WorkflowState.LISTED.value:
                account.workflow_state = WorkflowState.DEPOSIT_RECEIVED.value
        account = await self._accounts.update(db, account)

        await self._audit.record(
            db,
            company_id=company_id,
            entity_type=_TRANSACTION,
            entity_id=str(tx.id),
            action=AuditAction.POSTED.value,
            source_event=source_event,
            new_value=snapshot(tx),
            performed_by=performed_by,
        )
        await self._audit.record(
            db,
            company_id=company_id,
            entity_type=_ACCOUNT,
            entity_id=account.id,
            action=AuditAction.BALANCE_UPDATED.value,
            source_event=source_event,
            old_value=before,
            new_value=snapshot(account),
            performed_by=performed_by,
        )
        logger.info(
            "Trust posting: account=%s type=%s debit=%d credit=%d balance=%d",
            account.id, tx_type, debit, credit, next_balance,
        )
        return PostingResult(account=account, transaction=tx)

    async def _absorb_duplicate_key(
        self,
        db: AsyncSession,
        company_id: str,
        payment_id: str,
        source_event: str | None,
        performed_by: str | None,
    ) -> PostingResult:
        async def work() -> PostingResult:
            existing = await self._transactions.find_by_payment_id(db, company_id, payment_id)
            if existing is None:
                raise InternalError(f"Duplicate key on payment {payment_id} but no row found")
            account = await self._require_account(db, company_id, existing.trust_account_id)
            await self._record(
                db, company_id, _TRANSACTION, str(existing.id),
                AuditAction.DUPLICATE_KEY_IGNORED, source_event or PAYMENT_CONFIRMED,
                existing, existing, performed_by,
            )
            return PostingResult(account=account, transaction=existing, duplicate=True)

        logger.info("post_transaction unique-key race absorbed: payment_id=%s", payment_id)
        return await self._uow.run(db, work)

    # ------------------------------------------------------------------
    # Settlement, tax, transfer, close
    # ------------------------------------------------------------------

    async def calculate_settlement(
        self,
        db: AsyncSession,
        company_id: str,
        account_id: str,
        overrides: SettlementOverrides | None = None,
        *,
        performed_by: str | None = None,
    ) -> SettlementCalculation:
        async def work() -> SettlementCalculation:
            account = await self._require_account(db, company_id, account_id, for_update=True)
            if account.is_closed:
                raise TrustAccountClosedError(account.id)
            existing = await self._settlements.get_for_account(db, company_id, account.id)
            if existing is not None and existing.locked:
                raise SettlementLockedError(account.id)

            payments = await self._sale_payments.find_completed_sale_payments(
                db, company_id, account.property_id
            )
            figures = compute_settlement(account.property_id, payments, self._tax_rates, overrides)
            now = utc_now()
            settlement = await self._settlements.upsert(
                db,
                TrustSettlement(
                    id=existing.id if existing is not None else uuid.uuid4().hex,
                    company_id=company_id,
                    trust_account_id=account.id,
                    sale_price=figures.sale_price,
                    gross_proceeds=figures.sale_price,
                    deductions=figures.deductions(),
                    net_payout=figures.net_payout,
                    settlement_date=now,
                    locked=False,
                    created_at=existing.created_at if existing is not None else now,
                    updated_at=now,
                ),
            )
            await self._record(
                db, company_id, AuditEntityType.TRUST_SETTLEMENT.value, settlement.id,
                AuditAction.CALCULATED, _EVT_SETTLEMENT_CALCULATED, existing, settlement,
                performed_by,
            )
            logger.info(
                "Settlement calculated: account=%s sale=%d deductions=%d net=%d",
                account.id, settlement.sale_price, settlement.total_deductions,
                settlement.net_payout,
            )
            return SettlementCalculation(settlement=settlement, figures=figures)

        async with self._serialized(db, account_id):
            return await self._uow.run(db, work)

    async def apply_tax_deductions(
        self,
        db: AsyncSession,
        company_id: str,
        account_id: str,
        *,
        authority_payment_reference: str | None = None,
        performed_by: str | None = None,
    ) -> TaxApplicationResult:
        """Post the delta between each settlement deduction and what is already applied."""

        async def work() -> TaxApplicationResult:
            account = await self._require_account(db, company_id, account_id, for_update=True)
            settlement = await self._require_open_settlement(db, account)

            prefix = settlement.reference_prefix
            applied = applied_by_deduction(
                await self._transactions.find_by_reference_prefix(
                    db, company_id, account.id, prefix
                )
            )

            result = TaxApplicationResult(account=account)
            for deduction in settlement.deductions:
                delta = deduction.amount - applied.get(deduction.type, 0)
                if delta <= 0:
                    continue
                tax_type = TAX_DEDUCTIONS.get(deduction.type)
                if tax_type is not None:
                    result.tax_records.append(
                        await self._insert_tax_record(
                            db, account, settlement, tax_type, deduction.type, delta,
                            authority_payment_reference, performed_by,
                        )
                    )
                posting = await self._post(
                    db, company_id, account.id,
                    DEDUCTION_TRANSACTION_TYPES[deduction.type].value,
                    delta, 0, None, f"{prefix}{deduction.type.lower()}",
                    _EVT_TAX_APPLIED, performed_by,
                )
                result.posted.append(posting.transaction)
                result.account = posting.account

            if not result.posted:
                logger.info("apply_tax_deductions idempotency hit: account=%s", account.id)
                return result

            before = result.account
            after = await self._save_workflow(
                db, before, WorkflowState.TAX_PENDING.value, AuditAction.TAX_APPLIED,
                _EVT_TAX_APPLIED, performed_by,
            )
            result.account = after
            return result

        async with self._serialized(db, account_id):
            return await self._uow.run(db, work)

    async def _insert_tax_record(
        self,
        db: AsyncSession,
        account: TrustAccount,
        settlement: TrustSettlement,
        tax_type: TaxType,
        deduction_type: str,
        delta: int,
        authority_payment_reference: str | None,
        performed_by: str | None,
    ) -> TaxRecord:
        record = await self._tax_records.insert(
            db,
            TaxRecord(
                id=0,
                company_id=account.company_id,
                trust_account_id=account.id,
                settlement_id=settlement.id,
                tax_type=tax_type.value,
                amount=delta,
                calculation_breakdown={
                    "settlement_id": settlement.id,
                    "deduction_type": deduction_type,
                    "applied_delta": delta,
                },
                paid_to_authority=False,
                payment_reference=authority_payment_reference,
                created_at=utc_now(),
            ),
        )
        await self._record(
            db, account.company_id, AuditEntityType.TAX_RECORD.value, str(record.id),
            AuditAction.TAX_RECORDED, _EVT_TAX_APPLIED, None, record, performed_by,
        )
        return record

    async def transfer_to_seller(
        self,
        db: AsyncSession,
        company_id: str,
        account_id: str,
        amount: int,
        *,
        reference: str | None = None,
        performed_by: str | None = None,
    ) -> PostingResult:
        if amount <= 0:
            raise InvalidPostingAmountError("Transfer amount must be greater than zero")

        async def work() -> PostingResult:
            account = await self._require_account(db, company_id, account_id, for_update=True)
            settlement = await self._require_open_settlement(db, account)
            if amount > settlement.net_payout:
                raise TransferExceedsNetPayoutError(amount, settlement.net_payout)

            posting = await self._post(
                db, company_id, account.id, TrustTransactionType.TRANSFER_TO_SELLER.value,
                amount, 0, None, reference or f"{settlement.reference_prefix}seller-transfer",
                _EVT_SELLER_TRANSFER, performed_by,
            )
            before = posting.account
            after = replace(before)
            after.status = TrustAccountStatus.SETTLED.value
            after.workflow_state = WorkflowState.TRANSFER_COMPLETE.value
            after.updated_at = utc_now()
            after = await self._accounts.update(db, after)
            await self._record(
                db, company_id, _ACCOUNT, after.id, AuditAction.SELLER_TRANSFERRED,
                _EVT_SELLER_TRANSFER, before, after, performed_by,
            )
            logger.info("Seller transfer: account=%s amount=%d", after.id, amount)
            return PostingResult(account=after, transaction=posting.transaction)

        async with self._serialized(db, account_id):
            return await self._uow.run(db, work)

    async def close_trust_account(
        self,
        db: AsyncSession,
        company_id: str,
        account_id: str,
        *,
        lock_reason: str | None = None,
        performed_by: str | None = None,
    ) -> TrustAccount:
        async def work() -> TrustAccount:
            account = await self._require_account(db, company_id, account_id, for_update=True)
            if account.running_balance != 0:
                raise NonZeroBalanceError(account.running_balance)
            if account.is_closed:
                return account

            now = utc_now()
            after = replace(account)
            after.status = TrustAccountStatus.CLOSED.value
            after.workflow_state = WorkflowState.TRUST_CLOSED.value
            after.closed_at = now
            after.lock_reason = lock_reason or _DEFAULT_LOCK_REASON
            after.updated_at = now
            after = await self._accounts.update(db, after)
            await self._settlements.lock_for_account(db, company_id, account.id, now)
            await self._record(
                db, company_id, _ACCOUNT, after.id, AuditAction.CLOSED,
                _EVT_ACCOUNT_CLOSED, account, after, performed_by,
            )
            logger.info("Trust account closed: id=%s reason=%s", after.id, after.lock_reason)
            return after

        async with self._serialized(db, account_id):
            return await self._uow.run(db, work)

    async def transition_workflow_state(
        self,
        db: AsyncSession,
        company_id: str,
        account_id: str,
        to_state: str,
        *,
        performed_by: str | None = None,
    ) -> TrustAccount:
        async def work() -> TrustAccount:
            account = await self._require_account(db, company_id, account_id, for_update=True)
            target = validate_transition(account.workflow_state, to_state)
            return await self._save_workflow(
                db, account, target.value, AuditAction.WORKFLOW_STATE_CHANGED,
                _EVT_WORKFLOW, performed_by,
            )

        async with self._serialized(db, account_id):
            return await self._uow.run(db, work)

    async def _save_workflow(
        self,
        db: AsyncSession,
        account: TrustAccount,
        to_state: str,
        action: AuditAction,
        source_event: str,
        performed_by: str | None,
    ) -> TrustAccount:
        after = replace(account)
        after.workflow_state = to_state
        after.updated_at = utc_now()
        after = await self._accounts.update(db, after)
        await self._record(
            db, account.company_id, _ACCOUNT, account.id, action,
            source_event, account, after, performed_by,
        )
        logger.info(
            "Workflow state: account=%s %s -> %s", account.id, account.workflow_state, to_state
        )
        return after

    # ------------------------------------------------------------------
    # Invariants
    # ------------------------------------------------------------------

    async def verify_and_repair_account_invariants(
        self,
        db: AsyncSession,
        company_id: str,
        account_id: str,
        *,
        source_event: str | None = None,
        performed_by: str | None = None,
    ) -> RepairResult:
        async def work() -> RepairResult:
            account = await self._require_account(db, company_id, account_id, for_update=True)
            rows = await self._transactions.find_for_account(db, company_id, account.id)
            changes = expected_balances(account, rows).diff(account)
            if not changes:
                return RepairResult(account=account, repaired=False)

            after = replace(account, **changes)
            after.updated_at = utc_now()
            after = await self._accounts.update(db, after)
            await self._record(
                db, company_id, _ACCOUNT, account.id, AuditAction.INVARIANT_AUTO_REPAIRED,
                source_event or _EVT_REPAIR, account, after, performed_by,
            )
            logger.warning(
                "Trust invariants repaired: account=%s fields=%s",
                account.id, sorted(changes),
            )
            return RepairResult(account=after, repaired=True, changes=snapshot(changes) or {})

        async with self._serialized(db, account_id):
            return await self._uow.run(db, work)

    async def reset_running_balance(
        self,
        db: AsyncSession,
        company_id: str,
        account_id: str,
        balance: int,
        *,
        source_event: str = _EVT_RECONCILIATION,
        performed_by: str | None = None,
    ) -> bool:
        """Reset running/closing balance to the ledger's latest snapshot. CLOSED accounts are skipped."""

        async def work() -> bool:
            before = await self._require_account(db, company_id, account_id, for_update=True)
            if before.is_closed or before.running_balance == balance:
                return False
            if not await self._accounts.reset_running_balance(
                db, company_id, account_id, balance, utc_now()
            ):
                return False
            after = await self._require_account(db, company_id, account_id)
            await self._record(
                db, company_id, _ACCOUNT, account_id, AuditAction.RECONCILIATION_BALANCE_RESET,
                source_event, before, after, performed_by,
            )
            logger.warning(
                "Reconciliation balance reset: account=%s %d -> %d",
                account_id, before.running_balance, balance,
            )
            return True

        async with self._serialized(db, account_id):
            return await self._uow.run(db, work)

    async def _repair_best_effort(
        self, db: AsyncSession, account: TrustAccount, source_event: str | None = None
    ) -> TrustAccount:
        try:
            result = await self.verify_and_repair_account_invariants(
                db, account.company_id, account.id, source_event=source_event
            )
        except (AppError, SQLAlchemyError):
            logger.warning("Best-effort invariant repair failed: account=%s", account.id, exc_info=True)
            return account
        return result.account

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_by_id(
        self, db: AsyncSession, company_id: str, account_id: str, *, repair: bool = True
    ) -> TrustAccount:
        account = await self._require_account(db, company_id, account_id)
        if repair:
            account = await self._repair_best_effort(db, account)
        return account

    async def get_by_property(
        self, db: AsyncSession, company_id: str, property_id: str, *, repair: bool = True
    ) -> TrustAccount:
        account = await self._accounts.find_latest_by_property(db, company_id, property_id)
        if account is None:
            raise TrustAccountNotFoundError(f"property {property_id}")
        if repair:
            account = await self._repair_best_effort(db, account)
        return account

    async def list_trust_accounts(
        self,
        db: AsyncSession,
        company_id: str,
        *,
        status: str | None = None,
        search: str | None = None,
        page: int = 1,
        limit: int = 20,
    ) -> TrustAccountPage:
        page, limit = _clamp_page(page, limit, 20, _MAX_PAGE_SIZE)
        if status not in TrustAccountStatus._value2member_map_:
            status = None
        items, total = await self._accounts.list_page(
            db, company_id, status, search or None, (page - 1) * limit, limit
        )
        return TrustAccountPage(items=items, total=total, page=page, limit=limit)

    async def get_ledger(
        self,
        db: AsyncSession,
        company_id: str,
        account_id: str,
        *,
        page: int = 1,
        limit: int = 50,
    ) -> LedgerPage:
        await self._require_account(db, company_id, account_id)
        page, limit = _clamp_page(page, limit, 50, _MAX_PAGE_SIZE)
        items, total = await self._transactions.find_page(
            db, company_id, account_id, (page - 1) * limit, limit
        )
        return LedgerPage(items=items, total=total, page=page, limit=limit)

    async def get_tax_summary(
        self, db: AsyncSession, company_id: str, account_id: str
    ) -> TaxSummary:
        account = await self._require_account(db, company_id, account_id)
        records = await self._tax_records.find_for_account(db, company_id, account.id)

        def total(tax_type: TaxType) -> int:
            return sum(r.amount for r in records if r.tax_type == tax_type.value)

        payments = await self._sale_payments.find_completed_sale_payments(
            db, company_id, account.property_id
        )
        vat_on_commission_recorded = sum(p.vat_on_commission for p in payments)
        return TaxSummary(
            cgt=total(TaxType.CGT),
            vat=total(TaxType.VAT),
            vat_on_commission=vat_on_commission_recorded or total(TaxType.VAT_ON_COMMISSION),
            records=records,
        )

    async def get_audit_logs(
        self, db: AsyncSession, company_id: str, account_id: str, limit: int = 200
    ) -> list[AuditEntry]:
        await self._require_account(db, company_id, account_id)
        limit = min(_MAX_AUDIT_LIMIT, max(1, limit or 200))
        return await self._audit.find_for_entity(db, company_id, account_id, limit)

    async def get_reconciliation_snapshot(
        self, db: AsyncSession, company_id: str, account_id: str
    ) -> ReconciliationSnapshot:
        account = await self._require_account(db, company_id, account_id)
        rows = await self._transactions.find_for_account(db, company_id, account.id)
        settlement = await self._settlements.get_for_account(db, company_id, account.id)
        buyer_funds = sum(
            tx.net_amount for tx in rows if tx.type == TrustTransactionType.BUYER_PAYMENT.value
        )
        return ReconciliationSnapshot(
            trust_bank_balance=account.running_balance,
            total_buyer_funds_held=buyer_funds,
            seller_liability=settlement.net_payout if settlement is not None else 0,
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @asynccontextmanager
    async def _serialized(self, db: AsyncSession, key: str) -> AsyncIterator[None]:
        # waiters must not pin a pooled connection while the holder needs one
        await self._uow.release(db)
        async with self._locks.hold(key):
            yield

    async def _require_account(
        self, db: AsyncSession, company_id: str, account_id: str, for_update: bool = False
    ) -> TrustAccount:
        account = await self._accounts.get(db, company_id, account_id, for_update=for_update)
        if account is None:
            raise TrustAccountNotFoundError(account_id)
        return account

    async def _require_open_settlement(
        self, db: AsyncSession, account: TrustAccount
    ) -> TrustSettlement:
        settlement = await self._settlements.get_for_account(db, account.company_id, account.id)
        if settlement is None:
            raise SettlementNotCalculatedError(account.id)
        if settlement.locked:
            raise SettlementLockedError(account.id)
        return settlement

    async def _resolve_or_create(
        self,
        db: AsyncSession,
        company_id: str,
        property_id: str,
        trust_account_id: str | None,
        buyer_id: str | None,
        seller_id: str | None,
        performed_by: str | None,
    ) -> TrustAccount:
        if trust_account_id:
            return await self._require_account(db, company_id, trust_account_id)
        account = await self._accounts.find_latest_by_property(db, company_id, property_id)
        if account is not None:
            return account
        return await self.create_trust_account(
            db, company_id, property_id,
            buyer_id=buyer_id, seller_id=seller_id, performed_by=performed_by,
        )

    async def _record(
        self,
        db: AsyncSession,
        company_id: str,
        entity_type: str,
        entity_id: str,
        action: AuditAction,
        source_event: str | None,
        old: object | None,
        new: object | None,
        performed_by: str | None,
    ) -> None:
        await self._audit.record(
            db,
            company_id=company_id,
            entity_type=entity_type,
            entity_id=entity_id,
            action=action.value,
            source_event=source_event,
            old_value=snapshot(old),
            new_value=snapshot(new),
            performed_by=performed_by,
        )
