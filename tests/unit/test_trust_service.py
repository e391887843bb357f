"""Unit tests for TrustAccountService using mock repositories."""

from datetime import UTC, datetime
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest

from src.tl_common.enums import AuditAction, TrustTransactionType, WorkflowState
from src.tl_common.errors import (
    ActiveTrustAccountExistsError,
    DuplicatePaymentError,
    InsufficientTrustBalanceError,
    InvalidPostingAmountError,
    InvalidWorkflowTransitionError,
    NonZeroBalanceError,
    SettlementLockedError,
    TransferExceedsNetPayoutError,
    TrustAccountClosedError,
    TrustAccountNotFoundError,
)
from src.tl_common.locks import LocalLockProvider
from src.tl_trust.application.service import TrustAccountService
from src.tl_trust.domain.models import (
    Deduction,
    SalePayment,
    TaxRecord,
    TrustAccount,
    TrustSettlement,
    TrustTransaction,
)
from src.tl_trust.domain.tax import TaxRates


def _make_account(**overrides: Any) -> TrustAccount:
    fields: dict[str, Any] = {
        "id": "acct-1",
        "company_id": "company-1",
        "property_id": "prop-1",
        "opening_balance": 0,
        "running_balance": 0,
        "closing_balance": 0,
        "purchase_price": 0,
        "amount_received": 0,
        "amount_outstanding": 0,
        "status": "OPEN",
        "workflow_state": "TRUST_OPEN",
        "created_at": datetime.now(UTC),
        "updated_at": datetime.now(UTC),
    }
    fields.update(overrides)
    return TrustAccount(**fields)


def _make_tx(
    tx_id: int = 1,
    credit: int = 0,
    debit: int = 0,
    running_balance: int = 0,
    tx_type: str = "BUYER_PAYMENT",
    payment_id: str | None = None,
) -> TrustTransaction:
    return TrustTransaction(
        id=tx_id,
        company_id="company-1",
        trust_account_id="acct-1",
        property_id="prop-1",
        type=tx_type,
        debit=debit,
        credit=credit,
        running_balance=running_balance,
        payment_id=payment_id,
        created_at=datetime.now(UTC),
    )


def _make_settlement(net_payout: int = 0, locked: bool = False) -> TrustSettlement:
    return TrustSettlement(
        id="stl-1",
        company_id="company-1",
        trust_account_id="acct-1",
        sale_price=net_payout,
        gross_proceeds=net_payout,
        deductions=[],
        net_payout=net_payout,
        settlement_date=datetime.now(UTC),
        locked=locked,
    )


async def _inline(db: Any, work: Any) -> Any:
    return await work()


async def _echo(db: Any, obj: Any) -> Any:
    return obj


def _make_service(**repos: Any) -> tuple[TrustAccountService, dict[str, Any]]:
    mocks: dict[str, Any] = {
        "accounts": AsyncMock(),
        "transactions": AsyncMock(),
        "settlements": AsyncMock(),
        "tax_records": AsyncMock(),
        "audit": AsyncMock(),
        "properties": AsyncMock(),
        "sale_payments": AsyncMock(),
    }
    mocks.update(repos)
    mocks["accounts"].update.side_effect = _echo
    mocks["settlements"].get_for_account.return_value = None
    mocks["transactions"].find_by_payment_id.return_value = None
    mocks["transactions"].count_for_account.return_value = 0
    mocks["properties"].get_purchase_price.return_value = None
    uow = MagicMock()
    uow.run = AsyncMock(side_effect=_inline)
    uow.release = AsyncMock()
    svc = TrustAccountService(
        **mocks, unit_of_work=uow, locks=LocalLockProvider(), tax_rates=TaxRates()
    )
    mocks["uow"] = uow
    return svc, mocks


def _audited_actions(audit: AsyncMock) -> list[str]:
    return [c.kwargs["action"] for c in audit.record.await_args_list]


class TestCreateTrustAccount:
    async def test_returns_existing_active_account(self) -> None:
        svc, m = _make_service()
        existing = _make_account()
        m["accounts"].find_active_by_property.return_value = existing

        result = await svc.create_trust_account(MagicMock(), "company-1", "prop-1")

        assert result is existing
        m["accounts"].insert.assert_not_awaited()
        m["audit"].record.assert_not_awaited()

    async def test_creates_with_opening_balance(self) -> None:
        svc, m = _make_service()
        m["accounts"].find_active_by_property.return_value = None
        m["accounts"].insert.side_effect = _echo

        result = await svc.create_trust_account(
            MagicMock(), "company-1", "prop-1", opening_balance=5_000, performed_by="user-1"
        )

        assert result.running_balance == 5_000
        assert result.closing_balance == 5_000
        assert result.amount_received == 5_000
        assert result.workflow_state == WorkflowState.TRUST_OPEN.value
        assert _audited_actions(m["audit"]) == [AuditAction.CREATED.value]

    async def test_negative_opening_balance_rejected(self) -> None:
        svc, _ = _make_service()
        with pytest.raises(InvalidPostingAmountError):
            await svc.create_trust_account(MagicMock(), "company-1", "prop-1", opening_balance=-1)

    async def test_unknown_initial_state_rejected(self) -> None:
        svc, _ = _make_service()
        with pytest.raises(InvalidWorkflowTransitionError):
            await svc.create_trust_account(
                MagicMock(), "company-1", "prop-1", initial_workflow_state="BOGUS"
            )

    async def test_unique_index_race_returns_winner(self) -> None:
        svc, m = _make_service()
        winner = _make_account(id="acct-winner")
        m["accounts"].find_active_by_property.side_effect = [None, winner]
        m["accounts"].insert.side_effect = ActiveTrustAccountExistsError("prop-1")

        result = await svc.create_trust_account(MagicMock(), "company-1", "prop-1")

        assert result is winner


class TestPostTransaction:
    @pytest.mark.parametrize(
        ("debit", "credit"), [(0, 0), (-1, 0), (0, -5), (10, 10)]
    )
    async def test_invalid_amounts(self, debit: int, credit: int) -> None:
        svc, m = _make_service()
        with pytest.raises(InvalidPostingAmountError):
            await svc.post_transaction(
                MagicMock(), "company-1", "acct-1", "REFUND", debit=debit, credit=credit
            )
        m["uow"].run.assert_not_awaited()

    async def test_unknown_type(self) -> None:
        svc, _ = _make_service()
        with pytest.raises(InvalidPostingAmountError):
            await svc.post_transaction(MagicMock(), "company-1", "acct-1", "BRIBE", credit=1)

    async def test_missing_account(self) -> None:
        svc, m = _make_service()
        m["accounts"].get.return_value = None
        with pytest.raises(TrustAccountNotFoundError):
            await svc.post_transaction(MagicMock(), "company-1", "nope", "REFUND", debit=1)

    async def test_closed_account_rejected(self) -> None:
        svc, m = _make_service()
        m["accounts"].get.return_value = _make_account(status="CLOSED")
        with pytest.raises(TrustAccountClosedError):
            await svc.post_transaction(MagicMock(), "company-1", "acct-1", "REFUND", credit=1)

    async def test_locked_settlement_rejected(self) -> None:
        svc, m = _make_service()
        m["accounts"].get.return_value = _make_account()
        m["settlements"].get_for_account.return_value = _make_settlement(locked=True)
        with pytest.raises(SettlementLockedError):
            await svc.post_transaction(MagicMock(), "company-1", "acct-1", "REFUND", credit=1)

    async def test_overdraw_rejected(self) -> None:
        svc, m = _make_service()
        m["accounts"].get.return_value = _make_account(running_balance=100, closing_balance=100)
        with pytest.raises(InsufficientTrustBalanceError):
            await svc.post_transaction(MagicMock(), "company-1", "acct-1", "REFUND", debit=101)
        m["transactions"].insert.assert_not_awaited()

    async def test_credit_updates_balances_and_audits(self) -> None:
        svc, m = _make_service()
        m["accounts"].get.return_value = _make_account(
            workflow_state="LISTED", opening_balance=0
        )
        m["properties"].get_purchase_price.return_value = 1_000
        m["transactions"].insert.side_effect = _echo

        result = await svc.post_transaction(
            MagicMock(), "company-1", "acct-1", "BUYER_PAYMENT", credit=400, payment_id="pay-1"
        )

        assert not result.duplicate
        assert result.transaction.running_balance == 400
        account = result.account
        assert (account.running_balance, account.closing_balance) == (400, 400)
        assert account.opening_balance == 400
        assert (account.purchase_price, account.amount_received) == (1_000, 400)
        assert account.amount_outstanding == 600
        assert account.workflow_state == WorkflowState.DEPOSIT_RECEIVED.value
        assert account.last_transaction_at == result.transaction.created_at
        assert _audited_actions(m["audit"]) == [
            AuditAction.POSTED.value,
            AuditAction.BALANCE_UPDATED.value,
        ]

    async def test_non_buyer_debit_leaves_received_alone(self) -> None:
        svc, m = _make_service()
        m["accounts"].get.return_value = _make_account(
            running_balance=500, closing_balance=500, opening_balance=500, amount_received=500
        )
        m["transactions"].count_for_account.return_value = 1
        m["transactions"].insert.side_effect = _echo

        result = await svc.post_transaction(
            MagicMock(), "company-1", "acct-1",
            TrustTransactionType.COMMISSION_DEDUCTION.value, debit=200,
        )

        assert result.account.running_balance == 300
        assert result.account.amount_received == 500
        m["properties"].get_purchase_price.assert_not_awaited()

    async def test_repeated_payment_id_is_absorbed(self) -> None:
        svc, m = _make_service()
        m["accounts"].get.return_value = _make_account(running_balance=400)
        existing = _make_tx(7, credit=400, running_balance=400, payment_id="pay-1")
        m["transactions"].find_by_payment_id.return_value = existing

        result = await svc.post_transaction(
            MagicMock(), "company-1", "acct-1", "BUYER_PAYMENT", credit=400, payment_id="pay-1"
        )

        assert result.duplicate
        assert result.transaction is existing
        m["transactions"].insert.assert_not_awaited()
        assert _audited_actions(m["audit"]) == [AuditAction.DUPLICATE_IGNORED.value]

    async def test_unique_key_race_absorbed_in_fresh_unit(self) -> None:
        svc, m = _make_service()
        m["accounts"].get.return_value = _make_account()
        existing = _make_tx(9, credit=400, running_balance=400, payment_id="pay-1")
        m["transactions"].find_by_payment_id.side_effect = [None, existing]
        m["transactions"].insert.side_effect = DuplicatePaymentError("pay-1")

        result = await svc.post_transaction(
            MagicMock(), "company-1", "acct-1", "BUYER_PAYMENT", credit=400, payment_id="pay-1"
        )

        assert result.duplicate
        assert result.transaction is existing
        assert m["uow"].run.await_count == 2
        assert _audited_actions(m["audit"]) == [AuditAction.DUPLICATE_KEY_IGNORED.value]


class TestReverseBuyerPayment:
    async def test_replayed_reversal_skips_settlement_refresh(self) -> None:
        svc, m = _make_service()
        account = _make_account(running_balance=300)
        m["accounts"].find_latest_by_property.return_value = account
        m["accounts"].get.return_value = account
        m["transactions"].find_by_payment_id.return_value = _make_tx(
            4, debit=300, running_balance=300, payment_id="reversal:pay-1"
        )
        svc.calculate_settlement = AsyncMock()  # type: ignore[method-assign]

        result = await svc.reverse_buyer_payment(
            MagicMock(), "company-1", "prop-1", 300, reversal_payment_id="reversal:pay-1"
        )

        assert result.duplicate
        svc.calculate_settlement.assert_not_awaited()
        m["transactions"].insert.assert_not_awaited()

    async def test_new_reversal_refreshes_settlement(self) -> None:
        svc, m = _make_service()
        account = _make_account(running_balance=600, closing_balance=600, amount_received=600)
        m["accounts"].find_latest_by_property.return_value = account
        m["accounts"].get.return_value = account
        m["transactions"].count_for_account.return_value = 1
        m["transactions"].insert.side_effect = _echo
        m["transactions"].find_for_account.return_value = []
        svc.calculate_settlement = AsyncMock()  # type: ignore[method-assign]

        result = await svc.reverse_buyer_payment(
            MagicMock(), "company-1", "prop-1", -300, reversal_payment_id="rev-1"
        )

        assert not result.duplicate
        assert result.transaction.debit == 300
        svc.calculate_settlement.assert_awaited_once()


class TestTransferAndClose:
    async def test_transfer_above_net_payout_rejected(self) -> None:
        svc, m = _make_service()
        m["accounts"].get.return_value = _make_account(running_balance=1_000)
        m["settlements"].get_for_account.return_value = _make_settlement(net_payout=900)

        with pytest.raises(TransferExceedsNetPayoutError):
            await svc.transfer_to_seller(MagicMock(), "company-1", "acct-1", 901)

    async def test_transfer_settles_account(self) -> None:
        svc, m = _make_service()
        m["accounts"].get.return_value = _make_account(
            running_balance=900, closing_balance=900, opening_balance=900
        )
        m["settlements"].get_for_account.return_value = _make_settlement(net_payout=900)
        m["transactions"].count_for_account.return_value = 3
        m["transactions"].insert.side_effect = _echo

        result = await svc.transfer_to_seller(MagicMock(), "company-1", "acct-1", 900)

        assert result.account.running_balance == 0
        assert result.account.status == "SETTLED"
        assert result.account.workflow_state == WorkflowState.TRANSFER_COMPLETE.value
        assert result.transaction.reference == "settlement:stl-1:seller-transfer"
        assert AuditAction.SELLER_TRANSFERRED.value in _audited_actions(m["audit"])

    async def test_close_with_balance_rejected(self) -> None:
        svc, m = _make_service()
        m["accounts"].get.return_value = _make_account(running_balance=1)
        with pytest.raises(NonZeroBalanceError):
            await svc.close_trust_account(MagicMock(), "company-1", "acct-1")

    async def test_close_is_idempotent(self) -> None:
        svc, m = _make_service()
        closed = _make_account(status="CLOSED", workflow_state="TRUST_CLOSED")
        m["accounts"].get.return_value = closed

        result = await svc.close_trust_account(MagicMock(), "company-1", "acct-1")

        assert result is closed
        m["accounts"].update.assert_not_awaited()
        m["settlements"].lock_for_account.assert_not_awaited()

    async def test_close_locks_settlement(self) -> None:
        svc, m = _make_service()
        m["accounts"].get.return_value = _make_account(status="SETTLED")

        result = await svc.close_trust_account(
            MagicMock(), "company-1", "acct-1", lock_reason="Audit hold"
        )

        assert result.status == "CLOSED"
        assert result.lock_reason == "Audit hold"
        assert result.closed_at is not None
        m["settlements"].lock_for_account.assert_awaited_once()


class TestTaxDeductions:
    async def test_posts_only_unapplied_delta(self) -> None:
        svc, m = _make_service()
        m["accounts"].get.return_value = _make_account(
            running_balance=10_000, closing_balance=10_000, opening_balance=10_000
        )
        settlement = _make_settlement(net_payout=7_000)
        settlement.deductions = [Deduction("CGT", 2_000), Deduction("COMMISSION", 1_000)]
        m["settlements"].get_for_account.return_value = settlement
        m["transactions"].find_by_reference_prefix.return_value = [
            _make_tx(2, debit=1_500, running_balance=8_500, tx_type="CGT_DEDUCTION"),
            _make_tx(3, debit=1_000, running_balance=7_500, tx_type="COMMISSION_DEDUCTION"),
        ]
        m["transactions"].count_for_account.return_value = 3
        m["transactions"].insert.side_effect = _echo
        m["tax_records"].insert.side_effect = _echo

        result = await svc.apply_tax_deductions(MagicMock(), "company-1", "acct-1")

        assert [(tx.type, tx.debit) for tx in result.posted] == [("CGT_DEDUCTION", 500)]
        assert [(r.tax_type, r.amount) for r in result.tax_records] == [("CGT", 500)]
        assert result.account.workflow_state == WorkflowState.TAX_PENDING.value

    async def test_nothing_left_to_apply(self) -> None:
        svc, m = _make_service()
        m["accounts"].get.return_value = _make_account(running_balance=8_000)
        settlement = _make_settlement(net_payout=8_000)
        settlement.deductions = [Deduction("CGT", 2_000)]
        m["settlements"].get_for_account.return_value = settlement
        m["transactions"].find_by_reference_prefix.return_value = [
            _make_tx(2, debit=2_000, running_balance=8_000, tx_type="CGT_DEDUCTION"),
        ]

        result = await svc.apply_tax_deductions(MagicMock(), "company-1", "acct-1")

        assert result.already_applied
        m["accounts"].update.assert_not_awaited()


class TestInvariantRepair:
    async def test_repairs_drifted_fields(self) -> None:
        svc, m = _make_service()
        m["accounts"].get.return_value = _make_account(
            opening_balance=500, running_balance=450, closing_balance=450,
            amount_received=500,
        )
        m["transactions"].find_for_account.return_value = [
            _make_tx(1, credit=500, running_balance=500),
        ]

        result = await svc.verify_and_repair_account_invariants(
            MagicMock(), "company-1", "acct-1"
        )

        assert result.repaired
        assert result.account.running_balance == 500
        assert result.account.closing_balance == 500
        assert result.changes["running_balance"] == 500
        assert _audited_actions(m["audit"]) == [AuditAction.INVARIANT_AUTO_REPAIRED.value]

    async def test_consistent_account_untouched(self) -> None:
        svc, m = _make_service()
        tx = _make_tx(1, credit=500, running_balance=500)
        m["accounts"].get.return_value = _make_account(
            opening_balance=500, running_balance=500, closing_balance=500,
            amount_received=500, last_transaction_at=tx.created_at,
        )
        m["transactions"].find_for_account.return_value = [tx]

        result = await svc.verify_and_repair_account_invariants(
            MagicMock(), "company-1", "acct-1"
        )

        assert not result.repaired
        m["accounts"].update.assert_not_awaited()

    async def test_reads_survive_repair_failure(self) -> None:
        svc, m = _make_service()
        account = _make_account()
        m["accounts"].get.return_value = account
        m["transactions"].find_for_account.side_effect = TrustAccountNotFoundError("acct-1")

        assert await svc.get_by_id(MagicMock(), "company-1", "acct-1") is account


class TestResetRunningBalance:
    async def test_closed_account_skipped(self) -> None:
        svc, m = _make_service()
        m["accounts"].get.return_value = _make_account(status="CLOSED", running_balance=5)

        assert not await svc.reset_running_balance(MagicMock(), "company-1", "acct-1", 0)
        m["accounts"].reset_running_balance.assert_not_awaited()

    async def test_equal_balance_skipped(self) -> None:
        svc, m = _make_service()
        m["accounts"].get.return_value = _make_account(running_balance=5)

        assert not await svc.reset_running_balance(MagicMock(), "company-1", "acct-1", 5)

    async def test_reset_is_audited(self) -> None:
        svc, m = _make_service()
        m["accounts"].get.side_effect = [
            _make_account(running_balance=5),
            _make_account(running_balance=9, closing_balance=9),
        ]
        m["accounts"].reset_running_balance.return_value = True

        assert await svc.reset_running_balance(MagicMock(), "company-1", "acct-1", 9)
        assert _audited_actions(m["audit"]) == [AuditAction.RECONCILIATION_BALANCE_RESET.value]


class TestReads:
    async def test_list_ignores_unknown_status_and_clamps(self) -> None:
        svc, m = _make_service()
        m["accounts"].list_page.return_value = ([], 0)

        page = await svc.list_trust_accounts(
            MagicMock(), "company-1", status="WHATEVER", page=0, limit=10_000
        )

        assert (page.page, page.limit) == (1, 200)
        m["accounts"].list_page.assert_awaited_once()
        args = m["accounts"].list_page.await_args.args
        assert args[2] is None  # status filter dropped
        assert (args[4], args[5]) == (0, 200)

    async def test_tax_summary_prefers_payment_vat_on_commission(self) -> None:
        svc, m = _make_service()
        m["accounts"].get.return_value = _make_account()
        m["tax_records"].find_for_account.return_value = [
            TaxRecord(1, "company-1", "acct-1", "stl-1", "CGT", 2_000),
            TaxRecord(2, "company-1", "acct-1", "stl-1", "VAT_ON_COMMISSION", 150),
        ]
        m["sale_payments"].find_completed_sale_payments.return_value = [
            SalePayment("pay-1", "company-1", "prop-1", 10_000, vat_on_commission=160),
        ]

        summary = await svc.get_tax_summary(MagicMock(), "company-1", "acct-1")

        assert summary.cgt == 2_000
        assert summary.vat_on_commission == 160
        assert summary.total == 2_160

    async def test_tax_summary_falls_back_to_records(self) -> None:
        svc, m = _make_service()
        m["accounts"].get.return_value = _make_account()
        m["tax_records"].find_for_account.return_value = [
            TaxRecord(2, "company-1", "acct-1", "stl-1", "VAT_ON_COMMISSION", 150),
        ]
        m["sale_payments"].find_completed_sale_payments.return_value = []

        summary = await svc.get_tax_summary(MagicMock(), "company-1", "acct-1")

        assert summary.vat_on_commission == 150
