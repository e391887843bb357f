"""Trust-account balance invariants.

Replaying an account's ledger rows in insertion order from its baseline must
reproduce the stored running balance:

    running_balance == baseline + sum(credit) - sum(debit)

The baseline is the balance held before the first ledger row. It equals the
opening balance, except for an account whose opening balance was set from its
first funding credit (see TrustAccountService.post_transaction): there the
baseline is 0 and the opening balance records the first deposit.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any

from src.tl_common.enums import TrustTransactionType
from src.tl_trust.domain.models import TrustAccount, TrustTransaction


@dataclass(frozen=True)
class ExpectedBalances:
    opening_balance: int
    running_balance: int
    closing_balance: int
    amount_received: int
    amount_outstanding: int
    last_transaction_at: datetime | None

    def diff(self, account: TrustAccount) -> dict[str, Any]:
        """Fields whose stored value diverges from the expected one."""
        changes: dict[str, Any] = {}
        for name in (
            "opening_balance",
            "running_balance",
            "closing_balance",
            "amount_received",
            "amount_outstanding",
            "last_transaction_at",
        ):
            expected = getattr(self, name)
            if expected is not None and getattr(account, name) != expected:
                changes[name] = expected
        return changes


def pre_ledger_balance(first: TrustTransaction) -> int:
    """Balance implied before the first row by backing its effect out of its snapshot."""
    return first.running_balance - first.credit + first.debit


def balance_baseline(opening_balance: int, transactions: list[TrustTransaction]) -> int:
    if not transactions:
        return opening_balance
    first = transactions[0]
    if first.is_funding_credit and opening_balance == first.credit == first.running_balance:
        return 0
    return opening_balance


def replay_running_balance(opening_balance: int, transactions: list[TrustTransaction]) -> int:
    baseline = balance_baseline(opening_balance, transactions)
    return baseline + sum(tx.net_amount for tx in transactions)


def expected_opening_balance(opening_balance: int, transactions: list[TrustTransaction]) -> int:
    """Opening balance consistent with the ledger.

    First row a funding credit on an empty account: the funded amount.
    Otherwise the pre-ledger balance implied by the first snapshot.
    No rows: whatever is stored.
    """
    if not transactions:
        return opening_balance
    first = transactions[0]
    pre_ledger = pre_ledger_balance(first)
    if first.is_funding_credit and pre_ledger == 0:
        return first.credit
    return pre_ledger


def expected_balances(
    account: TrustAccount, transactions: list[TrustTransaction]
) -> ExpectedBalances:
    """Recompute derived account fields from its ledger rows (insertion order)."""
    if not transactions:
        baseline = account.opening_balance
        running = account.opening_balance
        last_at = account.last_transaction_at
    else:
        baseline = pre_ledger_balance(transactions[0])
        running = transactions[-1].running_balance
        last_at = transactions[-1].created_at

    buyer_funds_net = sum(
        tx.net_amount
        for tx in transactions
        if tx.type == TrustTransactionType.BUYER_PAYMENT.value
    )
    received = max(0, baseline + buyer_funds_net)
    return ExpectedBalances(
        opening_balance=expected_opening_balance(account.opening_balance, transactions),
        running_balance=running,
        closing_balance=running,
        amount_received=received,
        amount_outstanding=max(0, account.purchase_price - received),
        last_transaction_at=last_at,
    )


def snapshots_are_consistent(transactions: list[TrustTransaction]) -> bool:
    """Every row's snapshot equals the previous snapshot plus its own effect."""
    for prev, tx in zip(transactions, transactions[1:]):
        if prev.running_balance + tx.net_amount != tx.running_balance:
            return False
    return all(tx.running_balance >= 0 for tx in transactions)
