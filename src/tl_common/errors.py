"""Unified error codes and custom exceptions.

Error code ranges:
  1xxx: Request / validation (rejected synchronously, never retried)
  2xxx: Trust-account invariants (hard business-rule failures)
  4xxx: Reconciliation
  9xxx: System
"""


class AppError(Exception):
    """Base application error."""

    def __init__(
        self,
        code: int,
        message: str,
        http_status: int = 500,
    ) -> None:
        self.code = code
        self.message = message
        self.http_status = http_status
        super().__init__(message)


class ValidationError(AppError):
    """Caller supplied something the operation cannot accept."""


class InvariantViolationError(AppError):
    """Operation would break a ledger invariant."""


# --- 1xxx: Request / validation ---

class MissingCompanyError(ValidationError):
    def __init__(self) -> None:
        super().__init__(1001, "X-Company-Id header is required", 400)


class InvalidPostingAmountError(ValidationError):
    def __init__(self, detail: str = "Debit or credit amount is required") -> None:
        super().__init__(1002, detail, 422)


class InvalidWorkflowTransitionError(ValidationError):
    def __init__(self, from_state: str, to_state: str) -> None:
        super().__init__(
            1003,
            f"Invalid workflow transition from {from_state} to {to_state}",
            422,
        )


class TransferExceedsNetPayoutError(ValidationError):
    def __init__(self, amount: int, net_payout: int) -> None:
        super().__init__(
            1004,
            f"Transfer amount {amount} cents exceeds settlement net payout {net_payout} cents",
            422,
        )


class SettlementNotCalculatedError(ValidationError):
    def __init__(self, trust_account_id: str) -> None:
        super().__init__(
            1005, f"Settlement must be calculated first for trust account {trust_account_id}", 422
        )


class NoSalePaymentsError(ValidationError):
    def __init__(self, property_id: str) -> None:
        super().__init__(
            1006, f"No completed sale payments found for property {property_id}", 422
        )


class SalePaymentNotFoundError(ValidationError):
    def __init__(self, payment_id: str) -> None:
        super().__init__(1007, f"Payment not found: {payment_id}", 404)


# --- 2xxx: Trust account ---

class TrustAccountNotFoundError(AppError):
    def __init__(self, trust_account_id: str) -> None:
        super().__init__(2001, f"Trust account not found: {trust_account_id}", 404)


class TrustAccountClosedError(InvariantViolationError):
    def __init__(self, trust_account_id: str) -> None:
        super().__init__(2002, f"Trust account is closed: {trust_account_id}", 422)


class InsufficientTrustBalanceError(InvariantViolationError):
    def __init__(self, required: int, available: int) -> None:
        super().__init__(
            2003,
            f"Insufficient balance: required {required} cents, available {available} cents",
            422,
        )


class NonZeroBalanceError(InvariantViolationError):
    def __init__(self, balance: int) -> None:
        super().__init__(
            2004, f"Cannot close trust account with non-zero balance: {balance} cents", 422
        )


class SettlementLockedError(InvariantViolationError):
    def __init__(self, trust_account_id: str) -> None:
        super().__init__(2005, f"Trust settlement is locked for trust account {trust_account_id}", 422)


class DuplicatePaymentError(AppError):
    """Unique-index hit on payment_id. Absorbed by the service, never sent to clients."""

    def __init__(self, payment_id: str) -> None:
        self.payment_id = payment_id
        super().__init__(2006, f"Payment already posted: {payment_id}", 409)


class ActiveTrustAccountExistsError(AppError):
    """Unique-index hit on (company, property) for OPEN/SETTLED accounts."""

    def __init__(self, property_id: str) -> None:
        self.property_id = property_id
        super().__init__(2007, f"Active trust account already exists for property {property_id}", 409)


class AccountBusyError(AppError):
    def __init__(self, trust_account_id: str) -> None:
        super().__init__(2008, f"Trust account is busy, retry later: {trust_account_id}", 409)


# --- 4xxx: Background jobs ---

class ReconciliationInProgressError(AppError):
    def __init__(self) -> None:
        super().__init__(4001, "Trust reconciliation is already running", 409)


class BackfillInProgressError(AppError):
    def __init__(self) -> None:
        super().__init__(4002, "Trust account backfill is already running", 409)


# --- 9xxx: System ---

class InternalError(AppError):
    def __init__(self, detail: str = "Internal server error") -> None:
        super().__init__(9002, detail, 500)
