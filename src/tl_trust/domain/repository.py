"""Repository Protocols — dependency inversion for testability.

Unit tests inject mocks that conform to these Protocols; the infrastructure
layer provides the real implementations.

Ledger rows and tax records are append-only: their Protocols expose `insert`
and `find_*` only. There is no update or delete entry point for them.
"""

from datetime import datetime
from typing import Any, Protocol

from sqlalchemy.ext.asyncio import AsyncSession

from src.tl_trust.domain.models import (
    BackfillState,
    EventFailure,
    PropertyRecord,
    SalePayment,
    TaxRecord,
    TrustAccount,
    TrustSettlement,
    TrustTransaction,
)


class TrustAccountRepositoryProtocol(Protocol):
    async def get(
        self, db: AsyncSession, company_id: str, account_id: str, for_update: bool = False
    ) -> TrustAccount | None: ...

    async def find_active_by_property(
        self, db: AsyncSession, company_id: str, property_id: str
    ) -> TrustAccount | None: ...

    async def find_latest_by_property(
        self, db: AsyncSession, company_id: str, property_id: str
    ) -> TrustAccount | None: ...

    async def insert(self, db: AsyncSession, account: TrustAccount) -> TrustAccount: ...

    async def update(self, db: AsyncSession, account: TrustAccount) -> TrustAccount: ...

    async def reset_running_balance(
        self, db: AsyncSession, company_id: str, account_id: str, balance: int, now: datetime
    ) -> bool: ...

    async def list_page(
        self,
        db: AsyncSession,
        company_id: str,
        status: str | None,
        search: str | None,
        offset: int,
        limit: int,
    ) -> tuple[list[TrustAccount], int]: ...

    async def list_for_company(self, db: AsyncSession, company_id: str) -> list[TrustAccount]: ...


class TrustTransactionRepositoryProtocol(Protocol):
    async def insert(self, db: AsyncSession, tx: TrustTransaction) -> TrustTransaction: ...

    async def find_by_payment_id(
        self, db: AsyncSession, company_id: str, payment_id: str
    ) -> TrustTransaction | None: ...

    async def find_posted_payment_ids(
        self, db: AsyncSession, company_id: str, payment_ids: list[str]
    ) -> set[str]: ...

    async def find_for_account(
        self, db: AsyncSession, company_id: str, account_id: str
    ) -> list[TrustTransaction]: ...

    async def find_latest(
        self, db: AsyncSession, company_id: str, account_id: str
    ) -> TrustTransaction | None: ...

    async def find_by_reference_prefix(
        self, db: AsyncSession, company_id: str, account_id: str, prefix: str
    ) -> list[TrustTransaction]: ...

    async def find_page(
        self, db: AsyncSession, company_id: str, account_id: str, offset: int, limit: int
    ) -> tuple[list[TrustTransaction], int]: ...

    async def count_for_account(
        self, db: AsyncSession, company_id: str, account_id: str
    ) -> int: ...


class TrustSettlementRepositoryProtocol(Protocol):
    async def get_for_account(
        self, db: AsyncSession, company_id: str, account_id: str
    ) -> TrustSettlement | None: ...

    async def upsert(self, db: AsyncSession, settlement: TrustSettlement) -> TrustSettlement: ...

    async def lock_for_account(
        self, db: AsyncSession, company_id: str, account_id: str, now: datetime
    ) -> bool: ...


class TaxRecordRepositoryProtocol(Protocol):
    async def insert(self, db: AsyncSession, record: TaxRecord) -> TaxRecord: ...

    async def find_for_account(
        self, db: AsyncSession, company_id: str, account_id: str
    ) -> list[TaxRecord]: ...


# ---------------------------------------------------------------------------
# Upstream collaborators (owned by the property and payment-intake systems)
# ---------------------------------------------------------------------------


class PropertyDirectoryProtocol(Protocol):
    async def get_purchase_price(
        self, db: AsyncSession, company_id: str, property_id: str
    ) -> int | None: ...

    async def list_properties(
        self, db: AsyncSession, after_id: str | None, limit: int
    ) -> list[PropertyRecord]:
        """Properties of every company ordered by id, strictly after `after_id`."""
        ...


class SalePaymentSourceProtocol(Protocol):
    async def find_completed_sale_payments(
        self, db: AsyncSession, company_id: str, property_id: str
    ) -> list[SalePayment]:
        """Completed, non-provisional, not-in-suspense sale payments for one property."""
        ...

    async def list_completed_sale_payments(
        self, db: AsyncSession, company_id: str
    ) -> list[SalePayment]: ...

    async def list_companies_with_sale_payments(self, db: AsyncSession) -> list[str]: ...

    async def get_payment(
        self, db: AsyncSession, company_id: str, payment_id: str
    ) -> SalePayment | None: ...


# ---------------------------------------------------------------------------
# Operational state (these repositories commit their own writes)
# ---------------------------------------------------------------------------


class EventFailureRepositoryProtocol(Protocol):
    async def enqueue(
        self,
        db: AsyncSession,
        *,
        event_id: str,
        event_name: str,
        company_id: str | None,
        payload: dict[str, Any],
        error_message: str,
        now: datetime,
        next_retry_at: datetime,
    ) -> EventFailure:
        """Queue a failed event; a repeat failure of a queued event updates its row."""
        ...

    async def find_due(self, db: AsyncSession, now: datetime, limit: int) -> list[EventFailure]: ...

    async def save(self, db: AsyncSession, failure: EventFailure) -> None: ...

    async def list_for_company(
        self, db: AsyncSession, company_id: str, status: str | None, limit: int
    ) -> list[EventFailure]: ...


class BackfillStateRepositoryProtocol(Protocol):
    async def get(self, db: AsyncSession, name: str) -> BackfillState | None: ...

    async def save(self, db: AsyncSession, state: BackfillState) -> None: ...
