"""Repository Protocols for the reconciliation job."""

from datetime import datetime
from typing import Protocol

from sqlalchemy.ext.asyncio import AsyncSession

from src.tl_reconciliation.domain.models import ReconciliationResult


class JobLeaseRepositoryProtocol(Protocol):
    async def try_acquire(
        self, db: AsyncSession, name: str, holder: str, now: datetime, ttl_seconds: int
    ) -> bool:
        """Take the lease if it is free or expired. Commits on success."""
        ...

    async def extend(
        self, db: AsyncSession, name: str, holder: str, now: datetime, ttl_seconds: int
    ) -> bool:
        """Move the expiry of a lease we still hold. Commits."""
        ...

    async def release(self, db: AsyncSession, name: str, holder: str) -> None: ...


class ReconciliationResultRepositoryProtocol(Protocol):
    async def insert(
        self, db: AsyncSession, result: ReconciliationResult
    ) -> ReconciliationResult: ...

    async def find_latest(
        self, db: AsyncSession, company_id: str
    ) -> ReconciliationResult | None: ...
