"""Operational state for the trust background work: failed-event queue and backfill cursor.

Unlike the ledger repositories these commit their own writes. A queued
failure or an advanced cursor must survive even when the surrounding work
fails, and other processes read both.
"""

from datetime import datetime
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from src.tl_common.datetime_utils import ensure_utc
from src.tl_common.enums import EventFailureStatus
from src.tl_trust.domain.models import BackfillState, EventFailure
from src.tl_trust.infrastructure.db_models import TrustBackfillStateORM, TrustEventFailureORM

_ERROR_MAX = 500


def _row_to_failure(row: TrustEventFailureORM) -> EventFailure:
    return EventFailure(
        id=row.id,
        event_id=row.event_id,
        event_name=row.event_name,
        company_id=row.company_id,
        payload=dict(row.payload or {}),
        error_message=row.error_message,
        attempts=row.attempts,
        status=row.status,
        next_retry_at=ensure_utc(row.next_retry_at),
        last_tried_at=ensure_utc(row.last_tried_at),
        created_at=ensure_utc(row.created_at),
    )


def _row_to_state(row: TrustBackfillStateORM) -> BackfillState:
    return BackfillState(
        name=row.name,
        status=row.status,
        processed_count=row.processed_count,
        last_processed_id=row.last_processed_id,
        started_at=ensure_utc(row.started_at),
        completed_at=ensure_utc(row.completed_at),
        error=row.error,
    )


class EventFailureRepository:
    async def _get_row(self, db: AsyncSession, event_id: str) -> TrustEventFailureORM | None:
        stmt = select(TrustEventFailureORM).where(TrustEventFailureORM.event_id == event_id)
        return (await db.execute(stmt)).scalar_one_or_none()

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
        row = await self._get_row(db, event_id)
        if row is None:
            row = TrustEventFailureORM(
                event_id=event_id,
                event_name=event_name,
                company_id=company_id,
                payload=payload,
                error_message=error_message[:_ERROR_MAX],
                attempts=1,
                status=EventFailureStatus.PENDING.value,
                next_retry_at=next_retry_at,
                last_tried_at=now,
                created_at=now,
            )
            db.add(row)
            try:
                await db.commit()
            except IntegrityError:
                # queued concurrently by another delivery of the same event
                await db.rollback()
                row = await self._get_row(db, event_id)
                if row is None:
                    raise
            return _row_to_failure(row)

        row.payload = payload
        row.error_message = error_message[:_ERROR_MAX]
        row.last_tried_at = now
        if row.status != EventFailureStatus.PENDING.value:
            # a fresh delivery failed again after the queue had given up or succeeded
            row.status = EventFailureStatus.PENDING.value
            row.attempts = 1
            row.next_retry_at = next_retry_at
        await db.commit()
        return _row_to_failure(row)

    async def find_due(self, db: AsyncSession, now: datetime, limit: int) -> list[EventFailure]:
        stmt = (
            select(TrustEventFailureORM)
            .where(
                TrustEventFailureORM.status == EventFailureStatus.PENDING.value,
                TrustEventFailureORM.next_retry_at <= now,
            )
            .order_by(TrustEventFailureORM.next_retry_at, TrustEventFailureORM.id)
            .limit(limit)
        )
        rows = (await db.execute(stmt)).scalars().all()
        return [_row_to_failure(r) for r in rows]

    async def save(self, db: AsyncSession, failure: EventFailure) -> None:
        row = await db.get(TrustEventFailureORM, failure.id, populate_existing=True)
        if row is None:
            return
        row.error_message = failure.error_message[:_ERROR_MAX]
        row.attempts = failure.attempts
        row.status = failure.status
        row.next_retry_at = failure.next_retry_at
        row.last_tried_at = failure.last_tried_at
        await db.commit()

    async def list_for_company(
        self, db: AsyncSession, company_id: str, status: str | None, limit: int
    ) -> list[EventFailure]:
        stmt = select(TrustEventFailureORM).where(TrustEventFailureORM.company_id == company_id)
        if status:
            stmt = stmt.where(TrustEventFailureORM.status == status)
        stmt = stmt.order_by(TrustEventFailureORM.id.desc()).limit(limit)
        rows = (await db.execute(stmt)).scalars().all()
        return [_row_to_failure(r) for r in rows]


class BackfillStateRepository:
    async def get(self, db: AsyncSession, name: str) -> BackfillState | None:
        row = await db.get(TrustBackfillStateORM, name, populate_existing=True)
        return _row_to_state(row) if row is not None else None

    async def save(self, db: AsyncSession, state: BackfillState) -> None:
        row = await db.get(TrustBackfillStateORM, state.name, populate_existing=True)
        if row is None:
            row = TrustBackfillStateORM(name=state.name)
            db.add(row)
        row.status = state.status
        row.processed_count = state.processed_count
        row.last_processed_id = state.last_processed_id
        row.started_at = state.started_at
        row.completed_at = state.completed_at
        row.error = state.error[:_ERROR_MAX]
        await db.commit()
