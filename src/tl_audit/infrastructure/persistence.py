"""AuditLogWriter — append-only recorder for trust-ledger mutations.

Only `record` (INSERT) and `find_*` (SELECT) exist. Writes join the
caller's unit of work; the caller owns commit/rollback.
"""

from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from src.tl_audit.domain.models import AuditEntry
from src.tl_audit.infrastructure.db_models import TrustAuditLogORM
from src.tl_common.datetime_utils import ensure_utc, utc_now


def _row_to_entry(row: TrustAuditLogORM) -> AuditEntry:
    return AuditEntry(
        id=row.id,
        company_id=row.company_id,
        entity_type=row.entity_type,
        entity_id=row.entity_id,
        action=row.action,
        source_event=row.source_event,
        old_value=row.old_value,
        new_value=row.new_value,
        performed_by=row.performed_by,
        timestamp=ensure_utc(row.timestamp),
    )


class AuditLogWriter:
    async def record(
        self,
        db: AsyncSession,
        *,
        company_id: str,
        entity_type: str,
        entity_id: str,
        action: str,
        source_event: str | None = None,
        old_value: dict[str, Any] | None = None,
        new_value: dict[str, Any] | None = None,
        performed_by: str | None = None,
    ) -> AuditEntry:
        row = TrustAuditLogORM(
            company_id=company_id,
            entity_type=entity_type,
            entity_id=entity_id,
            action=action,
            source_event=source_event,
            old_value=old_value,
            new_value=new_value,
            performed_by=performed_by,
            timestamp=utc_now(),
        )
        db.add(row)
        await db.flush()
        return _row_to_entry(row)

    async def find_for_entity(
        self,
        db: AsyncSession,
        company_id: str,
        entity_id: str,
        limit: int = 200,
    ) -> list[AuditEntry]:
        stmt = (
            select(TrustAuditLogORM)
            .where(
                TrustAuditLogORM.company_id == company_id,
                TrustAuditLogORM.entity_id == entity_id,
            )
            .order_by(TrustAuditLogORM.id.desc())
            .limit(limit)
        )
        rows = (await db.execute(stmt)).scalars().all()
        return [_row_to_entry(r) for r in rows]

    async def find_by_action(
        self,
        db: AsyncSession,
        company_id: str,
        action: str,
        limit: int = 200,
    ) -> list[AuditEntry]:
        stmt = (
            select(TrustAuditLogORM)
            .where(
                TrustAuditLogORM.company_id == company_id,
                TrustAuditLogORM.action == action,
            )
            .order_by(TrustAuditLogORM.id.desc())
            .limit(limit)
        )
        rows = (await db.execute(stmt)).scalars().all()
        return [_row_to_entry(r) for r in rows]
