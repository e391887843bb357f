"""AuditLogWriter Protocol.

The audit trail is append-only: the contract has no update or delete entry
points, so nothing above the store can rewrite history.
"""

from typing import Any, Protocol

from sqlalchemy.ext.asyncio import AsyncSession

from src.tl_audit.domain.models import AuditEntry


class AuditLogWriterProtocol(Protocol):
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
    ) -> AuditEntry: ...

    async def find_for_entity(
        self,
        db: AsyncSession,
        company_id: str,
        entity_id: str,
        limit: int = 200,
    ) -> list[AuditEntry]: ...

    async def find_by_action(
        self,
        db: AsyncSession,
        company_id: str,
        action: str,
        limit: int = 200,
    ) -> list[AuditEntry]: ...
