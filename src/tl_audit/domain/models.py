"""Domain models for tl_audit — pure dataclasses, no SQLAlchemy dependency."""

import dataclasses
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any


@dataclass
class AuditEntry:
    id: int                          # BIGSERIAL, total order of audit rows
    company_id: str
    entity_type: str                 # AuditEntityType value
    entity_id: str
    action: str                      # AuditAction value
    source_event: str | None = None
    old_value: dict[str, Any] | None = None
    new_value: dict[str, Any] | None = None
    performed_by: str | None = None
    timestamp: datetime | None = None


def snapshot(obj: Any) -> dict[str, Any] | None:
    """JSON-safe copy of a domain dataclass for old_value/new_value columns."""
    if obj is None:
        return None
    data = dataclasses.asdict(obj) if dataclasses.is_dataclass(obj) else dict(obj)
    return {key: _jsonable(value) for key, value in data.items()}


def _jsonable(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {k: _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    return value
