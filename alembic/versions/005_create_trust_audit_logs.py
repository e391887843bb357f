"""005: create trust_audit_logs table

Revision ID: 005
Revises: 004
Create Date: 2026-10-19
"""
from typing import Sequence, Union
from alembic import op

revision: str = "005"
down_revision: Union[str, None] = "004"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.execute("""
        CREATE TABLE trust_audit_logs (
            id              BIGSERIAL       PRIMARY KEY,
            company_id      VARCHAR(64)     NOT NULL,
            entity_type     VARCHAR(30)     NOT NULL,
            entity_id       VARCHAR(64)     NOT NULL,
            action          VARCHAR(40)     NOT NULL,
            source_event    VARCHAR(80),
            old_value       JSONB,
            new_value       JSONB,
            performed_by    VARCHAR(64),
            timestamp       TIMESTAMPTZ     NOT NULL DEFAULT NOW(),
            CONSTRAINT ck_audit_entity_type CHECK (
                entity_type IN ('TRUST_ACCOUNT', 'TRUST_TRANSACTION', 'TRUST_SETTLEMENT', 'TAX_RECORD')
            )
        );
    """)
    op.execute("""
        CREATE INDEX idx_trust_audit_entity
        ON trust_audit_logs (company_id, entity_type, entity_id, timestamp);
    """)
    op.execute("CREATE INDEX idx_trust_audit_action ON trust_audit_logs (company_id, action, id DESC);")
    op.execute("""
        CREATE TRIGGER trg_trust_audit_logs_append_only
        BEFORE UPDATE OR DELETE ON trust_audit_logs
        FOR EACH ROW EXECUTE FUNCTION fn_reject_mutation();
    """)


def downgrade() -> None:
    op.execute("DROP TABLE IF EXISTS trust_audit_logs CASCADE;")
