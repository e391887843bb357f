"""007: create trust_event_failures and trust_backfill_state; allow MIGRATION audit entries

Revision ID: 007
Revises: 006
Create Date: 2026-10-19
"""
from typing import Sequence, Union
from alembic import op

revision: str = "007"
down_revision: Union[str, None] = "006"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.execute("""
        CREATE TABLE trust_event_failures (
            id              BIGSERIAL       PRIMARY KEY,
            event_id        VARCHAR(100)    NOT NULL UNIQUE,
            event_name      VARCHAR(40)     NOT NULL,
            company_id      VARCHAR(64),
            payload         JSONB           NOT NULL,
            error_message   VARCHAR(500)    NOT NULL DEFAULT '',
            attempts        INTEGER         NOT NULL DEFAULT 1,
            status          VARCHAR(20)     NOT NULL,
            next_retry_at   TIMESTAMPTZ,
            last_tried_at   TIMESTAMPTZ,
            created_at      TIMESTAMPTZ     NOT NULL DEFAULT NOW(),
            CONSTRAINT ck_event_failure_status CHECK (status IN ('pending', 'resolved', 'dead'))
        );
    """)
    op.execute("""
        CREATE INDEX idx_trust_event_failures_due
        ON trust_event_failures (status, next_retry_at);
    """)
    op.execute("""
        CREATE INDEX idx_trust_event_failures_company
        ON trust_event_failures (company_id, status, created_at);
    """)
    op.execute("""
        CREATE TABLE trust_backfill_state (
            name                VARCHAR(64)     PRIMARY KEY,
            status              VARCHAR(20)     NOT NULL,
            processed_count     INTEGER         NOT NULL DEFAULT 0,
            last_processed_id   VARCHAR(64),
            started_at          TIMESTAMPTZ,
            completed_at        TIMESTAMPTZ,
            error               VARCHAR(500)    NOT NULL DEFAULT ''
        );
    """)
    op.execute("ALTER TABLE trust_audit_logs DROP CONSTRAINT ck_audit_entity_type;")
    op.execute("""
        ALTER TABLE trust_audit_logs ADD CONSTRAINT ck_audit_entity_type CHECK (
            entity_type IN (
                'TRUST_ACCOUNT', 'TRUST_TRANSACTION', 'TRUST_SETTLEMENT', 'TAX_RECORD', 'MIGRATION'
            )
        );
    """)


def downgrade() -> None:
    op.execute("ALTER TABLE trust_audit_logs DROP CONSTRAINT ck_audit_entity_type;")
    op.execute("""
        ALTER TABLE trust_audit_logs ADD CONSTRAINT ck_audit_entity_type CHECK (
            entity_type IN ('TRUST_ACCOUNT', 'TRUST_TRANSACTION', 'TRUST_SETTLEMENT', 'TAX_RECORD')
        ) NOT VALID;
    """)
    op.execute("DROP TABLE IF EXISTS trust_backfill_state CASCADE;")
    op.execute("DROP TABLE IF EXISTS trust_event_failures CASCADE;")
