"""006: create job_leases and trust_reconciliation_results tables

Revision ID: 006
Revises: 005
Create Date: 2026-10-19
"""
from typing import Sequence, Union
from alembic import op

revision: str = "006"
down_revision: Union[str, None] = "005"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.execute("""
        CREATE TABLE job_leases (
            name            VARCHAR(64)     PRIMARY KEY,
            holder          VARCHAR(64)     NOT NULL,
            acquired_at     TIMESTAMPTZ     NOT NULL,
            expires_at      TIMESTAMPTZ     NOT NULL
        );
    """)
    op.execute("""
        CREATE TABLE trust_reconciliation_results (
            id                  BIGSERIAL       PRIMARY KEY,
            company_id          VARCHAR(64)     NOT NULL,
            run_at              TIMESTAMPTZ     NOT NULL,
            checked_payments    INTEGER         NOT NULL DEFAULT 0,
            missing_postings    INTEGER         NOT NULL DEFAULT 0,
            balance_mismatches  INTEGER         NOT NULL DEFAULT 0,
            auto_repairs        INTEGER         NOT NULL DEFAULT 0,
            repair_failures     INTEGER         NOT NULL DEFAULT 0,
            details             JSONB           NOT NULL DEFAULT '[]'::jsonb
        );
    """)
    op.execute("""
        CREATE INDEX idx_trust_recon_company_run
        ON trust_reconciliation_results (company_id, run_at);
    """)


def downgrade() -> None:
    op.execute("DROP TABLE IF EXISTS trust_reconciliation_results CASCADE;")
    op.execute("DROP TABLE IF EXISTS job_leases CASCADE;")
