"""002: create trust_accounts table

Revision ID: 002
Revises: 001
Create Date: 2026-10-19
"""
from typing import Sequence, Union
from alembic import op

revision: str = "002"
down_revision: Union[str, None] = "001"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.execute("""
        CREATE TABLE trust_accounts (
            id                  VARCHAR(64)     PRIMARY KEY,
            company_id          VARCHAR(64)     NOT NULL,
            property_id         VARCHAR(64)     NOT NULL,
            buyer_id            VARCHAR(64),
            seller_id           VARCHAR(64),
            deal_id             VARCHAR(64),
            opening_balance     BIGINT          NOT NULL DEFAULT 0,
            running_balance     BIGINT          NOT NULL DEFAULT 0,
            closing_balance     BIGINT          NOT NULL DEFAULT 0,
            purchase_price      BIGINT          NOT NULL DEFAULT 0,
            amount_received     BIGINT          NOT NULL DEFAULT 0,
            amount_outstanding  BIGINT          NOT NULL DEFAULT 0,
            status              VARCHAR(20)     NOT NULL DEFAULT 'OPEN',
            workflow_state      VARCHAR(30)     NOT NULL DEFAULT 'TRUST_OPEN',
            lock_reason         VARCHAR(200),
            closed_at           TIMESTAMPTZ,
            last_transaction_at TIMESTAMPTZ,
            created_at          TIMESTAMPTZ     NOT NULL DEFAULT NOW(),
            updated_at          TIMESTAMPTZ     NOT NULL DEFAULT NOW(),
            CONSTRAINT ck_trust_status CHECK (status IN ('OPEN', 'SETTLED', 'CLOSED')),
            CONSTRAINT ck_trust_workflow_state CHECK (
                workflow_state IN (
                    'VALUED', 'LISTED', 'DEPOSIT_RECEIVED', 'TRUST_OPEN',
                    'TAX_PENDING', 'SETTLED', 'TRANSFER_COMPLETE', 'TRUST_CLOSED'
                )
            ),
            CONSTRAINT ck_trust_running_balance_gte_0 CHECK (running_balance >= 0),
            CONSTRAINT ck_trust_amounts_gte_0 CHECK (
                opening_balance >= 0 AND closing_balance >= 0 AND purchase_price >= 0
                AND amount_received >= 0 AND amount_outstanding >= 0
            )
        );
    """)
    # At most one OPEN/SETTLED account per property
    op.execute("""
        CREATE UNIQUE INDEX uq_trust_accounts_active_property
        ON trust_accounts (company_id, property_id)
        WHERE status IN ('OPEN', 'SETTLED');
    """)
    op.execute("""
        CREATE INDEX idx_trust_accounts_company_status
        ON trust_accounts (company_id, status, created_at);
    """)
    op.execute("""
        CREATE TRIGGER trg_trust_accounts_updated_at
        BEFORE UPDATE ON trust_accounts
        FOR EACH ROW EXECUTE FUNCTION fn_update_timestamp();
    """)
    op.execute("COMMENT ON TABLE trust_accounts IS 'Trust accounts — never deleted, terminal status CLOSED, amounts in cents';")


def downgrade() -> None:
    op.execute("DROP TABLE IF EXISTS trust_accounts CASCADE;")
