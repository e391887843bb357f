"""003: create trust_transactions table

Revision ID: 003
Revises: 002
Create Date: 2026-10-19
"""
from typing import Sequence, Union
from alembic import op

revision: str = "003"
down_revision: Union[str, None] = "002"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.execute("""
        CREATE TABLE trust_transactions (
            id                  BIGSERIAL       PRIMARY KEY,
            company_id          VARCHAR(64)     NOT NULL,
            trust_account_id    VARCHAR(64)     NOT NULL REFERENCES trust_accounts(id),
            property_id         VARCHAR(64)     NOT NULL,
            payment_id          VARCHAR(64),
            type                VARCHAR(30)     NOT NULL,
            debit               BIGINT          NOT NULL DEFAULT 0,
            credit              BIGINT          NOT NULL DEFAULT 0,
            running_balance     BIGINT          NOT NULL,
            reference           VARCHAR(200),
            source_event        VARCHAR(80),
            created_by          VARCHAR(64),
            created_at          TIMESTAMPTZ     NOT NULL DEFAULT NOW(),
            CONSTRAINT ck_trust_tx_type CHECK (
                type IN (
                    'BUYER_PAYMENT', 'TRANSFER_TO_SELLER',
                    'CGT_DEDUCTION', 'COMMISSION_DEDUCTION',
                    'VAT_DEDUCTION', 'VAT_ON_COMMISSION', 'REFUND'
                )
            ),
            CONSTRAINT ck_trust_tx_one_side CHECK (
                (debit > 0 AND credit = 0) OR (credit > 0 AND debit = 0)
            ),
            CONSTRAINT ck_trust_tx_balance_gte_0 CHECK (running_balance >= 0)
        );
    """)
    # Idempotency key; NULLs are distinct so rows without payment_id never collide
    op.execute("CREATE UNIQUE INDEX uq_trust_tx_payment_id ON trust_transactions (payment_id);")
    op.execute("""
        CREATE INDEX idx_trust_tx_account
        ON trust_transactions (company_id, trust_account_id, id);
    """)
    op.execute("""
        CREATE INDEX idx_trust_tx_reference
        ON trust_transactions (trust_account_id, reference)
        WHERE reference IS NOT NULL;
    """)
    op.execute("""
        CREATE TRIGGER trg_trust_transactions_append_only
        BEFORE UPDATE OR DELETE ON trust_transactions
        FOR EACH ROW EXECUTE FUNCTION fn_reject_mutation();
    """)
    op.execute("COMMENT ON TABLE trust_transactions IS 'Trust ledger — Append-Only, amounts in cents';")


def downgrade() -> None:
    op.execute("DROP TABLE IF EXISTS trust_transactions CASCADE;")
