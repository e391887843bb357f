"""004: create trust_settlements and tax_records tables

Revision ID: 004
Revises: 003
Create Date: 2026-10-19
"""
from typing import Sequence, Union
from alembic import op

revision: str = "004"
down_revision: Union[str, None] = "003"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.execute("""
        CREATE TABLE trust_settlements (
            id                  VARCHAR(64)     PRIMARY KEY,
            company_id          VARCHAR(64)     NOT NULL,
            trust_account_id    VARCHAR(64)     NOT NULL UNIQUE REFERENCES trust_accounts(id),
            sale_price          BIGINT          NOT NULL,
            gross_proceeds      BIGINT          NOT NULL,
            deductions          JSONB           NOT NULL DEFAULT '[]'::jsonb,
            net_payout          BIGINT          NOT NULL,
            settlement_date     TIMESTAMPTZ     NOT NULL,
            locked              BOOLEAN         NOT NULL DEFAULT FALSE,
            created_at          TIMESTAMPTZ     NOT NULL DEFAULT NOW(),
            updated_at          TIMESTAMPTZ     NOT NULL DEFAULT NOW(),
            CONSTRAINT ck_settlement_amounts_gte_0 CHECK (
                sale_price >= 0 AND gross_proceeds >= 0 AND net_payout >= 0
            )
        );
    """)
    op.execute("""
        CREATE TRIGGER trg_trust_settlements_updated_at
        BEFORE UPDATE ON trust_settlements
        FOR EACH ROW EXECUTE FUNCTION fn_update_timestamp();
    """)

    op.execute("""
        CREATE TABLE tax_records (
            id                      BIGSERIAL       PRIMARY KEY,
            company_id              VARCHAR(64)     NOT NULL,
            trust_account_id        VARCHAR(64)     NOT NULL REFERENCES trust_accounts(id),
            settlement_id           VARCHAR(64)     NOT NULL REFERENCES trust_settlements(id),
            tax_type                VARCHAR(30)     NOT NULL,
            amount                  BIGINT          NOT NULL,
            calculation_breakdown   JSONB           NOT NULL DEFAULT '{}'::jsonb,
            paid_to_authority       BOOLEAN         NOT NULL DEFAULT FALSE,
            payment_reference       VARCHAR(100),
            created_at              TIMESTAMPTZ     NOT NULL DEFAULT NOW(),
            CONSTRAINT ck_tax_type CHECK (tax_type IN ('CGT', 'VAT', 'VAT_ON_COMMISSION')),
            CONSTRAINT ck_tax_amount_gt_0 CHECK (amount > 0)
        );
    """)
    op.execute("""
        CREATE INDEX idx_tax_records_account
        ON tax_records (company_id, trust_account_id, tax_type);
    """)
    op.execute("""
        CREATE TRIGGER trg_tax_records_append_only
        BEFORE UPDATE OR DELETE ON tax_records
        FOR EACH ROW EXECUTE FUNCTION fn_reject_mutation();
    """)


def downgrade() -> None:
    op.execute("DROP TABLE IF EXISTS tax_records CASCADE;")
    op.execute("DROP TABLE IF EXISTS trust_settlements CASCADE;")
