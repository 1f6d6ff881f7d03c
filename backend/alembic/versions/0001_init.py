"""init

Revision ID: 0001_init
Revises:
Create Date: 2026-10-18
"""

from alembic import op
import sqlalchemy as sa

revision = "0001_init"
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        "exchange_rates",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("base_currency", sa.String(length=16), nullable=False),
        sa.Column("quote_currency", sa.String(length=16), nullable=False),
        sa.Column("rate", sa.Numeric(24, 8), nullable=False),
        sa.Column("source", sa.String(length=16), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("provider", sa.String(length=64), nullable=True),
        sa.Column("confidence", sa.Numeric(6, 4), nullable=True),
        sa.Column("spread", sa.Numeric(10, 6), nullable=True),
        sa.Column("set_by", sa.String(length=128), nullable=True),
        sa.Column("reason", sa.String(length=256), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("deactivated_at", sa.DateTime(), nullable=True),
        sa.Column("deactivated_by", sa.String(length=128), nullable=True),
    )
    op.create_index("ix_exchange_rates_pair_created", "exchange_rates", ["base_currency", "quote_currency", "created_at"])
    op.create_index("ix_exchange_rates_active_created", "exchange_rates", ["is_active", "created_at"])

    op.create_table(
        "loans",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("loan_id", sa.String(length=48), nullable=False),
        sa.Column("user_id", sa.String(length=64), nullable=False),
        sa.Column("wallet_address", sa.String(length=64), nullable=True),
        sa.Column("chain_loan_id", sa.String(length=80), nullable=True),
        sa.Column("collateral_amount", sa.Numeric(30, 6), nullable=False),
        sa.Column("collateral_currency", sa.String(length=16), nullable=False),
        sa.Column("amount", sa.Numeric(30, 2), nullable=False),
        sa.Column("amount_collateral_equiv", sa.Numeric(30, 6), nullable=False),
        sa.Column("loan_currency", sa.String(length=16), nullable=False),
        sa.Column("exchange_rate", sa.Numeric(24, 8), nullable=False),
        sa.Column("ltv_ratio", sa.Numeric(6, 4), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="pending"),
        sa.Column("partner_order_id", sa.String(length=128), nullable=True),
        sa.Column("transfer_id", sa.String(length=128), nullable=True),
        sa.Column("transfer_amount", sa.Numeric(30, 2), nullable=True),
        sa.Column("transferred_at", sa.DateTime(), nullable=True),
        sa.Column("bank_details", sa.JSON(), nullable=True),
        sa.Column("partner_note", sa.String(length=512), nullable=True),
        sa.Column("tx_hash", sa.String(length=80), nullable=True),
        sa.Column("block_number", sa.Integer(), nullable=True),
        sa.Column("due_date", sa.DateTime(), nullable=False),
        sa.Column("repaid_at", sa.DateTime(), nullable=True),
        sa.Column("repaid_amount", sa.Numeric(30, 2), nullable=True),
        sa.Column("repayment_confirmed", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("repayment_confirmed_at", sa.DateTime(), nullable=True),
        sa.Column("repayment_confirmation_id", sa.String(length=128), nullable=True),
        sa.Column("liquidated_at", sa.DateTime(), nullable=True),
        sa.Column("liquidation_price", sa.Numeric(24, 8), nullable=True),
        sa.Column("liquidation_ref", sa.String(length=128), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_loans_loan_id", "loans", ["loan_id"], unique=True)
    op.create_index("ix_loans_user_status", "loans", ["user_id", "status"])
    op.create_index("ix_loans_created_at", "loans", ["created_at"])
    op.create_index("ix_loans_status_created", "loans", ["status", "created_at"])


def downgrade():
    op.drop_index("ix_loans_status_created", table_name="loans")
    op.drop_index("ix_loans_created_at", table_name="loans")
    op.drop_index("ix_loans_user_status", table_name="loans")
    op.drop_index("ix_loans_loan_id", table_name="loans")
    op.drop_table("loans")
    op.drop_index("ix_exchange_rates_active_created", table_name="exchange_rates")
    op.drop_index("ix_exchange_rates_pair_created", table_name="exchange_rates")
    op.drop_table("exchange_rates")
