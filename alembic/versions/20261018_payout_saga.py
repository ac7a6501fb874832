"""Payout saga schema.

Revision ID: 20261018_payout_saga
Revises:
Create Date: 2026-10-18 00:00:00.000000
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision = "20261018_payout_saga"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "markets",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("onchain_id", sa.String(length=66), nullable=False),
        sa.Column("escrow_address", sa.String(length=42), nullable=True),
        sa.Column("question", sa.Text(), nullable=True),
        sa.Column("state", sa.String(length=16), nullable=False, server_default="ACTIVE"),
        sa.Column("outcome", sa.String(length=16), nullable=True),
        sa.Column(
            "eligible_ngo_ids",
            sa.JSON().with_variant(postgresql.JSONB, "postgresql"),
            nullable=True,
        ),
        sa.Column("position_scan_from_block", sa.Integer(), nullable=True),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint("onchain_id", name="uq_markets_onchain_id"),
    )
    op.create_index("ix_markets_state", "markets", ["state"])

    op.create_table(
        "traders",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("wallet_address", sa.String(length=42), nullable=False),
        sa.Column("custodial_wallet_id", sa.String(length=64), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint("wallet_address", name="uq_traders_wallet_address"),
    )

    op.create_table(
        "trades",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "market_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("markets.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "trader_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("traders.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("side", sa.String(length=8), nullable=False),
        sa.Column("principal_amount", sa.Numeric(20, 6), nullable=False),
        sa.Column("custodial_transfer_id", sa.String(length=128), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_trades_market_id", "trades", ["market_id"])
    op.create_index("ix_trades_trader_id", "trades", ["trader_id"])

    op.create_table(
        "ngos",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("name", sa.String(length=256), nullable=False),
        sa.Column("onchain_id", sa.String(length=66), nullable=True),
        sa.Column("wallet_address", sa.String(length=128), nullable=True),
        sa.Column("custodial_wallet_id", sa.String(length=64), nullable=True),
        sa.Column("preferred_chain", sa.String(length=32), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_ngos_onchain_id", "ngos", ["onchain_id"])

    op.create_table(
        "bridge_operations",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "market_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("markets.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("direction", sa.String(length=16), nullable=False),
        sa.Column("amount", sa.Numeric(20, 6), nullable=False),
        sa.Column("source_chain", sa.String(length=32), nullable=False),
        sa.Column("destination_chain_id", sa.Integer(), nullable=False),
        sa.Column("attestation_id", sa.String(length=132), nullable=True),
        sa.Column("burn_tx_hash", sa.String(length=66), nullable=True),
        sa.Column("message", sa.Text(), nullable=True),
        sa.Column("state", sa.String(length=16), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_bridge_operations_market_id", "bridge_operations", ["market_id"])

    op.create_table(
        "payout_records",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "market_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("markets.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("recipient_type", sa.String(length=8), nullable=False),
        sa.Column("recipient_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("destination_address", sa.String(length=128), nullable=True),
        sa.Column("chain", sa.String(length=32), nullable=False),
        sa.Column("principal", sa.Numeric(20, 6), nullable=True),
        sa.Column("yield_share", sa.Numeric(20, 6), nullable=True),
        sa.Column("total", sa.Numeric(20, 6), nullable=True),
        sa.Column("transfer_id", sa.String(length=128), nullable=True),
        sa.Column("transfer_state", sa.String(length=32), nullable=False),
        sa.Column("tx_hash", sa.String(length=128), nullable=True),
        sa.Column("attempt", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("needs_reconciliation", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("error_reason", sa.String(length=128), nullable=True),
        sa.Column("error_details", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint(
            "market_id",
            "recipient_id",
            "recipient_type",
            name="uq_payout_records_market_recipient",
        ),
    )
    op.create_index("ix_payout_records_reconcile", "payout_records", ["needs_reconciliation"])
    op.create_index("ix_payout_records_recipient", "payout_records", ["recipient_type", "recipient_id"])

    op.create_table(
        "payout_runs",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "market_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("markets.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("completed_step", sa.String(length=32), nullable=True),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="running"),
        sa.Column(
            "context",
            sa.JSON().with_variant(postgresql.JSONB, "postgresql"),
            nullable=True,
        ),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("error_step", sa.String(length=32), nullable=True),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("started_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint("market_id", name="uq_payout_runs_market_id"),
    )


    op.create_table(
        "deployment_runs",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "market_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("markets.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("amount", sa.Numeric(20, 6), nullable=False),
        sa.Column("completed_step", sa.String(length=32), nullable=True),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="running"),
        sa.Column(
            "context",
            sa.JSON().with_variant(postgresql.JSONB, "postgresql"),
            nullable=True,
        ),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("error_step", sa.String(length=32), nullable=True),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("started_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_deployment_runs_market_status", "deployment_runs", ["market_id", "status"])


def downgrade() -> None:
    op.drop_index("ix_deployment_runs_market_status", table_name="deployment_runs")
    op.drop_table("deployment_runs")
    op.drop_table("payout_runs")
    op.drop_index("ix_payout_records_recipient", table_name="payout_records")
    op.drop_index("ix_payout_records_reconcile", table_name="payout_records")
    op.drop_table("payout_records")
    op.drop_index("ix_bridge_operations_market_id", table_name="bridge_operations")
    op.drop_table("bridge_operations")
    op.drop_index("ix_ngos_onchain_id", table_name="ngos")
    op.drop_table("ngos")
    op.drop_index("ix_trades_trader_id", table_name="trades")
    op.drop_index("ix_trades_market_id", table_name="trades")
    op.drop_table("trades")
    op.drop_table("traders")
    op.drop_index("ix_markets_state", table_name="markets")
    op.drop_table("markets")
