"""Initial schema for allocations, deposits, ledger and withdrawals.

Revision ID: 001_initial
Revises:
Create Date: 2026-10-18 00:00:00.000000+00:00
"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "001_initial"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # User subwallet allocations
    op.create_table(
        "user_accounts",
        sa.Column("user_id", sa.String(64), nullable=False),
        sa.Column("subwallet_id", sa.BigInteger(), nullable=False),
        sa.Column("address", sa.String(70), nullable=False),
        sa.Column("nonce", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("user_id"),
        sa.UniqueConstraint("subwallet_id"),
        sa.UniqueConstraint("address"),
    )

    # Deposit records
    op.create_table(
        "deposit_records",
        sa.Column("tx_hash", sa.String(64), nullable=False),
        sa.Column("lt", sa.BigInteger(), nullable=False),
        sa.Column("account", sa.String(70), nullable=False),
        sa.Column("sender", sa.String(70), nullable=True),
        sa.Column("amount", sa.Numeric(40, 0), nullable=False),
        sa.Column("comment", sa.Text(), nullable=True),
        sa.Column("user_id", sa.String(64), nullable=True),
        sa.Column("status", sa.String(24), nullable=False),
        sa.Column("reject_reason", sa.String(40), nullable=True),
        sa.Column("confirmations", sa.Integer(), nullable=False),
        sa.Column("observed_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("observed_seqno", sa.BigInteger(), nullable=True),
        sa.Column("credited_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("tx_hash"),
    )
    op.create_index("idx_deposit_records_status", "deposit_records", ["status"])
    op.create_index("idx_deposit_records_user", "deposit_records", ["user_id"])

    # Ledger credits
    op.create_table(
        "ledger_entries",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("user_id", sa.String(64), nullable=False),
        sa.Column("amount", sa.Numeric(40, 0), nullable=False),
        sa.Column("kind", sa.String(20), nullable=False),
        sa.Column("reference", sa.String(80), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("kind", "reference", name="uq_ledger_entries_reference"),
    )
    op.create_index("idx_ledger_entries_user", "ledger_entries", ["user_id"])

    # Withdrawal batches
    op.create_table(
        "withdrawal_batches",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("wallet_address", sa.String(70), nullable=False),
        sa.Column("subwallet_id", sa.BigInteger(), nullable=False),
        sa.Column("timeout_seconds", sa.Integer(), nullable=False),
        sa.Column("query_id", sa.Integer(), nullable=False),
        sa.Column("window_id", sa.Integer(), nullable=False),
        sa.Column("item_count", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("submitted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "wallet_address", "timeout_seconds", "window_id", "query_id", name="uq_withdrawal_batches_query"
        ),
    )
    op.create_index("idx_withdrawal_batches_status", "withdrawal_batches", ["status"])

    # Withdrawal requests
    op.create_table(
        "withdrawal_requests",
        sa.Column("withdrawal_id", sa.String(64), nullable=False),
        sa.Column("user_id", sa.String(64), nullable=False),
        sa.Column("destination", sa.String(120), nullable=False),
        sa.Column("amount", sa.Numeric(40, 0), nullable=False),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("failure_reason", sa.Text(), nullable=True),
        sa.Column("batch_id", sa.Integer(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("withdrawal_id"),
        sa.ForeignKeyConstraint(["batch_id"], ["withdrawal_batches.id"]),
    )
    op.create_index(
        "idx_withdrawal_requests_status_created", "withdrawal_requests", ["status", "created_at"]
    )
    op.create_index("idx_withdrawal_requests_batch", "withdrawal_requests", ["batch_id"])

    # Query id sequencer positions
    op.create_table(
        "sequencer_state",
        sa.Column("wallet_address", sa.String(70), nullable=False),
        sa.Column("timeout_seconds", sa.Integer(), nullable=False),
        sa.Column("window_id", sa.Integer(), nullable=False),
        sa.Column("position", sa.Integer(), nullable=False),
        sa.Column("window_started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("last_issued_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("wallet_address", "timeout_seconds"),
    )

    # Ingestion cursors
    op.create_table(
        "ingestion_cursors",
        sa.Column("account", sa.String(70), nullable=False),
        sa.Column("last_lt", sa.BigInteger(), nullable=False),
        sa.Column("last_tx_hash", sa.String(64), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("account"),
    )

    # Deposit processing errors
    op.create_table(
        "deposit_processing_errors",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("tx_hash", sa.String(64), nullable=False),
        sa.Column("stage", sa.String(40), nullable=False),
        sa.Column("error_type", sa.String(80), nullable=False),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("idx_deposit_processing_errors_tx", "deposit_processing_errors", ["tx_hash"])


def downgrade() -> None:
    op.drop_index("idx_deposit_processing_errors_tx", table_name="deposit_processing_errors")
    op.drop_table("deposit_processing_errors")
    op.drop_table("ingestion_cursors")
    op.drop_table("sequencer_state")
    op.drop_index("idx_withdrawal_requests_batch", table_name="withdrawal_requests")
    op.drop_index("idx_withdrawal_requests_status_created", table_name="withdrawal_requests")
    op.drop_table("withdrawal_requests")
    op.drop_index("idx_withdrawal_batches_status", table_name="withdrawal_batches")
    op.drop_table("withdrawal_batches")
    op.drop_index("idx_ledger_entries_user", table_name="ledger_entries")
    op.drop_table("ledger_entries")
    op.drop_index("idx_deposit_records_user", table_name="deposit_records")
    op.drop_index("idx_deposit_records_status", table_name="deposit_records")
    op.drop_table("deposit_records")
    op.drop_table("user_accounts")
