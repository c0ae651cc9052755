"""Baseline: ledger, withdrawal and governance tables.

Creates accounts, referral_edges, withdrawal_requests, proposals,
leaderboard_snapshots, contributions and ingest_cursors.

Revision ID: 001_baseline
Revises: None
Create Date: 2026-10-19
"""

from collections.abc import Sequence

import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

from alembic import op

revision: str = "001_baseline"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

AMOUNT = sa.Numeric(20, 7)
DOCUMENT = sa.JSON().with_variant(postgresql.JSONB(), "postgresql")
NOW = sa.text("CURRENT_TIMESTAMP")


def upgrade() -> None:
    """Create every table the services read and write."""
    # --- Accounts ---
    op.create_table(
        "accounts",
        sa.Column("id", sa.String(128), primary_key=True),
        sa.Column("email", sa.String(320), nullable=True),
        sa.Column("mined_balance", AMOUNT, server_default="0", nullable=False),
        sa.Column("referral_bonus_pending", AMOUNT, server_default="0", nullable=False),
        sa.Column("referral_bonus_verified", AMOUNT, server_default="0", nullable=False),
        sa.Column("governance_rewards", AMOUNT, server_default="0", nullable=False),
        sa.Column("withdrawable_balance", AMOUNT, server_default="0", nullable=False),
        sa.Column("session_count", sa.Integer(), server_default="0", nullable=False),
        sa.Column("last_mine_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("kyc_state", sa.String(16), server_default="not_submitted", nullable=False),
        sa.Column("payout_address", sa.String(56), nullable=True, unique=True),
        sa.Column("has_pending_withdrawal", sa.Boolean(), server_default="false", nullable=False),
        sa.Column("referred_by_account_id", sa.String(128), sa.ForeignKey("accounts.id"), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=NOW, nullable=False),
        sa.CheckConstraint("withdrawable_balance >= 0", name="withdrawable_non_negative"),
    )
    op.create_index("ix_accounts_kyc_state", "accounts", ["kyc_state"])

    op.create_table(
        "referral_edges",
        sa.Column(
            "referrer_id",
            sa.String(128),
            sa.ForeignKey("accounts.id", ondelete="CASCADE"),
            primary_key=True,
        ),
        sa.Column(
            "referred_id",
            sa.String(128),
            sa.ForeignKey("accounts.id", ondelete="CASCADE"),
            primary_key=True,
        ),
        sa.Column("email", sa.String(320), nullable=True),
        sa.Column("kyc_verified", sa.Boolean(), server_default="false", nullable=False),
        sa.Column("session_count", sa.Integer(), server_default="0", nullable=False),
        sa.Column("wallet_added", sa.Boolean(), server_default="false", nullable=False),
        sa.Column("bonus_paid", sa.Boolean(), server_default="false", nullable=False),
        sa.Column("joined_at", sa.DateTime(timezone=True), server_default=NOW, nullable=False),
    )

    # --- Withdrawals ---
    op.create_table(
        "withdrawal_requests",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("account_id", sa.String(128), sa.ForeignKey("accounts.id"), nullable=False),
        sa.Column("amount", AMOUNT, nullable=False),
        sa.Column("fee", AMOUNT, nullable=False),
        sa.Column("final_amount", AMOUNT, nullable=False),
        sa.Column("destination_address", sa.String(56), nullable=False),
        sa.Column("status", sa.String(16), server_default="pending", nullable=False),
        sa.Column("rejection_reason", sa.String(256), nullable=True),
        sa.Column("external_ref", sa.String(128), nullable=True),
        sa.Column("requested_at", sa.DateTime(timezone=True), server_default=NOW, nullable=False),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_withdrawal_requests_status", "withdrawal_requests", ["status"])

    # --- Governance ---
    op.create_table(
        "proposals",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("kind", sa.String(16), server_default="general", nullable=False),
        sa.Column("title", sa.String(100), nullable=False),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("proposer_id", sa.String(128), sa.ForeignKey("accounts.id"), nullable=False),
        sa.Column("proposer_address", sa.String(56), nullable=True),
        sa.Column("status", sa.String(16), server_default="active_round1", nullable=False),
        sa.Column("round1_for", AMOUNT, server_default="0", nullable=False),
        sa.Column("round1_against", AMOUNT, server_default="0", nullable=False),
        sa.Column("round2_for", AMOUNT, server_default="0", nullable=False),
        sa.Column("round2_against", AMOUNT, server_default="0", nullable=False),
        sa.Column("round1_votes", DOCUMENT, nullable=False),
        sa.Column("round2_votes", DOCUMENT, nullable=False),
        sa.Column("amount", AMOUNT, nullable=True),
        sa.Column("recipient", sa.String(56), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=NOW, nullable=False),
        sa.Column("decided_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_proposals_status_expires", "proposals", ["status", "expires_at"])

    op.create_table(
        "leaderboard_snapshots",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("entries", DOCUMENT, nullable=False),
        sa.Column("total_power", AMOUNT, server_default="0", nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )

    op.create_table(
        "contributions",
        sa.Column("address", sa.String(56), primary_key=True),
        sa.Column("total_amount", AMOUNT, server_default="0", nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
    )

    op.create_table(
        "ingest_cursors",
        sa.Column("name", sa.String(64), primary_key=True),
        sa.Column("cursor", sa.String(64), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
    )


def downgrade() -> None:
    """Drop every baseline table."""
    op.drop_table("ingest_cursors")
    op.drop_table("contributions")
    op.drop_table("leaderboard_snapshots")
    op.drop_index("ix_proposals_status_expires", table_name="proposals")
    op.drop_table("proposals")
    op.drop_index("ix_withdrawal_requests_status", table_name="withdrawal_requests")
    op.drop_table("withdrawal_requests")
    op.drop_table("referral_edges")
    op.drop_index("ix_accounts_kyc_state", table_name="accounts")
    op.drop_table("accounts")
