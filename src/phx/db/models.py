"""ORM models for the ledger, withdrawal and governance tables."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from phx.db.base import Base, JSONDocument

# Stellar amounts carry seven decimal places.
Amount = Numeric(20, 7, asdecimal=True)

KYC_STATES = ("not_submitted", "pending", "verified", "failed")
WITHDRAWAL_STATUSES = ("pending", "approved", "rejected", "completed")
PROPOSAL_STATUSES = ("active_round1", "active_round2", "passed", "rejected")
PROPOSAL_KINDS = ("general", "treasury")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return str(uuid.uuid4())


# ---------------------------------------------------------------------------
# Accounts
# ---------------------------------------------------------------------------


class Account(Base):
    """One ledger record per user, keyed by the identity provider subject."""

    __tablename__ = "accounts"
    __table_args__ = (
        CheckConstraint("withdrawable_balance >= 0", name="withdrawable_non_negative"),
        Index("ix_accounts_kyc_state", "kyc_state"),
    )

    id: Mapped[str] = mapped_column(String(128), primary_key=True)
    email: Mapped[str | None] = mapped_column(String(320), nullable=True)

    mined_balance: Mapped[Decimal] = mapped_column(Amount, default=Decimal("0"), server_default="0")
    referral_bonus_pending: Mapped[Decimal] = mapped_column(Amount, default=Decimal("0"), server_default="0")
    referral_bonus_verified: Mapped[Decimal] = mapped_column(Amount, default=Decimal("0"), server_default="0")
    governance_rewards: Mapped[Decimal] = mapped_column(Amount, default=Decimal("0"), server_default="0")
    withdrawable_balance: Mapped[Decimal] = mapped_column(Amount, default=Decimal("0"), server_default="0")

    session_count: Mapped[int] = mapped_column(Integer, default=0, server_default="0")
    last_mine_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    kyc_state: Mapped[str] = mapped_column(String(16), default="not_submitted", server_default="not_submitted")
    payout_address: Mapped[str | None] = mapped_column(String(56), nullable=True, unique=True)
    has_pending_withdrawal: Mapped[bool] = mapped_column(Boolean, default=False, server_default="false")
    referred_by_account_id: Mapped[str | None] = mapped_column(
        String(128), ForeignKey("accounts.id"), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, server_default=func.now())

    withdrawals: Mapped[list[WithdrawalRequest]] = relationship("WithdrawalRequest", back_populates="account")


class ReferralEdge(Base):
    """Referred account as seen from its referrer, with the bonus flag."""

    __tablename__ = "referral_edges"

    referrer_id: Mapped[str] = mapped_column(
        String(128), ForeignKey("accounts.id", ondelete="CASCADE"), primary_key=True
    )
    referred_id: Mapped[str] = mapped_column(
        String(128), ForeignKey("accounts.id", ondelete="CASCADE"), primary_key=True
    )
    email: Mapped[str | None] = mapped_column(String(320), nullable=True)
    kyc_verified: Mapped[bool] = mapped_column(Boolean, default=False, server_default="false")
    session_count: Mapped[int] = mapped_column(Integer, default=0, server_default="0")
    wallet_added: Mapped[bool] = mapped_column(Boolean, default=False, server_default="false")
    bonus_paid: Mapped[bool] = mapped_column(Boolean, default=False, server_default="false")
    joined_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, server_default=func.now())


# ---------------------------------------------------------------------------
# Withdrawals
# ---------------------------------------------------------------------------


class WithdrawalRequest(Base):
    """A payout request; debits happen at settlement, not here."""

    __tablename__ = "withdrawal_requests"
    __table_args__ = (Index("ix_withdrawal_requests_status", "status"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    account_id: Mapped[str] = mapped_column(String(128), ForeignKey("accounts.id"), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Amount, nullable=False)
    fee: Mapped[Decimal] = mapped_column(Amount, nullable=False)
    final_amount: Mapped[Decimal] = mapped_column(Amount, nullable=False)
    destination_address: Mapped[str] = mapped_column(String(56), nullable=False)
    status: Mapped[str] = mapped_column(String(16), default="pending", server_default="pending")
    rejection_reason: Mapped[str | None] = mapped_column(String(256), nullable=True)
    external_ref: Mapped[str | None] = mapped_column(String(128), nullable=True)
    requested_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, server_default=func.now())
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    account: Mapped[Account] = relationship("Account", back_populates="withdrawals")


# ---------------------------------------------------------------------------
# Governance
# ---------------------------------------------------------------------------


class Proposal(Base):
    """General or treasury proposal with two rounds of votes.

    Vote maps are stored as documents keyed by voter id. Weighted (treasury)
    entries are ``{"choice": ..., "power": "<decimal>"}``, unweighted entries
    are the bare choice string.
    """

    __tablename__ = "proposals"
    __table_args__ = (Index("ix_proposals_status_expires", "status", "expires_at"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    kind: Mapped[str] = mapped_column(String(16), default="general", server_default="general")
    title: Mapped[str] = mapped_column(String(100), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    proposer_id: Mapped[str] = mapped_column(String(128), ForeignKey("accounts.id"), nullable=False)
    proposer_address: Mapped[str | None] = mapped_column(String(56), nullable=True)
    status: Mapped[str] = mapped_column(String(16), default="active_round1", server_default="active_round1")

    round1_for: Mapped[Decimal] = mapped_column(Amount, default=Decimal("0"), server_default="0")
    round1_against: Mapped[Decimal] = mapped_column(Amount, default=Decimal("0"), server_default="0")
    round2_for: Mapped[Decimal] = mapped_column(Amount, default=Decimal("0"), server_default="0")
    round2_against: Mapped[Decimal] = mapped_column(Amount, default=Decimal("0"), server_default="0")
    round1_votes: Mapped[dict[str, Any]] = mapped_column(JSONDocument, default=dict)
    round2_votes: Mapped[dict[str, Any]] = mapped_column(JSONDocument, default=dict)

    # --- Treasury only ---
    amount: Mapped[Decimal | None] = mapped_column(Amount, nullable=True)
    recipient: Mapped[str | None] = mapped_column(String(56), nullable=True)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, server_default=func.now())
    decided_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class LeaderboardSnapshot(Base):
    """Single cached top-N contributor list plus their aggregate voting power."""

    __tablename__ = "leaderboard_snapshots"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, default=1)
    entries: Mapped[list[dict[str, Any]]] = mapped_column(JSONDocument, default=list)
    total_power: Mapped[Decimal] = mapped_column(Amount, default=Decimal("0"), server_default="0")
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class Contribution(Base):
    """Running contribution total per sender address."""

    __tablename__ = "contributions"

    address: Mapped[str] = mapped_column(String(56), primary_key=True)
    total_amount: Mapped[Decimal] = mapped_column(Amount, default=Decimal("0"), server_default="0")
    updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class IngestCursor(Base):
    """Paging position for contribution ingestion."""

    __tablename__ = "ingest_cursors"

    name: Mapped[str] = mapped_column(String(64), primary_key=True)
    cursor: Mapped[str] = mapped_column(String(64), nullable=False, default="0")
    updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
