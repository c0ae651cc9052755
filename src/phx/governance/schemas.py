"""Pydantic request/response models for governance endpoints."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field


# ── Proposals ──


class ProposalCreateRequest(BaseModel):
    title: str
    description: str
    amount: Decimal | None = Field(default=None, max_digits=20, decimal_places=7)
    recipient: str | None = None


class ProposalCreatedResponse(BaseModel):
    proposal_id: str
    kind: str
    status: str
    expires_at: datetime | None = None


class ProposalResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    kind: str
    title: str
    description: str
    proposer_id: str
    status: str
    round1_for: Decimal
    round1_against: Decimal
    round2_for: Decimal
    round2_against: Decimal
    amount: Decimal | None = None
    recipient: str | None = None
    expires_at: datetime | None = None
    created_at: datetime | None = None
    decided_at: datetime | None = None


class ProposalListResponse(BaseModel):
    proposals: list[ProposalResponse]
    total: int


# ── Voting ──


class VoteRequest(BaseModel):
    choice: Literal["for", "against"]
    round: int | None = Field(default=None, ge=1, le=2)


class VoteResponse(BaseModel):
    ok: bool = True
    proposal_id: str
    round: int
    status: str
    tally_for: Decimal
    tally_against: Decimal


class EligibilityResponse(BaseModel):
    eligible: bool
    reason: str | None = None


# ── Leaderboard ──


class LeaderboardEntryResponse(BaseModel):
    rank: int
    address: str
    amount: Decimal


class LeaderboardResponse(BaseModel):
    entries: list[LeaderboardEntryResponse]
    total_power: Decimal
    updated_at: datetime | None = None
