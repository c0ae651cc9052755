"""Pydantic request/response models for account and mining endpoints."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field


class AccountResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    email: str | None = None
    mined_balance: Decimal
    referral_bonus_pending: Decimal
    referral_bonus_verified: Decimal
    governance_rewards: Decimal
    withdrawable_balance: Decimal
    session_count: int
    last_mine_at: datetime | None = None
    kyc_state: str
    payout_address: str | None = None
    has_pending_withdrawal: bool
    referred_by_account_id: str | None = None
    created_at: datetime | None = None


class OpenAccountRequest(BaseModel):
    referral_code: str | None = Field(default=None, max_length=128)


class WalletRequest(BaseModel):
    address: str = Field(min_length=1, max_length=64)


class KycRequest(BaseModel):
    state: Literal["not_submitted", "pending", "verified", "failed"]


class MineResponse(BaseModel):
    ok: bool = True
    mined_balance: Decimal
    withdrawable_balance: Decimal
    session_count: int
    last_mine_at: datetime
    next_mine_at: datetime


class ReferralSyncResponse(BaseModel):
    account_id: str
    bonus_paid: bool


class ReferralResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    referred_id: str
    email: str | None = None
    kyc_verified: bool
    session_count: int
    wallet_added: bool
    bonus_paid: bool
    joined_at: datetime | None = None
