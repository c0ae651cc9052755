"""Pydantic request/response models for withdrawal endpoints."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field


class WithdrawalCreateRequest(BaseModel):
    amount: Decimal = Field(gt=0, max_digits=20, decimal_places=7)


class WithdrawalCreatedResponse(BaseModel):
    request_id: str
    status: str
    amount: Decimal
    fee: Decimal
    final_amount: Decimal


class WithdrawalResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    amount: Decimal
    fee: Decimal
    final_amount: Decimal
    destination_address: str
    status: str
    rejection_reason: str | None = None
    external_ref: str | None = None
    requested_at: datetime | None = None
    processed_at: datetime | None = None


class SettleRequest(BaseModel):
    outcome: Literal["approve", "reject"]
    external_ref: str | None = Field(default=None, max_length=128)


class SettleResponse(BaseModel):
    request_id: str
    status: str
    message: str


class EnqueueResponse(BaseModel):
    queued_count: int
    batches: int
    failed_batches: int
