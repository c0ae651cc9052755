"""Accounts and mining API router."""

from __future__ import annotations

from datetime import timedelta

import structlog
from fastapi import APIRouter, Depends, status

from phx.auth.dependencies import Caller, get_caller, get_current_account_id, get_services, require_admin
from phx.ledger import schemas
from phx.ledger.pools import ensure_utc
from phx.services import Services

logger = structlog.get_logger()

router = APIRouter(prefix="/api/v1", tags=["Ledger"])


# ---------------------------------------------------------------------------
# Accounts
# ---------------------------------------------------------------------------
@router.post("/accounts", response_model=schemas.AccountResponse, status_code=status.HTTP_201_CREATED)
async def open_account(
    body: schemas.OpenAccountRequest,
    caller: Caller = Depends(get_caller),
    services: Services = Depends(get_services),
) -> schemas.AccountResponse:
    """Open the caller's account, optionally under a referrer's code."""
    account = await services.ledger.open_account(caller.account_id, caller.email, body.referral_code)
    return schemas.AccountResponse.model_validate(account)


@router.get("/accounts/me", response_model=schemas.AccountResponse)
async def get_me(
    account_id: str = Depends(get_current_account_id),
    services: Services = Depends(get_services),
) -> schemas.AccountResponse:
    account = await services.ledger.get_account(account_id)
    return schemas.AccountResponse.model_validate(account)


@router.put("/accounts/me/wallet", response_model=schemas.AccountResponse)
async def set_wallet(
    body: schemas.WalletRequest,
    account_id: str = Depends(get_current_account_id),
    services: Services = Depends(get_services),
) -> schemas.AccountResponse:
    """Register the payout address. It cannot be changed once set."""
    account = await services.ledger.set_payout_address(account_id, body.address)
    return schemas.AccountResponse.model_validate(account)


@router.get("/accounts/me/referrals", response_model=list[schemas.ReferralResponse])
async def list_referrals(
    account_id: str = Depends(get_current_account_id),
    services: Services = Depends(get_services),
) -> list[schemas.ReferralResponse]:
    """Accounts the caller referred, with their progress towards the bonus."""
    edges = await services.referrals.list_referrals(account_id)
    return [schemas.ReferralResponse.model_validate(edge) for edge in edges]


# ---------------------------------------------------------------------------
# Mining
# ---------------------------------------------------------------------------
@router.post("/mining/mine", response_model=schemas.MineResponse)
async def mine(
    account_id: str = Depends(get_current_account_id),
    services: Services = Depends(get_services),
) -> schemas.MineResponse:
    """Claim the mining reward for this session."""
    account = await services.ledger.credit_mining(account_id)
    last_mine_at = ensure_utc(account.last_mine_at)
    return schemas.MineResponse(
        mined_balance=account.mined_balance,
        withdrawable_balance=account.withdrawable_balance,
        session_count=account.session_count,
        last_mine_at=last_mine_at,
        next_mine_at=last_mine_at + timedelta(hours=services.rules.mining_cooldown_hours),
    )


# ---------------------------------------------------------------------------
# Admin
# ---------------------------------------------------------------------------
@router.post("/admin/accounts/{account_id}/kyc", response_model=schemas.AccountResponse)
async def set_kyc(
    account_id: str,
    body: schemas.KycRequest,
    admin: Caller = Depends(require_admin),
    services: Services = Depends(get_services),
) -> schemas.AccountResponse:
    """Record a KYC review outcome for an account."""
    account = await services.ledger.set_kyc_state(account_id, body.state)
    logger.info("admin_kyc_update", admin_id=admin.account_id, account_id=account_id, state=body.state)
    return schemas.AccountResponse.model_validate(account)


@router.post("/admin/accounts/{account_id}/referral-sync", response_model=schemas.ReferralSyncResponse)
async def referral_sync(
    account_id: str,
    admin: Caller = Depends(require_admin),
    services: Services = Depends(get_services),
) -> schemas.ReferralSyncResponse:
    """Re-evaluate the account's referral edge from its current state."""
    paid = await services.referrals.resync(account_id)
    logger.info("admin_referral_sync", admin_id=admin.account_id, account_id=account_id, bonus_paid=paid)
    return schemas.ReferralSyncResponse(account_id=account_id, bonus_paid=paid)
