"""Withdrawal API router — user requests and operator settlement."""

from __future__ import annotations

import structlog
from fastapi import APIRouter, Depends, status

from phx.auth.dependencies import Caller, get_current_account_id, get_services, require_admin
from phx.services import Services
from phx.withdrawals import schemas

logger = structlog.get_logger()

router = APIRouter(prefix="/api/v1", tags=["Withdrawals"])


@router.post(
    "/withdrawals",
    response_model=schemas.WithdrawalCreatedResponse,
    status_code=status.HTTP_201_CREATED,
)
async def request_withdrawal(
    body: schemas.WithdrawalCreateRequest,
    account_id: str = Depends(get_current_account_id),
    services: Services = Depends(get_services),
) -> schemas.WithdrawalCreatedResponse:
    """Reserve a withdrawal; the balance is debited when it is approved."""
    request = await services.ledger.reserve_withdrawal(account_id, body.amount)
    return schemas.WithdrawalCreatedResponse(
        request_id=request.id,
        status=request.status,
        amount=request.amount,
        fee=request.fee,
        final_amount=request.final_amount,
    )


@router.get("/withdrawals/me", response_model=list[schemas.WithdrawalResponse])
async def my_withdrawals(
    account_id: str = Depends(get_current_account_id),
    services: Services = Depends(get_services),
) -> list[schemas.WithdrawalResponse]:
    requests = await services.ledger.list_withdrawals(account_id)
    return [schemas.WithdrawalResponse.model_validate(r) for r in requests]


# ---------------------------------------------------------------------------
# Admin
# ---------------------------------------------------------------------------
@router.post("/admin/withdrawals/{request_id}/settle", response_model=schemas.SettleResponse)
async def settle(
    request_id: str,
    body: schemas.SettleRequest,
    admin: Caller = Depends(require_admin),
    services: Services = Depends(get_services),
) -> schemas.SettleResponse:
    """Approve or reject one pending request."""
    result = await services.pipeline.single_action(request_id, body.outcome, body.external_ref)
    logger.info("admin_settle", admin_id=admin.account_id, request_id=request_id, status=result.status)
    return schemas.SettleResponse(request_id=result.request_id, status=result.status, message=result.message)


@router.post("/admin/withdrawals/enqueue", response_model=schemas.EnqueueResponse)
async def enqueue_all_pending(
    admin: Caller = Depends(require_admin),
    services: Services = Depends(get_services),
) -> schemas.EnqueueResponse:
    """Fan every pending request out to the settlement queue in batches."""
    result = await services.pipeline.enqueue_all_pending()
    logger.info("admin_enqueue", admin_id=admin.account_id, queued=result.queued_count)
    return schemas.EnqueueResponse(
        queued_count=result.queued_count,
        batches=result.batches,
        failed_batches=result.failed_batches,
    )
