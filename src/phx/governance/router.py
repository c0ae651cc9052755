"""Governance API router — proposals, votes, eligibility and the leaderboard."""

from __future__ import annotations

from decimal import Decimal

from fastapi import APIRouter, Depends, Query, status

from phx.auth.dependencies import get_current_account_id, get_services
from phx.governance import schemas
from phx.services import Services

router = APIRouter(prefix="/api/v1/governance", tags=["Governance"])


@router.get("/eligibility", response_model=schemas.EligibilityResponse)
async def eligibility(
    account_id: str = Depends(get_current_account_id),
    services: Services = Depends(get_services),
) -> schemas.EligibilityResponse:
    """Whether the caller may create proposals and vote in round 1."""
    result = await services.governance.check_eligibility(account_id)
    return schemas.EligibilityResponse(eligible=result.eligible, reason=result.reason)


@router.get("/leaderboard", response_model=schemas.LeaderboardResponse)
async def leaderboard(services: Services = Depends(get_services)) -> schemas.LeaderboardResponse:
    snapshot = await services.leaderboard.get_snapshot()
    if snapshot is None:
        return schemas.LeaderboardResponse(entries=[], total_power=Decimal("0"))
    return schemas.LeaderboardResponse(
        entries=[
            schemas.LeaderboardEntryResponse(rank=i, address=e["address"], amount=Decimal(e["amount"]))
            for i, e in enumerate(snapshot.entries or [], start=1)
        ],
        total_power=snapshot.total_power or Decimal("0"),
        updated_at=snapshot.updated_at,
    )


# ---------------------------------------------------------------------------
# Proposals
# ---------------------------------------------------------------------------
@router.post(
    "/proposals",
    response_model=schemas.ProposalCreatedResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_proposal(
    body: schemas.ProposalCreateRequest,
    account_id: str = Depends(get_current_account_id),
    services: Services = Depends(get_services),
) -> schemas.ProposalCreatedResponse:
    """Open a general proposal, or a treasury one when amount and recipient are given."""
    proposal = await services.governance.create_proposal(
        account_id, body.title, body.description, amount=body.amount, recipient=body.recipient
    )
    return schemas.ProposalCreatedResponse(
        proposal_id=proposal.id,
        kind=proposal.kind,
        status=proposal.status,
        expires_at=proposal.expires_at,
    )


@router.get("/proposals", response_model=schemas.ProposalListResponse)
async def list_proposals(
    status_filter: str | None = Query(
        None, alias="status", pattern="^(active_round1|active_round2|passed|rejected)$"
    ),
    limit: int = Query(50, ge=1, le=100),
    services: Services = Depends(get_services),
) -> schemas.ProposalListResponse:
    """Newest proposals first."""
    proposals = await services.governance.list_proposals(status=status_filter, limit=limit)
    return schemas.ProposalListResponse(
        proposals=[schemas.ProposalResponse.model_validate(p) for p in proposals],
        total=len(proposals),
    )


@router.get("/proposals/{proposal_id}", response_model=schemas.ProposalResponse)
async def get_proposal(
    proposal_id: str,
    services: Services = Depends(get_services),
) -> schemas.ProposalResponse:
    proposal = await services.governance.get_proposal(proposal_id)
    return schemas.ProposalResponse.model_validate(proposal)


@router.post("/proposals/{proposal_id}/votes", response_model=schemas.VoteResponse)
async def vote(
    proposal_id: str,
    body: schemas.VoteRequest,
    account_id: str = Depends(get_current_account_id),
    services: Services = Depends(get_services),
) -> schemas.VoteResponse:
    """Vote in the proposal's current round."""
    result = await services.governance.vote(account_id, proposal_id, body.choice, round_no=body.round)
    return schemas.VoteResponse(
        proposal_id=result.proposal_id,
        round=result.round,
        status=result.status,
        tally_for=result.tally_for,
        tally_against=result.tally_against,
    )
