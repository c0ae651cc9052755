"""Token supply statistics, served as plain text for exchange listings."""

from __future__ import annotations

from decimal import Decimal

from fastapi import APIRouter, Depends
from fastapi.responses import PlainTextResponse

from phx.auth.dependencies import get_services, require_admin
from phx.services import Services

router = APIRouter(prefix="/api/v1/supply", tags=["Supply"])

_SEVEN_PLACES = Decimal("0.0000001")


def _format(amount: Decimal) -> str:
    return f"{Decimal(amount).quantize(_SEVEN_PLACES):f}"


@router.get("/total", response_class=PlainTextResponse)
async def total_supply(services: Services = Depends(get_services)) -> str:
    """Sum of all spendable balances."""
    return _format(await services.ledger.total_supply())


@router.get("/circulating", response_class=PlainTextResponse)
async def circulating_supply(services: Services = Depends(get_services)) -> str:
    """Sum of amounts already paid out."""
    return _format(await services.ledger.circulating_supply())


@router.get("/remaining", response_class=PlainTextResponse, dependencies=[Depends(require_admin)])
async def remaining_supply(services: Services = Depends(get_services)) -> str:
    """Maximum supply minus every spendable balance. Admin only."""
    return _format(await services.ledger.remaining_supply())
