"""External asset-network oracle — Horizon HTTP API client.

Balance lookups are best-effort: callers on the voting and leaderboard paths
go through ``best_effort_balance`` / ``best_effort_total_supply``, which log
and fall back to zero instead of failing the caller.
"""

from __future__ import annotations

from decimal import Decimal, InvalidOperation
from typing import Any, Protocol

import httpx
import structlog

logger = structlog.get_logger()

ZERO = Decimal("0")


class BalanceOracle(Protocol):
    async def get_balance(self, address: str) -> Decimal: ...

    async def get_total_supply(self) -> Decimal: ...


class PaymentSource(Protocol):
    async def list_payments(self, account: str, cursor: str, limit: int) -> list[dict[str, Any]]: ...


def _to_decimal(value: object) -> Decimal:
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        return ZERO


class HorizonClient:
    """Reads asset balances, asset supply and payments from a Horizon server."""

    def __init__(
        self,
        base_url: str,
        asset_code: str,
        asset_issuer: str,
        *,
        timeout: float = 10.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.asset_code = asset_code
        self.asset_issuer = asset_issuer
        self._client = client or httpx.AsyncClient(base_url=base_url.rstrip("/"), timeout=timeout)

    async def aclose(self) -> None:
        await self._client.aclose()

    async def get_balance(self, address: str) -> Decimal:
        """Return the address' balance of the configured asset, 0 if the account is unknown."""
        response = await self._client.get(f"/accounts/{address}")
        if response.status_code == 404:
            return ZERO
        response.raise_for_status()

        for balance in response.json().get("balances", []):
            if balance.get("asset_code") == self.asset_code and balance.get("asset_issuer") == self.asset_issuer:
                return _to_decimal(balance.get("balance", "0"))
        return ZERO

    async def get_total_supply(self) -> Decimal:
        """Return the amount of the asset held by authorized accounts."""
        response = await self._client.get(
            "/assets",
            params={"asset_code": self.asset_code, "asset_issuer": self.asset_issuer},
        )
        response.raise_for_status()

        records = response.json().get("_embedded", {}).get("records", [])
        if not records:
            return ZERO
        record = records[0]
        balances = record.get("balances") or {}
        return _to_decimal(balances.get("authorized", record.get("amount", "0")))

    async def list_payments(self, account: str, cursor: str, limit: int) -> list[dict[str, Any]]:
        """Return payments for ``account`` after ``cursor`` in ascending order."""
        response = await self._client.get(
            f"/accounts/{account}/payments",
            params={"cursor": cursor, "limit": limit, "order": "asc"},
        )
        response.raise_for_status()
        return response.json().get("_embedded", {}).get("records", [])


async def best_effort_balance(oracle: BalanceOracle, address: str) -> Decimal:
    """Oracle balance for ``address``; any failure is logged and reads as 0."""
    try:
        return await oracle.get_balance(address)
    except Exception:
        logger.warning("oracle_balance_failed", address=address, exc_info=True)
        return ZERO


async def best_effort_total_supply(oracle: BalanceOracle) -> Decimal:
    try:
        return await oracle.get_total_supply()
    except Exception:
        logger.warning("oracle_total_supply_failed", exc_info=True)
        return ZERO
