"""Leaderboard snapshot — cached top-N contributors and their voting power."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from phx.database import run_in_transaction
from phx.db.models import Contribution, LeaderboardSnapshot
from phx.governance.oracle import BalanceOracle, best_effort_balance

logger = logging.getLogger(__name__)

SNAPSHOT_ID = 1


def snapshot_addresses(snapshot: LeaderboardSnapshot | None) -> set[str]:
    if snapshot is None:
        return set()
    return {entry["address"] for entry in snapshot.entries or []}


class LeaderboardService:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        oracle: BalanceOracle | None,
        *,
        size: int = 100,
    ) -> None:
        self._session_factory = session_factory
        self._oracle = oracle
        self._size = size

    async def get_snapshot(self) -> LeaderboardSnapshot | None:
        async with self._session_factory() as db:
            return await db.get(LeaderboardSnapshot, SNAPSHOT_ID)

    async def refresh(self, now: datetime | None = None) -> LeaderboardSnapshot | None:
        """Recompute the top-N from the contribution ledger.

        An empty contribution read leaves the existing snapshot untouched and
        returns None.
        """
        async with self._session_factory() as db:
            result = await db.execute(
                select(Contribution.address, Contribution.total_amount)
                .order_by(Contribution.total_amount.desc(), Contribution.address.asc())
                .limit(self._size)
            )
            rows = result.all()

        if not rows:
            logger.warning("Contribution ledger appears empty; leaderboard cache left unchanged")
            return None

        entries = [
            {"address": row.address, "amount": str(Decimal(str(row.total_amount)))}
            for row in rows
        ]
        total_power = Decimal("0")
        if self._oracle is not None:
            powers = await asyncio.gather(
                *(best_effort_balance(self._oracle, entry["address"]) for entry in entries)
            )
            total_power = sum(powers, Decimal("0"))
        now = now or datetime.now(timezone.utc)

        async def _work(db: AsyncSession) -> LeaderboardSnapshot:
            snapshot = await db.get(LeaderboardSnapshot, SNAPSHOT_ID)
            if snapshot is None:
                snapshot = LeaderboardSnapshot(id=SNAPSHOT_ID)
                db.add(snapshot)
            snapshot.entries = entries
            snapshot.total_power = total_power
            snapshot.updated_at = now
            await db.flush()
            return snapshot

        snapshot = await run_in_transaction(self._session_factory, _work)
        logger.info("Leaderboard cache updated with %d supporters", len(entries))
        return snapshot
