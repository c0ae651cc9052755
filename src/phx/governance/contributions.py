"""Contribution ledger — per-address totals fed from asset-network payments."""

from __future__ import annotations

import logging
from collections import defaultdict
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from phx.database import run_in_transaction
from phx.db.models import Contribution, IngestCursor
from phx.errors import InvalidArgument
from phx.governance.oracle import PaymentSource

logger = logging.getLogger(__name__)

CURSOR_NAME = "contributions"


async def _add_to_total(db: AsyncSession, address: str, amount: Decimal, now: datetime) -> Contribution:
    result = await db.execute(
        select(Contribution).where(Contribution.address == address).with_for_update()
    )
    row = result.scalar_one_or_none()
    if row is None:
        row = Contribution(address=address, total_amount=amount, updated_at=now)
        db.add(row)
    else:
        row.total_amount = (row.total_amount or Decimal("0")) + amount
        row.updated_at = now
    return row


class ContributionLedger:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        source: PaymentSource | None,
        contribution_address: str,
        *,
        page_size: int = 200,
    ) -> None:
        self._session_factory = session_factory
        self._source = source
        self._address = contribution_address
        self._page_size = page_size

    async def record(self, address: str, amount: Decimal) -> Contribution:
        """Add a single contribution to the sender's running total."""
        if amount <= 0:
            msg = "Contribution amount must be positive"
            raise InvalidArgument(msg)
        now = datetime.now(timezone.utc)

        async def _work(db: AsyncSession) -> Contribution:
            row = await _add_to_total(db, address, amount, now)
            await db.flush()
            return row

        return await run_in_transaction(self._session_factory, _work)

    async def ingest(self) -> int:
        """Pull one page of new payments and fold native ones into the totals.

        Totals and the paging cursor commit together, so a crashed run neither
        loses nor double-counts a payment. Errors propagate so the scheduler retries.
        """
        if self._source is None:
            msg = "No payment source configured"
            raise RuntimeError(msg)

        async with self._session_factory() as db:
            stored = await db.get(IngestCursor, CURSOR_NAME)
            cursor = stored.cursor if stored else "0"

        payments = await self._source.list_payments(self._address, cursor, self._page_size)
        if not payments:
            logger.info("No new contributions found")
            return 0

        totals: dict[str, Decimal] = defaultdict(Decimal)
        for payment in payments:
            if (
                payment.get("type") == "payment"
                and payment.get("asset_type") == "native"
                and payment.get("to") == self._address
            ):
                totals[payment["from"]] += Decimal(str(payment["amount"]))
        new_cursor = str(payments[-1].get("paging_token", cursor))
        now = datetime.now(timezone.utc)

        async def _work(db: AsyncSession) -> None:
            result = await db.execute(
                select(IngestCursor).where(IngestCursor.name == CURSOR_NAME).with_for_update()
            )
            row = result.scalar_one_or_none()
            if row is not None and row.cursor != cursor:
                # Another run already consumed this page.
                return
            for address, amount in totals.items():
                await _add_to_total(db, address, amount, now)
            if row is None:
                db.add(IngestCursor(name=CURSOR_NAME, cursor=new_cursor, updated_at=now))
            else:
                row.cursor = new_cursor
                row.updated_at = now

        await run_in_transaction(self._session_factory, _work)
        logger.info("Processed %d payments, %d contributors updated", len(payments), len(totals))
        return len(totals)
