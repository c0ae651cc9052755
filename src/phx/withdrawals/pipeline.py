"""Withdrawal settlement pipeline — batch fan-out over the task queue.

Pending requests are split into fixed-size batches and published as
``process_withdrawal_batch`` jobs. Each batch settles its ids one by one;
a failing id is recorded in the summary and the rest of the batch carries on.
Settlement itself is idempotent, so redelivered batches are harmless.
"""

from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Protocol

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from phx.db.models import WithdrawalRequest
from phx.errors import AlreadyProcessed, FailedPrecondition, NotFound, PhxError
from phx.ledger.service import LedgerService, SettlementOutcome, SettlementResult

logger = logging.getLogger(__name__)

BATCH_JOB_NAME = "process_withdrawal_batch"


class JobQueue(Protocol):
    """The subset of ``arq.connections.ArqRedis`` the pipeline needs."""

    async def enqueue_job(self, function: str, *args: Any, **kwargs: Any) -> Any: ...


@dataclass(frozen=True)
class ItemOutcome:
    request_id: str
    outcome: str  # approved | rejected | already_processed | not_found | error
    message: str


@dataclass
class BatchSummary:
    outcomes: list[ItemOutcome] = field(default_factory=list)

    @property
    def counts(self) -> dict[str, int]:
        return dict(Counter(item.outcome for item in self.outcomes))

    @property
    def succeeded(self) -> int:
        return sum(1 for item in self.outcomes if item.outcome in ("approved", "rejected"))


@dataclass(frozen=True)
class EnqueueResult:
    queued_count: int
    batches: int
    failed_batches: int


def chunk(ids: list[str], size: int) -> list[list[str]]:
    """Split ids into consecutive batches of at most ``size``."""
    if size <= 0:
        msg = "Batch size must be positive"
        raise ValueError(msg)
    return [ids[i:i + size] for i in range(0, len(ids), size)]


class WithdrawalPipeline:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        ledger: LedgerService,
        queue: JobQueue | None,
        *,
        batch_size: int = 100,
    ) -> None:
        self._session_factory = session_factory
        self._ledger = ledger
        self._queue = queue
        self._batch_size = batch_size

    async def pending_ids(self) -> list[str]:
        async with self._session_factory() as db:
            result = await db.execute(
                select(WithdrawalRequest.id)
                .where(WithdrawalRequest.status == "pending")
                .order_by(WithdrawalRequest.requested_at.asc())
            )
            return [row[0] for row in result.all()]

    async def enqueue_all_pending(self) -> EnqueueResult:
        """Publish one batch job per chunk of pending ids.

        A failed publish is counted, not rolled back: those requests stay
        pending and are picked up by the next run.
        """
        if self._queue is None:
            msg = "Task queue is not configured"
            raise FailedPrecondition(msg)

        ids = await self.pending_ids()
        if not ids:
            return EnqueueResult(queued_count=0, batches=0, failed_batches=0)

        queued = 0
        failed = 0
        batches = chunk(ids, self._batch_size)
        for batch in batches:
            try:
                await self._queue.enqueue_job(BATCH_JOB_NAME, batch)
                queued += len(batch)
            except Exception:
                failed += 1
                logger.exception("Failed to publish withdrawal batch of %d", len(batch))

        logger.info("Queued %d withdrawals in %d batches (%d failed)", queued, len(batches), failed)
        return EnqueueResult(queued_count=queued, batches=len(batches), failed_batches=failed)

    async def process_batch(self, ids: list[str]) -> BatchSummary:
        """Approve every id independently and report per-item outcomes."""
        summary = BatchSummary()
        for request_id in ids:
            summary.outcomes.append(await self._settle_one(request_id))
        logger.info("Processed withdrawal batch of %d: %s", len(ids), summary.counts)
        return summary

    async def _settle_one(self, request_id: str) -> ItemOutcome:
        try:
            result = await self._ledger.settle_withdrawal(request_id, "approve", None)
        except AlreadyProcessed as e:
            return ItemOutcome(request_id, "already_processed", e.message)
        except NotFound as e:
            return ItemOutcome(request_id, "not_found", e.message)
        except PhxError as e:
            logger.error("Error processing withdrawal %s in batch: %s", request_id, e.message)
            return ItemOutcome(request_id, "error", e.message)
        except Exception as e:
            logger.exception("Error processing withdrawal %s in batch", request_id)
            return ItemOutcome(request_id, "error", str(e))
        return ItemOutcome(request_id, result.status, result.message)

    async def single_action(
        self,
        request_id: str,
        action: SettlementOutcome,
        external_ref: str | None = None,
    ) -> SettlementResult:
        """Operator path: settle one request and surface any error."""
        return await self._ledger.settle_withdrawal(request_id, action, external_ref)
