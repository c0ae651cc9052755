"""arq worker for withdrawal settlement and governance housekeeping.

Import path for arq CLI: arq phx.workers.settings.WorkerSettings

Schedule:
- Leaderboard refresh: every 10 minutes
- Treasury proposal expiry sweep: every 5 minutes
- Contribution ingestion: every 5 minutes
"""

from __future__ import annotations

import logging

from arq import cron
from arq.connections import RedisSettings

from phx.config import get_settings
from phx.database import close_db, get_session_factory, init_db
from phx.services import Services, build_horizon, build_services

logger = logging.getLogger(__name__)


async def startup(ctx: dict) -> None:  # type: ignore[type-arg]
    """Build the service container on worker startup."""
    settings = get_settings()
    await init_db(settings.database_url)
    horizon = build_horizon(settings)
    # ctx["redis"] is arq's own pool; batch jobs may re-enqueue through it.
    ctx["services"] = build_services(settings, get_session_factory(), queue=ctx.get("redis"), horizon=horizon)
    logger.info("Worker started (environment=%s)", settings.environment)


async def shutdown(ctx: dict) -> None:  # type: ignore[type-arg]
    """Clean up on worker shutdown."""
    services: Services | None = ctx.get("services")
    if services and services.horizon:
        await services.horizon.aclose()
    await close_db()
    logger.info("Worker shut down")


async def process_withdrawal_batch(ctx: dict, ids: list[str]) -> dict[str, int]:  # type: ignore[type-arg]
    """Settle one batch of withdrawal ids. Safe to redeliver."""
    services: Services = ctx["services"]
    summary = await services.pipeline.process_batch(ids)
    logger.info("Withdrawal batch done: %d settled of %d", summary.succeeded, len(ids))
    return summary.counts


async def refresh_leaderboard(ctx: dict) -> int:  # type: ignore[type-arg]
    """Periodic task: rebuild the governance leaderboard snapshot."""
    services: Services = ctx["services"]
    try:
        snapshot = await services.leaderboard.refresh()
    except Exception:
        logger.exception("Failed to refresh leaderboard")
        return 0
    return len(snapshot.entries) if snapshot else 0


async def close_expired_proposals(ctx: dict) -> int:  # type: ignore[type-arg]
    """Periodic task: close treasury proposals whose first round has expired."""
    services: Services = ctx["services"]
    closed = await services.governance.close_expired_proposals()
    if closed:
        logger.info("Closed %d expired treasury proposals", len(closed))
    return len(closed)


async def ingest_contributions(ctx: dict) -> int:  # type: ignore[type-arg]
    """Periodic task: fold new contribution payments into the ledger."""
    services: Services = ctx["services"]
    return await services.contributions.ingest()


class WorkerSettings:
    """arq worker settings for the PHX background jobs."""

    functions = [process_withdrawal_batch]
    cron_jobs = [
        cron(refresh_leaderboard, minute={0, 10, 20, 30, 40, 50}, run_at_startup=True),
        cron(close_expired_proposals, minute=set(range(0, 60, 5))),
        cron(ingest_contributions, minute=set(range(0, 60, 5))),
    ]
    on_startup = startup
    on_shutdown = shutdown
    redis_settings = RedisSettings.from_dsn(get_settings().arq_redis_url)
    max_jobs = 10
    job_timeout = 300
    max_tries = 5
    allow_abort_jobs = True
