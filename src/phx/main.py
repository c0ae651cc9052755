"""FastAPI application factory."""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import redis.asyncio as aioredis
import structlog
from arq import create_pool
from arq.connections import RedisSettings
from fastapi import FastAPI

from phx.config import Settings, get_settings
from phx.database import close_db, get_session_factory, init_db
from phx.governance.router import router as governance_router
from phx.health.router import router as health_router
from phx.ledger.router import router as ledger_router
from phx.middleware import setup_middleware
from phx.services import build_horizon, build_services
from phx.supply.router import router as supply_router
from phx.withdrawals.router import router as withdrawals_router

logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Startup and shutdown lifecycle."""
    settings = get_settings()
    await init_db(settings.database_url)
    app.state.redis = aioredis.from_url(
        settings.redis_url,
        encoding="utf-8",
        decode_responses=True,
        max_connections=50,
    )
    app.state.arq = await create_pool(RedisSettings.from_dsn(settings.arq_redis_url))
    horizon = build_horizon(settings)
    app.state.services = build_services(
        settings,
        get_session_factory(),
        queue=app.state.arq,
        horizon=horizon,
    )
    logger.info("startup_complete", environment=settings.environment)

    yield

    await horizon.aclose()
    await app.state.arq.aclose()
    await app.state.redis.aclose()
    await close_db()


def create_app(settings: Settings | None = None) -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = settings or get_settings()

    app = FastAPI(
        title="PHX Ledger API",
        description="Reward ledger, withdrawal settlement and governance for the PHX token",
        version=settings.app_version,
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
        lifespan=lifespan,
    )
    app.state.redis = None
    app.state.arq = None

    setup_middleware(app, settings)
    app.include_router(health_router, tags=["Health"])
    app.include_router(ledger_router)
    app.include_router(withdrawals_router)
    app.include_router(governance_router)
    app.include_router(supply_router)

    return app


app = create_app()
