"""Health, readiness, and version endpoints."""

from fastapi import APIRouter, Depends, Request
from sqlalchemy import text

from phx.auth.dependencies import get_services
from phx.config import get_settings
from phx.services import Services

router = APIRouter()


@router.get("/health")
async def health() -> dict[str, str]:
    """Liveness probe — returns 200 if the process is alive."""
    return {"status": "healthy"}


@router.get("/ready")
async def readiness(
    request: Request,
    services: Services = Depends(get_services),  # noqa: B008
) -> dict[str, object]:
    """Readiness probe — checks the database, Redis and the task queue."""
    checks: dict[str, object] = {}

    try:
        async with services.session_factory() as db:
            await db.execute(text("SELECT 1"))
        checks["database"] = "ok"
    except Exception as exc:
        checks["database"] = f"error: {exc}"

    for name in ("redis", "arq"):
        client = getattr(request.app.state, name, None)
        if client is None:
            checks[name] = "not configured"
            continue
        try:
            await client.ping()
            checks[name] = "ok"
        except Exception as exc:
            checks[name] = f"error: {exc}"

    all_ok = checks["database"] == "ok" and all(
        v in ("ok", "not configured") for v in checks.values()
    )
    return {"status": "ready" if all_ok else "degraded", "checks": checks}


@router.get("/version")
async def version() -> dict[str, str]:
    """Return API version and environment."""
    settings = get_settings()
    return {
        "version": settings.app_version,
        "environment": settings.environment,
    }
