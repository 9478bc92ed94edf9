"""Liveness and readiness endpoints."""

from fastapi import APIRouter, Depends
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from lexrewards.config import get_settings
from lexrewards.database import get_session
from lexrewards.notifications.notifier import METRICS_KEY
from lexrewards.redis_client import get_redis

router = APIRouter()


@router.get("/health")
async def health() -> dict[str, str]:
    return {"status": "healthy", "version": get_settings().app_version}


@router.get("/ready")
async def readiness(
    db: AsyncSession = Depends(get_session),  # noqa: B008
) -> dict[str, object]:
    """Checks DB and Redis connectivity and reports notification queue counters."""
    checks: dict[str, object] = {}

    try:
        await db.execute(text("SELECT 1"))
        checks["database"] = "ok"
    except Exception as exc:
        checks["database"] = f"error: {exc}"

    notifications: dict[str, int] = {}
    try:
        redis = get_redis()
        await redis.ping()
        checks["redis"] = "ok"
        notifications = {k: int(v) for k, v in (await redis.hgetall(METRICS_KEY)).items()}
    except Exception as exc:
        checks["redis"] = f"error: {exc}"

    all_ok = all(v == "ok" for v in checks.values())
    return {
        "status": "ready" if all_ok else "degraded",
        "checks": checks,
        "notifications": notifications,
    }
