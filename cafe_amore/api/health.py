"""
Cafe Amore — Health endpoint

Database and Redis are hard dependencies; PayMongo configuration and the
backlog of failed webhook events are reported but never mark the service
degraded.
"""
import asyncio
from typing import Awaitable

from fastapi import APIRouter
from fastapi.responses import JSONResponse
from sqlalchemy import func, select, text

from cafe_amore.core.config import get_settings
from cafe_amore.core.redis_client import get_redis
from cafe_amore.db.database import engine
from cafe_amore.models.order import WebhookEvent

settings = get_settings()
router = APIRouter(tags=["health"])


async def _check(check: Awaitable) -> str:
    try:
        await asyncio.wait_for(check, timeout=settings.HEALTH_CHECK_TIMEOUT)
    except Exception as e:
        return f"error: {str(e)[:100]}"
    return "ok"


async def _ping_database() -> None:
    async with engine.connect() as conn:
        await conn.execute(text("SELECT 1"))


async def _failed_webhook_events() -> int | None:
    try:
        async with engine.connect() as conn:
            return await conn.scalar(
                select(func.count()).select_from(WebhookEvent).where(WebhookEvent.status == "failed")
            )
    except Exception:
        return None


@router.get("/health")
async def health_check():
    deps = {
        "database": await _check(_ping_database()),
        "redis": await _check(get_redis().ping()),
        "paymongo": "configured" if settings.PAYMONGO_SECRET_KEY else "not configured",
    }
    healthy = deps["database"] == "ok" and deps["redis"] == "ok"

    return JSONResponse(
        content={
            "status": "healthy" if healthy else "degraded",
            "service": settings.SERVICE_NAME,
            "version": settings.SERVICE_VERSION,
            "dependencies": deps,
            "failed_webhook_events": await _failed_webhook_events() if healthy else None,
        },
        status_code=200 if healthy else 503,
    )
