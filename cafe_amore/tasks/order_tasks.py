"""
Cafe Amore — Celery tasks (durable auto-cancel sweep)

Beat enqueues sweep_expired_orders every AUTO_CANCEL_SWEEP_INTERVAL_SECONDS.
The worker runs the async sweep in a fresh event loop with its own NullPool
engine, since pooled asyncpg connections cannot cross event loops.
"""
import asyncio
import logging

from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from cafe_amore.core.celery_app import celery_app
from cafe_amore.core.config import get_settings
from cafe_amore.core.redis_client import close_redis
from cafe_amore.services.lifecycle import sweep_expired_orders as sweep

settings = get_settings()
logger = logging.getLogger(__name__)


async def _run_sweep() -> list[str]:
    engine = create_async_engine(settings.database_url, poolclass=NullPool)
    try:
        session_factory = async_sessionmaker(engine, expire_on_commit=False)
        async with session_factory() as db:
            return await sweep(db)
    finally:
        await engine.dispose()
        await close_redis()


@celery_app.task(
    name="sweep_expired_orders",
    bind=True,
    max_retries=3,
    default_retry_delay=5,
    acks_late=True,
)
def sweep_expired_orders(self) -> list[str]:
    try:
        canceled = asyncio.run(_run_sweep())
    except Exception as exc:
        logger.exception("Auto-cancel sweep failed")
        raise self.retry(exc=exc)
    if canceled:
        logger.info("Auto-cancel sweep canceled %d order(s): %s", len(canceled), ", ".join(canceled))
    return canceled
