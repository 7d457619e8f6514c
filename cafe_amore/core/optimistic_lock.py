"""
Cafe Amore — Optimistic locking retry decorator

Inventory rows carry a version_id. A writer that finds the version changed
between its read and its guarded UPDATE raises StaleDataError; the whole unit
of work (checkout, webhook reconciliation, cancellation) is then rolled back
and re-run so it re-reads and re-validates current stock.
"""
import asyncio
import random
import functools
import logging

from sqlalchemy.exc import IntegrityError

from cafe_amore.core.config import get_settings

settings = get_settings()
logger = logging.getLogger(__name__)


class StaleDataError(Exception):
    """Raised when an optimistic lock conflict is detected:
    the version_id in the DB changed between our read and update,
    meaning another concurrent transaction won the race.
    """
    pass


def _backoff_delay(attempt: int) -> float:
    base_delay = settings.OPT_LOCK_BASE_DELAY_MS / 1000.0
    max_delay = settings.OPT_LOCK_MAX_DELAY_MS / 1000.0
    jitter = random.uniform(0, settings.OPT_LOCK_JITTER_MS / 1000.0)
    return min(base_delay * (2 ** attempt), max_delay) + jitter


def with_optimistic_retry(max_retries: int | None = None, retry_on_integrity: bool = False):
    """
    Decorator for async functions that perform optimistic-lock DB writes.
    On StaleDataError, retries with exponential backoff + jitter.

    With ``retry_on_integrity`` a unique-constraint race (two checkouts picking
    the same queue number) is retried the same way.

    The wrapped function must take the AsyncSession as its first argument; it
    is rolled back before every retry.

    Usage:
        @with_optimistic_retry()
        async def place_order(db, ...):
            ...
    """
    _max = max_retries or settings.OPT_LOCK_MAX_RETRIES
    retryable: tuple[type[Exception], ...] = (StaleDataError,)
    if retry_on_integrity:
        retryable = (StaleDataError, IntegrityError)

    def decorator(func):
        @functools.wraps(func)
        async def wrapper(db, *args, **kwargs):
            for attempt in range(1, _max + 1):
                try:
                    return await func(db, *args, **kwargs)
                except retryable as exc:
                    await db.rollback()
                    if attempt == _max:
                        logger.error(
                            "Optimistic lock conflict unresolved after %d retries for %s",
                            _max, func.__name__,
                        )
                        if isinstance(exc, IntegrityError):
                            raise StaleDataError(str(exc.orig)) from exc
                        raise
                    delay = _backoff_delay(attempt)
                    logger.warning(
                        "%s on attempt %d/%d for %s, retrying in %.3fs",
                        type(exc).__name__, attempt, _max, func.__name__, delay,
                    )
                    await asyncio.sleep(delay)
        return wrapper
    return decorator
