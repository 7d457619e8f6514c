"""
Cafe Amore — Idempotency Key Middleware

Checkout retries (double taps, flaky mobile networks) must not place two
orders. For POST /orders/checkout carrying an Idempotency-Key:
  - Stored result     → replayed as-is with X-Idempotency-Replay: true
  - Same key in flight → 409, the first attempt is still running
  - Otherwise          → run checkout; store the result if it succeeded
Keys are scoped per caller so two users cannot collide on the same key.
"""
import json
import logging

from fastapi import Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from cafe_amore.core.config import get_settings
from cafe_amore.core.redis_client import get_redis

settings = get_settings()
logger = logging.getLogger(__name__)

IDEMPOTENCY_PREFIX = "idempotent:checkout:"
CHECKOUT_PATHS = {"/orders/checkout", "/orders/checkout/"}
IN_FLIGHT_TTL_SECONDS = 60


def checkout_cache_key(user: dict | None, idem_key: str) -> str:
    uid = (user or {}).get("uid") or "anonymous"
    return f"{IDEMPOTENCY_PREFIX}{uid}:{idem_key}"


class IdempotencyMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next) -> Response:
        if request.method != "POST" or request.url.path not in CHECKOUT_PATHS:
            return await call_next(request)

        idem_key = request.headers.get("Idempotency-Key")
        if not idem_key:
            return await call_next(request)

        redis = get_redis()
        cache_key = checkout_cache_key(getattr(request.state, "user", None), idem_key)
        lock_key = f"{cache_key}:lock"

        cached = await redis.get(cache_key)
        if cached:
            stored = json.loads(cached)
            logger.info("Replaying checkout for Idempotency-Key %s", idem_key)
            return JSONResponse(
                content=stored["body"],
                status_code=stored["status_code"],
                headers={"X-Idempotency-Replay": "true"},
            )

        if not await redis.set(lock_key, "1", ex=IN_FLIGHT_TTL_SECONDS, nx=True):
            return JSONResponse(
                status_code=409,
                content={"detail": "A checkout with this Idempotency-Key is already in progress."},
            )

        try:
            response = await call_next(request)

            body_bytes = b""
            async for chunk in response.body_iterator:
                body_bytes += chunk

            # A rejected checkout (e.g. out of stock) may succeed on a later retry
            if response.status_code < 400:
                await redis.setex(
                    cache_key,
                    settings.IDEMPOTENCY_KEY_TTL_SECONDS,
                    json.dumps({"body": json.loads(body_bytes), "status_code": response.status_code}),
                )
        finally:
            await redis.delete(lock_key)

        return Response(
            content=body_bytes,
            status_code=response.status_code,
            media_type=response.media_type,
            headers=dict(response.headers),
        )
