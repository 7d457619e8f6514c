"""
Cafe Amore — Notifications API (SSE with Redis pub/sub)

Architecture:
  - Every order transition stores a Notification row and publishes on
    Redis channel order:{order_id}
  - SSE endpoint subscribes and streams them to the browser EventSource
"""
import json
import logging
import time
from typing import AsyncGenerator

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import StreamingResponse
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from cafe_amore.api.deps import current_user
from cafe_amore.core.config import get_settings
from cafe_amore.core.redis_client import get_redis
from cafe_amore.db.database import get_db
from cafe_amore.models.order import Notification, Order, OrderStatus
from cafe_amore.schemas.order import NotificationOut
from cafe_amore.services.notifier import order_channel

settings = get_settings()
logger = logging.getLogger(__name__)
router = APIRouter(prefix="/notifications", tags=["notifications"])

TERMINAL_STATUSES = {
    OrderStatus.CANCELED.value,
    OrderStatus.REFUNDED.value,
    OrderStatus.REFUND_DENIED.value,
    OrderStatus.REFUND_FAILED.value,
    OrderStatus.COMPLETED_BY_CUSTOMER.value,
}


@router.get("", response_model=list[NotificationOut])
async def list_notifications(
    unread_only: bool = False, user: dict = Depends(current_user), db: AsyncSession = Depends(get_db)
):
    stmt = (
        select(Notification)
        .where(Notification.user_id == user["uid"])
        .order_by(Notification.created_at.desc())
        .limit(100)
    )
    if unread_only:
        stmt = stmt.where(Notification.read.is_(False))
    return (await db.execute(stmt)).scalars().all()


@router.post("/read")
async def mark_all_read(user: dict = Depends(current_user), db: AsyncSession = Depends(get_db)):
    result = await db.execute(
        update(Notification)
        .where(Notification.user_id == user["uid"], Notification.read.is_(False))
        .values(read=True)
    )
    await db.commit()
    return {"updated": result.rowcount}


async def _sse_generator(order_id: str, request: Request) -> AsyncGenerator[str, None]:
    """Subscribe to Redis pub/sub and yield SSE events."""
    redis = get_redis()
    channel_name = order_channel(order_id)
    pubsub = redis.pubsub()
    await pubsub.subscribe(channel_name)

    try:
        # Initial keepalive comment
        yield f": connected to order {order_id}\n\n"

        # Set retry interval for the client
        yield f"retry: {settings.SSE_RETRY_MILLISECONDS}\n\n"
        last_sent = time.monotonic()

        while True:
            if await request.is_disconnected():
                break

            message = await pubsub.get_message(ignore_subscribe_messages=True, timeout=1.0)
            if message and message["type"] == "message":
                data = message["data"]
                try:
                    payload = json.loads(data)
                except ValueError:
                    payload = {"raw": data}

                yield f"event: order_update\ndata: {json.dumps(payload)}\n\n"
                last_sent = time.monotonic()

                # Stop streaming when order is in terminal state
                if payload.get("status") in TERMINAL_STATUSES:
                    break
            elif time.monotonic() - last_sent >= settings.SSE_KEEPALIVE_INTERVAL_SECONDS:
                # Keepalive ping once the interval has passed
                yield ": keepalive\n\n"
                last_sent = time.monotonic()

    finally:
        await pubsub.unsubscribe(channel_name)
        await pubsub.aclose()


@router.get("/stream/{order_id}")
async def stream_notifications(
    order_id: str, request: Request, user: dict = Depends(current_user), db: AsyncSession = Depends(get_db)
):
    """
    SSE endpoint. Browser creates an EventSource to this URL (token in ?token=).
    Streams order state changes until the order reaches a terminal state.
    """
    order = await db.get(Order, order_id)
    if order is None or (order.user_id != user["uid"] and user.get("role") not in settings.STAFF_ROLES):
        raise HTTPException(status_code=404, detail="Order not found.")

    return StreamingResponse(
        _sse_generator(order_id, request),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "X-Accel-Buffering": "no",  # Disable Nginx buffering
            "Connection": "keep-alive",
        },
    )
