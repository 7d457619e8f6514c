"""
Cafe Amore — Cart API

Signed-in callers use their persisted cart; guests identify with X-Guest-Id.
GET /cart/stream pushes a fresh render whenever the owner's cart or any
inventory item changes (Redis pub/sub → SSE).
"""
import json
import logging
import time
from typing import AsyncGenerator

from fastapi import APIRouter, Depends, Query, Request, Response, status
from fastapi.responses import StreamingResponse
from sqlalchemy.ext.asyncio import AsyncSession

from cafe_amore.api.deps import DOMAIN_ERRORS, cart_owner, current_user, http_error
from cafe_amore.core.config import get_settings
from cafe_amore.core.redis_client import get_redis
from cafe_amore.db.database import SessionLocal, get_db
from cafe_amore.schemas.cart import AddItemRequest, CartView, MergeRequest, SetQuantityRequest
from cafe_amore.services.cart import CartOwner, CartStore
from cafe_amore.services.catalog import load_snapshot
from cafe_amore.services.notifier import INVENTORY_CHANNEL, cart_channel

settings = get_settings()
logger = logging.getLogger(__name__)
router = APIRouter(prefix="/cart", tags=["cart"])


async def _store(db: AsyncSession) -> CartStore:
    return CartStore(db, get_redis(), await load_snapshot(db))


async def _render(db: AsyncSession, owner: CartOwner, selected: list[str], delivery_fee: int) -> dict:
    store = await _store(db)
    return store.render(await store.lines(owner), selected, delivery_fee)


@router.get("", response_model=CartView)
async def get_cart(
    selected: list[str] = Query(default=[]),
    delivery_fee: int = Query(0, ge=0),
    owner: CartOwner = Depends(cart_owner),
    db: AsyncSession = Depends(get_db),
):
    return await _render(db, owner, selected, delivery_fee)


@router.post("/items", status_code=status.HTTP_201_CREATED)
async def add_item(
    payload: AddItemRequest, owner: CartOwner = Depends(cart_owner), db: AsyncSession = Depends(get_db)
):
    store = await _store(db)
    try:
        return await store.add_item(owner, payload.product_id, payload.size_id, payload.addon_ids, payload.quantity)
    except DOMAIN_ERRORS as exc:
        raise http_error(exc)


@router.patch("/items/{line_id}")
async def set_quantity(
    line_id: str,
    payload: SetQuantityRequest,
    owner: CartOwner = Depends(cart_owner),
    db: AsyncSession = Depends(get_db),
):
    store = await _store(db)
    try:
        return await store.set_quantity(owner, line_id, payload.quantity)
    except DOMAIN_ERRORS as exc:
        raise http_error(exc)


@router.delete("/items/{line_id}", status_code=status.HTTP_204_NO_CONTENT)
async def remove_item(line_id: str, owner: CartOwner = Depends(cart_owner), db: AsyncSession = Depends(get_db)):
    store = await _store(db)
    try:
        await store.remove_item(owner, line_id)
    except DOMAIN_ERRORS as exc:
        raise http_error(exc)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/merge", response_model=CartView)
async def merge_guest_cart(
    payload: MergeRequest, user: dict = Depends(current_user), db: AsyncSession = Depends(get_db)
):
    """Called once after sign-in with the device's guest id."""
    store = await _store(db)
    lines = await store.merge_guest_cart(user["uid"], payload.guest_id)
    return store.render(lines)


async def _cart_events(
    owner: CartOwner, selected: list[str], delivery_fee: int, request: Request
) -> AsyncGenerator[str, None]:
    redis = get_redis()
    channels = [INVENTORY_CHANNEL, cart_channel(owner.key)]
    pubsub = redis.pubsub()
    await pubsub.subscribe(*channels)

    try:
        yield f"retry: {settings.SSE_RETRY_MILLISECONDS}\n\n"
        async with SessionLocal() as db:
            view = await _render(db, owner, selected, delivery_fee)
        yield f"event: cart\ndata: {json.dumps(view, default=str)}\n\n"

        last_sent = time.monotonic()
        while True:
            if await request.is_disconnected():
                break
            message = await pubsub.get_message(ignore_subscribe_messages=True, timeout=1.0)
            if message and message["type"] == "message":
                async with SessionLocal() as db:
                    view = await _render(db, owner, selected, delivery_fee)
                yield f"event: cart\ndata: {json.dumps(view, default=str)}\n\n"
                last_sent = time.monotonic()
            elif time.monotonic() - last_sent >= settings.SSE_KEEPALIVE_INTERVAL_SECONDS:
                yield ": keepalive\n\n"
                last_sent = time.monotonic()
    finally:
        await pubsub.unsubscribe(*channels)
        await pubsub.aclose()


@router.get("/stream")
async def stream_cart(
    request: Request,
    selected: list[str] = Query(default=[]),
    delivery_fee: int = Query(0, ge=0),
    owner: CartOwner = Depends(cart_owner),
):
    return StreamingResponse(
        _cart_events(owner, selected, delivery_fee, request),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "X-Accel-Buffering": "no",  # Disable Nginx buffering
            "Connection": "keep-alive",
        },
    )
