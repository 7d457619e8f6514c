"""
Cafe Amore — PayMongo webhook reconciler

Every delivery is first stored as a WebhookEvent row keyed by the provider's
event id, then processed. A redelivered event id is acknowledged without
reprocessing; inside processing, an order that already carries a payment_id
is never deducted twice.

Failures (order not found, stock conflict, order no longer payable) are
recorded on the event row with the error and still acknowledged with 200, so
the provider stops retrying while staff can inspect and replay the event.
"""
import hashlib
import json
import logging
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy import select, delete
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from cafe_amore.core.optimistic_lock import StaleDataError, with_optimistic_retry
from cafe_amore.db.stock_ops import InsufficientStockError
from cafe_amore.models.cart import CartLine
from cafe_amore.models.order import (
    Order,
    OrderStatus,
    TYPE_BY_COLLECTION,
    WebhookEvent,
    utcnow,
)
from cafe_amore.services.lifecycle import (
    InvalidTransitionError,
    apply_refund_result,
    compare_and_set,
    deduct_order_stock,
)
from cafe_amore.services.notifier import (
    publish_cart_change,
    publish_inventory_change,
    publish_order_update,
    record_status_notification,
)

logger = logging.getLogger(__name__)

PAID_EVENTS = {"payment.paid", "checkout_session.payment.paid", "checkout_session.paid"}
REFUND_SUCCEEDED_EVENTS = {"payment.refunded", "refund.succeeded"}
REFUND_FAILED_EVENTS = {"payment.refund.failed", "refund.failed"}
REFUND_UPDATED_EVENT = "payment.refund.updated"

PAYABLE_STATUSES = {
    OrderStatus.WAIT_FOR_ADMIN.value,
    OrderStatus.WAITING_FOR_PAYMENT.value,
    OrderStatus.PENDING.value,
}

# WebhookEvent.status values
RECEIVED = "received"
PROCESSED = "processed"
IGNORED = "ignored"
FAILED = "failed"
DUPLICATE = "duplicate"


class OrderResolutionError(LookupError):
    """No single order matches the event."""


@dataclass
class ParsedEvent:
    id: str
    type: str
    payment_id: str | None
    metadata: dict[str, Any] = field(default_factory=dict)
    resource_status: str | None = None
    payload: dict[str, Any] = field(default_factory=dict)


def safe_parse_list(value: Any) -> list:
    """cartItemIds arrive as a list, a JSON string, or a double-encoded JSON string."""
    result = value
    for _ in range(2):
        if not isinstance(result, str):
            break
        try:
            result = json.loads(result)
        except ValueError:
            return []
    return result if isinstance(result, list) else []


def parse_event(payload: dict[str, Any], raw_body: bytes = b"") -> ParsedEvent:
    data = payload.get("data") or {}
    attributes = data.get("attributes") or {}
    resource = attributes.get("data") or {}
    resource_attrs = resource.get("attributes") or {}

    payment_id = resource.get("id")
    if resource.get("type") == "refund":
        payment_id = resource_attrs.get("payment_id") or payment_id
    elif resource.get("type") == "checkout_session":
        payments = resource_attrs.get("payments") or []
        if payments and payments[0].get("id"):
            payment_id = payments[0]["id"]

    event_id = data.get("id") or "sha256:" + hashlib.sha256(raw_body).hexdigest()
    return ParsedEvent(
        id=event_id,
        type=attributes.get("type") or "",
        payment_id=payment_id,
        metadata=resource_attrs.get("metadata") or {},
        resource_status=resource_attrs.get("status"),
        payload=payload,
    )


async def record_event(db: AsyncSession, event: ParsedEvent) -> tuple[WebhookEvent, bool]:
    """Durably store the delivery. Returns (row, is_duplicate)."""
    existing = await db.get(WebhookEvent, event.id)
    if existing is not None:
        return existing, True
    row = WebhookEvent(
        id=event.id, event_type=event.type, payment_id=event.payment_id,
        status=RECEIVED, payload=event.payload,
    )
    db.add(row)
    try:
        await db.commit()
    except IntegrityError:
        # Concurrent redelivery inserted it first
        await db.rollback()
        return await db.get(WebhookEvent, event.id), True
    return row, False


async def _mark(db: AsyncSession, event_id: str, status: str, order_id: str | None = None,
                error: str | None = None) -> None:
    row = await db.get(WebhookEvent, event_id, populate_existing=True)
    if row is None:
        return
    row.status = status
    row.order_id = order_id or row.order_id
    row.error = error
    row.processed_at = utcnow()


async def resolve_order(db: AsyncSession, metadata: dict[str, Any]) -> Order:
    """By metadata orderId, else by (userId, queueNumber) among payable orders."""
    order_type = TYPE_BY_COLLECTION.get(metadata.get("collectionName") or "")
    order_id = metadata.get("orderId")
    if order_id:
        order = await db.get(Order, order_id, populate_existing=True)
        if order is not None and (order_type is None or order.order_type == order_type):
            return order

    user_id, queue_number = metadata.get("userId"), metadata.get("queueNumber")
    if user_id and queue_number:
        stmt = select(Order).where(
            Order.user_id == user_id,
            Order.queue_number == str(queue_number),
            Order.status.in_(PAYABLE_STATUSES),
            Order.payment_id.is_(None),
        ).execution_options(populate_existing=True)
        if order_type:
            stmt = stmt.where(Order.order_type == order_type)
        matches = (await db.execute(stmt)).scalars().all()
        if len(matches) == 1:
            return matches[0]
        if len(matches) > 1:
            raise OrderResolutionError(f"{len(matches)} orders match user {user_id} queue #{queue_number}.")

    raise OrderResolutionError(
        f"Order not found by id ({order_id}) or user/queue ({user_id}/{queue_number})."
    )


# ── Handlers (one transaction each, retried on stock conflicts) ──────────────

@with_optimistic_retry()
async def apply_payment(db: AsyncSession, event: ParsedEvent) -> Order:
    order = await resolve_order(db, event.metadata)

    if order.payment_id:
        logger.info("Order %s already paid by %s; event %s ignored", order.id, order.payment_id, event.id)
        await _mark(db, event.id, DUPLICATE, order.id, "Order already has a payment id.")
        await db.commit()
        return order
    if order.status not in PAYABLE_STATUSES:
        raise InvalidTransitionError(f"Order {order.id} is '{order.status}' and can no longer be paid.")

    await compare_and_set(
        db, order, order.status, OrderStatus.PENDING.value,
        payment_id=event.payment_id, payment_metadata=None,
    )
    deltas = await deduct_order_stock(db, order, reason="payment")

    cart_ids = safe_parse_list(
        event.metadata.get("cartItemIds") or event.metadata.get("CartItemIds") or event.metadata.get("cartIds")
    ) or list(order.cart_item_ids or [])
    if cart_ids and order.user_id:
        await db.execute(
            delete(CartLine).where(CartLine.owner_id == order.user_id, CartLine.id.in_(cart_ids))
        )
    order.cart_item_ids = []

    record_status_notification(db, order)
    await _mark(db, event.id, PROCESSED, order.id)
    await db.commit()

    logger.info("Order %s paid (%s): deducted %d component(s)", order.id, event.payment_id, len(deltas))
    await publish_order_update(order)
    await publish_inventory_change(deltas)
    if cart_ids and order.user_id:
        await publish_cart_change(order.user_id)
    return order


@with_optimistic_retry()
async def apply_refund(db: AsyncSession, event: ParsedEvent, succeeded: bool) -> Order:
    order = None
    if event.payment_id:
        order = (await db.execute(
            select(Order).where(Order.payment_id == event.payment_id)
            .execution_options(populate_existing=True)
        )).scalars().first()
    if order is None:
        raise OrderResolutionError(f"No order carries payment id {event.payment_id}.")

    if succeeded and order.status == OrderStatus.REFUNDED.value:
        await _mark(db, event.id, DUPLICATE, order.id, "Order already refunded.")
        await db.commit()
        return order

    deltas = await apply_refund_result(db, order, succeeded)
    record_status_notification(db, order)
    await _mark(db, event.id, PROCESSED, order.id)
    await db.commit()

    logger.info("Refund %s for order %s", "confirmed" if succeeded else "failed", order.id)
    await publish_order_update(order)
    await publish_inventory_change(deltas)
    return order


async def process_event(db: AsyncSession, event: ParsedEvent) -> WebhookEvent:
    try:
        if event.type in PAID_EVENTS:
            await apply_payment(db, event)
        elif event.type in REFUND_SUCCEEDED_EVENTS:
            await apply_refund(db, event, succeeded=True)
        elif event.type in REFUND_FAILED_EVENTS:
            await apply_refund(db, event, succeeded=False)
        elif event.type == REFUND_UPDATED_EVENT and event.resource_status in ("succeeded", "failed"):
            await apply_refund(db, event, succeeded=event.resource_status == "succeeded")
        else:
            logger.info("Webhook event %s (%s) ignored", event.id, event.type or "untyped")
            await _mark(db, event.id, IGNORED)
            await db.commit()
    except (OrderResolutionError, InsufficientStockError, InvalidTransitionError, StaleDataError) as exc:
        await db.rollback()
        logger.error("Webhook event %s (%s) failed: %s", event.id, event.type, exc)
        await _mark(db, event.id, FAILED, error=str(exc))
        await db.commit()

    return await db.get(WebhookEvent, event.id, populate_existing=True)


async def handle_webhook(db: AsyncSession, payload: dict[str, Any], raw_body: bytes) -> tuple[WebhookEvent, bool]:
    """Record then process one delivery. Returns (event row, was_duplicate)."""
    event = parse_event(payload, raw_body)
    row, duplicate = await record_event(db, event)
    if duplicate:
        logger.info("Webhook event %s already received (%s); not reprocessed", event.id, row.status)
        return row, True
    return await process_event(db, event), False


async def replay_event(db: AsyncSession, event_id: str) -> WebhookEvent:
    """Re-run a stored event that failed or was never processed."""
    row = await db.get(WebhookEvent, event_id, populate_existing=True)
    if row is None:
        raise LookupError(f"Webhook event '{event_id}' not found.")
    if row.status not in (FAILED, RECEIVED):
        raise InvalidTransitionError(f"Webhook event {event_id} is '{row.status}', not replayable.")
    logger.info("Replaying webhook event %s (%s)", event_id, row.event_type)
    event = parse_event(row.payload)
    event.id = row.id
    return await process_event(db, event)
