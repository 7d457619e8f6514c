"""
Cafe Amore — Change notifications

Order status changes are stored as Notification rows (same transaction as the
status write) and pushed on Redis pub/sub after commit:
  order:{order_id}   order status updates, consumed by the SSE stream
  inventory          ids of inventory items whose quantity changed
  cart:{owner_id}    the owner's cart changed
"""
import json
import logging
from collections.abc import Iterable

from sqlalchemy.ext.asyncio import AsyncSession

from cafe_amore.core.redis_client import get_redis
from cafe_amore.models.order import Notification, Order, OrderStatus

logger = logging.getLogger(__name__)

INVENTORY_CHANNEL = "inventory"

STATUS_MESSAGES = {
    OrderStatus.WAIT_FOR_ADMIN.value: "Order #{queue} was received and is waiting for the cafe to accept it.",
    OrderStatus.WAITING_FOR_PAYMENT.value: "Order #{queue} was accepted. Please complete your payment.",
    OrderStatus.PENDING.value: "Order #{queue} is confirmed and queued.",
    OrderStatus.PREPARING.value: "Order #{queue} is being prepared.",
    OrderStatus.DELIVERY.value: "Order #{queue} is out for delivery.",
    OrderStatus.COMPLETED.value: "Order #{queue} is completed.",
    OrderStatus.COMPLETED_BY_CUSTOMER.value: "Thanks for confirming order #{queue}. Tell us how it was!",
    OrderStatus.CANCELED.value: "Order #{queue} was canceled.",
    OrderStatus.REFUND_PENDING.value: "Your refund for order #{queue} is being processed.",
    OrderStatus.REFUNDED.value: "Order #{queue} was refunded.",
    OrderStatus.REFUND_DENIED.value: "The refund request for order #{queue} was denied.",
    OrderStatus.REFUND_FAILED.value: "The refund for order #{queue} failed. The cafe will contact you.",
}


def order_channel(order_id: str) -> str:
    return f"order:{order_id}"


def cart_channel(owner_id: str) -> str:
    return f"cart:{owner_id}"


async def publish(channel: str, payload: dict) -> None:
    try:
        await get_redis().publish(channel, json.dumps(payload, default=str))
    except Exception as exc:
        # Notification failures MUST NOT affect order processing
        logger.warning("Publish to %s failed: %s", channel, exc)


def record_status_notification(db: AsyncSession, order: Order, message: str | None = None) -> Notification:
    """Stage a Notification row for the order's current status (caller commits)."""
    template = STATUS_MESSAGES.get(order.status, "Order #{queue} is now {status}.")
    note = Notification(
        user_id=order.user_id,
        order_id=order.id,
        status=order.status,
        message=message or template.format(queue=order.queue_number, status=order.status),
    )
    db.add(note)
    return note


async def publish_order_update(order: Order) -> None:
    await publish(order_channel(order.id), {
        "order_id": order.id,
        "status": order.status,
        "queue_number": order.queue_number,
        "refund_status": order.refund_status,
        "final_refund_status": order.final_refund_status,
        "estimated_time": order.estimated_time,
    })


async def publish_inventory_change(inventory_ids: Iterable[str]) -> None:
    ids = sorted(set(inventory_ids))
    if ids:
        await publish(INVENTORY_CHANNEL, {"inventory_ids": ids})


async def publish_cart_change(owner_id: str) -> None:
    await publish(cart_channel(owner_id), {"owner_id": owner_id})
