"""
Cafe Amore — Order placement (checkout)

Checkout is one unit of work:
  1. Validate the selection (first failure wins, nothing written yet)
  2. Re-check stock for every selected line AND for the union of their
     requirements against a fresh snapshot
  3. Assign the next queue number for the order type
  4. Insert the order, deduct inventory (one guarded decrement per component),
     delete the consumed cart lines, stage the status notification
  5. Commit

Any optimistic-lock conflict or queue-number collision rolls everything back
and re-runs the unit from step 1.
"""
import logging
import uuid
from dataclasses import dataclass, field

from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from cafe_amore.core.config import get_settings
from cafe_amore.core.optimistic_lock import with_optimistic_retry
from cafe_amore.db.stock_ops import InsufficientStockError, apply_inventory_deltas
from cafe_amore.models.cart import CartLine
from cafe_amore.models.order import Order, OrderStatus, OrderType, PaymentMethod
from cafe_amore.services.addresses import AddressError, resolve_delivery_address
from cafe_amore.services.catalog import CatalogSnapshot, load_snapshot
from cafe_amore.services.notifier import (
    publish_cart_change,
    publish_inventory_change,
    publish_order_update,
    record_status_notification,
)
from cafe_amore.services.stock import line_stock, total_requirements

settings = get_settings()
logger = logging.getLogger(__name__)


class CheckoutError(ValueError):
    """A checkout precondition failed; nothing was written."""


@dataclass
class CheckoutRequest:
    cart_item_ids: list[str]
    order_type: str = OrderType.DELIVERY.value
    payment_method: str = PaymentMethod.CASH.value
    address_id: str | None = None
    address: str | None = None
    barangay: str | None = None
    phone: str | None = None
    cash_given: int | None = None
    customer_name: str | None = None


@dataclass
class CheckoutResult:
    order_id: str
    queue_number: str
    queue_number_numeric: int
    status: str
    subtotal: int
    delivery_fee: int
    total: int
    change: int | None = None
    cart_item_ids: list[str] = field(default_factory=list)

    @property
    def status_url(self) -> str:
        return f"/orders/{self.order_id}"


def order_line_item(line: CartLine) -> dict:
    """Snapshot a cart line into an immutable order line item."""
    return {
        "product": line.name,
        "product_id": line.product_id,
        "size": line.size,
        "size_id": line.size_id,
        "size_qty": line.size_qty,
        "size_ingredients": list(line.size_ingredients or []),
        "size_others": list(line.size_others or []),
        "qty": line.quantity,
        "base_price": line.base_price,
        "size_price": line.size_price,
        "addons_price": line.addons_price,
        "unit_price": line.unit_price,
        "addons": list(line.addons or []),
        "ingredients": list(line.ingredients or []),
        "others": list(line.others or []),
        "total": line.total_price,
    }


def format_queue_number(order_type: str, payment_method: str, numeric: int) -> str:
    padded = str(numeric).zfill(settings.QUEUE_NUMBER_WIDTH)
    if order_type == OrderType.DELIVERY.value:
        prefix = "C" if payment_method == PaymentMethod.CASH.value else "E"
        return f"{prefix}{padded}"
    return padded


async def next_queue_number(db: AsyncSession, order_type: str) -> int:
    current = await db.scalar(
        select(func.max(Order.queue_number_numeric)).where(Order.order_type == order_type)
    )
    return (current or 0) + 1


def check_union_stock(lines: list[dict], snapshot: CatalogSnapshot) -> None:
    """Lines that pass one by one can still overdraw a shared ingredient together."""
    shortages: dict[str, tuple[int, int]] = {}
    for inv_id, needed in total_requirements(lines).items():
        item = snapshot.inventory_item(inv_id)
        available = item.quantity if item is not None and item.active else 0
        if needed > available:
            shortages[inv_id] = (needed, available)
    if shortages:
        raise InsufficientStockError(
            shortages, {inv_id: e.name for inv_id, e in snapshot.inventory.items()}
        )


def _validate(request: CheckoutRequest) -> None:
    if request.order_type not in (OrderType.IN_STORE.value, OrderType.DELIVERY.value):
        raise CheckoutError(f"Unknown order type '{request.order_type}'.")
    if request.payment_method not in (PaymentMethod.CASH.value, PaymentMethod.E_PAYMENT.value):
        raise CheckoutError(f"Unknown payment method '{request.payment_method}'.")
    if not request.cart_item_ids:
        raise CheckoutError("Select at least one item to proceed.")


@with_optimistic_retry(retry_on_integrity=True)
async def place_order(db: AsyncSession, user: dict, request: CheckoutRequest) -> CheckoutResult:
    _validate(request)
    user_id = user["uid"]
    selected_ids = list(dict.fromkeys(request.cart_item_ids))

    rows = (await db.execute(
        select(CartLine).where(CartLine.owner_id == user_id, CartLine.id.in_(selected_ids))
    )).scalars().all()
    by_id = {row.id: row for row in rows}
    missing = [line_id for line_id in selected_ids if line_id not in by_id]
    if missing:
        raise CheckoutError("Some selected items are no longer in your cart.")
    lines = [by_id[line_id] for line_id in selected_ids]

    # ── Stock re-check at commit time ──────────────────────────────────────
    snapshot = await load_snapshot(db)
    line_dicts = [row.to_dict() for row in lines]
    for line in line_dicts:
        stock = line_stock(line, snapshot)
        label = f"{line['name']} ({line['size']})" if line.get("size") else line["name"]
        if not stock.fulfils:
            message = (
                f"Only {stock.available_quantity} left in stock for {label}."
                if stock.is_available else f"{label} is out of stock."
            )
            raise InsufficientStockError(
                {line["product_id"]: (line["quantity"], stock.available_quantity)},
                {line["product_id"]: label},
                message=message,
            )
    check_union_stock(line_dicts, snapshot)

    # ── Address / phone / cash ─────────────────────────────────────────────
    is_delivery = request.order_type == OrderType.DELIVERY.value
    address, delivery_fee = None, 0
    if is_delivery:
        try:
            address, delivery_fee = await resolve_delivery_address(
                db, user_id, request.address_id, request.address, request.barangay
            )
        except AddressError as exc:
            raise CheckoutError(str(exc)) from exc
        if not (request.phone or "").strip():
            raise CheckoutError("Add a phone number to your profile before ordering.")

    subtotal = sum(row.total_price for row in lines)
    total = subtotal + delivery_fee

    is_cash = request.payment_method == PaymentMethod.CASH.value
    change = None
    if not is_delivery and is_cash:
        if request.cash_given is None or request.cash_given < total:
            raise CheckoutError("Cash given is less than the order total.")
        change = request.cash_given - total

    # ── Commit ─────────────────────────────────────────────────────────────
    awaiting_admin = is_delivery and not is_cash
    numeric = await next_queue_number(db, request.order_type)
    order = Order(
        id=str(uuid.uuid4()),
        user_id=user_id,
        order_type=request.order_type,
        customer_name=request.customer_name or user.get("name") or user.get("email") or "Customer",
        address=address,
        phone=request.phone,
        items=[order_line_item(row) for row in lines],
        subtotal=subtotal,
        delivery_fee=delivery_fee,
        total=total,
        payment_method=request.payment_method,
        cash_given=request.cash_given if not is_delivery and is_cash else None,
        change=change,
        status=(OrderStatus.WAIT_FOR_ADMIN if awaiting_admin else OrderStatus.PENDING).value,
        queue_number=format_queue_number(request.order_type, request.payment_method, numeric),
        queue_number_numeric=numeric,
        cart_item_ids=selected_ids if awaiting_admin else [],
    )
    db.add(order)

    deltas: dict[str, int] = {}
    if not awaiting_admin:
        deltas = {inv_id: -qty for inv_id, qty in total_requirements(order.items).items()}
        await apply_inventory_deltas(db, deltas, order.id, reason="order")
        order.inventory_deducted = True
        for row in lines:
            await db.delete(row)

    record_status_notification(db, order)
    await db.commit()

    logger.info(
        "Order %s placed: #%s %s/%s total=%d status=%s",
        order.id, order.queue_number, order.order_type, order.payment_method, total, order.status,
    )
    await publish_order_update(order)
    if deltas:
        await publish_inventory_change(deltas)
        await publish_cart_change(user_id)

    return CheckoutResult(
        order_id=order.id,
        queue_number=order.queue_number,
        queue_number_numeric=numeric,
        status=order.status,
        subtotal=subtotal,
        delivery_fee=delivery_fee,
        total=total,
        change=change,
        cart_item_ids=list(order.cart_item_ids or []),
    )
