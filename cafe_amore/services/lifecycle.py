"""
Cafe Amore — Order lifecycle (state machine)

Staff:
  Pending                  → Preparing | Canceled
  Preparing                → Delivery (delivery orders) | Completed | Canceled
  Delivery                 → Completed
  Wait for Admin to Accept → Waiting for Payment (payment link) | Canceled
  Waiting for Payment      → Canceled
Customer:
  cancel (unpaid Pending, Wait for Admin to Accept, Waiting for Payment),
  confirm received (Completed → Completed by Customer), refund request
  (Pending or Completed, once), feedback (Completed by Customer, once).

Every status write is a compare-and-swap:
  UPDATE orders SET status = :new … WHERE id = :id AND status = :expected
so a concurrent transition (or a stale auto-cancel) loses cleanly. Stock is
returned in the same transaction as the CAS that flips inventory_deducted off.
"""
import logging
from collections.abc import Callable
from datetime import datetime, timedelta, timezone

from sqlalchemy import select, update, and_, or_
from sqlalchemy.ext.asyncio import AsyncSession

from cafe_amore.core.config import get_settings
from cafe_amore.core.optimistic_lock import StaleDataError, with_optimistic_retry
from cafe_amore.db.stock_ops import apply_inventory_deltas
from cafe_amore.models.order import Order, OrderStatus, OrderType, PaymentMethod, utcnow
from cafe_amore.services.notifier import (
    publish_inventory_change,
    publish_order_update,
    record_status_notification,
)
from cafe_amore.services.paymongo import PaymentGatewayError, PayMongoClient, checkout_metadata
from cafe_amore.services.stock import total_requirements

settings = get_settings()
logger = logging.getLogger(__name__)

S = OrderStatus

STAFF_TRANSITIONS: dict[str, set[str]] = {
    S.PENDING.value: {S.PREPARING.value, S.CANCELED.value},
    S.PREPARING.value: {S.DELIVERY.value, S.COMPLETED.value, S.CANCELED.value},
    S.DELIVERY.value: {S.COMPLETED.value},
    S.WAIT_FOR_ADMIN.value: {S.WAITING_FOR_PAYMENT.value, S.CANCELED.value},
    S.WAITING_FOR_PAYMENT.value: {S.CANCELED.value},
}

CUSTOMER_CANCELABLE = {S.PENDING.value, S.WAIT_FOR_ADMIN.value, S.WAITING_FOR_PAYMENT.value}
REFUNDABLE = {S.PENDING.value, S.COMPLETED.value}
AWAITING_PAYMENT = {S.WAIT_FOR_ADMIN.value, S.WAITING_FOR_PAYMENT.value}

# refund_status / final_refund_status values
REFUND_REQUESTED = "Requested"
REFUND_ACCEPTED = "Accepted"
REFUND_DENIED = "Denied"
FINAL_MANUAL = "Manual"
FINAL_PENDING = "Pending"
FINAL_SUCCEEDED = "Succeeded"
FINAL_FAILED = "Failed"
FINAL_API_FAILED = "API Failed"
FINAL_CANCELED = "Canceled"


class InvalidTransitionError(Exception):
    """The order is not in a state that allows the requested action."""


class OrderNotFoundError(LookupError):
    pass


def _aware(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


async def get_order(db: AsyncSession, order_id: str, user_id: str | None = None) -> Order:
    """Fresh read of an order; with user_id, other customers' orders are invisible."""
    order = await db.get(Order, order_id, populate_existing=True)
    if order is None or (user_id is not None and order.user_id != user_id):
        raise OrderNotFoundError(f"Order '{order_id}' not found.")
    return order


async def compare_and_set(
    db: AsyncSession, order: Order, expected: str, new: str, *conditions, **values
) -> None:
    """CAS the status (plus any extra column values). Does NOT commit."""
    stmt = (
        update(Order)
        .where(Order.id == order.id, Order.status == expected, *conditions)
        .values(status=new, **values)
        .execution_options(synchronize_session=False)
    )
    if new != expected:
        stmt = stmt.values(status_changed_at=utcnow())
    result = await db.execute(stmt)
    if result.rowcount == 0:
        raise InvalidTransitionError(
            f"Order {order.id} is no longer '{expected}'; it was changed by someone else."
        )
    await db.refresh(order)


def order_requirements(order: Order) -> dict[str, int]:
    return total_requirements(order.items or [])


async def deduct_order_stock(db: AsyncSession, order: Order, reason: str) -> dict[str, int]:
    """Deduct the order's inventory once. Caller commits."""
    if order.inventory_deducted:
        return {}
    deltas = {inv_id: -qty for inv_id, qty in order_requirements(order).items()}
    await apply_inventory_deltas(db, deltas, order.id, reason=reason)
    order.inventory_deducted = True
    return deltas


async def return_order_stock(db: AsyncSession, order: Order, reason: str) -> dict[str, int]:
    """Exact inverse of deduct_order_stock. Caller commits."""
    if not order.inventory_deducted:
        return {}
    deltas = order_requirements(order)
    await apply_inventory_deltas(db, deltas, order.id, reason=reason)
    order.inventory_deducted = False
    return deltas


async def _finish(db: AsyncSession, order: Order, deltas: dict[str, int] | None = None) -> Order:
    record_status_notification(db, order)
    await db.commit()
    await publish_order_update(order)
    if deltas:
        await publish_inventory_change(deltas)
    return order


# ── Cancellation ─────────────────────────────────────────────────────────────

@with_optimistic_retry()
async def cancel_order(
    db: AsyncSession,
    order_id: str,
    allowed: set[str],
    reason: str = "cancel",
    user_id: str | None = None,
    eligible: Callable[[Order], bool] | None = None,
) -> Order:
    """
    Cancel if the order is in one of ``allowed`` (and passes ``eligible``).
    Returns deducted stock; paid orders are flagged for a separate refund.
    """
    order = await get_order(db, order_id, user_id)
    if order.status not in allowed:
        raise InvalidTransitionError(f"Order in status '{order.status}' cannot be canceled.")
    if eligible is not None and not eligible(order):
        raise InvalidTransitionError(f"Order {order.id} is no longer eligible for cancellation.")

    values = {}
    if order.payment_id:
        values["final_refund_status"] = FINAL_CANCELED
    await compare_and_set(db, order, order.status, S.CANCELED.value, **values)
    deltas = await return_order_stock(db, order, reason=reason)

    logger.info("Order %s canceled (%s), returned %d component(s)", order.id, reason, len(deltas))
    return await _finish(db, order, deltas)


async def customer_cancel(db: AsyncSession, order_id: str, user_id: str) -> Order:
    order = await get_order(db, order_id, user_id)
    if order.status == S.PENDING.value and order.payment_id:
        raise InvalidTransitionError("This order is already paid; request a refund instead.")
    return await cancel_order(
        db, order_id, CUSTOMER_CANCELABLE, reason="cancel", user_id=user_id,
        eligible=lambda o: not (o.status == S.PENDING.value and o.payment_id),
    )


# ── Staff transitions ────────────────────────────────────────────────────────

async def staff_transition(
    db: AsyncSession,
    order_id: str,
    new_status: str,
    estimated_time: str | None = None,
    gateway: PayMongoClient | None = None,
) -> Order:
    order = await get_order(db, order_id)
    current = order.status
    if new_status not in STAFF_TRANSITIONS.get(current, set()):
        raise InvalidTransitionError(f"Cannot move order from '{current}' to '{new_status}'.")
    if new_status == S.DELIVERY.value and order.order_type != OrderType.DELIVERY.value:
        raise InvalidTransitionError("Only delivery orders can be sent out for delivery.")

    if new_status == S.CANCELED.value:
        return await cancel_order(db, order_id, {current}, reason="cancel")

    values: dict = {}
    if new_status == S.WAITING_FOR_PAYMENT.value:
        # Deterministic idempotency key: a retried accept reuses the same session
        values["checkout_url"] = await (gateway or PayMongoClient()).create_checkout_session(order)
        values["payment_metadata"] = checkout_metadata(order)
    else:
        values.update(refund_request=False, refund_status=None)
        if estimated_time:
            values["estimated_time"] = estimated_time

    await compare_and_set(db, order, current, new_status, **values)
    logger.info("Order %s: %s → %s", order.id, current, new_status)
    return await _finish(db, order)


# ── Customer actions ─────────────────────────────────────────────────────────

async def confirm_received(db: AsyncSession, order_id: str, user_id: str) -> Order:
    order = await get_order(db, order_id, user_id)
    if order.status != S.COMPLETED.value:
        raise InvalidTransitionError("Only completed orders can be confirmed as received.")
    await compare_and_set(db, order, S.COMPLETED.value, S.COMPLETED_BY_CUSTOMER.value)
    return await _finish(db, order)


async def request_refund(db: AsyncSession, order_id: str, user_id: str, amount: int | None = None) -> Order:
    order = await get_order(db, order_id, user_id)
    if order.status not in REFUNDABLE:
        raise InvalidTransitionError(f"Refunds cannot be requested for '{order.status}' orders.")
    if order.refund_request or order.refund_status:
        raise InvalidTransitionError("A refund was already requested for this order.")
    amount = order.total if amount is None else amount
    if not 0 < amount <= order.total:
        raise InvalidTransitionError("Refund amount must be between 1 and the order total.")

    await compare_and_set(
        db, order, order.status, order.status,
        Order.refund_request.is_(False),
        refund_request=True, refund_status=REFUND_REQUESTED, refund_amount=amount,
    )
    logger.info("Refund of %d requested for order %s", amount, order.id)
    return await _finish(db, order)


async def submit_feedback(
    db: AsyncSession, order_id: str, user_id: str, feedback: list[str], ratings: list[int]
) -> Order:
    order = await get_order(db, order_id, user_id)
    if order.status != S.COMPLETED_BY_CUSTOMER.value:
        raise InvalidTransitionError("Feedback can be left once the order is received.")
    if order.feedback:
        raise InvalidTransitionError("Feedback was already submitted for this order.")
    order.feedback = list(feedback)
    order.feedback_rating = list(ratings)
    await db.commit()
    return order


# ── Refund decision (staff) ──────────────────────────────────────────────────

@with_optimistic_retry()
async def _apply_refund_outcome(
    db: AsyncSession, order_id: str, expected: str, new_status: str, restock: bool, **values
) -> Order:
    order = await get_order(db, order_id)
    await compare_and_set(db, order, expected, new_status, **values)
    deltas = await return_order_stock(db, order, reason="refund") if restock else {}
    return await _finish(db, order, deltas)


async def decide_refund(
    db: AsyncSession,
    order_id: str,
    accept: bool,
    amount: int | None = None,
    gateway: PayMongoClient | None = None,
) -> Order:
    order = await get_order(db, order_id)
    if not order.refund_request or order.refund_status != REFUND_REQUESTED:
        raise InvalidTransitionError("There is no open refund request for this order.")
    if order.status not in REFUNDABLE:
        raise InvalidTransitionError(f"Refunds cannot be decided for '{order.status}' orders.")

    status = order.status
    if not accept:
        new_status = status if status == S.PENDING.value else S.REFUND_DENIED.value
        logger.info("Refund denied for order %s", order.id)
        return await _apply_refund_outcome(
            db, order.id, status, new_status, False,
            refund_request=False, refund_status=REFUND_DENIED, final_refund_status=REFUND_DENIED,
        )

    amount = amount if amount is not None else (order.refund_amount or order.total)
    if not 0 < amount <= order.total:
        raise InvalidTransitionError("Refund amount must be between 1 and the order total.")
    common = {"refund_request": False, "refund_status": REFUND_ACCEPTED, "refund_amount": amount}

    if not order.payment_id:
        if status == S.PENDING.value:
            return await _apply_refund_outcome(
                db, order.id, status, S.CANCELED.value, True, final_refund_status=FINAL_MANUAL, **common
            )
        return await _apply_refund_outcome(
            db, order.id, status, S.REFUNDED.value, False, final_refund_status=FINAL_MANUAL, **common
        )

    try:
        await (gateway or PayMongoClient()).create_refund(order.payment_id, amount)
    except PaymentGatewayError as exc:
        logger.error("Refund API failed for order %s: %s", order.id, exc)
        return await _apply_refund_outcome(
            db, order.id, status, S.REFUND_FAILED.value, False, final_refund_status=FINAL_API_FAILED, **common
        )

    return await _apply_refund_outcome(
        db, order.id, status, S.REFUND_PENDING.value, False,
        final_refund_status=FINAL_PENDING,
        restock_on_refund=status == S.PENDING.value,
        **common,
    )


async def apply_refund_result(db: AsyncSession, order: Order, succeeded: bool) -> dict[str, int]:
    """
    Confirmed refund from the gateway. Stock goes back only for orders that
    were refunded before preparation. Caller commits.
    """
    if succeeded:
        await compare_and_set(
            db, order, order.status, S.REFUNDED.value, final_refund_status=FINAL_SUCCEEDED
        )
        if order.restock_on_refund:
            return await return_order_stock(db, order, reason="refund")
        return {}
    await compare_and_set(db, order, order.status, S.REFUND_FAILED.value, final_refund_status=FINAL_FAILED)
    return {}


# ── Auto-cancel sweep ────────────────────────────────────────────────────────

def auto_cancel_deadline(order: Order) -> datetime | None:
    """When the order expires, or None if it is not subject to auto-cancel."""
    changed = _aware(order.status_changed_at)
    if order.status == S.PENDING.value:
        if order.refund_request:
            return None
        if order.payment_id and order.payment_method != PaymentMethod.CASH.value:
            return None  # paid orders wait for staff
        return changed + timedelta(seconds=settings.PENDING_AUTO_CANCEL_SECONDS)
    if order.status in AWAITING_PAYMENT:
        return changed + timedelta(seconds=settings.AWAITING_PAYMENT_AUTO_CANCEL_SECONDS)
    return None


async def sweep_expired_orders(db: AsyncSession, now: datetime | None = None) -> list[str]:
    """
    Cancel every order past its auto-cancel deadline. Each candidate is
    re-read and re-checked right before its CAS, so an order whose status
    changed since the scan is left alone.
    """
    now = now or utcnow()
    pending_cutoff = now - timedelta(seconds=settings.PENDING_AUTO_CANCEL_SECONDS)
    awaiting_cutoff = now - timedelta(seconds=settings.AWAITING_PAYMENT_AUTO_CANCEL_SECONDS)

    rows = (await db.execute(
        select(Order.id, Order.status).where(or_(
            and_(
                Order.status == S.PENDING.value,
                Order.refund_request.is_(False),
                Order.status_changed_at <= pending_cutoff,
                or_(Order.payment_id.is_(None), Order.payment_method == PaymentMethod.CASH.value),
            ),
            and_(Order.status.in_(AWAITING_PAYMENT), Order.status_changed_at <= awaiting_cutoff),
        ))
    )).all()

    def expired(order: Order) -> bool:
        deadline = auto_cancel_deadline(order)
        return deadline is not None and deadline <= now

    canceled = []
    for order_id, status in rows:
        try:
            await cancel_order(db, order_id, {status}, reason="auto_cancel", eligible=expired)
        except (InvalidTransitionError, OrderNotFoundError) as exc:
            logger.info("Auto-cancel skipped for %s: %s", order_id, exc)
            await db.rollback()
            continue
        except StaleDataError:
            logger.warning("Auto-cancel of %s hit repeated stock conflicts; next sweep retries", order_id)
            continue
        canceled.append(order_id)
        logger.info("Order %s auto-canceled after timeout in '%s'", order_id, status)
    return canceled
