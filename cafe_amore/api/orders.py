"""
Cafe Amore — Orders API

Flow:
  1. JWT validated by middleware (request.state.user set)
  2. Idempotency-Key replay handled by middleware for /orders/checkout
  3. Checkout validates, numbers, deducts and clears the cart in ONE transaction
  4. Staff and customer actions drive the lifecycle state machine
"""
import logging
from fastapi import APIRouter, Depends, Query, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from cafe_amore.api.deps import DOMAIN_ERRORS, current_user, http_error, require_staff
from cafe_amore.core.config import get_settings
from cafe_amore.db.database import get_db
from cafe_amore.models.order import Order
from cafe_amore.schemas.order import (
    CheckoutRequestIn,
    CheckoutResponse,
    FeedbackIn,
    OrderOut,
    RefundDecisionIn,
    RefundRequestIn,
    StatusUpdateRequest,
)
from cafe_amore.services import lifecycle
from cafe_amore.services.checkout import CheckoutRequest, place_order
from cafe_amore.services.paymongo import PayMongoClient, get_payment_gateway

settings = get_settings()
logger = logging.getLogger(__name__)
router = APIRouter(prefix="/orders", tags=["orders"])


def _is_staff(user: dict) -> bool:
    return user.get("role") in settings.STAFF_ROLES


@router.post("/checkout", response_model=CheckoutResponse, status_code=status.HTTP_201_CREATED)
async def checkout(payload: CheckoutRequestIn, user: dict = Depends(current_user), db: AsyncSession = Depends(get_db)):
    """
    Place an order from selected cart lines. Cash delivery and in-store orders
    are Pending with stock deducted; E-Payment delivery orders wait for staff
    to accept and send a payment link.
    """
    request = CheckoutRequest(
        cart_item_ids=payload.cart_item_ids,
        order_type=payload.order_type.value,
        payment_method=payload.payment_method.value,
        address_id=payload.address_id,
        address=payload.address,
        barangay=payload.barangay,
        phone=payload.phone,
        cash_given=payload.cash_given,
        customer_name=payload.customer_name,
    )
    try:
        result = await place_order(db, user, request)
    except DOMAIN_ERRORS as exc:
        await db.rollback()
        raise http_error(exc)

    return CheckoutResponse(
        order_id=result.order_id,
        queue_number=result.queue_number,
        queue_number_numeric=result.queue_number_numeric,
        status=result.status,
        subtotal=result.subtotal,
        delivery_fee=result.delivery_fee,
        total=result.total,
        change=result.change,
        status_url=result.status_url,
    )


@router.get("", response_model=list[OrderOut])
async def list_orders(
    status_filter: list[str] = Query(default=[], alias="status"),
    order_type: str | None = None,
    limit: int = Query(100, ge=1, le=500),
    user: dict = Depends(current_user),
    db: AsyncSession = Depends(get_db),
):
    """Customers see their own orders; staff see the whole dashboard."""
    stmt = select(Order).order_by(Order.created_at.desc()).limit(limit)
    if not _is_staff(user):
        stmt = stmt.where(Order.user_id == user["uid"])
    if status_filter:
        stmt = stmt.where(Order.status.in_(status_filter))
    if order_type:
        stmt = stmt.where(Order.order_type == order_type)
    return (await db.execute(stmt)).scalars().all()


@router.get("/{order_id}", response_model=OrderOut)
async def get_order(order_id: str, user: dict = Depends(current_user), db: AsyncSession = Depends(get_db)):
    try:
        return await lifecycle.get_order(db, order_id, None if _is_staff(user) else user["uid"])
    except DOMAIN_ERRORS as exc:
        raise http_error(exc)


# ── Staff actions ─────────────────────────────────────────────────────────────

@router.post("/{order_id}/status", response_model=OrderOut)
async def update_status(
    order_id: str,
    payload: StatusUpdateRequest,
    staff: dict = Depends(require_staff),
    db: AsyncSession = Depends(get_db),
    gateway: PayMongoClient = Depends(get_payment_gateway),
):
    try:
        order = await lifecycle.staff_transition(
            db, order_id, payload.status.value, estimated_time=payload.estimated_time, gateway=gateway
        )
    except DOMAIN_ERRORS as exc:
        await db.rollback()
        raise http_error(exc)
    logger.info("Staff %s moved order %s to %s", staff["uid"], order_id, order.status)
    return order


@router.post("/{order_id}/refund-decision", response_model=OrderOut)
async def decide_refund(
    order_id: str,
    payload: RefundDecisionIn,
    staff: dict = Depends(require_staff),
    db: AsyncSession = Depends(get_db),
    gateway: PayMongoClient = Depends(get_payment_gateway),
):
    try:
        return await lifecycle.decide_refund(db, order_id, payload.accept, payload.amount, gateway=gateway)
    except DOMAIN_ERRORS as exc:
        await db.rollback()
        raise http_error(exc)


@router.post("/sweep")
async def run_auto_cancel_sweep(staff: dict = Depends(require_staff), db: AsyncSession = Depends(get_db)):
    """Run the auto-cancel sweep now instead of waiting for the next beat."""
    canceled = await lifecycle.sweep_expired_orders(db)
    return {"canceled": canceled}


# ── Customer actions ──────────────────────────────────────────────────────────

@router.post("/{order_id}/cancel", response_model=OrderOut)
async def cancel_order(order_id: str, user: dict = Depends(current_user), db: AsyncSession = Depends(get_db)):
    try:
        return await lifecycle.customer_cancel(db, order_id, user["uid"])
    except DOMAIN_ERRORS as exc:
        await db.rollback()
        raise http_error(exc)


@router.post("/{order_id}/received", response_model=OrderOut)
async def confirm_received(order_id: str, user: dict = Depends(current_user), db: AsyncSession = Depends(get_db)):
    try:
        return await lifecycle.confirm_received(db, order_id, user["uid"])
    except DOMAIN_ERRORS as exc:
        await db.rollback()
        raise http_error(exc)


@router.post("/{order_id}/refund", response_model=OrderOut)
async def request_refund(
    order_id: str,
    payload: RefundRequestIn,
    user: dict = Depends(current_user),
    db: AsyncSession = Depends(get_db),
):
    try:
        return await lifecycle.request_refund(db, order_id, user["uid"], payload.amount)
    except DOMAIN_ERRORS as exc:
        await db.rollback()
        raise http_error(exc)


@router.post("/{order_id}/feedback", response_model=OrderOut)
async def submit_feedback(
    order_id: str,
    payload: FeedbackIn,
    user: dict = Depends(current_user),
    db: AsyncSession = Depends(get_db),
):
    try:
        return await lifecycle.submit_feedback(db, order_id, user["uid"], payload.feedback, payload.clean_ratings())
    except DOMAIN_ERRORS as exc:
        await db.rollback()
        raise http_error(exc)
