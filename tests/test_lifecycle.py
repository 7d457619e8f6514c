"""
Order lifecycle: transitions, cancellation stock return, auto-cancel sweep, refunds.
"""
from datetime import timedelta

import pytest
from sqlalchemy import func, select, update

from cafe_amore.models.inventory import InventoryItem, StockMovement
from cafe_amore.models.order import Notification, Order, utcnow
from cafe_amore.services import lifecycle
from cafe_amore.services.checkout import CheckoutRequest, place_order
from cafe_amore.services.lifecycle import InvalidTransitionError, OrderNotFoundError
from cafe_amore.services.paymongo import PaymentGatewayError

from conftest import add_line, fresh_order, inventory_qty, user


async def inventory_levels(db) -> dict[str, int]:
    return dict((await db.execute(select(InventoryItem.id, InventoryItem.quantity))).all())


async def place(db, product="americano", addons=(), order_type="InStore", payment_method="Cash", uid="alice"):
    line = await add_line(db, uid, product, "cup-12", addons)
    request = CheckoutRequest(
        cart_item_ids=[line["id"]],
        order_type=order_type,
        payment_method=payment_method,
        address="12 Rizal St, Manila" if order_type == "Delivery" else None,
        phone="09171234567",
        barangay="Alima" if order_type == "Delivery" else None,
        cash_given=1_000_000 if order_type == "InStore" and payment_method == "Cash" else None,
    )
    result = await place_order(db, user(uid), request)
    return result.order_id


async def mark_paid(db, order_id: str, payment_id: str = "pay_123") -> None:
    await db.execute(update(Order).where(Order.id == order_id).values(payment_id=payment_id))
    await db.commit()


async def complete(db, order_id: str) -> None:
    await lifecycle.staff_transition(db, order_id, "Preparing")
    await lifecycle.staff_transition(db, order_id, "Completed")


# ── Cancellation ─────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_cancel_returns_exactly_what_checkout_deducted(db, cafe_catalog, fake_redis):
    before = await inventory_levels(db)
    order_id = await place(db, "mocha", ["syrup"], order_type="Delivery")
    assert await inventory_levels(db) != before

    order = await lifecycle.staff_transition(db, order_id, "Canceled")

    assert order.status == "Canceled"
    assert not order.inventory_deducted
    assert await inventory_levels(db) == before
    net = dict((await db.execute(
        select(StockMovement.inventory_id, func.sum(StockMovement.delta)).group_by(StockMovement.inventory_id)
    )).all())
    assert set(net.values()) == {0}
    assert fake_redis.messages(f"order:{order_id}")[-1]["status"] == "Canceled"

    with pytest.raises(InvalidTransitionError):
        await lifecycle.customer_cancel(db, order_id, "alice")
    assert await inventory_levels(db) == before


@pytest.mark.asyncio
async def test_customer_can_cancel_unpaid_pending_order(db, cafe_catalog):
    order_id = await place(db)
    order = await lifecycle.customer_cancel(db, order_id, "alice")
    assert order.status == "Canceled"
    assert await inventory_qty(db, "espresso") == 180


@pytest.mark.asyncio
async def test_customer_cannot_cancel_paid_or_foreign_orders(db, cafe_catalog):
    order_id = await place(db, payment_method="E-Payment")
    with pytest.raises(OrderNotFoundError):
        await lifecycle.customer_cancel(db, order_id, "bob")

    await mark_paid(db, order_id)
    with pytest.raises(InvalidTransitionError, match="already paid"):
        await lifecycle.customer_cancel(db, order_id, "alice")


@pytest.mark.asyncio
async def test_staff_cancel_of_paid_order_flags_refund(db, cafe_catalog):
    order_id = await place(db, payment_method="E-Payment")
    await mark_paid(db, order_id)
    order = await lifecycle.staff_transition(db, order_id, "Canceled")
    assert order.final_refund_status == "Canceled"


# ── Transitions ──────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_staff_and_customer_transitions(db, cafe_catalog):
    order_id = await place(db)

    with pytest.raises(InvalidTransitionError):
        await lifecycle.staff_transition(db, order_id, "Completed")

    order = await lifecycle.staff_transition(db, order_id, "Preparing", estimated_time="15 mins")
    assert order.status == "Preparing"
    assert order.estimated_time == "15 mins"

    with pytest.raises(InvalidTransitionError, match="delivery orders"):
        await lifecycle.staff_transition(db, order_id, "Delivery")

    await lifecycle.staff_transition(db, order_id, "Completed")
    order = await lifecycle.confirm_received(db, order_id, "alice")
    assert order.status == "Completed by Customer"

    order = await lifecycle.submit_feedback(db, order_id, "alice", ["Great coffee"], [5])
    assert order.feedback == ["Great coffee"]
    with pytest.raises(InvalidTransitionError, match="already submitted"):
        await lifecycle.submit_feedback(db, order_id, "alice", ["Again"], [1])

    statuses = (await db.execute(
        select(Notification.status).where(Notification.order_id == order_id).order_by(Notification.created_at)
    )).scalars().all()
    assert statuses == ["Pending", "Preparing", "Completed", "Completed by Customer"]


@pytest.mark.asyncio
async def test_delivery_order_goes_out_for_delivery(db, cafe_catalog):
    order_id = await place(db, order_type="Delivery")
    await lifecycle.staff_transition(db, order_id, "Preparing")
    order = await lifecycle.staff_transition(db, order_id, "Delivery")
    assert order.status == "Delivery"


@pytest.mark.asyncio
async def test_status_write_is_compare_and_set(db, cafe_catalog):
    order_id = await place(db)
    order = await lifecycle.get_order(db, order_id)
    with pytest.raises(InvalidTransitionError):
        await lifecycle.compare_and_set(db, order, "Preparing", "Completed")
    assert (await fresh_order(db, order_id)).status == "Pending"


@pytest.mark.asyncio
async def test_accepting_e_payment_order_sends_payment_link(db, cafe_catalog, gateway):
    order_id = await place(db, order_type="Delivery", payment_method="E-Payment")
    order = await lifecycle.staff_transition(db, order_id, "Waiting for Payment", gateway=gateway)

    assert order.status == "Waiting for Payment"
    assert order.checkout_url == f"https://checkout.paymongo.test/{order_id}"
    assert order.payment_metadata["orderId"] == order_id
    assert order.payment_metadata["collectionName"] == "DeliveryOrders"
    assert gateway.sessions == [order_id]


@pytest.mark.asyncio
async def test_payment_link_failure_leaves_order_untouched(db, cafe_catalog, gateway):
    order_id = await place(db, order_type="Delivery", payment_method="E-Payment")
    gateway.fail = True
    with pytest.raises(PaymentGatewayError):
        await lifecycle.staff_transition(db, order_id, "Waiting for Payment", gateway=gateway)
    assert (await fresh_order(db, order_id)).status == "Wait for Admin to Accept"


# ── Auto-cancel ──────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_pending_order_is_auto_canceled_exactly_once(db, cafe_catalog):
    order_id = await place(db)

    assert await lifecycle.sweep_expired_orders(db, now=utcnow() + timedelta(seconds=30)) == []
    assert await lifecycle.sweep_expired_orders(db, now=utcnow() + timedelta(seconds=61)) == [order_id]
    assert await lifecycle.sweep_expired_orders(db, now=utcnow() + timedelta(seconds=120)) == []

    order = await fresh_order(db, order_id)
    assert order.status == "Canceled"
    assert await inventory_qty(db, "espresso") == 180
    cancels = await db.scalar(
        select(func.count()).select_from(StockMovement).where(StockMovement.reason == "auto_cancel")
    )
    assert cancels == 2  # espresso + cup


@pytest.mark.asyncio
async def test_auto_cancel_skips_orders_that_moved_on(db, cafe_catalog):
    order_id = await place(db)
    await lifecycle.staff_transition(db, order_id, "Preparing")

    assert await lifecycle.sweep_expired_orders(db, now=utcnow() + timedelta(seconds=61)) == []
    assert (await fresh_order(db, order_id)).status == "Preparing"


@pytest.mark.asyncio
async def test_auto_cancel_skips_orders_with_refund_request(db, cafe_catalog):
    order_id = await place(db)
    await lifecycle.request_refund(db, order_id, "alice")
    assert await lifecycle.sweep_expired_orders(db, now=utcnow() + timedelta(seconds=61)) == []


@pytest.mark.asyncio
async def test_awaiting_payment_window_is_five_minutes(db, cafe_catalog):
    order_id = await place(db, order_type="Delivery", payment_method="E-Payment")

    assert await lifecycle.sweep_expired_orders(db, now=utcnow() + timedelta(seconds=61)) == []
    assert await lifecycle.sweep_expired_orders(db, now=utcnow() + timedelta(seconds=301)) == [order_id]
    # Never deducted, so nothing to return
    assert await inventory_qty(db, "espresso") == 180
    assert (await fresh_order(db, order_id)).status == "Canceled"


# ── Refunds ──────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_refund_request_is_accepted_once(db, cafe_catalog):
    order_id = await place(db)
    with pytest.raises(InvalidTransitionError, match="between 1 and the order total"):
        await lifecycle.request_refund(db, order_id, "alice", amount=999_999)

    order = await lifecycle.request_refund(db, order_id, "alice")
    assert order.refund_request
    assert order.refund_status == "Requested"
    assert order.refund_amount == order.total
    assert order.status == "Pending"

    with pytest.raises(InvalidTransitionError, match="already requested"):
        await lifecycle.request_refund(db, order_id, "alice")


@pytest.mark.asyncio
async def test_accepted_refund_of_unpaid_pending_order_cancels_and_restocks(db, cafe_catalog, gateway):
    order_id = await place(db)
    await lifecycle.request_refund(db, order_id, "alice")
    order = await lifecycle.decide_refund(db, order_id, accept=True, gateway=gateway)

    assert order.status == "Canceled"
    assert order.final_refund_status == "Manual"
    assert order.refund_status == "Accepted"
    assert not order.refund_request
    assert await inventory_qty(db, "espresso") == 180
    assert gateway.refunds == []


@pytest.mark.asyncio
async def test_accepted_refund_of_completed_cash_order_is_manual(db, cafe_catalog, gateway):
    order_id = await place(db)
    await complete(db, order_id)
    await lifecycle.request_refund(db, order_id, "alice")
    order = await lifecycle.decide_refund(db, order_id, accept=True, gateway=gateway)

    assert order.status == "Refunded"
    assert order.final_refund_status == "Manual"
    # Already prepared: nothing goes back on the shelf
    assert await inventory_qty(db, "espresso") == 162


@pytest.mark.asyncio
async def test_paid_pending_refund_goes_through_gateway_then_restocks(db, cafe_catalog, gateway):
    order_id = await place(db, payment_method="E-Payment")
    await mark_paid(db, order_id, "pay_abc")
    await lifecycle.request_refund(db, order_id, "alice", amount=5000)
    order = await lifecycle.decide_refund(db, order_id, accept=True, gateway=gateway)

    assert order.status == "Refund Pending"
    assert order.final_refund_status == "Pending"
    assert order.restock_on_refund
    assert gateway.refunds == [("pay_abc", 5000)]
    assert await inventory_qty(db, "espresso") == 162

    order = await lifecycle.get_order(db, order_id)
    await lifecycle.apply_refund_result(db, order, succeeded=True)
    await db.commit()

    order = await fresh_order(db, order_id)
    assert order.status == "Refunded"
    assert order.final_refund_status == "Succeeded"
    assert await inventory_qty(db, "espresso") == 180


@pytest.mark.asyncio
async def test_refund_api_failure_is_recorded(db, cafe_catalog, gateway):
    order_id = await place(db, payment_method="E-Payment")
    await mark_paid(db, order_id)
    await lifecycle.request_refund(db, order_id, "alice")
    gateway.fail = True

    order = await lifecycle.decide_refund(db, order_id, accept=True, gateway=gateway)
    assert order.status == "Refund Failed"
    assert order.final_refund_status == "API Failed"


@pytest.mark.asyncio
async def test_denied_refund(db, cafe_catalog, gateway):
    pending_id = await place(db)
    await lifecycle.request_refund(db, pending_id, "alice")
    order = await lifecycle.decide_refund(db, pending_id, accept=False, gateway=gateway)
    assert order.status == "Pending"
    assert order.refund_status == "Denied"
    assert not order.refund_request

    completed_id = await place(db)
    await complete(db, completed_id)
    await lifecycle.request_refund(db, completed_id, "alice")
    order = await lifecycle.decide_refund(db, completed_id, accept=False, gateway=gateway)
    assert order.status == "Refund Denied"

    with pytest.raises(InvalidTransitionError, match="no open refund request"):
        await lifecycle.decide_refund(db, completed_id, accept=True, gateway=gateway)
