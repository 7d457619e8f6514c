"""
PayMongo webhook: signature check, durable event log, idempotent reconciliation.
"""
import json
import time

import pytest
from sqlalchemy import func, select

from cafe_amore.core.config import get_settings
from cafe_amore.core.security import SignatureError, compute_signature, verify_webhook_signature
from cafe_amore.db.stock_ops import apply_inventory_deltas
from cafe_amore.models.cart import CartLine
from cafe_amore.services import lifecycle
from cafe_amore.services.checkout import CheckoutRequest, place_order
from cafe_amore.services.lifecycle import InvalidTransitionError
from cafe_amore.services.reconciler import handle_webhook, parse_event, replay_event, safe_parse_list

from conftest import add_line, auth, fresh_order, inventory_qty, user

settings = get_settings()
SECRET = "whsec_test"


def paid_payload(event_id: str, metadata: dict, payment_id: str = "pay_1",
                 event_type: str = "checkout_session.payment.paid") -> dict:
    return {
        "data": {
            "id": event_id,
            "type": "event",
            "attributes": {
                "type": event_type,
                "livemode": False,
                "data": {
                    "id": "cs_test_1",
                    "type": "checkout_session",
                    "attributes": {
                        "status": "active",
                        "payments": [{"id": payment_id, "type": "payment"}],
                        "metadata": metadata,
                    },
                },
            },
        }
    }


def refund_payload(event_id: str, payment_id: str, event_type: str = "payment.refunded") -> dict:
    return {
        "data": {
            "id": event_id,
            "type": "event",
            "attributes": {
                "type": event_type,
                "data": {"id": "ref_1", "type": "refund", "attributes": {"payment_id": payment_id, "status": "succeeded"}},
            },
        }
    }


async def deliver(db, payload: dict):
    return await handle_webhook(db, payload, json.dumps(payload).encode())


async def awaiting_payment_order(db, gateway, uid: str = "alice"):
    """Id and payment link metadata of an E-Payment delivery order accepted by staff."""
    line = await add_line(db, uid, "americano", "cup-12")
    result = await place_order(db, user(uid), CheckoutRequest(
        cart_item_ids=[line["id"]], order_type="Delivery", payment_method="E-Payment",
        address="12 Rizal St, Manila", barangay="Alima", phone="09171234567",
    ))
    order = await lifecycle.staff_transition(db, result.order_id, "Waiting for Payment", gateway=gateway)
    return order.id, dict(order.payment_metadata)


async def cart_count(db, owner_id: str) -> int:
    return await db.scalar(select(func.count()).select_from(CartLine).where(CartLine.owner_id == owner_id))


# ── Signature ────────────────────────────────────────────────────────────────

SIGNED_AT = 1700000000


def test_signature_accepts_test_and_live_modes():
    body = b'{"data": {}}'
    sig = compute_signature(SECRET, str(SIGNED_AT), body)
    assert verify_webhook_signature(f"t={SIGNED_AT},te={sig},li=", body, secret=SECRET, now=SIGNED_AT + 5)
    assert verify_webhook_signature(f"t={SIGNED_AT}, v1={sig}", body, secret=SECRET, now=SIGNED_AT)


def test_signature_rejects_tampered_or_malformed_headers():
    body = b'{"data": {}}'
    sig = compute_signature(SECRET, str(SIGNED_AT), body)
    with pytest.raises(SignatureError, match="mismatch"):
        verify_webhook_signature(f"t={SIGNED_AT},te={sig}", b'{"data": {"x": 1}}', secret=SECRET)
    with pytest.raises(SignatureError, match="Missing"):
        verify_webhook_signature(f"te={sig}", body, secret=SECRET)
    with pytest.raises(SignatureError):
        verify_webhook_signature("", body, secret=SECRET)


def test_signature_rejects_stale_or_non_numeric_timestamps(monkeypatch):
    body = b'{"data": {}}'
    sig = compute_signature(SECRET, str(SIGNED_AT), body)
    header = f"t={SIGNED_AT},te={sig}"
    with pytest.raises(SignatureError, match="tolerance"):
        verify_webhook_signature(header, body, secret=SECRET, now=SIGNED_AT + 301)
    with pytest.raises(SignatureError, match="tolerance"):
        verify_webhook_signature(header, body, secret=SECRET, now=SIGNED_AT - 301)
    assert verify_webhook_signature(header, body, secret=SECRET, now=SIGNED_AT + 300)

    monkeypatch.setattr(settings, "PAYMONGO_WEBHOOK_TOLERANCE_SECONDS", 0)
    assert verify_webhook_signature(header, body, secret=SECRET, now=SIGNED_AT + 86400)

    odd_sig = compute_signature(SECRET, "yesterday", body)
    with pytest.raises(SignatureError, match="Unix time"):
        verify_webhook_signature(f"t=yesterday,te={odd_sig}", body, secret=SECRET)


def test_signature_check_skipped_without_secret():
    assert verify_webhook_signature("", b"{}", secret="") is False


# ── Parsing ──────────────────────────────────────────────────────────────────

def test_safe_parse_list_accepts_every_encoding():
    assert safe_parse_list(["a", "b"]) == ["a", "b"]
    assert safe_parse_list('["a"]') == ["a"]
    assert safe_parse_list(json.dumps(json.dumps(["a"]))) == ["a"]
    assert safe_parse_list("not json") == []
    assert safe_parse_list(None) == []
    assert safe_parse_list('{"a": 1}') == []


def test_parse_event_extracts_payment_id_per_resource_type():
    checkout = parse_event(paid_payload("evt_1", {"orderId": "o1"}, payment_id="pay_9"))
    assert (checkout.id, checkout.payment_id, checkout.metadata) == ("evt_1", "pay_9", {"orderId": "o1"})

    refund = parse_event(refund_payload("evt_2", "pay_9"))
    assert refund.payment_id == "pay_9"
    assert refund.resource_status == "succeeded"

    anonymous = parse_event({"data": {"attributes": {"type": "payment.paid"}}}, b"raw-body")
    assert anonymous.id.startswith("sha256:")


# ── Payment reconciliation ───────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_payment_confirms_order_and_deducts_once(db, cafe_catalog, gateway):
    order_id, metadata = await awaiting_payment_order(db, gateway)
    assert await inventory_qty(db, "espresso") == 180

    event, duplicate = await deliver(db, paid_payload("evt_1", metadata))
    assert not duplicate
    assert event.status == "processed"
    assert event.order_id == order_id

    order = await fresh_order(db, order_id)
    assert order.status == "Pending"
    assert order.payment_id == "pay_1"
    assert order.payment_metadata is None
    assert order.inventory_deducted
    assert await inventory_qty(db, "espresso") == 162
    assert await cart_count(db, "alice") == 0

    # Provider redelivers the same event
    event, duplicate = await deliver(db, paid_payload("evt_1", metadata))
    assert duplicate
    assert await inventory_qty(db, "espresso") == 162

    # A second event for an already-paid order
    event, duplicate = await deliver(db, paid_payload("evt_2", metadata, payment_id="pay_2"))
    assert not duplicate
    assert event.status == "duplicate"
    assert (await fresh_order(db, order_id)).payment_id == "pay_1"
    assert await inventory_qty(db, "espresso") == 162


@pytest.mark.asyncio
async def test_payment_falls_back_to_user_and_queue_number(db, cafe_catalog, gateway):
    order_id, metadata = await awaiting_payment_order(db, gateway)
    fallback = {k: v for k, v in metadata.items() if k != "orderId"}

    event, _ = await deliver(db, paid_payload("evt_fallback", fallback))
    assert event.status == "processed"
    assert (await fresh_order(db, order_id)).status == "Pending"


@pytest.mark.asyncio
async def test_unknown_order_is_recorded_as_failed(db, cafe_catalog):
    event, duplicate = await deliver(db, paid_payload("evt_lost", {"orderId": "no-such-order"}))
    assert not duplicate
    assert event.status == "failed"
    assert "not found" in event.error


@pytest.mark.asyncio
async def test_payment_for_canceled_order_fails(db, cafe_catalog, gateway):
    order_id, metadata = await awaiting_payment_order(db, gateway)
    await lifecycle.customer_cancel(db, order_id, "alice")

    event, _ = await deliver(db, paid_payload("evt_late", metadata))
    assert event.status == "failed"
    assert "can no longer be paid" in event.error
    assert (await fresh_order(db, order_id)).status == "Canceled"
    assert await inventory_qty(db, "espresso") == 180


@pytest.mark.asyncio
async def test_failed_event_can_be_replayed(db, cafe_catalog, gateway):
    order_id, metadata = await awaiting_payment_order(db, gateway)
    await apply_inventory_deltas(db, {"espresso": -180}, None, reason="manual")
    await db.commit()

    event, _ = await deliver(db, paid_payload("evt_short", metadata))
    assert event.status == "failed"
    assert (await fresh_order(db, order_id)).status == "Waiting for Payment"

    await apply_inventory_deltas(db, {"espresso": 180}, None, reason="manual")
    await db.commit()
    event = await replay_event(db, "evt_short")

    assert event.status == "processed"
    assert (await fresh_order(db, order_id)).status == "Pending"
    assert await inventory_qty(db, "espresso") == 162

    with pytest.raises(InvalidTransitionError):
        await replay_event(db, "evt_short")


@pytest.mark.asyncio
async def test_unhandled_event_type_is_ignored(db):
    event, _ = await deliver(db, {"data": {"id": "evt_src", "attributes": {"type": "source.chargeable"}}})
    assert event.status == "ignored"


# ── Refund reconciliation ────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_refund_events_settle_refund_pending_orders(db, cafe_catalog, gateway):
    order_id, metadata = await awaiting_payment_order(db, gateway)
    await deliver(db, paid_payload("evt_paid", metadata, payment_id="pay_r"))
    await lifecycle.request_refund(db, order_id, "alice")
    await lifecycle.decide_refund(db, order_id, accept=True, gateway=gateway)
    assert await inventory_qty(db, "espresso") == 162

    event, _ = await deliver(db, refund_payload("evt_refund", "pay_r"))
    assert event.status == "processed"
    order = await fresh_order(db, order_id)
    assert order.status == "Refunded"
    assert order.final_refund_status == "Succeeded"
    assert await inventory_qty(db, "espresso") == 180

    event, _ = await deliver(db, refund_payload("evt_refund_again", "pay_r", event_type="refund.succeeded"))
    assert event.status == "duplicate"
    assert await inventory_qty(db, "espresso") == 180


@pytest.mark.asyncio
async def test_failed_refund_event(db, cafe_catalog, gateway):
    order_id, metadata = await awaiting_payment_order(db, gateway)
    await deliver(db, paid_payload("evt_paid", metadata, payment_id="pay_f"))
    await lifecycle.request_refund(db, order_id, "alice")
    await lifecycle.decide_refund(db, order_id, accept=True, gateway=gateway)

    event, _ = await deliver(db, refund_payload("evt_refund_failed", "pay_f", event_type="payment.refund.failed"))
    assert event.status == "processed"
    order = await fresh_order(db, order_id)
    assert order.status == "Refund Failed"
    assert order.final_refund_status == "Failed"


# ── HTTP surface ─────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_webhook_endpoint_verifies_signature(client, monkeypatch):
    monkeypatch.setattr(settings, "PAYMONGO_WEBHOOK_SECRET", SECRET)
    body = json.dumps({"data": {"id": "evt_http", "attributes": {"type": "source.chargeable"}}}).encode()

    bad = await client.post("/payments/webhook", content=body, headers={"Paymongo-Signature": "t=1,te=deadbeef"})
    assert bad.status_code == 401

    stale = compute_signature(SECRET, "1", body)
    replayed = await client.post("/payments/webhook", content=body, headers={"Paymongo-Signature": f"t=1,te={stale}"})
    assert replayed.status_code == 401

    signed_at = str(int(time.time()))
    sig = compute_signature(SECRET, signed_at, body)
    ok = await client.post(
        "/payments/webhook", content=body,
        headers={"Paymongo-Signature": f"t={signed_at},te={sig}", "Content-Type": "application/json"},
    )
    assert ok.status_code == 200
    assert ok.json() == {
        "received": True, "event_id": "evt_http", "status": "ignored", "duplicate": False, "error": None,
    }


@pytest.mark.asyncio
async def test_webhook_endpoint_acknowledges_failures(client):
    payload = paid_payload("evt_http_lost", {"orderId": "no-such-order"})
    response = await client.post("/payments/webhook", json=payload)
    assert response.status_code == 200
    assert response.json()["status"] == "failed"

    bad_json = await client.post("/payments/webhook", content=b"{not json")
    assert bad_json.status_code == 400

    forbidden = await client.get("/payments/webhook/events", headers=auth("alice"))
    assert forbidden.status_code == 403

    listed = await client.get("/payments/webhook/events", params={"status": "failed"}, headers=auth("admin", "admin"))
    assert listed.status_code == 200
    assert [e["id"] for e in listed.json()] == ["evt_http_lost"]
