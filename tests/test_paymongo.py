"""
PayMongo client against httpx.MockTransport.
"""
import base64
import json

import httpx
import pytest

from cafe_amore.models.order import Order
from cafe_amore.services.paymongo import (
    PaymentGatewayError,
    PayMongoClient,
    checkout_line_items,
    checkout_metadata,
)


def sample_order(**overrides) -> Order:
    fields = dict(
        id="order-1",
        user_id="alice",
        order_type="Delivery",
        customer_name="Alice",
        phone="09171234567",
        items=[
            {"product": "Mocha", "size": "12oz", "unit_price": 13500, "qty": 2},
            {"product": "Cookie", "size": None, "unit_price": 5000, "qty": 1},
        ],
        subtotal=32000,
        delivery_fee=4900,
        total=36900,
        payment_method="E-Payment",
        status="Wait for Admin to Accept",
        queue_number="E0007",
        queue_number_numeric=7,
        cart_item_ids=["line-1", "line-2"],
    )
    fields.update(overrides)
    return Order(**fields)


class Recorder:
    def __init__(self, *responses):
        self.responses = list(responses)
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        outcome = self.responses.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


def test_line_items_and_metadata():
    order = sample_order()
    assert checkout_line_items(order) == [
        {"name": "Mocha (12oz)", "currency": "PHP", "amount": 13500, "quantity": 2},
        {"name": "Cookie", "currency": "PHP", "amount": 5000, "quantity": 1},
        {"name": "Delivery Fee", "currency": "PHP", "amount": 4900, "quantity": 1},
    ]
    metadata = checkout_metadata(order)
    assert metadata["collectionName"] == "DeliveryOrders"
    assert json.loads(metadata["cartItemIds"]) == ["line-1", "line-2"]
    assert metadata["orderTotal"] == "36900"
    assert all(isinstance(v, str) for v in metadata.values())


@pytest.mark.asyncio
async def test_checkout_session_request():
    recorder = Recorder(httpx.Response(200, json={"data": {"attributes": {"checkout_url": "https://pm.test/cs_1"}}}))
    client = PayMongoClient(secret_key="sk_test_abc", transport=httpx.MockTransport(recorder))

    url = await client.create_checkout_session(sample_order())

    assert url == "https://pm.test/cs_1"
    request = recorder.requests[0]
    assert request.url.path.endswith("/checkout_sessions")
    assert request.headers["Idempotency-Key"] == "checkout-order-1"
    assert request.headers["Authorization"] == "Basic " + base64.b64encode(b"sk_test_abc:").decode()
    attributes = json.loads(request.content)["data"]["attributes"]
    assert attributes["metadata"]["orderId"] == "order-1"
    assert attributes["description"] == "Order #E0007"
    assert attributes["billing"]["name"] == "Alice"


@pytest.mark.asyncio
async def test_server_errors_are_retried_with_the_same_key():
    recorder = Recorder(
        httpx.Response(502, text="bad gateway"),
        httpx.Response(200, json={"data": {"id": "ref_1", "attributes": {"status": "pending"}}}),
    )
    client = PayMongoClient(secret_key="sk_test_abc", transport=httpx.MockTransport(recorder))

    refund = await client.create_refund("pay_1", 5000)

    assert refund["id"] == "ref_1"
    assert len(recorder.requests) == 2
    assert {r.headers["Idempotency-Key"] for r in recorder.requests} == {"refund-pay_1-5000"}
    body = json.loads(recorder.requests[0].content)["data"]["attributes"]
    assert body == {"amount": 5000, "payment_id": "pay_1", "reason": "requested_by_customer"}


@pytest.mark.asyncio
async def test_client_errors_are_not_retried():
    recorder = Recorder(httpx.Response(400, json={"errors": [{"detail": "amount is invalid"}]}))
    client = PayMongoClient(secret_key="sk_test_abc", transport=httpx.MockTransport(recorder))

    with pytest.raises(PaymentGatewayError, match="amount is invalid") as excinfo:
        await client.create_refund("pay_1", 5000)
    assert excinfo.value.status_code == 400
    assert len(recorder.requests) == 1


@pytest.mark.asyncio
async def test_timeouts_exhaust_retries():
    recorder = Recorder(*[httpx.ConnectTimeout("timed out") for _ in range(3)])
    client = PayMongoClient(secret_key="sk_test_abc", transport=httpx.MockTransport(recorder))

    with pytest.raises(PaymentGatewayError) as excinfo:
        await client.create_checkout_session(sample_order())
    assert excinfo.value.timeout
    assert len(recorder.requests) == 3


@pytest.mark.asyncio
async def test_preconditions_fail_without_calling_out():
    recorder = Recorder()
    client = PayMongoClient(secret_key="sk_test_abc", transport=httpx.MockTransport(recorder))

    with pytest.raises(PaymentGatewayError, match="minimum"):
        await client.create_checkout_session(sample_order(total=50))
    with pytest.raises(PaymentGatewayError):
        await client.create_refund("", 5000)
    with pytest.raises(PaymentGatewayError, match="not configured"):
        await PayMongoClient(secret_key="").create_refund("pay_1", 100)
    assert recorder.requests == []
