"""
Cafe Amore — PayMongo client

Creates hosted checkout sessions (payment links) and refunds. Every POST
carries a stable Idempotency-Key derived from the order id, so transport
failures are retried with bounded exponential backoff without risking a
duplicate session or refund.
"""
import asyncio
import json
import logging
from typing import Any

import httpx

from cafe_amore.core.config import get_settings
from cafe_amore.models.order import Order

settings = get_settings()
logger = logging.getLogger(__name__)


class PaymentGatewayError(Exception):
    """PayMongo rejected the request or could not be reached."""

    def __init__(self, message: str, status_code: int | None = None, timeout: bool = False):
        super().__init__(message)
        self.status_code = status_code
        self.timeout = timeout


def _error_detail(response: httpx.Response) -> str:
    try:
        errors = response.json().get("errors") or []
        if errors:
            return errors[0].get("detail") or response.text
    except ValueError:
        pass
    return response.text or f"HTTP {response.status_code}"


def checkout_line_items(order: Order) -> list[dict[str, Any]]:
    """One line item per order line (unit price in centavos), plus the delivery fee."""
    items = [
        {
            "name": f"{line.get('product')} ({line['size']})" if line.get("size") else line.get("product"),
            "currency": settings.CURRENCY,
            "amount": int(line.get("unit_price") or 0),
            "quantity": int(line.get("qty") or 1),
        }
        for line in order.items or []
    ]
    if order.delivery_fee:
        items.append({
            "name": "Delivery Fee",
            "currency": settings.CURRENCY,
            "amount": int(order.delivery_fee),
            "quantity": 1,
        })
    return items


def checkout_metadata(order: Order, source: str = "admin_approval_link") -> dict[str, str]:
    # PayMongo metadata values must be strings
    return {
        "orderId": order.id,
        "collectionName": order.collection_name,
        "userId": order.user_id or "",
        "queueNumber": order.queue_number,
        "orderType": order.order_type,
        "cartItemIds": json.dumps(list(order.cart_item_ids or [])),
        "deliveryFee": str(order.delivery_fee or 0),
        "orderTotal": str(order.total or 0),
        "source": source,
    }


class PayMongoClient:
    def __init__(self, secret_key: str | None = None, transport: httpx.AsyncBaseTransport | None = None):
        self.secret_key = secret_key if secret_key is not None else settings.PAYMONGO_SECRET_KEY
        self.transport = transport

    async def _post(self, path: str, body: dict[str, Any], idempotency_key: str) -> dict[str, Any]:
        if not self.secret_key:
            raise PaymentGatewayError("PAYMONGO_SECRET_KEY is not configured.")

        url = f"{settings.PAYMONGO_API_URL}{path}"
        headers = {"Accept": "application/json", "Idempotency-Key": idempotency_key}
        last_exc: Exception | None = None

        for attempt in range(1, settings.HTTP_MAX_RETRIES + 1):
            try:
                async with httpx.AsyncClient(
                    timeout=settings.HTTP_TIMEOUT_SECONDS,
                    auth=httpx.BasicAuth(self.secret_key, ""),
                    transport=self.transport,
                ) as client:
                    response = await client.post(url, json=body, headers=headers)
            except (httpx.TimeoutException, httpx.RequestError) as exc:
                last_exc = exc
                if attempt == settings.HTTP_MAX_RETRIES:
                    break
                delay = settings.HTTP_RETRY_BASE_DELAY_MS / 1000.0 * (2 ** (attempt - 1))
                logger.warning(
                    "PayMongo %s attempt %d/%d failed (%s), retrying in %.2fs",
                    path, attempt, settings.HTTP_MAX_RETRIES, type(exc).__name__, delay,
                )
                await asyncio.sleep(delay)
                continue

            if response.status_code >= 500 and attempt < settings.HTTP_MAX_RETRIES:
                logger.warning("PayMongo %s returned %d, retrying", path, response.status_code)
                await asyncio.sleep(settings.HTTP_RETRY_BASE_DELAY_MS / 1000.0 * (2 ** (attempt - 1)))
                continue
            if not response.is_success:
                detail = _error_detail(response)
                logger.error("PayMongo %s failed with %d: %s", path, response.status_code, detail)
                raise PaymentGatewayError(detail, status_code=response.status_code)
            return response.json()

        raise PaymentGatewayError(
            f"PayMongo unreachable: {last_exc}",
            timeout=isinstance(last_exc, httpx.TimeoutException),
        )

    async def create_checkout_session(self, order: Order, description: str | None = None) -> str:
        """Create a hosted checkout for the order and return its checkout_url."""
        if (order.total or 0) < settings.MIN_CHECKOUT_AMOUNT:
            raise PaymentGatewayError(f"Order total {order.total} is below the minimum checkout amount.")

        body = {
            "data": {
                "attributes": {
                    "billing": {
                        "name": order.customer_name or "Unknown Customer",
                        "phone": order.phone or "",
                    },
                    "line_items": checkout_line_items(order),
                    "payment_method_types": settings.PAYMONGO_PAYMENT_METHOD_TYPES,
                    "success_url": settings.CHECKOUT_SUCCESS_URL,
                    "cancel_url": settings.CHECKOUT_CANCEL_URL,
                    "send_email_receipt": True,
                    "description": description or f"Order #{order.queue_number}",
                    "metadata": checkout_metadata(order),
                }
            }
        }
        data = await self._post("/checkout_sessions", body, idempotency_key=f"checkout-{order.id}")
        checkout_url = ((data.get("data") or {}).get("attributes") or {}).get("checkout_url")
        if not checkout_url:
            raise PaymentGatewayError("PayMongo did not return a checkout_url.")
        logger.info("Checkout session created for order %s", order.id)
        return checkout_url

    async def create_refund(
        self, payment_id: str, amount: int, reason: str = "requested_by_customer", notes: str | None = None
    ) -> dict[str, Any]:
        if not payment_id or amount <= 0:
            raise PaymentGatewayError("A payment id and a positive amount are required for a refund.")
        attributes: dict[str, Any] = {"amount": int(amount), "payment_id": payment_id, "reason": reason}
        if notes:
            attributes["notes"] = notes
        data = await self._post(
            "/refunds", {"data": {"attributes": attributes}}, idempotency_key=f"refund-{payment_id}-{amount}"
        )
        logger.info("Refund of %d requested for payment %s", amount, payment_id)
        return data.get("data") or {}


def get_payment_gateway() -> PayMongoClient:
    return PayMongoClient()
