"""
Cafe Amore — Order, payment & notification schemas
"""
from datetime import datetime
from pydantic import BaseModel, ConfigDict, Field

from cafe_amore.models.order import OrderStatus, OrderType, PaymentMethod


class CheckoutRequestIn(BaseModel):
    cart_item_ids: list[str] = Field(default_factory=list, max_length=50)
    order_type: OrderType = OrderType.DELIVERY
    payment_method: PaymentMethod = PaymentMethod.CASH
    address_id: str | None = Field(None, description="A saved address; its stored delivery fee applies")
    address: str | None = Field(None, max_length=500)
    barangay: str | None = Field(None, max_length=128, description="Prices delivery for an in-line address")
    phone: str | None = Field(None, max_length=32)
    cash_given: int | None = Field(None, ge=0, description="In-store cash tendered, centavos")
    customer_name: str | None = Field(None, max_length=255)


class CheckoutResponse(BaseModel):
    order_id: str
    queue_number: str
    queue_number_numeric: int
    status: str
    subtotal: int
    delivery_fee: int
    total: int
    change: int | None = None
    status_url: str


class OrderOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    user_id: str | None
    order_type: str
    customer_name: str | None
    address: str | None
    phone: str | None
    items: list[dict]
    subtotal: int
    delivery_fee: int
    total: int
    payment_method: str
    cash_given: int | None
    change: int | None
    status: str
    status_changed_at: datetime
    queue_number: str
    queue_number_numeric: int
    estimated_time: str | None
    inventory_deducted: bool
    payment_id: str | None
    checkout_url: str | None
    refund_request: bool
    refund_status: str | None
    final_refund_status: str | None
    refund_amount: int | None
    feedback: list | None
    feedback_rating: list | None
    created_at: datetime


class StatusUpdateRequest(BaseModel):
    status: OrderStatus
    estimated_time: str | None = Field(None, max_length=32, examples=["15 mins"])


class RefundRequestIn(BaseModel):
    amount: int | None = Field(None, ge=1)


class RefundDecisionIn(BaseModel):
    accept: bool
    amount: int | None = Field(None, ge=1)


class FeedbackIn(BaseModel):
    feedback: list[str] = Field(..., min_length=1, max_length=20)
    ratings: list[int] = Field(default_factory=list, max_length=20)

    def clean_ratings(self) -> list[int]:
        return [max(1, min(5, r)) for r in self.ratings]


class WebhookAck(BaseModel):
    received: bool = True
    event_id: str
    status: str
    duplicate: bool = False
    error: str | None = None


class WebhookEventOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    event_type: str
    payment_id: str | None
    order_id: str | None
    status: str
    error: str | None
    received_at: datetime
    processed_at: datetime | None


class NotificationOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    order_id: str
    status: str
    message: str
    read: bool
    created_at: datetime
