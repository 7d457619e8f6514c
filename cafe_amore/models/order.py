"""
Cafe Amore — Order models

[TRANSACTIONAL DATA] orders — never hard-deleted; cancellation is a status.
[TRANSACTIONAL DATA] webhook_events — every payment-provider delivery, durably
                     recorded before it is acknowledged.
[TRANSACTIONAL DATA] notifications — per-user order status messages.
"""
import uuid
from datetime import datetime, timezone
from enum import Enum as PyEnum
from sqlalchemy import JSON, String, Integer, DateTime, Text, UniqueConstraint, func
from sqlalchemy.orm import Mapped, mapped_column
from cafe_amore.db.database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class OrderType(str, PyEnum):
    IN_STORE = "InStore"
    DELIVERY = "Delivery"


class PaymentMethod(str, PyEnum):
    CASH = "Cash"
    E_PAYMENT = "E-Payment"


class OrderStatus(str, PyEnum):
    WAIT_FOR_ADMIN = "Wait for Admin to Accept"
    WAITING_FOR_PAYMENT = "Waiting for Payment"
    PENDING = "Pending"
    PREPARING = "Preparing"
    DELIVERY = "Delivery"
    COMPLETED = "Completed"
    COMPLETED_BY_CUSTOMER = "Completed by Customer"
    CANCELED = "Canceled"
    REFUND_PENDING = "Refund Pending"
    REFUNDED = "Refunded"
    REFUND_DENIED = "Refund Denied"
    REFUND_FAILED = "Refund Failed"


# Collection names used in payment metadata by the storefront.
COLLECTION_BY_TYPE = {
    OrderType.IN_STORE.value: "InStoreOrders",
    OrderType.DELIVERY.value: "DeliveryOrders",
}
TYPE_BY_COLLECTION = {v: k for k, v in COLLECTION_BY_TYPE.items()}


class Order(Base):
    """
    Items are snapshot copies of the cart lines at checkout time, so
    historical orders do not change when the catalog does.
    inventory_deducted is flipped in the same transaction as the matching
    inventory write, which makes deduction and return happen at most once.
    """
    __tablename__ = "orders"
    __table_args__ = (
        UniqueConstraint("order_type", "queue_number_numeric", name="uq_orders_type_queue"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id: Mapped[str | None] = mapped_column(String(128), index=True, nullable=True)
    order_type: Mapped[str] = mapped_column(String(16), nullable=False, default=OrderType.DELIVERY.value)
    customer_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    address: Mapped[str | None] = mapped_column(Text, nullable=True)
    phone: Mapped[str | None] = mapped_column(String(32), nullable=True)
    items: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    subtotal: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    delivery_fee: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    payment_method: Mapped[str] = mapped_column(String(16), nullable=False, default=PaymentMethod.CASH.value)
    cash_given: Mapped[int | None] = mapped_column(Integer, nullable=True)
    change: Mapped[int | None] = mapped_column(Integer, nullable=True)

    status: Mapped[str] = mapped_column(String(40), index=True, nullable=False, default=OrderStatus.PENDING.value)
    status_changed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    queue_number: Mapped[str] = mapped_column(String(16), nullable=False)
    queue_number_numeric: Mapped[int] = mapped_column(Integer, nullable=False)
    estimated_time: Mapped[str | None] = mapped_column(String(32), nullable=True)

    inventory_deducted: Mapped[bool] = mapped_column(default=False, nullable=False)
    restock_on_refund: Mapped[bool] = mapped_column(default=False, nullable=False)

    payment_id: Mapped[str | None] = mapped_column(String(128), index=True, nullable=True)
    payment_metadata: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    checkout_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    cart_item_ids: Mapped[list] = mapped_column(JSON, nullable=False, default=list)

    refund_request: Mapped[bool] = mapped_column(default=False, nullable=False)
    refund_status: Mapped[str | None] = mapped_column(String(32), nullable=True)
    final_refund_status: Mapped[str | None] = mapped_column(String(32), nullable=True)
    refund_amount: Mapped[int | None] = mapped_column(Integer, nullable=True)

    feedback: Mapped[list | None] = mapped_column(JSON, nullable=True)
    feedback_rating: Mapped[list | None] = mapped_column(JSON, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    @property
    def collection_name(self) -> str:
        return COLLECTION_BY_TYPE.get(self.order_type, "DeliveryOrders")


class WebhookEvent(Base):
    __tablename__ = "webhook_events"

    id: Mapped[str] = mapped_column(String(128), primary_key=True)
    event_type: Mapped[str] = mapped_column(String(64), nullable=False)
    payment_id: Mapped[str | None] = mapped_column(String(128), index=True, nullable=True)
    order_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="received")
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    payload: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    received_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class Notification(Base):
    __tablename__ = "notifications"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id: Mapped[str | None] = mapped_column(String(128), index=True, nullable=True)
    order_id: Mapped[str] = mapped_column(String(36), index=True, nullable=False)
    status: Mapped[str] = mapped_column(String(40), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    read: Mapped[bool] = mapped_column(default=False, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
