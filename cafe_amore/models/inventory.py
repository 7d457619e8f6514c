"""
Cafe Amore — Inventory models

[CONFIG DATA]        inventory — stock-keeping units, edited by staff
[TRANSACTIONAL DATA] stock_movements — audit trail of every applied delta
"""
import uuid
from datetime import datetime
from enum import Enum as PyEnum
from sqlalchemy import JSON, String, Integer, DateTime, func
from sqlalchemy.orm import Mapped, mapped_column
from cafe_amore.db.database import Base


class InventoryCategory(str, PyEnum):
    INGREDIENT = "Ingredient"
    ADDON = "Addon"
    SIZE = "Size"
    OTHER = "Other"


class InventoryItem(Base):
    """
    One stock-keeping unit (milk, espresso shot, 16oz cup, straw …).
    version_id is the optimistic locking column, incremented on every update.
    Add-on items may list nested ingredients/others consumed along with them.
    """
    __tablename__ = "inventory"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=lambda: str(uuid.uuid4()))
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    category: Mapped[str] = mapped_column(String(32), nullable=False, default=InventoryCategory.INGREDIENT.value)
    unit: Mapped[str] = mapped_column(String(32), nullable=False, default="piece")
    quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    active: Mapped[bool] = mapped_column(default=True, nullable=False)
    ingredients: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    others: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    version_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)  # optimistic lock
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class StockMovement(Base):
    """
    [TRANSACTIONAL DATA] — one row per inventory delta applied by an order,
    a payment, a cancellation, a refund or a manual staff adjustment.
    """
    __tablename__ = "stock_movements"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    inventory_id: Mapped[str] = mapped_column(String(64), index=True, nullable=False)
    order_id: Mapped[str | None] = mapped_column(String(36), index=True, nullable=True)
    delta: Mapped[int] = mapped_column(Integer, nullable=False)
    reason: Mapped[str] = mapped_column(String(32), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


def stock_status(item: InventoryItem) -> str:
    """Display-only stock label; thresholds depend on category and unit."""
    qty = item.quantity or 0
    if qty <= 0:
        return "Out of Stock"
    if item.category == InventoryCategory.SIZE.value:
        return "Low Stock" if qty < 30 else "In Stock"
    unit = (item.unit or "").lower()
    if unit in ("g", "ml"):
        return "Low Stock" if qty < 50 else "In Stock"
    if unit in ("slice", "piece", "squeeze"):
        return "Low Stock" if qty < 10 else "In Stock"
    if unit == "scoop":
        return "Low Stock" if qty < 5 else "In Stock"
    return "Low Stock" if qty <= 5 else "In Stock"
