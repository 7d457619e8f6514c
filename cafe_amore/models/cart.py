"""
Cafe Amore — Cart line model (signed-in users)

Guest carts use the same shape but are kept in Redis, see services/cart.py.
"""
import uuid
from datetime import datetime
from sqlalchemy import JSON, String, Integer, DateTime, Text, func
from sqlalchemy.orm import Mapped, mapped_column
from cafe_amore.db.database import Base


class CartLine(Base):
    __tablename__ = "cart_lines"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    owner_id: Mapped[str] = mapped_column(String(128), index=True, nullable=False)
    line_key: Mapped[str] = mapped_column(String(512), index=True, nullable=False)
    product_id: Mapped[str] = mapped_column(String(64), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    image: Mapped[str | None] = mapped_column(Text, nullable=True)
    base_price: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    size_price: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    addons_price: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    unit_price: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_price: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    size: Mapped[str | None] = mapped_column(String(100), nullable=True)
    size_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    size_qty: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    size_ingredients: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    size_others: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    addons: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    ingredients: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    others: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    added_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "product_id": self.product_id,
            "name": self.name,
            "image": self.image,
            "base_price": self.base_price,
            "size_price": self.size_price,
            "addons_price": self.addons_price,
            "unit_price": self.unit_price,
            "total_price": self.total_price,
            "quantity": self.quantity,
            "size": self.size,
            "size_id": self.size_id,
            "size_qty": self.size_qty,
            "size_ingredients": list(self.size_ingredients or []),
            "size_others": list(self.size_others or []),
            "addons": list(self.addons or []),
            "ingredients": list(self.ingredients or []),
            "others": list(self.others or []),
            "line_key": self.line_key,
        }
