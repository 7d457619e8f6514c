"""
Cafe Amore — Product catalog model

Sizes, components and add-ons are document-shaped and live in JSON columns:
  sizes:       [{id, name, price, qty, ingredients, others, addons}]
  ingredients: [{id, qty}]
  others:      [{id, qty}]
  addons:      [{id, name, price, qty}]
Prices are integer centavos. Every size id is also an inventory item id.
"""
import uuid
from datetime import date, datetime
from sqlalchemy import JSON, Date, String, Integer, DateTime, Text, func
from sqlalchemy.orm import Mapped, mapped_column
from cafe_amore.db.database import Base


class Product(Base):
    __tablename__ = "products"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=lambda: str(uuid.uuid4()))
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    category: Mapped[str] = mapped_column(String(100), nullable=False, default="Coffee")
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    image: Mapped[str | None] = mapped_column(Text, nullable=True)
    price: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    available: Mapped[bool] = mapped_column(default=True, nullable=False)
    season_start: Mapped[date | None] = mapped_column(Date, nullable=True)
    season_end: Mapped[date | None] = mapped_column(Date, nullable=True)
    sizes: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    ingredients: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    others: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    addons: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
