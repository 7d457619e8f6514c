"""
Cafe Amore — Saved delivery addresses

[CONFIG DATA] addresses — per-user delivery addresses. The delivery fee is
fixed server-side from the barangay when the address is saved.
"""
import uuid
from datetime import datetime
from sqlalchemy import String, Integer, DateTime, func
from sqlalchemy.orm import Mapped, mapped_column
from cafe_amore.db.database import Base


class Address(Base):
    __tablename__ = "addresses"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id: Mapped[str] = mapped_column(String(128), index=True, nullable=False)
    house_number: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    barangay: Mapped[str] = mapped_column(String(128), nullable=False)
    city: Mapped[str] = mapped_column(String(128), nullable=False, default="")
    province: Mapped[str] = mapped_column(String(128), nullable=False, default="")
    region: Mapped[str] = mapped_column(String(128), nullable=False, default="")
    delivery_fee: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    @property
    def full_address(self) -> str:
        parts = (self.house_number, self.barangay, self.city, self.province, self.region)
        return ", ".join(p for p in parts if p)
