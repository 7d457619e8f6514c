"""
Cafe Amore — Address schemas
"""
from datetime import datetime
from pydantic import BaseModel, Field


class AddressCreate(BaseModel):
    barangay: str = Field(..., min_length=1, max_length=128, examples=["Alima"])
    house_number: str = Field("", max_length=255)
    city: str = Field("", max_length=128)
    province: str = Field("", max_length=128)
    region: str = Field("", max_length=128)


class AddressOut(BaseModel):
    id: str
    full_address: str
    barangay: str
    delivery_fee: int
    created_at: datetime | None = None
