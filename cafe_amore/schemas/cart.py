"""
Cafe Amore — Cart schemas
"""
from pydantic import BaseModel, Field


class AddItemRequest(BaseModel):
    product_id: str = Field(..., examples=["latte"])
    size_id: str | None = Field(None, examples=["inv-cup-medium"])
    addon_ids: list[str] = Field(default_factory=list, max_length=20)
    quantity: int = Field(1, ge=1, le=99)


class SetQuantityRequest(BaseModel):
    quantity: int = Field(..., ge=1, le=99)


class MergeRequest(BaseModel):
    guest_id: str = Field(..., min_length=1, max_length=128)


class CartView(BaseModel):
    lines: list[dict]
    item_count: int
    subtotal: int
    delivery_fee: int
    total: int
