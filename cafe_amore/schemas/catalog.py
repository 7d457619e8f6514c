"""
Cafe Amore — Catalog & inventory schemas
"""
from datetime import date, datetime
from pydantic import BaseModel, ConfigDict, Field

from cafe_amore.models.inventory import InventoryCategory


class Component(BaseModel):
    id: str
    qty: int = Field(1, ge=1)


class Addon(BaseModel):
    id: str
    name: str
    price: int = Field(0, ge=0)
    qty: int = Field(1, ge=1)


class Size(BaseModel):
    id: str = Field(..., examples=["inv-cup-medium"])
    name: str = Field(..., examples=["Medium"])
    price: int = Field(0, ge=0)
    qty: int = Field(1, ge=1)
    ingredients: list[Component] = []
    others: list[Component] = []
    addons: list[Addon] = []


class ProductCreate(BaseModel):
    id: str | None = None
    name: str = Field(..., min_length=1, max_length=255)
    category: str | None = None
    description: str | None = None
    image: str | None = None
    price: int = Field(0, ge=0, description="Base price in centavos")
    available: bool = True
    season_start: date | None = None
    season_end: date | None = None
    sizes: list[Size] = []
    ingredients: list[Component] = []
    others: list[Component] = []
    addons: list[Addon] = []


class SizeAvailabilityOut(BaseModel):
    id: str
    name: str
    price: int
    stock: int
    available: bool


class ProductOut(BaseModel):
    id: str
    name: str
    category: str | None = None
    description: str | None = None
    image: str | None = None
    price: int
    available: bool
    in_season: bool
    stock: int
    sizes: list[SizeAvailabilityOut]
    addons: list[dict]


class InventoryItemCreate(BaseModel):
    id: str | None = None
    name: str = Field(..., min_length=1, max_length=255)
    category: InventoryCategory = InventoryCategory.INGREDIENT
    unit: str = Field("", max_length=32, examples=["g", "ml", "piece"])
    quantity: int = Field(0, ge=0)
    active: bool = True
    ingredients: list[Component] = []
    others: list[Component] = []


class InventoryItemOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    category: str
    unit: str
    quantity: int
    active: bool
    version_id: int
    stock_status: str
    updated_at: datetime | None = None


class AdjustRequest(BaseModel):
    delta: int = Field(..., description="Signed quantity change; negative to deduct")
    reason: str = Field("manual", max_length=32)
