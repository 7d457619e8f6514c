"""
Cafe Amore — Catalog snapshot (inventory index + product map)

A CatalogSnapshot is an explicitly owned, read-only view of inventory and
products taken at one point in time. It is passed into the stock calculator
and the cart store instead of living in module globals, so both can be
exercised without a database.
"""
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from cafe_amore.models.catalog import Product
from cafe_amore.models.inventory import InventoryItem


@dataclass(frozen=True)
class InventoryEntry:
    id: str
    name: str
    quantity: int
    active: bool = True
    category: str = "Ingredient"
    unit: str = ""
    ingredients: tuple = ()
    others: tuple = ()


@dataclass
class CatalogSnapshot:
    inventory: dict[str, InventoryEntry] = field(default_factory=dict)
    products: dict[str, dict[str, Any]] = field(default_factory=dict)

    def inventory_item(self, item_id: str | None) -> InventoryEntry | None:
        if not item_id:
            return None
        return self.inventory.get(item_id)

    def product(self, product_id: str | None) -> dict[str, Any] | None:
        if not product_id:
            return None
        return self.products.get(product_id)

    @classmethod
    def from_rows(cls, inventory_rows, product_rows) -> "CatalogSnapshot":
        return cls(
            inventory={row.id: inventory_entry(row) for row in inventory_rows},
            products={row.id: product_to_dict(row) for row in product_rows},
        )


def inventory_entry(row: InventoryItem) -> InventoryEntry:
    return InventoryEntry(
        id=row.id,
        name=row.name,
        quantity=row.quantity or 0,
        active=bool(row.active),
        category=row.category,
        unit=row.unit,
        ingredients=tuple(row.ingredients or ()),
        others=tuple(row.others or ()),
    )


def product_to_dict(row: Product) -> dict[str, Any]:
    return {
        "id": row.id,
        "name": row.name,
        "category": row.category,
        "description": row.description,
        "image": row.image,
        "price": row.price or 0,
        "available": row.available,
        "season_start": row.season_start,
        "season_end": row.season_end,
        "sizes": list(row.sizes or []),
        "ingredients": list(row.ingredients or []),
        "others": list(row.others or []),
        "addons": list(row.addons or []),
    }


async def load_snapshot(db: AsyncSession) -> CatalogSnapshot:
    """Read the full inventory and product collections into a snapshot."""
    inventory = (
        await db.execute(select(InventoryItem).execution_options(populate_existing=True))
    ).scalars().all()
    products = (await db.execute(select(Product))).scalars().all()
    return CatalogSnapshot.from_rows(inventory, products)
