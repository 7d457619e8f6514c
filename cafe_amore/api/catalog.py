"""
Cafe Amore — Catalog API

Products with live, per-size availability computed from a fresh snapshot.
"""
import logging
from dataclasses import asdict

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from cafe_amore.api.deps import require_staff
from cafe_amore.db.database import get_db
from cafe_amore.models.catalog import Product
from cafe_amore.schemas.catalog import ProductCreate, ProductOut
from cafe_amore.services.catalog import CatalogSnapshot, load_snapshot, product_to_dict
from cafe_amore.services.stock import product_availability

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/catalog", tags=["catalog"])


def _product_out(product: dict, snapshot: CatalogSnapshot) -> ProductOut:
    availability = product_availability(product, snapshot)
    return ProductOut(
        id=product["id"],
        name=product["name"],
        category=product["category"],
        description=product["description"],
        image=product["image"],
        price=product["price"],
        available=availability.available,
        in_season=availability.in_season,
        stock=availability.stock,
        sizes=[asdict(s) for s in availability.sizes],
        addons=product["addons"],
    )


@router.get("/products", response_model=list[ProductOut])
async def list_products(category: str | None = None, db: AsyncSession = Depends(get_db)):
    snapshot = await load_snapshot(db)
    products = sorted(snapshot.products.values(), key=lambda p: (p["category"] or "", p["name"]))
    if category:
        products = [p for p in products if p["category"] == category]
    return [_product_out(p, snapshot) for p in products]


@router.get("/products/{product_id}", response_model=ProductOut)
async def get_product(product_id: str, db: AsyncSession = Depends(get_db)):
    snapshot = await load_snapshot(db)
    product = snapshot.product(product_id)
    if product is None:
        raise HTTPException(status_code=404, detail="Product not found.")
    return _product_out(product, snapshot)


@router.post("/products", response_model=ProductOut, status_code=status.HTTP_201_CREATED)
async def create_product(
    payload: ProductCreate, db: AsyncSession = Depends(get_db), staff: dict = Depends(require_staff)
):
    data = payload.model_dump(exclude_none=True, mode="python")
    if payload.id and await db.get(Product, payload.id) is not None:
        raise HTTPException(status_code=409, detail=f"Product '{payload.id}' already exists.")
    product = Product(**data)
    db.add(product)
    await db.commit()
    logger.info("Product %s (%s) created by %s", product.id, product.name, staff["uid"])

    snapshot = await load_snapshot(db)
    return _product_out(product_to_dict(product), snapshot)
