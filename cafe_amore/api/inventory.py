"""
Cafe Amore — Inventory API (staff)

Stock corrections are atomic, version-guarded increments; quantities are
never overwritten blindly.
"""
import logging
from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from cafe_amore.api.deps import DOMAIN_ERRORS, http_error, require_staff
from cafe_amore.db.database import get_db
from cafe_amore.db.stock_ops import adjust_inventory
from cafe_amore.models.inventory import InventoryItem, stock_status
from cafe_amore.schemas.catalog import AdjustRequest, InventoryItemCreate, InventoryItemOut
from cafe_amore.services.notifier import publish_inventory_change

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/inventory", tags=["inventory"])


def _item_out(item: InventoryItem) -> InventoryItemOut:
    return InventoryItemOut(
        id=item.id,
        name=item.name,
        category=item.category,
        unit=item.unit,
        quantity=item.quantity,
        active=item.active,
        version_id=item.version_id,
        stock_status=stock_status(item),
        updated_at=item.updated_at,
    )


@router.get("", response_model=list[InventoryItemOut])
async def list_inventory(
    category: str | None = None, db: AsyncSession = Depends(get_db), staff: dict = Depends(require_staff)
):
    stmt = select(InventoryItem).order_by(InventoryItem.category, InventoryItem.name)
    if category:
        stmt = stmt.where(InventoryItem.category == category)
    items = (await db.execute(stmt)).scalars().all()
    return [_item_out(i) for i in items]


@router.post("", response_model=InventoryItemOut, status_code=status.HTTP_201_CREATED)
async def create_inventory_item(
    payload: InventoryItemCreate, db: AsyncSession = Depends(get_db), staff: dict = Depends(require_staff)
):
    if payload.id and await db.get(InventoryItem, payload.id) is not None:
        raise HTTPException(status_code=409, detail=f"Inventory item '{payload.id}' already exists.")
    data = payload.model_dump(exclude_none=True)
    data["category"] = payload.category.value
    item = InventoryItem(**data)
    db.add(item)
    await db.commit()
    await db.refresh(item)
    logger.info("Inventory item %s (%s) created with %d %s", item.id, item.name, item.quantity, item.unit)
    await publish_inventory_change([item.id])
    return _item_out(item)


@router.post("/{inventory_id}/adjust", response_model=InventoryItemOut)
async def adjust_inventory_item(
    inventory_id: str,
    payload: AdjustRequest,
    db: AsyncSession = Depends(get_db),
    staff: dict = Depends(require_staff),
):
    try:
        item = await adjust_inventory(db, inventory_id, payload.delta, reason=payload.reason)
    except (LookupError, *DOMAIN_ERRORS) as exc:
        raise http_error(exc)
    await publish_inventory_change([item.id])
    return _item_out(item)
