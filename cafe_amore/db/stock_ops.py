"""
Cafe Amore — Inventory deduction/return with optimistic locking
"""
import logging
from collections.abc import Mapping
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, update, func

from cafe_amore.models.inventory import InventoryItem, StockMovement
from cafe_amore.core.optimistic_lock import StaleDataError, with_optimistic_retry

logger = logging.getLogger(__name__)


class InsufficientStockError(ValueError):
    """One or more components cannot cover the requested deduction."""

    def __init__(
        self,
        shortages: dict[str, tuple[int, int]],
        names: dict[str, str] | None = None,
        message: str | None = None,
    ):
        self.shortages = shortages
        names = names or {}
        details = ", ".join(
            f"'{names.get(inv_id, inv_id)}': requested={needed}, available={available}"
            for inv_id, (needed, available) in shortages.items()
        )
        super().__init__(message or f"Insufficient stock for {details}")


async def apply_inventory_deltas(
    db: AsyncSession,
    deltas: Mapping[str, int],
    order_id: str | None,
    reason: str,
) -> dict[str, int]:
    """
    Apply signed per-item deltas (negative = deduct, positive = return) inside
    the caller's transaction. Does NOT commit.

    Every component is validated first, then updated with:
      UPDATE inventory SET quantity = quantity + :delta, version_id = version_id + 1
      WHERE id = :id AND version_id = <read_version> AND quantity + :delta >= 0
    Zero rows updated means a concurrent writer won the race → StaleDataError,
    and the caller's retry decorator re-runs the whole unit of work.

    Returns the remaining quantity per touched item.
    """
    ids = sorted(inv_id for inv_id, delta in deltas.items() if inv_id and delta)
    if not ids:
        return {}

    rows = (
        await db.execute(
            select(InventoryItem)
            .where(InventoryItem.id.in_(ids))
            .execution_options(populate_existing=True)
        )
    ).scalars().all()
    by_id = {row.id: row for row in rows}

    shortages: dict[str, tuple[int, int]] = {}
    for inv_id in ids:
        delta = deltas[inv_id]
        row = by_id.get(inv_id)
        if delta >= 0:
            continue
        if row is None or not row.active:
            shortages[inv_id] = (-delta, 0)
        elif row.quantity + delta < 0:
            shortages[inv_id] = (-delta, row.quantity)
    if shortages:
        raise InsufficientStockError(shortages, {r.id: r.name for r in rows})

    remaining: dict[str, int] = {}
    for inv_id in ids:  # fixed id order keeps concurrent writers from deadlocking
        delta = deltas[inv_id]
        row = by_id.get(inv_id)
        if row is None:
            logger.warning("Cannot return %d to missing inventory item %s; skipped", delta, inv_id)
            continue

        result = await db.execute(
            update(InventoryItem)
            .where(
                InventoryItem.id == inv_id,
                InventoryItem.version_id == row.version_id,
                InventoryItem.quantity + delta >= 0,
            )
            .values(
                quantity=InventoryItem.quantity + delta,
                version_id=InventoryItem.version_id + 1,
                updated_at=func.now(),
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            raise StaleDataError(f"Optimistic lock conflict: inventory '{inv_id}' changed concurrently.")

        db.add(StockMovement(inventory_id=inv_id, order_id=order_id, delta=delta, reason=reason))
        remaining[inv_id] = row.quantity + delta

    return remaining


@with_optimistic_retry()
async def adjust_inventory(db: AsyncSession, inventory_id: str, delta: int, reason: str = "manual") -> InventoryItem:
    """Staff stock correction: an atomic increment/decrement, never a blind overwrite."""
    item = await db.get(InventoryItem, inventory_id, populate_existing=True)
    if item is None:
        raise LookupError(f"Inventory item '{inventory_id}' not found.")

    await apply_inventory_deltas(db, {inventory_id: delta}, order_id=None, reason=reason)
    await db.commit()
    await db.refresh(item)
    logger.info("Inventory %s adjusted by %d (%s), now %d", inventory_id, delta, reason, item.quantity)
    return item
