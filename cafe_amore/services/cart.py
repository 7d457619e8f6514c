"""
Cafe Amore — Cart store

Signed-in carts are rows in cart_lines; guest carts are a JSON list in Redis
under GUEST_CART_PREFIX + guest id (the server-side stand-in for the device's
local storage). Both hold the same line dicts.

Two lines are "the same" when their canonical key matches:
    product_id | size_id | sorted add-on ids
"""
import json
import logging
import uuid
from dataclasses import dataclass
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from cafe_amore.core.config import get_settings
from cafe_amore.models.cart import CartLine
from cafe_amore.services.catalog import CatalogSnapshot
from cafe_amore.services.notifier import publish_cart_change
from cafe_amore.services.stock import line_stock

settings = get_settings()
logger = logging.getLogger(__name__)

MERGE_MARKER_PREFIX = "guest_cart_merged:"


class CartError(ValueError):
    pass


class CartLineNotFound(LookupError):
    pass


@dataclass(frozen=True)
class CartOwner:
    user_id: str | None = None
    guest_id: str | None = None

    @property
    def is_guest(self) -> bool:
        return self.user_id is None

    @property
    def key(self) -> str:
        return self.user_id or f"guest:{self.guest_id}"


def canonical_line_key(product_id: str, size_id: str | None, addon_ids) -> str:
    return f"{product_id}|{size_id or ''}|{','.join(sorted(a for a in addon_ids if a))}"


def _components(items) -> list[dict]:
    return [{"id": c.get("id"), "qty": c.get("qty") or 1} for c in items or () if c.get("id")]


def build_line(
    product: dict[str, Any],
    size_id: str | None,
    addon_ids: list[str],
    quantity: int,
    snapshot: CatalogSnapshot,
) -> dict[str, Any]:
    """Price and snapshot one product configuration as a cart line dict."""
    sizes = product.get("sizes") or []
    size = next((s for s in sizes if s.get("id") == size_id), None)
    if not sizes:
        raise CartError(f"{product['name']} has no sizes configured and cannot be ordered.")
    if size is None:
        raise CartError(f"Select a valid size for {product['name']}.")

    offered = {a["id"]: a for a in (product.get("addons") or []) if a.get("id")}
    offered.update({a["id"]: a for a in (size.get("addons") or []) if a.get("id")})

    addons = []
    for addon_id in addon_ids:
        addon = offered.get(addon_id)
        if addon is None:
            raise CartError(f"Add-on '{addon_id}' is not offered for {product['name']}.")
        nested = snapshot.inventory_item(addon_id)
        addons.append({
            "id": addon_id,
            "name": addon.get("name") or (nested.name if nested else addon_id),
            "price": int(addon.get("price") or 0),
            "qty": addon.get("qty") or 1,
            "ingredients": _components(nested.ingredients) if nested else [],
            "others": _components(nested.others) if nested else [],
        })

    base_price = int(product.get("price") or 0)
    size_price = int(size.get("price") or 0)
    addons_price = sum(a["price"] for a in addons)
    unit_price = base_price + size_price + addons_price

    return {
        "product_id": product["id"],
        "name": product.get("name") or "Unnamed Product",
        "image": product.get("image"),
        "base_price": base_price,
        "size_price": size_price,
        "addons_price": addons_price,
        "unit_price": unit_price,
        "total_price": unit_price * quantity,
        "quantity": quantity,
        "size": size.get("name"),
        "size_id": size["id"],
        "size_qty": size.get("qty") or 1,
        "size_ingredients": _components(size.get("ingredients")),
        "size_others": _components(size.get("others")),
        "addons": addons,
        "ingredients": _components(product.get("ingredients")),
        "others": _components(product.get("others")),
        "line_key": canonical_line_key(product["id"], size["id"], addon_ids),
    }


def _reprice(line: dict[str, Any], quantity: int) -> None:
    unit = int(line.get("base_price", 0)) + int(line.get("size_price", 0)) + int(line.get("addons_price", 0))
    line["unit_price"] = unit
    line["quantity"] = quantity
    line["total_price"] = unit * quantity


class CartStore:
    def __init__(self, db: AsyncSession, redis, snapshot: CatalogSnapshot):
        self.db = db
        self.redis = redis
        self.snapshot = snapshot

    # ── Guest storage (Redis) ──────────────────────────────────────────────
    @staticmethod
    def _guest_key(guest_id: str) -> str:
        return f"{settings.GUEST_CART_PREFIX}{guest_id}"

    async def _load_guest(self, guest_id: str) -> list[dict[str, Any]]:
        raw = await self.redis.get(self._guest_key(guest_id))
        if not raw:
            return []
        try:
            lines = json.loads(raw)
        except ValueError:
            logger.warning("Discarding unreadable guest cart %s", guest_id)
            return []
        return lines if isinstance(lines, list) else []

    async def _save_guest(self, guest_id: str, lines: list[dict[str, Any]]) -> None:
        await self.redis.setex(self._guest_key(guest_id), settings.GUEST_CART_TTL_SECONDS, json.dumps(lines))

    # ── Persisted storage (DB) ─────────────────────────────────────────────
    async def _rows(self, user_id: str) -> list[CartLine]:
        result = await self.db.execute(
            select(CartLine).where(CartLine.owner_id == user_id).order_by(CartLine.added_at, CartLine.id)
        )
        return list(result.scalars().all())

    async def _row(self, user_id: str, line_id: str) -> CartLine:
        row = await self.db.get(CartLine, line_id)
        if row is None or row.owner_id != user_id:
            raise CartLineNotFound(f"Cart item '{line_id}' not found.")
        return row

    # ── Operations ─────────────────────────────────────────────────────────
    async def lines(self, owner: CartOwner) -> list[dict[str, Any]]:
        if owner.is_guest:
            return await self._load_guest(owner.guest_id)
        return [row.to_dict() for row in await self._rows(owner.user_id)]

    async def add_item(
        self, owner: CartOwner, product_id: str, size_id: str | None, addon_ids: list[str], quantity: int = 1
    ) -> dict[str, Any]:
        if quantity < 1:
            raise CartError("Quantity must be at least 1.")
        product = self.snapshot.product(product_id)
        if product is None:
            raise CartError(f"Product '{product_id}' not found.")
        if product.get("available") is False:
            raise CartError(f"{product['name']} is currently unavailable.")

        new_line = build_line(product, size_id, addon_ids, quantity, self.snapshot)
        if not line_stock(new_line, self.snapshot).is_available:
            raise CartError(f"{product['name']} is currently out of stock.")

        if owner.is_guest:
            lines = await self._load_guest(owner.guest_id)
            match = next((l for l in lines if l.get("line_key") == new_line["line_key"]), None)
            if match:
                _reprice(match, int(match["quantity"]) + quantity)
                line = match
            else:
                line = {"id": str(uuid.uuid4()), **new_line}
                lines.append(line)
            await self._save_guest(owner.guest_id, lines)
        else:
            row = (await self.db.execute(
                select(CartLine).where(
                    CartLine.owner_id == owner.user_id, CartLine.line_key == new_line["line_key"]
                )
            )).scalars().first()
            if row is not None:
                row.quantity = row.quantity + quantity
                row.unit_price = row.base_price + row.size_price + row.addons_price
                row.total_price = row.unit_price * row.quantity
            else:
                row = CartLine(owner_id=owner.user_id, **new_line)
                self.db.add(row)
            await self.db.commit()
            line = row.to_dict()

        logger.info("Cart %s: %s x%d (%s)", owner.key, line["name"], line["quantity"], line["line_key"])
        await publish_cart_change(owner.key)
        return line

    async def set_quantity(self, owner: CartOwner, line_id: str, quantity: int) -> dict[str, Any]:
        """Clamp to [1, available] and reprice."""
        if owner.is_guest:
            lines = await self._load_guest(owner.guest_id)
            line = next((l for l in lines if l.get("id") == line_id), None)
            if line is None:
                raise CartLineNotFound(f"Cart item '{line_id}' not found.")
            _reprice(line, self._clamp(line, quantity))
            await self._save_guest(owner.guest_id, lines)
        else:
            row = await self._row(owner.user_id, line_id)
            row.quantity = self._clamp(row.to_dict(), quantity)
            row.unit_price = row.base_price + row.size_price + row.addons_price
            row.total_price = row.unit_price * row.quantity
            await self.db.commit()
            line = row.to_dict()

        await publish_cart_change(owner.key)
        return line

    def _clamp(self, line: dict[str, Any], quantity: int) -> int:
        available = line_stock(line, self.snapshot).available_quantity
        return max(1, min(int(quantity), available))

    async def remove_item(self, owner: CartOwner, line_id: str) -> None:
        if owner.is_guest:
            lines = await self._load_guest(owner.guest_id)
            kept = [l for l in lines if l.get("id") != line_id]
            if len(kept) == len(lines):
                raise CartLineNotFound(f"Cart item '{line_id}' not found.")
            await self._save_guest(owner.guest_id, kept)
        else:
            row = await self._row(owner.user_id, line_id)
            await self.db.delete(row)
            await self.db.commit()
        await publish_cart_change(owner.key)

    async def merge_guest_cart(self, user_id: str, guest_id: str) -> list[dict[str, Any]]:
        """
        Fold a guest cart into the user's persisted cart, summing matching
        lines. Runs at most once per (user, guest) sign-in: a Redis marker is
        taken before the merge and released only if the merge fails.
        """
        marker = f"{MERGE_MARKER_PREFIX}{user_id}:{guest_id}"
        if not await self.redis.set(marker, "1", ex=settings.GUEST_CART_TTL_SECONDS, nx=True):
            logger.info("Guest cart %s already merged into %s", guest_id, user_id)
            return await self.lines(CartOwner(user_id=user_id))

        guest_lines = await self._load_guest(guest_id)
        try:
            rows = {row.line_key: row for row in await self._rows(user_id)}
            for guest in guest_lines:
                row = rows.get(guest.get("line_key"))
                qty = int(guest.get("quantity") or 1)
                if row is not None:
                    row.quantity = row.quantity + qty
                    row.unit_price = row.base_price + row.size_price + row.addons_price
                    row.total_price = row.unit_price * row.quantity
                else:
                    payload = {k: v for k, v in guest.items() if k not in ("id", "available", "available_quantity")}
                    _reprice(payload, qty)
                    row = CartLine(owner_id=user_id, **payload)
                    self.db.add(row)
                    rows[row.line_key] = row
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            await self.redis.delete(marker)
            raise

        await self.redis.delete(self._guest_key(guest_id))
        logger.info("Merged %d guest cart line(s) from %s into %s", len(guest_lines), guest_id, user_id)
        await publish_cart_change(user_id)
        return await self.lines(CartOwner(user_id=user_id))

    def render(
        self, lines: list[dict[str, Any]], selected_ids: list[str] | None = None, delivery_fee: int = 0
    ) -> dict[str, Any]:
        """Render state: lines with live availability, totals for the selection."""
        selected = set(selected_ids or [])
        rendered = []
        for line in lines:
            stock = line_stock(line, self.snapshot)
            rendered.append({
                **line,
                "available": stock.is_available and stock.available_quantity >= int(line.get("quantity") or 1),
                "available_quantity": stock.available_quantity,
                "selected": line.get("id") in selected,
            })
        subtotal = sum(int(l["total_price"]) for l in rendered if l["selected"])
        fee = delivery_fee if selected and subtotal else 0
        return {
            "lines": rendered,
            "item_count": sum(int(l.get("quantity") or 0) for l in rendered),
            "subtotal": subtotal,
            "delivery_fee": fee,
            "total": subtotal + fee,
        }
