"""
Cafe Amore — Stock calculator

Pure functions over a CatalogSnapshot. A line item (cart line or order line
snapshot, as a dict) depends on a set of inventory components; how many units
of it can be made is the bottleneck across those components:

    available = min(floor(item.quantity / per_unit_qty))

Missing or inactive inventory makes the line unavailable, and a line with no
constrained component at all reports zero: absent data always under-sells.
"""
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from datetime import date
from typing import Any

from cafe_amore.services.catalog import CatalogSnapshot


@dataclass(frozen=True)
class StockResult:
    available_quantity: int
    is_available: bool
    requested: int = 1

    @property
    def fulfils(self) -> bool:
        return self.is_available and self.available_quantity >= self.requested


@dataclass
class SizeAvailability:
    id: str
    name: str
    price: int
    stock: int
    available: bool


@dataclass
class ProductAvailability:
    product_id: str
    available: bool
    stock: int
    in_season: bool
    sizes: list[SizeAvailability] = field(default_factory=list)


def _per_unit(qty: Any) -> int:
    try:
        value = int(qty)
    except (TypeError, ValueError):
        return 1
    return value if value > 0 else 1


def _add(req: dict[str, int], component_id: str | None, qty: Any) -> None:
    if not component_id:
        return
    req[component_id] = req.get(component_id, 0) + _per_unit(qty)


def _add_components(req: dict[str, int], components: Iterable[Mapping] | None) -> None:
    for comp in components or ():
        _add(req, comp.get("id"), comp.get("qty"))


def line_requirements(line: Mapping[str, Any]) -> dict[str, int]:
    """Inventory consumed by ONE unit of a line item, keyed by inventory id."""
    req: dict[str, int] = {}
    _add_components(req, line.get("ingredients"))
    _add_components(req, line.get("others"))
    if line.get("size_id"):
        _add(req, line["size_id"], line.get("size_qty"))
        _add_components(req, line.get("size_ingredients"))
        _add_components(req, line.get("size_others"))
    for addon in line.get("addons") or ():
        _add(req, addon.get("id"), addon.get("qty"))
        _add_components(req, addon.get("ingredients"))
        _add_components(req, addon.get("others"))
    return req


def line_quantity(line: Mapping[str, Any]) -> int:
    return _per_unit(line.get("quantity", line.get("qty")))


def total_requirements(lines: Iterable[Mapping[str, Any]]) -> dict[str, int]:
    """Union of requirements across lines, each scaled by its quantity."""
    totals: dict[str, int] = {}
    for line in lines:
        qty = line_quantity(line)
        for inv_id, per_unit in line_requirements(line).items():
            totals[inv_id] = totals.get(inv_id, 0) + per_unit * qty
    return totals


def calculate(requirements: Mapping[str, int], snapshot: CatalogSnapshot, quantity: int = 1) -> StockResult:
    if not requirements:
        return StockResult(0, False, quantity)

    available: int | None = None
    for inv_id, per_unit in requirements.items():
        item = snapshot.inventory_item(inv_id)
        if item is None or not item.active:
            return StockResult(0, False, quantity)
        capacity = max(item.quantity, 0) // _per_unit(per_unit)
        available = capacity if available is None else min(available, capacity)

    available = available or 0
    return StockResult(available, available > 0, quantity)


def line_stock(line: Mapping[str, Any], snapshot: CatalogSnapshot) -> StockResult:
    """Stock for a cart/order line; the owning product must still be orderable."""
    product = snapshot.product(line.get("product_id"))
    if product is None or not product.get("available", True) or not in_season(product):
        return StockResult(0, False, line_quantity(line))
    if not product.get("sizes"):
        # Same rule as product_availability: nothing to price or consume
        return StockResult(0, False, line_quantity(line))
    return calculate(line_requirements(line), snapshot, line_quantity(line))


def in_season(product: Mapping[str, Any], today: date | None = None) -> bool:
    today = today or date.today()
    start, end = product.get("season_start"), product.get("season_end")
    if start and today < start:
        return False
    if end and today > end:
        return False
    return True


def size_requirements(product: Mapping[str, Any], size: Mapping[str, Any]) -> dict[str, int]:
    return line_requirements({
        "ingredients": product.get("ingredients"),
        "others": product.get("others"),
        "size_id": size.get("id"),
        "size_qty": size.get("qty"),
        "size_ingredients": size.get("ingredients"),
        "size_others": size.get("others"),
    })


def product_availability(
    product: Mapping[str, Any], snapshot: CatalogSnapshot, today: date | None = None
) -> ProductAvailability:
    """
    Per-size stock for a catalog product. The product's stock is the best
    size's stock; with no sizes configured there is no way to price or
    consume it, so it is out of stock.
    """
    season_ok = in_season(product, today)
    orderable = bool(product.get("available", True)) and season_ok

    sizes: list[SizeAvailability] = []
    for size in product.get("sizes") or ():
        result = calculate(size_requirements(product, size), snapshot) if orderable else StockResult(0, False)
        sizes.append(SizeAvailability(
            id=size.get("id"),
            name=size.get("name", ""),
            price=int(size.get("price") or 0),
            stock=result.available_quantity,
            available=result.is_available,
        ))

    stock = max((s.stock for s in sizes if s.available), default=0)
    return ProductAvailability(
        product_id=product.get("id"),
        available=orderable and stock > 0,
        stock=stock,
        in_season=season_ok,
        sizes=sizes,
    )
