"""Cart Normalizer: pure functions over carts (tuples of CartLine).

A cart never holds two lines with the same (product_id, unit) key and never
holds a line with a non-positive quantity. Nothing here touches the catalog or
the pricing engine; every function returns a new tuple.
"""

from __future__ import annotations

from dataclasses import replace
from typing import Dict, Iterable, Optional, Set, Tuple

from .domain import CartLine, CatalogProduct, Order, Unit
from .errors import ValidationError

Cart = Tuple[CartLine, ...]
LineKey = Tuple[str, Unit]


def merge_lines(cart: Iterable[CartLine], new_lines: Iterable[CartLine]) -> Cart:
    """Sum quantities of lines sharing a key; unseen keys are appended in arrival order.

    The line already in the cart keeps its unit price.
    """
    merged: Dict[LineKey, CartLine] = {}
    for line in list(cart) + list(new_lines):
        existing = merged.get(line.key)
        if existing is None:
            merged[line.key] = line
        else:
            merged[line.key] = replace(existing, quantity=existing.quantity + line.quantity)
    return tuple(line for line in merged.values() if line.quantity > 0)


def adjust_quantity(cart: Iterable[CartLine], product_id: str, unit: Unit, delta: float) -> Cart:
    """Add delta to one line; dropping to zero or below removes the line."""
    out = []
    found = False
    for line in cart:
        if line.key == (product_id, unit):
            found = True
            quantity = line.quantity + delta
            if quantity > 0:
                out.append(replace(line, quantity=quantity))
            continue
        out.append(line)
    if not found:
        raise ValidationError("Cart line does not exist", {"product_id": product_id, "unit": unit.value})
    return tuple(out)


def set_quantity(cart: Iterable[CartLine], product_id: str, unit: Unit, quantity: float) -> Cart:
    lines = tuple(cart)
    current = next((line for line in lines if line.key == (product_id, unit)), None)
    if current is None:
        raise ValidationError("Cart line does not exist", {"product_id": product_id, "unit": unit.value})
    return adjust_quantity(lines, product_id, unit, quantity - current.quantity)


def remove_line(cart: Iterable[CartLine], product_id: str, unit: Unit) -> Cart:
    return tuple(line for line in cart if line.key != (product_id, unit))


def prepare_reorder(
    order: Order,
    adjustments: Optional[Dict[LineKey, float]] = None,
    removals: Optional[Set[LineKey]] = None,
) -> Cart:
    """Copy a historical order's lines for re-ordering.

    ``adjustments`` replaces the quantity of a line, ``removals`` drops lines;
    anything left at zero or below disappears. Duplicate keys in old orders are
    collapsed through merge_lines.
    """
    adjustments = adjustments or {}
    removals = removals or set()
    lines = []
    for line in order.lines:
        if line.key in removals:
            continue
        quantity = adjustments.get(line.key, line.quantity)
        lines.append(replace(line, quantity=quantity))
    return merge_lines((), lines)


def environmental_impact(cart: Iterable[CartLine], products: Dict[str, CatalogProduct]) -> Dict[str, float]:
    """CO2 avoided, water saved and waste diverted for a cart, using per-kg catalog metrics."""
    totals = {"co2_kg": 0.0, "water_litres": 0.0, "waste_kg": 0.0}
    for line in cart:
        product = products.get(line.product_id)
        if product is None:
            continue
        totals["co2_kg"] += line.quantity * product.co2_savings_per_kg
        totals["water_litres"] += line.quantity * product.water_savings_per_kg
        totals["waste_kg"] += line.quantity * product.waste_diverted_per_kg
    return totals
