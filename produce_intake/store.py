"""In-memory reference collaborators: catalog, order store and account status.

The order store optionally persists to a JSON file so orders survive restarts.
"""

from __future__ import annotations

import json
import logging
import uuid
from dataclasses import asdict, fields
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Set

from .catalog import CatalogIndex, validate_new_product
from .domain import (
    CartLine,
    CatalogProduct,
    DeliveryDetails,
    Order,
    OrderStatus,
    PaymentMethod,
    PaymentStatus,
    Unit,
)
from .errors import NotFoundError
from .utils import utc_now

logger = logging.getLogger("pz.store")

TIMESTAMP_FIELDS = ("placed_at", "confirmed_at", "prepared_at", "shipped_at", "delivered_at", "verified_at")


class InMemoryCatalog:
    """Catalog collaborator: a product list that only ever grows."""

    def __init__(self, products: Optional[Iterable[CatalogProduct]] = None) -> None:
        self._products: List[CatalogProduct] = list(products or [])

    def get_all_products(self) -> List[CatalogProduct]:
        return list(self._products)

    def add_product(self, product: CatalogProduct) -> None:
        validate_new_product(product, self._products)
        self._products.append(product)
        logger.info("product_added product_id=%s name=%s", product.id, product.name)

    def snapshot(self) -> CatalogIndex:
        return CatalogIndex(self._products)


class OrderStore:
    """Order-store collaborator; owns every Order instance it creates."""

    def __init__(self, path: Optional[Path] = None, clock: Callable[[], datetime] = utc_now) -> None:
        """Purpose: Initialize the store and hydrate persisted orders if a path is given.
        Inputs/Outputs: Inputs are an optional JSON path and a clock; no return.
        Side Effects / State: Loads orders into memory.
        Dependencies: Calls _load; uses order_from_dict.
        Failure Modes: Corrupt JSON is logged and leaves the store empty.
        If Removed: Checkout has nowhere to place orders and tracking has nothing to show.
        Testing Notes: Create orders with a tmp_path store and reload a second instance.
        """
        # Keep configuration and preload persisted orders if present.
        self._path = path
        self._clock = clock
        self._orders: Dict[str, Order] = {}
        self._load()

    def _load(self) -> None:
        if not self._path or not self._path.exists():
            return
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
        except json.JSONDecodeError:
            logger.error("orders_file_corrupt path=%s", self._path)
            return
        for raw in data.get("orders", []):
            order = order_from_dict(raw)
            self._orders[order.id] = order
        logger.info("orders_loaded path=%s count=%d", self._path, len(self._orders))

    def _persist(self) -> None:
        """Purpose: Write every order to the JSON file.
        Inputs/Outputs: Writes to self._path; no return value.
        Side Effects / State: Overwrites the JSON file.
        Dependencies: order_to_dict and Path.write_text.
        Failure Modes: IO errors raise to the caller (not caught here).
        If Removed: Orders vanish on restart.
        Testing Notes: Ensure timestamps round-trip as ISO-8601 strings.
        """
        # Serialize current orders to disk for persistence.
        if not self._path:
            return
        payload = {"orders": [order_to_dict(order) for order in self._orders.values()]}
        self._path.write_text(json.dumps(payload, ensure_ascii=False, indent=2), encoding="utf-8")

    def create_order(self, buyer_id: str, lines: Iterable[CartLine], total: float) -> Order:
        """Assign an id, set status PENDING and confirmed_at to now, and persist.

        A failed write removes the order again before the error propagates.
        """
        now = self._clock()
        order = Order(
            id=f"o-{uuid.uuid4().hex[:12]}",
            buyer_id=buyer_id,
            lines=list(lines),
            total_amount=total,
            placed_at=now,
            status=OrderStatus.PENDING,
            confirmed_at=now,
        )
        self._orders[order.id] = order
        try:
            self._persist()
        except Exception:
            logger.exception("order_create_failed order=%s buyer=%s", order.id, buyer_id)
            del self._orders[order.id]
            raise
        logger.info("order_created order=%s buyer=%s lines=%d", order.id, buyer_id, len(order.lines))
        return order

    def get_orders(self, buyer_id: str) -> List[Order]:
        return [order for order in self._orders.values() if order.buyer_id == buyer_id]

    def get_order(self, order_id: str) -> Order:
        order = self._orders.get(order_id)
        if order is None:
            raise NotFoundError("Order does not exist", {"order_id": order_id})
        return order

    def save(self, order: Order) -> None:
        if order.id not in self._orders:
            raise NotFoundError("Order does not exist", {"order_id": order.id})
        self._persist()

    def restore(self, snapshot: Order) -> None:
        """Put a stored order back to an earlier copy of itself, in place."""
        order = self.get_order(snapshot.id)
        for item in fields(Order):
            setattr(order, item.name, getattr(snapshot, item.name))
        logger.warning("order_restored order=%s status=%s", order.id, order.status.value)

    def discard(self, order_id: str) -> None:
        # Only used to undo a create when the rest of checkout fails.
        self._orders.pop(order_id, None)
        self._persist()


class AccountStatusService:
    """Account-status collaborator: restricted when flagged or when any order is overdue."""

    def __init__(self, orders: OrderStore, restricted: Optional[Iterable[str]] = None) -> None:
        self._orders = orders
        self._restricted: Set[str] = set(restricted or [])

    def restrict(self, buyer_id: str) -> None:
        self._restricted.add(buyer_id)

    def clear(self, buyer_id: str) -> None:
        self._restricted.discard(buyer_id)

    def has_outstanding_invoices(self, buyer_id: str) -> bool:
        if buyer_id in self._restricted:
            return True
        return any(order.payment_status is PaymentStatus.OVERDUE for order in self._orders.get_orders(buyer_id))


def order_to_dict(order: Order) -> Dict[str, Any]:
    data = asdict(order)
    data["status"] = order.status.value
    data["payment_method"] = order.payment_method.value
    data["payment_status"] = order.payment_status.value
    data["lines"] = [
        {"product_id": line.product_id, "quantity": line.quantity, "unit_price": line.unit_price, "unit": line.unit.value}
        for line in order.lines
    ]
    for name in TIMESTAMP_FIELDS:
        value = getattr(order, name)
        data[name] = value.isoformat() if value else None
    return data


def order_from_dict(raw: Dict[str, Any]) -> Order:
    stamps = {
        name: datetime.fromisoformat(raw[name]) if raw.get(name) else None for name in TIMESTAMP_FIELDS
    }
    return Order(
        id=raw["id"],
        buyer_id=raw["buyer_id"],
        lines=[
            CartLine(
                product_id=line["product_id"],
                quantity=float(line["quantity"]),
                unit_price=float(line["unit_price"]),
                unit=Unit.parse(line.get("unit")),
            )
            for line in raw.get("lines", [])
        ],
        total_amount=float(raw.get("total_amount", 0.0)),
        status=OrderStatus(raw.get("status", OrderStatus.PENDING.value)),
        payment_method=PaymentMethod(raw.get("payment_method", PaymentMethod.INVOICE.value)),
        payment_status=PaymentStatus(raw.get("payment_status", PaymentStatus.UNPAID.value)),
        is_fully_verified=bool(raw.get("is_fully_verified", False)),
        delivery=DeliveryDetails(**(raw.get("delivery") or {})),
        **stamps,
    )
