"""Core records shared by the intake pipeline, pricing and lifecycle tracking."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import List, Optional, Tuple


class Unit(str, Enum):
    KG = "KG"
    TRAY = "Tray"
    EACH = "Each"
    LOOSE = "Loose"
    BAG = "Bag"

    @classmethod
    def parse(cls, value: object) -> "Unit":
        """Map a loose unit label ("kg", "trays", "bags") onto a Unit; unknown labels become KG."""
        if isinstance(value, Unit):
            return value
        text = str(value or "").strip().lower()
        if len(text) > 2 and text.endswith("s"):
            text = text[:-1]
        for unit in cls:
            if unit.value.lower() == text:
                return unit
        return cls.KG


class PaymentMethod(str, Enum):
    PAY_NOW = "pay_now"
    INVOICE = "invoice"


class PaymentStatus(str, Enum):
    UNPAID = "unpaid"
    PAID = "paid"
    OVERDUE = "overdue"


class OrderStatus(str, Enum):
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    READY_FOR_DELIVERY = "READY_FOR_DELIVERY"
    SHIPPED = "SHIPPED"
    DELIVERED = "DELIVERED"

    @property
    def rank(self) -> int:
        return STATUS_SEQUENCE.index(self)


STATUS_SEQUENCE: Tuple[OrderStatus, ...] = (
    OrderStatus.PENDING,
    OrderStatus.CONFIRMED,
    OrderStatus.READY_FOR_DELIVERY,
    OrderStatus.SHIPPED,
    OrderStatus.DELIVERED,
)

# Order attribute stamped when each status is reached.
STATUS_TIMESTAMP_FIELDS = {
    OrderStatus.CONFIRMED: "confirmed_at",
    OrderStatus.READY_FOR_DELIVERY: "prepared_at",
    OrderStatus.SHIPPED: "shipped_at",
    OrderStatus.DELIVERED: "delivered_at",
}


@dataclass(frozen=True)
class CatalogProduct:
    """Catalog record owned by the catalog collaborator."""
    id: str
    name: str
    variety: str = ""
    category: str = ""
    unit: Unit = Unit.KG
    default_price: float = 0.0
    image_url: str = ""
    co2_savings_per_kg: float = 0.0
    water_savings_per_kg: float = 0.0
    waste_diverted_per_kg: float = 0.0


@dataclass
class ParsedLine:
    """One line of a free-text order as returned by the parsing collaborator."""
    product_name: str
    quantity: float
    unit: Unit = Unit.KG
    is_ambiguous: bool = False
    suggested_product_ids: List[str] = field(default_factory=list)
    selected_product_id: Optional[str] = None


@dataclass(frozen=True)
class CartLine:
    product_id: str
    quantity: float
    unit_price: float
    unit: Unit = Unit.KG

    @property
    def key(self) -> Tuple[str, Unit]:
        return (self.product_id, self.unit)

    @property
    def line_total(self) -> float:
        return self.quantity * self.unit_price


@dataclass
class DeliveryDetails:
    delivery_date: str = ""
    delivery_time: str = ""
    contact_name: str = ""
    location: str = ""


@dataclass
class CheckoutRequest:
    """Explicit checkout payload; validated before any pricing happens."""
    delivery_date: str
    delivery_time: str
    contact_name: str
    payment_method: PaymentMethod = PaymentMethod.INVOICE
    location: str = ""


@dataclass
class Order:
    """Placed order; status and timestamps only ever move forward."""
    id: str
    buyer_id: str
    lines: List[CartLine]
    total_amount: float
    placed_at: datetime
    status: OrderStatus = OrderStatus.PENDING
    payment_method: PaymentMethod = PaymentMethod.INVOICE
    payment_status: PaymentStatus = PaymentStatus.UNPAID
    confirmed_at: Optional[datetime] = None
    prepared_at: Optional[datetime] = None
    shipped_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    verified_at: Optional[datetime] = None
    is_fully_verified: bool = False
    delivery: DeliveryDetails = field(default_factory=DeliveryDetails)


@dataclass
class InvoiceLine:
    """Line extracted from a competitor invoice."""
    name: str
    qty: float
    reference_price: float


@dataclass
class PriceComparisonLine:
    """Invoice line under comparison; target prices are derived, never stored here."""
    product_name: str
    quantity: float
    invoice_price: float
    product_id: Optional[str] = None


@dataclass
class SupplierPriceRequestItem:
    product_id: Optional[str]
    product_name: str
    qty: float
    invoice_price: float
    target_price: float


@dataclass
class SupplierPriceRequest:
    """Sourcing assignment sent to one wholesaler."""
    id: str
    supplier_id: str
    created_at: datetime
    customer_context: str
    customer_location: str
    items: List[SupplierPriceRequestItem] = field(default_factory=list)
    status: str = "PENDING"
