"""Pricing Engine: checkout totals and two-tier invoice comparison pricing.

Amounts are kept at full float precision; ``money``/``format_money`` round only
when a value is presented or serialized.
"""

from __future__ import annotations

import math
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional

from .domain import CartLine, PaymentMethod, PriceComparisonLine
from .errors import ValidationError
from .utils import format_money, money

PAY_NOW_DISCOUNT = 0.10


def validate_amount(value: Any, field_name: str) -> float:
    """Return value as a float when it is a finite, non-negative number; otherwise raise."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValidationError(f"{field_name} must be a number", {"field": field_name, "value": value})
    number = float(value)
    if not math.isfinite(number):
        raise ValidationError(f"{field_name} must be finite", {"field": field_name, "value": value})
    if number < 0:
        raise ValidationError(f"{field_name} must not be negative", {"field": field_name, "value": value})
    return number


def validate_percent(value: Any, field_name: str, maximum: Optional[float] = None) -> float:
    number = validate_amount(value, field_name)
    if maximum is not None and number > maximum:
        raise ValidationError(
            f"{field_name} must not exceed {maximum:g}", {"field": field_name, "value": value}
        )
    return number


@dataclass(frozen=True)
class CheckoutTotals:
    subtotal: float
    discount: float
    total: float
    payment_method: PaymentMethod
    discount_rate: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "subtotal": money(self.subtotal),
            "discount": money(self.discount),
            "total": money(self.total),
            "total_display": format_money(self.total),
            "payment_method": self.payment_method.value,
            "discount_rate": self.discount_rate,
        }


class PricingEngine:
    """Stateless price calculations for checkout and invoice comparison."""

    def __init__(self, pay_now_discount: float = PAY_NOW_DISCOUNT) -> None:
        self._pay_now_discount = validate_percent(pay_now_discount, "pay_now_discount", maximum=1.0)

    def checkout_totals(self, lines: Iterable[CartLine], payment_method: PaymentMethod) -> CheckoutTotals:
        """Purpose: Compute subtotal, pay-now discount and total for a cart.
        Inputs/Outputs: Inputs are cart lines and a PaymentMethod; output is CheckoutTotals.
        Side Effects / State: None.
        Dependencies: validate_amount for every quantity and unit price.
        Failure Modes: ValidationError on negative/non-numeric quantity or price, or an
            unknown payment method.
        If Removed: Checkout and quote endpoints cannot price a cart.
        Testing Notes: 100 KG @ 1.20 + 5 KG @ 3.00 with pay_now -> 135.00 / 13.50 / 121.50.
        """
        # Sum full-precision line totals, then apply the discount only for pay-now.
        if not isinstance(payment_method, PaymentMethod):
            raise ValidationError("Unknown payment method", {"payment_method": payment_method})
        subtotal = 0.0
        for line in lines:
            quantity = validate_amount(line.quantity, "quantity")
            unit_price = validate_amount(line.unit_price, "unit_price")
            subtotal += quantity * unit_price
        rate = self._pay_now_discount if payment_method is PaymentMethod.PAY_NOW else 0.0
        discount = subtotal * rate
        return CheckoutTotals(
            subtotal=subtotal,
            discount=discount,
            total=subtotal - discount,
            payment_method=payment_method,
            discount_rate=rate,
        )

    @staticmethod
    def customer_target_price(invoice_price: float, customer_savings_percent: float) -> float:
        price = validate_amount(invoice_price, "invoice_price")
        percent = validate_percent(customer_savings_percent, "customer_savings_percent", maximum=100.0)
        return price * (1 - percent / 100)

    @staticmethod
    def wholesale_target_price(invoice_price: float, wholesale_target_percent: float) -> float:
        price = validate_amount(invoice_price, "invoice_price")
        percent = validate_percent(wholesale_target_percent, "wholesale_target_percent")
        return price * (percent / 100)


@dataclass(frozen=True)
class PricedComparisonLine:
    line: PriceComparisonLine
    customer_target_price: float
    wholesale_target_price: float

    @property
    def current_spend(self) -> float:
        return self.line.quantity * self.line.invoice_price

    @property
    def customer_spend(self) -> float:
        return self.line.quantity * self.customer_target_price

    @property
    def savings(self) -> float:
        return self.current_spend - self.customer_spend

    def to_dict(self) -> Dict[str, Any]:
        return {
            "product_id": self.line.product_id,
            "product_name": self.line.product_name,
            "quantity": self.line.quantity,
            "invoice_price": money(self.line.invoice_price),
            "customer_target_price": money(self.customer_target_price),
            "wholesale_target_price": money(self.wholesale_target_price),
            "savings": money(self.savings),
        }


@dataclass
class ComparisonSheet:
    """Back-office price comparison for one prospective customer.

    Percentages may change at any time; every read recomputes the derived prices.
    """
    customer_context: str
    customer_location: str = ""
    lines: List[PriceComparisonLine] = field(default_factory=list)
    customer_savings_percent: float = 30.0
    wholesale_target_percent: float = 55.0
    id: str = field(default_factory=lambda: uuid.uuid4().hex)

    def __post_init__(self) -> None:
        self.set_percentages(self.customer_savings_percent, self.wholesale_target_percent)
        for line in self.lines:
            validate_amount(line.invoice_price, "invoice_price")
            validate_amount(line.quantity, "quantity")

    def set_percentages(self, customer_savings_percent: float, wholesale_target_percent: float) -> None:
        # Validate both before assigning either.
        customer = validate_percent(customer_savings_percent, "customer_savings_percent", maximum=100.0)
        wholesale = validate_percent(wholesale_target_percent, "wholesale_target_percent")
        self.customer_savings_percent = customer
        self.wholesale_target_percent = wholesale

    def priced_lines(self) -> List[PricedComparisonLine]:
        return [
            PricedComparisonLine(
                line=line,
                customer_target_price=PricingEngine.customer_target_price(
                    line.invoice_price, self.customer_savings_percent
                ),
                wholesale_target_price=PricingEngine.wholesale_target_price(
                    line.invoice_price, self.wholesale_target_percent
                ),
            )
            for line in self.lines
        ]

    def totals(self) -> Dict[str, float]:
        """Aggregate spend at invoice and customer-target prices; savings is their difference."""
        priced = self.priced_lines()
        current = sum(p.current_spend for p in priced)
        customer = sum(p.customer_spend for p in priced)
        return {
            "current_spend": current,
            "customer_spend": customer,
            "savings": current - customer,
        }

    def to_dict(self) -> Dict[str, Any]:
        totals = self.totals()
        return {
            "id": self.id,
            "customer_context": self.customer_context,
            "customer_location": self.customer_location,
            "customer_savings_percent": self.customer_savings_percent,
            "wholesale_target_percent": self.wholesale_target_percent,
            "lines": [p.to_dict() for p in self.priced_lines()],
            "totals": {key: money(value) for key, value in totals.items()},
        }
