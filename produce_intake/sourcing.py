"""Back-office sourcing: invoice comparison sheets and wholesaler price requests."""

from __future__ import annotations

import logging
import uuid
from datetime import datetime
from typing import Iterable, List, Sequence

from .catalog import CatalogIndex
from .domain import InvoiceLine, PriceComparisonLine, SupplierPriceRequest, SupplierPriceRequestItem
from .errors import ValidationError
from .pricing import ComparisonSheet

logger = logging.getLogger("pz.sourcing")


def build_comparison(
    invoice_lines: Iterable[InvoiceLine],
    catalog: CatalogIndex,
    customer_context: str,
    customer_location: str = "",
    customer_savings_percent: float = 30.0,
    wholesale_target_percent: float = 55.0,
) -> ComparisonSheet:
    """Purpose: Turn extracted invoice lines into a comparison sheet.
    Inputs/Outputs: Inputs are invoice lines, a catalog snapshot, customer context and
        starting percentages; output is a ComparisonSheet.
    Side Effects / State: Logs how many lines matched the catalog.
    Dependencies: CatalogIndex.match_name links a line to a product only on a unique match.
    Failure Modes: ValidationError for a blank customer context or invalid prices/percentages.
    If Removed: Extracted invoices have no way to become a priced comparison.
    Testing Notes: "Roma Tomatoes" links to p1; "Bananas" (two matches) stays unlinked.
    """
    # Unique deterministic match links the product; anything else stays unlinked.
    if not str(customer_context or "").strip():
        raise ValidationError("Customer context is required", {"field": "customer_context"})
    lines: List[PriceComparisonLine] = []
    for item in invoice_lines:
        matches = catalog.match_name(item.name)
        lines.append(
            PriceComparisonLine(
                product_name=item.name,
                quantity=item.qty,
                invoice_price=item.reference_price,
                product_id=matches[0] if len(matches) == 1 else None,
            )
        )
    sheet = ComparisonSheet(
        customer_context=customer_context.strip(),
        customer_location=customer_location,
        lines=lines,
        customer_savings_percent=customer_savings_percent,
        wholesale_target_percent=wholesale_target_percent,
    )
    linked = sum(1 for line in lines if line.product_id)
    logger.info("comparison_built sheet=%s lines=%d linked=%d", sheet.id, len(lines), linked)
    return sheet


def dispatch_price_requests(
    sheet: ComparisonSheet, wholesaler_ids: Sequence[str], now: datetime
) -> List[SupplierPriceRequest]:
    """One PENDING request per wholesaler; every item targets the wholesale price."""
    supplier_ids = [str(sid).strip() for sid in wholesaler_ids if str(sid or "").strip()]
    if not supplier_ids:
        raise ValidationError("Select at least one wholesaler", {"field": "wholesaler_ids"})
    if not sheet.lines:
        raise ValidationError("Comparison has no lines to source", {"sheet_id": sheet.id})

    items = [
        SupplierPriceRequestItem(
            product_id=priced.line.product_id,
            product_name=priced.line.product_name,
            qty=priced.line.quantity,
            invoice_price=priced.line.invoice_price,
            target_price=priced.wholesale_target_price,
        )
        for priced in sheet.priced_lines()
    ]
    requests = [
        SupplierPriceRequest(
            id=f"req-{uuid.uuid4().hex[:12]}",
            supplier_id=supplier_id,
            created_at=now,
            customer_context=sheet.customer_context,
            customer_location=sheet.customer_location,
            items=list(items),
        )
        for supplier_id in dict.fromkeys(supplier_ids)
    ]
    logger.info("price_requests_dispatched sheet=%s suppliers=%d items=%d", sheet.id, len(requests), len(items))
    return requests
