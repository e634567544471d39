import pytest

from conftest import T0
from produce_intake.domain import InvoiceLine
from produce_intake.errors import ValidationError
from produce_intake.sourcing import build_comparison, dispatch_price_requests

INVOICE = [
    InvoiceLine("Roma Tomatoes", 20, 10.00),
    InvoiceLine("Bananas", 40, 4.00),
    InvoiceLine("Dragonfruit", 2, 12.00),
]


def test_comparison_links_only_unique_matches(catalog):
    sheet = build_comparison(INVOICE, catalog, "Cafe Luna", "Fitzroy")
    assert [line.product_id for line in sheet.lines] == ["p1", None, None]
    first = sheet.to_dict()["lines"][0]
    assert first["customer_target_price"] == 7.00
    assert first["wholesale_target_price"] == 5.50


def test_comparison_requires_customer_context(catalog):
    with pytest.raises(ValidationError):
        build_comparison(INVOICE, catalog, "  ")


def test_dispatch_creates_one_request_per_wholesaler(catalog):
    sheet = build_comparison(INVOICE, catalog, "Cafe Luna", "Fitzroy", wholesale_target_percent=50)
    requests = dispatch_price_requests(sheet, ["w1", "w2", "w1"], T0)
    assert [request.supplier_id for request in requests] == ["w1", "w2"]
    assert all(request.status == "PENDING" for request in requests)
    assert requests[0].customer_location == "Fitzroy"
    assert requests[0].items[0].target_price == pytest.approx(5.00)
    assert requests[0].items[2].product_id is None


def test_dispatch_needs_a_wholesaler_and_lines(catalog):
    sheet = build_comparison(INVOICE, catalog, "Cafe Luna")
    with pytest.raises(ValidationError):
        dispatch_price_requests(sheet, [], T0)
    with pytest.raises(ValidationError):
        dispatch_price_requests(build_comparison([], catalog, "Cafe Luna"), ["w1"], T0)
