from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import List, Optional

import pytest

from produce_intake.catalog import CatalogIndex, CatalogLoader
from produce_intake.domain import InvoiceLine, ParsedLine, Unit
from produce_intake.errors import UpstreamParseError
from produce_intake.pipeline import OrderIntakePipeline
from produce_intake.store import AccountStatusService, InMemoryCatalog, OrderStore

CATALOG_FILE = Path(__file__).resolve().parents[1] / "produce_intake" / "resources" / "catalog.json"

T0 = datetime(2026, 3, 2, 8, 0, tzinfo=timezone.utc)


class FixedClock:
    """Manually advanced clock shared by the store and the pipeline."""

    def __init__(self, start: datetime = T0) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def tick(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class FakeParser:
    def __init__(self, lines: Optional[List[ParsedLine]] = None, error: Optional[Exception] = None) -> None:
        self.lines = lines or []
        self.error = error
        self.calls = []

    def parse(self, free_text, catalog_summary):
        self.calls.append((free_text, catalog_summary))
        if self.error is not None:
            raise self.error
        return [
            ParsedLine(
                product_name=line.product_name,
                quantity=line.quantity,
                unit=line.unit,
                is_ambiguous=line.is_ambiguous,
                suggested_product_ids=list(line.suggested_product_ids),
                selected_product_id=line.selected_product_id,
            )
            for line in self.lines
        ]


class FakeExtractor:
    def __init__(self, lines: Optional[List[InvoiceLine]] = None, error: Optional[Exception] = None) -> None:
        self.lines = lines or []
        self.error = error

    def extract(self, document, mime_type):
        if self.error is not None:
            raise self.error
        return list(self.lines)


BANANA_ORDER = [
    ParsedLine(
        product_name="bananas",
        quantity=100,
        unit=Unit.KG,
        is_ambiguous=True,
        suggested_product_ids=["p-banana-cav", "p-banana-lady"],
    ),
    ParsedLine(product_name="tomatoes", quantity=5, unit=Unit.KG, selected_product_id="p1"),
]


@pytest.fixture
def products():
    loaded, _meta = CatalogLoader(CATALOG_FILE).load()
    return loaded


@pytest.fixture
def catalog(products):
    return CatalogIndex(products)


@pytest.fixture
def clock():
    return FixedClock()


@pytest.fixture
def order_store(clock):
    return OrderStore(clock=clock)


@pytest.fixture
def accounts(order_store):
    return AccountStatusService(order_store)


@pytest.fixture
def make_pipeline(products, order_store, accounts, clock):
    def _make(parser=None, extractor=None):
        return OrderIntakePipeline(
            catalog=InMemoryCatalog(products),
            orders=order_store,
            accounts=accounts,
            parser=parser,
            invoice_extractor=extractor,
            clock=clock,
        )

    return _make


@pytest.fixture
def upstream_failure():
    return UpstreamParseError("AI order parsing returned malformed output")
