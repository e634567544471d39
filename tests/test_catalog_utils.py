import json

import pytest

from produce_intake.catalog import CatalogIndex, CatalogLoader, product_from_record, validate_new_product
from produce_intake.domain import CatalogProduct, Unit
from produce_intake.errors import ValidationError
from produce_intake.utils import coerce_number, normalize_text, safe_json_loads


def test_seed_catalog_loads(products):
    ids = [product.id for product in products]
    assert ids[:2] == ["p1", "p1-truss"]
    assert "p-banana-lady" in ids
    banana = next(p for p in products if p.id == "p-banana-cav")
    assert banana.default_price == 3.50
    assert banana.unit is Unit.KG


def test_loader_accepts_wrapped_items_and_key_synonyms(tmp_path):
    path = tmp_path / "catalog.json"
    records = {
        "items": [
            {"SKU": "x1", "Product Name": "Kale", "Unit Price": "2.40", "UOM": "bags"},
            {"name": "no id"},
        ]
    }
    path.write_text(json.dumps(records), encoding="utf-8")
    products, meta = CatalogLoader(path).load()
    assert len(products) == 1
    assert products[0] == CatalogProduct(id="x1", name="Kale", unit=Unit.BAG, default_price=2.40)
    assert len(meta.sha256) == 64


def test_match_name(catalog):
    assert catalog.match_name("Bananas") == ["p-banana-cav", "p-banana-lady"]
    assert catalog.match_name("banans") == ["p-banana-cav", "p-banana-lady"]
    assert catalog.match_name("roma tomato") == ["p1"]
    assert catalog.match_name("lady finger") == ["p-banana-lady"]
    assert catalog.match_name("!!!") == []
    assert catalog.match_name("durian") == []


def test_summary_lists_ids(catalog):
    summary = catalog.summary()
    assert "Cavendish Bananas (Cavendish) [ID: p-banana-cav]" in summary
    assert summary.count("[ID:") == len(catalog)


def test_validate_new_product(products):
    with pytest.raises(ValidationError):
        validate_new_product(CatalogProduct(id="p1", name="Dup"), products)
    with pytest.raises(ValidationError):
        validate_new_product(CatalogProduct(id="x", name="Neg", default_price=-1), products)
    validate_new_product(CatalogProduct(id="x", name="Kale", default_price=2), products)


def test_product_from_record_requires_id_and_name():
    assert product_from_record({"id": "x"}) is None
    assert product_from_record({"id": "x", "name": "Kale", "unit": "tray"}).unit is Unit.TRAY


def test_normalize_text():
    assert normalize_text("Jalapeño  Peppers!") == "jalapeno peppers"
    assert normalize_text("") == ""


def test_safe_json_loads_tolerates_wrapping():
    assert safe_json_loads('```json\n[{"a": 1},]\n```') == [{"a": 1}]
    assert safe_json_loads("Sure! {\"items\": []}") == {"items": []}
    assert safe_json_loads("no json here") is None
    assert safe_json_loads("") is None


@pytest.mark.parametrize(
    "value, expected",
    [(3, 3.0), ("100kg", 100.0), ("1,250.5", 1250.5), (True, None), ("abc", None), (float("nan"), None)],
)
def test_coerce_number(value, expected):
    assert coerce_number(value) == expected


def test_unit_parse():
    assert Unit.parse("kg") is Unit.KG
    assert Unit.parse("Trays") is Unit.TRAY
    assert Unit.parse("each") is Unit.EACH
    assert Unit.parse("crate") is Unit.KG
    assert Unit.parse(None) is Unit.KG
