"""Catalog loading and the read-only Catalog Index used by intake and pricing.

The catalog file is a JSON list (or ``{"items": [...]}``) of product records whose
field names vary between exports; synonyms are resolved here once so the rest of
the pipeline only ever sees CatalogProduct objects.
"""

from __future__ import annotations

import hashlib
import json
import logging
from dataclasses import dataclass
from datetime import datetime
from difflib import SequenceMatcher
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from .domain import CatalogProduct, Unit
from .errors import ValidationError
from .utils import coerce_number, normalize_key, normalize_text, tokenize

logger = logging.getLogger("pz.catalog")

ID_KEYS = ["id", "product id", "productId", "sku", "code"]
NAME_KEYS = ["name", "product name", "productName"]
VARIETY_KEYS = ["variety", "cultivar"]
CATEGORY_KEYS = ["category", "product category"]
UNIT_KEYS = ["unit", "uom"]
PRICE_KEYS = ["defaultPricePerKg", "default price", "price", "unit price"]
IMAGE_KEYS = ["imageUrl", "image", "image url"]
CO2_KEYS = ["co2SavingsPerKg", "co2 savings per kg", "co2"]
WATER_KEYS = ["waterSavingsPerKg", "water savings per kg", "water"]
WASTE_KEYS = ["wasteDivertedPerKg", "waste diverted per kg", "waste"]

FUZZY_TOKEN_RATIO = 0.8


@dataclass
class CatalogMeta:
    """Metadata describing the catalog file version for logging."""
    file_name: str
    updated_at: str
    sha256: str


class CatalogLoader:
    def __init__(self, path: Path) -> None:
        self._path = path

    def load(self) -> Tuple[List[CatalogProduct], CatalogMeta]:
        """Purpose: Load and normalize catalog records from the JSON file.
        Inputs/Outputs: No inputs; returns CatalogProduct list and CatalogMeta.
        Side Effects / State: Reads file contents and computes hash/mtime.
        Dependencies: Uses json, hashlib and product_from_record.
        Failure Modes: JSON decode errors raise to the caller; records without an id
            or name are skipped with a warning.
        If Removed: The in-memory catalog collaborator starts empty.
        Testing Notes: Load a temp file with mixed key spellings and check normalization.
        """
        # Read bytes for hashing, then map every record through the synonym table.
        raw_bytes = self._path.read_bytes()
        sha256 = hashlib.sha256(raw_bytes).hexdigest()
        updated_at = datetime.fromtimestamp(self._path.stat().st_mtime).isoformat()

        data = json.loads(raw_bytes.decode("utf-8-sig"))
        if isinstance(data, dict):
            records = data.get("items", [])
        elif isinstance(data, list):
            records = data
        else:
            records = []

        products: List[CatalogProduct] = []
        for record in records:
            if not isinstance(record, dict):
                continue
            product = product_from_record(record)
            if product is None:
                logger.warning("catalog_record_skipped file=%s record=%s", self._path.name, record)
                continue
            products.append(product)

        meta = CatalogMeta(file_name=self._path.name, updated_at=updated_at, sha256=sha256)
        logger.info("catalog_loaded file=%s products=%d sha256=%s", meta.file_name, len(products), sha256[:12])
        return products, meta


def product_from_record(record: Dict[str, Any]) -> Optional[CatalogProduct]:
    """Build a CatalogProduct from a loosely keyed dict; None when id or name is missing."""
    product_id = _get_first_value(record, ID_KEYS)
    name = _get_first_value(record, NAME_KEYS)
    if not product_id or not name:
        return None
    return CatalogProduct(
        id=str(product_id).strip(),
        name=str(name).strip(),
        variety=str(_get_first_value(record, VARIETY_KEYS) or "").strip(),
        category=str(_get_first_value(record, CATEGORY_KEYS) or "").strip(),
        unit=Unit.parse(_get_first_value(record, UNIT_KEYS)),
        default_price=coerce_number(_get_first_value(record, PRICE_KEYS)) or 0.0,
        image_url=str(_get_first_value(record, IMAGE_KEYS) or "").strip(),
        co2_savings_per_kg=coerce_number(_get_first_value(record, CO2_KEYS)) or 0.0,
        water_savings_per_kg=coerce_number(_get_first_value(record, WATER_KEYS)) or 0.0,
        waste_diverted_per_kg=coerce_number(_get_first_value(record, WASTE_KEYS)) or 0.0,
    )


def _get_first_value(item: Dict[str, Any], keys: List[str]) -> Optional[Any]:
    """Purpose: Find the first usable field in a dict by key synonyms.
    Inputs/Outputs: Input is a raw dict and candidate keys; returns the value or None.
    Side Effects / State: None.
    Dependencies: Uses normalize_key and _has_value.
    Failure Modes: Returns None when no key matches or values are empty.
    If Removed: Catalog exports with different column spellings stop loading.
    Testing Notes: "Product Name" and "productName" both resolve the name.
    """
    # Exact normalized key first; no partial matching so "price" never hits "priceNote".
    normalized_map = {normalize_key(k): k for k in item.keys()}
    for key in keys:
        normalized = normalize_key(key)
        if normalized in normalized_map:
            value = item.get(normalized_map[normalized])
            if _has_value(value):
                return value
    return None


def _has_value(value: Any) -> bool:
    if value is None:
        return False
    if isinstance(value, str) and not value.strip():
        return False
    return True


class CatalogIndex:
    """Read-only lookup over an immutable snapshot of catalog products."""

    def __init__(self, products: Iterable[CatalogProduct]) -> None:
        self._products: Tuple[CatalogProduct, ...] = tuple(products)
        self._by_id: Dict[str, CatalogProduct] = {p.id: p for p in self._products}
        self._tokens: Dict[str, Tuple[List[str], str]] = {
            p.id: (tokenize(f"{p.name} {p.variety}"), normalize_text(p.name)) for p in self._products
        }

    def __len__(self) -> int:
        return len(self._products)

    def __contains__(self, product_id: object) -> bool:
        return product_id in self._by_id

    @property
    def products(self) -> Tuple[CatalogProduct, ...]:
        return self._products

    def get(self, product_id: Optional[str]) -> Optional[CatalogProduct]:
        if not product_id:
            return None
        return self._by_id.get(product_id)

    def summary(self) -> str:
        """Catalog context handed to the parsing collaborator: ``Name (Variety) [ID: id]``."""
        return ", ".join(f"{p.name} ({p.variety}) [ID: {p.id}]" for p in self._products)

    def match_name(self, text: str) -> List[str]:
        """Purpose: Deterministically match free-text product references to catalog ids.
        Inputs/Outputs: Input is a product reference such as "banans"; output is the list
            of matching product ids in catalog order.
        Side Effects / State: None.
        Dependencies: normalize_text/tokenize and difflib.SequenceMatcher.
        Failure Modes: Empty or punctuation-only text matches nothing.
        If Removed: Auto-resolution of unambiguous lines depends solely on the AI model.
        Testing Notes: "bananas" hits both banana varieties; "banans" still matches by
            fuzzy token ratio; "roma" matches on variety.
        """
        # A product matches on case-insensitive substring of its name, or when every
        # query token fuzzily equals some token of name + variety.
        query = normalize_text(text)
        if not query:
            return []
        query_tokens = tokenize(query)
        matches: List[str] = []
        for product in self._products:
            tokens, name = self._tokens[product.id]
            if query in name or (len(name) > 2 and name in query):
                matches.append(product.id)
                continue
            if query_tokens and all(_fuzzy_in(token, tokens) for token in query_tokens):
                matches.append(product.id)
        return matches


def _fuzzy_in(token: str, candidates: Sequence[str]) -> bool:
    for candidate in candidates:
        if token == candidate:
            return True
        if min(len(token), len(candidate)) < 4:
            continue
        if SequenceMatcher(None, token, candidate).ratio() >= FUZZY_TOKEN_RATIO:
            return True
    return False


def validate_new_product(product: CatalogProduct, existing: Iterable[CatalogProduct]) -> None:
    """Reject duplicate ids, blank names and negative default prices before add_product."""
    if not product.id.strip() or not product.name.strip():
        raise ValidationError("Product id and name are required", {"product_id": product.id})
    if product.default_price < 0:
        raise ValidationError(
            "Default price must not be negative",
            {"product_id": product.id, "default_price": product.default_price},
        )
    if any(p.id == product.id for p in existing):
        raise ValidationError("Product id already exists", {"product_id": product.id})
