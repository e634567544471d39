"""AI collaborators: free-text order parsing and invoice line extraction.

Both talk to Gemini through GeminiClient and coerce whatever comes back into
domain records. Anything unusable raises UpstreamParseError; the pipeline
turns that into an empty, reviewable result.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, List, Optional

from .domain import InvoiceLine, ParsedLine, Unit
from .errors import UpstreamParseError
from .gemini_client import GeminiClient
from .prompt_loader import render_prompt
from .utils import coerce_number, safe_json_loads

logger = logging.getLogger("pz.ai")

LIST_WRAPPER_KEYS = ("items", "lines", "orderItems", "order", "cart_lines")


def _unwrap_list(data: Any) -> Optional[List[Any]]:
    if isinstance(data, list):
        return data
    if isinstance(data, dict):
        for key in LIST_WRAPPER_KEYS:
            if isinstance(data.get(key), list):
                return data[key]
    return None


def _first(raw: dict, *keys: str) -> Any:
    for key in keys:
        if key in raw and raw[key] is not None:
            return raw[key]
    return None


def coerce_parsed_lines(data: Any) -> List[ParsedLine]:
    """Purpose: Turn a decoded model response into ParsedLine records.
    Inputs/Outputs: Input is the decoded JSON value; output is a list of ParsedLine.
    Side Effects / State: Logs every dropped line.
    Dependencies: coerce_number and Unit.parse.
    Failure Modes: UpstreamParseError when the payload is not a list (or list wrapper).
        Individual lines without a name or with a non-positive/non-numeric quantity are
        dropped rather than failing the whole response.
    If Removed: Model output would reach the resolver unchecked.
    Testing Notes: snake_case and camelCase keys, string quantities ("100kg"), unknown
        units and missing suggestion lists.
    """
    # Accept camelCase (prompt contract) and snake_case spellings.
    rows = _unwrap_list(data)
    if rows is None:
        raise UpstreamParseError("Order parser returned no item list", {"payload_type": type(data).__name__})

    lines: List[ParsedLine] = []
    for idx, raw in enumerate(rows):
        if not isinstance(raw, dict):
            logger.warning("parsed_line_dropped index=%d reason=not_an_object", idx)
            continue
        name = str(_first(raw, "productName", "product_name", "name") or "").strip()
        quantity = coerce_number(_first(raw, "quantity", "qty"))
        if not name or quantity is None or quantity <= 0:
            logger.warning("parsed_line_dropped index=%d name=%s quantity=%s", idx, name, quantity)
            continue
        suggestions = _first(raw, "suggestedProductIds", "suggested_product_ids") or []
        if not isinstance(suggestions, list):
            suggestions = [suggestions]
        selected = _first(raw, "selectedProductId", "selected_product_id")
        lines.append(
            ParsedLine(
                product_name=name,
                quantity=quantity,
                unit=Unit.parse(_first(raw, "unit")),
                is_ambiguous=bool(_first(raw, "isAmbiguous", "is_ambiguous")),
                suggested_product_ids=[str(s) for s in suggestions if s],
                selected_product_id=str(selected) if selected else None,
            )
        )
    return lines


def coerce_invoice_lines(data: Any) -> List[InvoiceLine]:
    """Map extracted invoice rows onto InvoiceLine; rows without a usable price are dropped."""
    rows = _unwrap_list(data)
    if rows is None:
        raise UpstreamParseError("Invoice extractor returned no item list", {"payload_type": type(data).__name__})
    lines: List[InvoiceLine] = []
    for idx, raw in enumerate(rows):
        if not isinstance(raw, dict):
            continue
        name = str(_first(raw, "name", "productName") or "").strip()
        price = coerce_number(_first(raw, "marketRate", "referencePrice", "reference_price", "price"))
        qty = coerce_number(_first(raw, "qty", "quantity"))
        if not name or price is None or price < 0:
            logger.warning("invoice_line_dropped index=%d name=%s price=%s", idx, name, price)
            continue
        lines.append(InvoiceLine(name=name, qty=qty if qty and qty > 0 else 1.0, reference_price=price))
    return lines


class GeminiOrderParser:
    """Parsing collaborator: ``parse(free_text, catalog_summary) -> [ParsedLine]``."""

    def __init__(self, client: Optional[GeminiClient], prompts_dir: Path, model: Optional[str] = None) -> None:
        self._client = client
        self._prompts_dir = prompts_dir
        self._model = model

    def parse(self, free_text: str, catalog_summary: str) -> List[ParsedLine]:
        if self._client is None:
            raise UpstreamParseError("AI parsing disabled: GEMINI_API_KEY not set")
        try:
            prompt = render_prompt(
                self._prompts_dir, "parse_order", order_text=free_text, catalog_summary=catalog_summary
            )
            text = self._client.generate_json(prompt, model=self._model)
        except Exception as exc:
            logger.exception("order_parse_call_failed")
            raise UpstreamParseError(f"AI order parsing failed: {exc}") from exc
        data = safe_json_loads(text)
        if data is None:
            raise UpstreamParseError("AI order parsing returned malformed output", {"raw": text[:200]})
        lines = coerce_parsed_lines(data)
        logger.info("order_parsed lines=%d", len(lines))
        return lines


class GeminiInvoiceExtractor:
    """Invoice-extraction collaborator: ``extract(document, mime_type) -> [InvoiceLine]``."""

    def __init__(self, client: Optional[GeminiClient], prompts_dir: Path, model: Optional[str] = None) -> None:
        self._client = client
        self._prompts_dir = prompts_dir
        self._model = model

    def extract(self, document: bytes, mime_type: str) -> List[InvoiceLine]:
        if self._client is None:
            raise UpstreamParseError("AI invoice extraction disabled: GEMINI_API_KEY not set")
        if not document:
            raise UpstreamParseError("Invoice document is empty")
        try:
            prompt = render_prompt(self._prompts_dir, "extract_invoice")
            text = self._client.generate_json_from_document(document, mime_type, prompt, model=self._model)
        except Exception as exc:
            logger.exception("invoice_extract_call_failed mime_type=%s", mime_type)
            raise UpstreamParseError(f"AI invoice extraction failed: {exc}") from exc
        data = safe_json_loads(text)
        if data is None:
            raise UpstreamParseError("AI invoice extraction returned malformed output", {"raw": text[:200]})
        lines = coerce_invoice_lines(data)
        logger.info("invoice_extracted lines=%d", len(lines))
        return lines
