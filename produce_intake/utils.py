import json
import math
import re
import unicodedata
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, List, Optional


def normalize_text(text: str) -> str:
    """Purpose: Normalize free-form product text for stable catalog matching.
    Inputs/Outputs: Input is a raw string; output is a lowercase ASCII-only string with
        accents removed and punctuation/whitespace collapsed.
    Side Effects / State: None; pure function.
    Dependencies: Uses unicodedata and regex; called by the catalog matcher and resolver.
    Failure Modes: Returns an empty string when input is falsy.
    If Removed: Name matching becomes case/accent sensitive and auto-resolution misses.
    Testing Notes: "Jalapeño  Peppers!" should become "jalapeno peppers".
    """
    # Lowercase, strip diacritics, then collapse everything that is not a word character.
    if not text:
        return ""
    lowered = str(text).lower()
    decomposed = unicodedata.normalize("NFD", lowered)
    stripped = "".join(ch for ch in decomposed if unicodedata.category(ch) != "Mn")
    cleaned = re.sub(r"[^a-z0-9\s]+", " ", stripped)
    return re.sub(r"\s+", " ", cleaned).strip()


def normalize_key(text: str) -> str:
    """Compact normalization key without spaces, used for field-name synonyms."""
    return normalize_text(text).replace(" ", "")


def singularize(token: str) -> str:
    """Crude plural folding for produce names ("tomatoes" -> "tomato", "bananas" -> "banana")."""
    if len(token) > 4 and token.endswith("oes"):
        return token[:-2]
    if len(token) > 4 and token.endswith("ies"):
        return token[:-3] + "y"
    if len(token) > 3 and token.endswith("s") and not token.endswith("ss"):
        return token[:-1]
    return token


def tokenize(text: str) -> List[str]:
    return [singularize(token) for token in normalize_text(text).split() if token]


def extract_json_block(text: str) -> Optional[str]:
    """Purpose: Extract the outermost JSON object or array from an arbitrary string.
    Inputs/Outputs: Input is raw model text; output is the JSON substring or None.
    Side Effects / State: None; pure function.
    Dependencies: None beyond built-ins; used by safe_json_loads.
    Failure Modes: Returns None if no balanced-looking brackets are present.
    If Removed: Model output wrapped in prose or code fences cannot be parsed.
    Testing Notes: Provide "```json [..] ```" and "Sure! {...}" inputs.
    """
    # Pick whichever opening bracket comes first and pair it with its last closer.
    if not text:
        return None
    candidates = []
    for opener, closer in (("[", "]"), ("{", "}")):
        start = text.find(opener)
        end = text.rfind(closer)
        if start != -1 and end > start:
            candidates.append((start, end))
    if not candidates:
        return None
    start, end = min(candidates)
    return text[start : end + 1]


def safe_json_loads(text: str) -> Optional[Any]:
    """Purpose: Parse a JSON object/array out of a model response without raising.
    Inputs/Outputs: Input is raw text; output is the decoded value or None.
    Side Effects / State: None; pure function.
    Dependencies: Uses extract_json_block and json.loads.
    Failure Modes: Returns None on JSONDecodeError or when no JSON block exists.
    If Removed: Garbled AI output would crash order parsing instead of degrading.
    Testing Notes: Valid JSON parses; trailing commas are repaired once; junk returns None.
    """
    # Try the whole text first, then the extracted block, then a trailing-comma repair.
    if not text:
        return None
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        pass
    block = extract_json_block(text)
    if not block:
        return None
    try:
        return json.loads(block)
    except json.JSONDecodeError:
        repaired = re.sub(r",\s*([}\]])", r"\1", block)
        try:
            return json.loads(repaired)
        except json.JSONDecodeError:
            return None


def coerce_number(value: Any) -> Optional[float]:
    """Return a finite float for numeric input (numbers or numeric strings), else None."""
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str):
        match = re.search(r"-?\d+(?:\.\d+)?", value.replace(",", ""))
        if not match:
            return None
        number = float(match.group(0))
    else:
        return None
    if not math.isfinite(number):
        return None
    return number


def money(amount: float) -> float:
    # Presentation rounding only; stored totals keep full precision.
    return float(Decimal(repr(float(amount))).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))


def format_money(amount: float) -> str:
    return f"${money(amount):,.2f}"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)
