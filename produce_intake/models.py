from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class OpenSessionRequest(BaseModel):
    """Request payload for opening (or re-attaching to) a buyer session."""
    buyer_id: str
    session_id: Optional[str] = Field(default=None)


class ParseRequest(BaseModel):
    """Free-text quick order."""
    text: str


class SelectProductRequest(BaseModel):
    product_id: str


class ReorderLineEdit(BaseModel):
    """Per-line edit applied before a historical order is re-ordered."""
    product_id: str
    unit: str = "KG"
    quantity: Optional[float] = None
    remove: bool = False


class ReorderRequest(BaseModel):
    order_id: str
    edits: List[ReorderLineEdit] = Field(default_factory=list)


class CartUpdateRequest(BaseModel):
    action: str
    product_id: str
    unit: str = "KG"
    quantity: Optional[float] = None


class CheckoutPayload(BaseModel):
    """Explicit checkout fields; blanks are reported as a ValidationError, not a 500."""
    delivery_date: str = ""
    delivery_time: str = ""
    contact_name: str = ""
    payment_method: str = "invoice"
    location: str = ""


class AdvanceRequest(BaseModel):
    status: str


class RestrictionRequest(BaseModel):
    restricted: bool


class ProductPayload(BaseModel):
    """Catalog record for add-product."""
    id: str
    name: str
    variety: str = ""
    category: str = ""
    unit: str = "KG"
    default_price: float = 0.0
    image_url: str = ""
    co2_savings_per_kg: float = 0.0
    water_savings_per_kg: float = 0.0
    waste_diverted_per_kg: float = 0.0


class InvoiceLinePayload(BaseModel):
    name: str
    qty: float = 1.0
    reference_price: float


class ComparisonRequest(BaseModel):
    """Either explicit invoice lines or a base64 invoice document for AI extraction."""
    customer_context: str
    customer_location: str = ""
    lines: Optional[List[InvoiceLinePayload]] = None
    document_base64: Optional[str] = None
    mime_type: str = "application/pdf"


class PercentagesRequest(BaseModel):
    customer_savings_percent: float
    wholesale_target_percent: float


class DispatchRequest(BaseModel):
    wholesaler_ids: List[str] = Field(default_factory=list)


class OperationResponse(BaseModel):
    """Successful operation payload with its step trace."""
    ok: bool
    value: Any = None
    trace: List[Dict[str, str]] = Field(default_factory=list)


class ErrorResponse(BaseModel):
    """Structured failure body returned with a 4xx/502 status."""
    error_kind: str
    message: str
    details: Dict[str, Any] = Field(default_factory=dict)
    value: Any = None
    trace: List[Dict[str, str]] = Field(default_factory=list)
