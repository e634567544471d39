from __future__ import annotations

import base64
import binascii
import logging
import os
from datetime import timedelta
from pathlib import Path
from typing import Optional

from fastapi import FastAPI
from fastapi.responses import JSONResponse
from dotenv import load_dotenv

from .ai_parser import GeminiInvoiceExtractor, GeminiOrderParser
from .catalog import CatalogLoader
from .config import Settings, load_settings
from .domain import CheckoutRequest, InvoiceLine, Unit
from .gemini_client import GeminiClient
from .models import (
    AdvanceRequest,
    CartUpdateRequest,
    CheckoutPayload,
    ComparisonRequest,
    DispatchRequest,
    OpenSessionRequest,
    ParseRequest,
    PercentagesRequest,
    ProductPayload,
    ReorderRequest,
    RestrictionRequest,
    SelectProductRequest,
)
from .pipeline import OperationResult, OrderIntakePipeline
from .pricing import PricingEngine
from .store import AccountStatusService, InMemoryCatalog, OrderStore

BASE_DIR = Path(__file__).resolve().parent

log_level_name = os.getenv("LOG_LEVEL", "INFO").upper()
log_level = getattr(logging, log_level_name, logging.INFO)
if not logging.getLogger().handlers:
    logging.basicConfig(
        level=log_level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

logging.getLogger("pz").setLevel(log_level)
logger = logging.getLogger("pz.app")

ENV_PATH = BASE_DIR / ".env"
if ENV_PATH.exists():
    load_dotenv(ENV_PATH, override=True)

# HTTP status per error kind; anything unlisted is a client error.
ERROR_STATUS = {
    "ValidationError": 422,
    "AmbiguityUnresolvedError": 409,
    "ParseInProgressError": 409,
    "AccountRestrictedError": 403,
    "NotFoundError": 404,
    "UpstreamParseError": 502,
}


def build_pipeline(settings: Settings) -> OrderIntakePipeline:
    """Purpose: Assemble the intake pipeline and its reference collaborators from settings.
    Inputs/Outputs: Input is Settings; returns an OrderIntakePipeline.
    Side Effects / State: Reads the seed catalog file and any persisted orders; configures
        the Gemini SDK when an API key is present.
    Dependencies: CatalogLoader, OrderStore, GeminiClient, the AI collaborators.
    Failure Modes: A missing or malformed catalog file raises at startup. Without an API
        key the AI collaborators are disabled and report UpstreamParseError.
    If Removed: The app has no pipeline to serve.
    Testing Notes: Tests construct the pipeline directly with fakes instead.
    """
    # Seed data first, then the optional AI backend.
    products, meta = CatalogLoader(settings.catalog_path).load()
    catalog = InMemoryCatalog(products)
    orders = OrderStore(settings.orders_path)
    accounts = AccountStatusService(orders)
    gemini: Optional[GeminiClient] = None
    if settings.gemini_api_key:
        gemini = GeminiClient(settings)
    else:
        logger.warning("gemini_disabled reason=missing_api_key")
    logger.info("startup catalog=%s products=%d ai=%s", meta.file_name, len(products), bool(gemini))
    return OrderIntakePipeline(
        catalog=catalog,
        orders=orders,
        accounts=accounts,
        parser=GeminiOrderParser(gemini, settings.prompts_dir) if gemini else None,
        invoice_extractor=GeminiInvoiceExtractor(gemini, settings.prompts_dir) if gemini else None,
        pricing=PricingEngine(settings.pay_now_discount),
        verification_window=timedelta(minutes=settings.verification_window_minutes),
        customer_savings_percent=settings.customer_savings_percent,
        wholesale_target_percent=settings.wholesale_target_percent,
    )


def respond(result: OperationResult) -> JSONResponse:
    """Map an OperationResult onto a JSON response; failures carry a structured body."""
    if result.ok:
        return JSONResponse({"ok": True, "value": result.value, "trace": result.trace})
    status = ERROR_STATUS.get(result.error_kind or "", 400)
    return JSONResponse(
        {
            "error_kind": result.error_kind,
            "message": result.message,
            "details": result.details,
            "value": result.value,
            "trace": result.trace,
        },
        status_code=status,
    )


def create_app(
    settings: Optional[Settings] = None, pipeline: Optional[OrderIntakePipeline] = None
) -> FastAPI:
    """Purpose: Build the FastAPI application around one pipeline instance.
    Inputs/Outputs: Optional Settings and pipeline; returns a FastAPI app.
    Side Effects / State: Registers routes; builds the pipeline from settings when none is given.
    Dependencies: build_pipeline, respond, pydantic request models.
    Failure Modes: Startup errors from load_settings or the catalog file propagate.
    If Removed: The service has no HTTP surface.
    Testing Notes: Pass a pipeline with fake AI collaborators and use TestClient.
    """
    # One pipeline per app; routes are thin wrappers around it.
    settings = settings or load_settings()
    pipeline = pipeline or build_pipeline(settings)
    app = FastAPI(title="Produce Order Intake")
    app.state.pipeline = pipeline

    @app.get("/api/catalog")
    def list_catalog() -> dict:
        return {"products": pipeline.list_products()}

    @app.post("/api/catalog")
    def add_product(payload: ProductPayload) -> JSONResponse:
        return respond(pipeline.add_product(payload.dict()))

    @app.post("/api/sessions")
    def open_session(payload: OpenSessionRequest) -> JSONResponse:
        return respond(pipeline.open_session(payload.buyer_id, payload.session_id))

    @app.get("/api/sessions/{session_id}")
    def get_session(session_id: str) -> JSONResponse:
        return respond(pipeline.get_session(session_id))

    @app.post("/api/sessions/{session_id}/parse")
    def parse_order(session_id: str, payload: ParseRequest) -> JSONResponse:
        return respond(pipeline.parse_request(session_id, payload.text))

    @app.put("/api/sessions/{session_id}/review/{index}")
    def select_product(session_id: str, index: int, payload: SelectProductRequest) -> JSONResponse:
        return respond(pipeline.select_product(session_id, index, payload.product_id))

    @app.delete("/api/sessions/{session_id}/review/{index}")
    def clear_selection(session_id: str, index: int) -> JSONResponse:
        return respond(pipeline.clear_selection(session_id, index))

    @app.post("/api/sessions/{session_id}/review/confirm")
    def confirm_review(session_id: str) -> JSONResponse:
        return respond(pipeline.confirm_review(session_id))

    @app.post("/api/sessions/{session_id}/reorder")
    def reorder(session_id: str, payload: ReorderRequest) -> JSONResponse:
        adjustments = {}
        removals = set()
        for edit in payload.edits:
            key = (edit.product_id, Unit.parse(edit.unit))
            if edit.remove:
                removals.add(key)
            elif edit.quantity is not None:
                adjustments[key] = edit.quantity
        return respond(pipeline.reorder(session_id, payload.order_id, adjustments, removals))

    @app.patch("/api/sessions/{session_id}/cart")
    def update_cart(session_id: str, payload: CartUpdateRequest) -> JSONResponse:
        return respond(
            pipeline.update_cart(session_id, payload.action, payload.product_id, payload.unit, payload.quantity)
        )

    @app.get("/api/sessions/{session_id}/quote")
    def quote(session_id: str, payment_method: str = "invoice") -> JSONResponse:
        return respond(pipeline.quote(session_id, payment_method))

    @app.post("/api/sessions/{session_id}/checkout")
    def checkout(session_id: str, payload: CheckoutPayload) -> JSONResponse:
        request = CheckoutRequest(
            delivery_date=payload.delivery_date,
            delivery_time=payload.delivery_time,
            contact_name=payload.contact_name,
            payment_method=payload.payment_method,
            location=payload.location,
        )
        return respond(pipeline.checkout(session_id, request))

    @app.get("/api/buyers/{buyer_id}/dashboard")
    def dashboard(buyer_id: str) -> JSONResponse:
        result = pipeline.dashboard(buyer_id)
        if result.ok:
            result.value["poll_interval_seconds"] = settings.poll_interval_seconds
        return respond(result)

    @app.put("/api/buyers/{buyer_id}/restriction")
    def set_restriction(buyer_id: str, payload: RestrictionRequest) -> JSONResponse:
        return respond(pipeline.set_restriction(buyer_id, payload.restricted))

    @app.post("/api/orders/{order_id}/advance")
    def advance_order(order_id: str, payload: AdvanceRequest) -> JSONResponse:
        return respond(pipeline.advance_order(order_id, payload.status))

    @app.post("/api/orders/{order_id}/verify")
    def verify_order(order_id: str) -> JSONResponse:
        return respond(pipeline.verify_order(order_id))

    @app.post("/api/comparisons")
    def build_comparison(payload: ComparisonRequest) -> JSONResponse:
        document = None
        if payload.document_base64:
            try:
                document = base64.b64decode(payload.document_base64, validate=True)
            except (binascii.Error, ValueError):
                return JSONResponse(
                    {"error_kind": "ValidationError", "message": "Invoice document is not valid base64", "details": {}},
                    status_code=422,
                )
        lines = [
            InvoiceLine(name=line.name, qty=line.qty, reference_price=line.reference_price)
            for line in payload.lines or []
        ]
        return respond(
            pipeline.build_comparison(
                payload.customer_context,
                payload.customer_location,
                lines=lines,
                document=document,
                mime_type=payload.mime_type,
            )
        )

    @app.put("/api/comparisons/{comparison_id}/percentages")
    def update_percentages(comparison_id: str, payload: PercentagesRequest) -> JSONResponse:
        return respond(
            pipeline.update_percentages(
                comparison_id, payload.customer_savings_percent, payload.wholesale_target_percent
            )
        )

    @app.post("/api/comparisons/{comparison_id}/dispatch")
    def dispatch(comparison_id: str, payload: DispatchRequest) -> JSONResponse:
        return respond(pipeline.dispatch(comparison_id, payload.wholesaler_ids))

    @app.get("/api/price-requests")
    def price_requests(supplier_id: Optional[str] = None) -> dict:
        return {"requests": pipeline.price_requests(supplier_id)}

    return app


app = create_app()
