"""Order-intake pipeline: the boundary between callers and the core components.

Every public operation runs a short list of steps over an IntakeContext, works
on copies of the session state, and only writes the session (or the order
store) back in its last step. Intake errors come back as an OperationResult
with a stable ``error_kind``; any failure of an AI collaborator is reported as
an upstream error with a degraded value. Store write failures propagate after
the order is put back as it was.
"""

from __future__ import annotations

import copy
import logging
import math
import threading
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Set

from .cart import Cart, LineKey, adjust_quantity, environmental_impact, merge_lines, prepare_reorder, remove_line, set_quantity
from .catalog import CatalogIndex, product_from_record
from .domain import (
    CartLine,
    CheckoutRequest,
    DeliveryDetails,
    InvoiceLine,
    Order,
    OrderStatus,
    ParsedLine,
    PaymentMethod,
    SupplierPriceRequest,
    Unit,
)
from .errors import (
    AccountRestrictedError,
    IntakeError,
    NotFoundError,
    ParseInProgressError,
    UpstreamParseError,
    ValidationError,
)
from .lifecycle import VERIFICATION_WINDOW, advance, mark_verified
from .pricing import ComparisonSheet, PricingEngine, validate_amount
from .resolver import AmbiguityResolver, ReviewList
from .snapshot import DashboardPoller
from .sourcing import build_comparison, dispatch_price_requests
from .step_runner import Step, StepRunner
from .store import AccountStatusService, InMemoryCatalog, OrderStore, order_to_dict
from .utils import money, utc_now

logger = logging.getLogger("pz.intake")

CART_ACTIONS = ("add", "adjust", "set", "remove")


@dataclass
class IntakeSession:
    """Cart and review list owned by one buyer session; never shared."""
    session_id: str
    buyer_id: str
    review: ReviewList = field(default_factory=ReviewList)
    cart: Cart = ()
    parse_in_flight: bool = False


@dataclass
class IntakeContext:
    """Mutable context passed through each step of one operation."""
    operation: str
    inputs: Dict[str, Any] = field(default_factory=dict)
    session: Optional[IntakeSession] = None
    catalog: Optional[CatalogIndex] = None
    parsed_lines: List[ParsedLine] = field(default_factory=list)
    review: Optional[ReviewList] = None
    new_lines: List[CartLine] = field(default_factory=list)
    cart: Optional[Cart] = None
    value: Any = None
    upstream_error: Optional[UpstreamParseError] = None
    trace: List[Dict[str, str]] = field(default_factory=list)

    def log(self, event: str, detail: str, status: str = "success") -> None:
        """Purpose: Append a structured trace entry for API callers and debugging.
        Inputs/Outputs: Inputs are event, detail, status; no return value.
        Side Effects / State: Mutates the trace list on the context.
        Dependencies: Called by StepRunner for every step.
        Failure Modes: None; always appends.
        If Removed: Callers lose the step-by-step record of what an operation did.
        Testing Notes: A failed checkout ends with an "error" entry on the failing step.
        """
        # Store a normalized trace entry.
        self.trace.append({"event": event, "detail": detail, "status": status})


@dataclass
class OperationResult:
    ok: bool
    value: Any = None
    error_kind: Optional[str] = None
    message: str = ""
    details: Dict[str, Any] = field(default_factory=dict)
    trace: List[Dict[str, str]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ok": self.ok,
            "value": self.value,
            "error_kind": self.error_kind,
            "message": self.message,
            "details": self.details,
            "trace": self.trace,
        }


def review_to_dict(review: ReviewList) -> Dict[str, Any]:
    return {
        "lines": [
            {
                "index": idx,
                "product_name": line.parsed.product_name,
                "quantity": line.parsed.quantity,
                "unit": line.parsed.unit.value,
                "is_ambiguous": line.parsed.is_ambiguous,
                "suggested_product_ids": list(line.candidates),
                "selected_product_id": line.parsed.selected_product_id,
                "product_id": line.product_id,
                "state": line.state.value,
                "issue": line.issue,
            }
            for idx, line in enumerate(review.lines)
        ],
        "pending": review.pending_indexes(),
        "issues": review.issues(),
    }


def cart_to_dict(cart: Sequence[CartLine]) -> List[Dict[str, Any]]:
    return [
        {
            "product_id": line.product_id,
            "quantity": line.quantity,
            "unit": line.unit.value,
            "unit_price": money(line.unit_price),
            "line_total": money(line.line_total),
        }
        for line in cart
    ]


def price_request_to_dict(request: SupplierPriceRequest) -> Dict[str, Any]:
    data = asdict(request)
    data["created_at"] = request.created_at.isoformat()
    for item in data["items"]:
        item["invoice_price"] = money(item["invoice_price"])
        item["target_price"] = money(item["target_price"])
    return data


def parse_payment_method(value: Any) -> PaymentMethod:
    if isinstance(value, PaymentMethod):
        return value
    try:
        return PaymentMethod(str(value or "").strip().lower())
    except ValueError:
        raise ValidationError(
            "Payment method must be one of: " + ", ".join(m.value for m in PaymentMethod),
            {"field": "payment_method", "value": value},
        ) from None


def finite_delta(value: Any, field_name: str) -> float:
    # Signed counterpart of validate_amount, for quantity adjustments.
    if isinstance(value, bool) or not isinstance(value, (int, float)) or not math.isfinite(value):
        raise ValidationError(f"{field_name} must be a finite number", {"field": field_name, "value": value})
    return float(value)


def parse_status(value: Any) -> OrderStatus:
    try:
        return OrderStatus(str(value or "").strip().upper())
    except ValueError:
        raise ValidationError(
            "Unknown order status", {"field": "status", "value": value}
        ) from None


class OrderIntakePipeline:
    """Free text / reorder -> resolver -> cart -> pricing -> order -> lifecycle."""

    def __init__(
        self,
        catalog: InMemoryCatalog,
        orders: OrderStore,
        accounts: AccountStatusService,
        parser: Any = None,
        invoice_extractor: Any = None,
        pricing: Optional[PricingEngine] = None,
        clock: Callable[[], datetime] = utc_now,
        verification_window: timedelta = VERIFICATION_WINDOW,
        customer_savings_percent: float = 30.0,
        wholesale_target_percent: float = 55.0,
    ) -> None:
        """Purpose: Wire the core components to their collaborators.
        Inputs/Outputs: Inputs are the catalog, order store, account-status service, the
            AI parser and invoice extractor (either may be None), pricing engine, clock
            and comparison defaults; no return value.
        Side Effects / State: Creates empty session, comparison and price-request registries.
        Dependencies: AmbiguityResolver, PricingEngine, DashboardPoller.
        Failure Modes: None at construction.
        If Removed: The HTTP layer has nothing to call.
        Testing Notes: Build with fake parsers and a fixed clock.
        """
        # Collaborators first, then per-process registries.
        self._catalog = catalog
        self._orders = orders
        self._accounts = accounts
        self._parser = parser
        self._invoice_extractor = invoice_extractor
        self._pricing = pricing or PricingEngine()
        self._resolver = AmbiguityResolver()
        self._clock = clock
        self._customer_savings_percent = customer_savings_percent
        self._wholesale_target_percent = wholesale_target_percent
        self._poller = DashboardPoller(orders, catalog, accounts, window=verification_window, clock=clock)
        self._sessions: Dict[str, IntakeSession] = {}
        self._comparisons: Dict[str, ComparisonSheet] = {}
        self._price_requests: List[SupplierPriceRequest] = []
        self._parse_lock = threading.Lock()

    # ------------------------------------------------------------------ runner

    def _execute(self, context: IntakeContext, steps: List[Step]) -> OperationResult:
        """Run the steps; IntakeErrors become failed results, anything else propagates."""
        runner = StepRunner(steps)
        logger.debug("operation_start op=%s steps=%s", context.operation, ",".join(runner.step_names))
        try:
            runner.run(context)
        except IntakeError as exc:
            logger.info(
                "operation_failed op=%s kind=%s message=%s", context.operation, exc.kind, exc.message
            )
            return OperationResult(
                ok=False,
                value=context.value,
                error_kind=exc.kind,
                message=exc.message,
                details=exc.details,
                trace=context.trace,
            )
        if context.upstream_error is not None:
            err = context.upstream_error
            return OperationResult(
                ok=False,
                value=context.value,
                error_kind=err.kind,
                message=err.message,
                details=err.details,
                trace=context.trace,
            )
        logger.info("operation_ok op=%s", context.operation)
        return OperationResult(ok=True, value=context.value, trace=context.trace)

    def _session(self, session_id: str) -> IntakeSession:
        session = self._sessions.get(session_id)
        if session is None:
            raise NotFoundError("Session does not exist", {"session_id": session_id})
        return session

    def _step_load_session(self, context: IntakeContext) -> None:
        context.session = self._session(context.inputs["session_id"])
        context.catalog = self._catalog.snapshot()

    def _step_gate(self, context: IntakeContext) -> None:
        # Asked afresh on every confirmation; never cached.
        buyer_id = context.session.buyer_id if context.session else context.inputs["buyer_id"]
        if self._accounts.has_outstanding_invoices(buyer_id):
            raise AccountRestrictedError(
                "Account restricted: settle outstanding invoices to place new orders",
                {"buyer_id": buyer_id},
            )

    def _session_value(self, session: IntakeSession, review: ReviewList, cart: Cart) -> Dict[str, Any]:
        return {
            "session_id": session.session_id,
            "buyer_id": session.buyer_id,
            "review": review_to_dict(review),
            "cart": cart_to_dict(cart),
        }

    # ---------------------------------------------------------------- sessions

    def open_session(self, buyer_id: str, session_id: Optional[str] = None) -> OperationResult:
        context = IntakeContext("open_session", inputs={"buyer_id": buyer_id, "session_id": session_id})

        def create(ctx: IntakeContext) -> None:
            buyer = str(ctx.inputs["buyer_id"] or "").strip()
            if not buyer:
                raise ValidationError("Buyer id is required", {"field": "buyer_id"})
            sid = ctx.inputs["session_id"] or uuid.uuid4().hex
            session = self._sessions.get(sid)
            if session is None:
                session = IntakeSession(session_id=sid, buyer_id=buyer)
                self._sessions[sid] = session
                logger.info("session_opened session=%s buyer=%s", sid, buyer)
            elif session.buyer_id != buyer:
                raise ValidationError("Session belongs to another buyer", {"session_id": sid})
            ctx.value = self._session_value(session, session.review, session.cart)

        return self._execute(context, [Step("open_session", create)])

    def get_session(self, session_id: str) -> OperationResult:
        context = IntakeContext("get_session", inputs={"session_id": session_id})

        def describe(ctx: IntakeContext) -> None:
            session = ctx.session
            totals = self._pricing.checkout_totals(session.cart, PaymentMethod.INVOICE)
            value = self._session_value(session, session.review, session.cart)
            value["subtotal"] = money(totals.subtotal)
            value["impact"] = {
                key: round(amount, 2)
                for key, amount in environmental_impact(
                    session.cart, {p.id: p for p in ctx.catalog.products}
                ).items()
            }
            ctx.value = value

        return self._execute(
            context, [Step("load_session", self._step_load_session), Step("describe", describe)]
        )

    # ------------------------------------------------------------------ intake

    def parse_request(self, session_id: str, free_text: str) -> OperationResult:
        """Purpose: Parse a free-text order into a reviewable list for the session.
        Inputs/Outputs: Inputs are the session id and free text; output is an
            OperationResult whose value holds the review list and the unchanged cart.
        Side Effects / State: Replaces the session review list on success or on upstream
            failure (with an empty list); marks the session busy while the AI call runs.
        Dependencies: The parsing collaborator, CatalogIndex.summary, AmbiguityResolver.
        Failure Modes: ParseInProgressError while another parse runs; ValidationError for
            blank text; UpstreamParseError degrades to an empty review list.
        If Removed: AI quick order has no entry point.
        Testing Notes: "100kg bananas, 5kg tomatoes" leaves the banana line pending with
            both banana ids as candidates.
        """
        # Claim the session, call the parser, classify, then write back.
        context = IntakeContext("parse_request", inputs={"session_id": session_id, "free_text": free_text})
        claimed: List[IntakeSession] = []

        def claim(ctx: IntakeContext) -> None:
            if not str(ctx.inputs["free_text"] or "").strip():
                raise ValidationError("Order text is required", {"field": "free_text"})
            with self._parse_lock:
                if ctx.session.parse_in_flight:
                    raise ParseInProgressError(
                        "A parse is already running for this session", {"session_id": ctx.session.session_id}
                    )
                ctx.session.parse_in_flight = True
            claimed.append(ctx.session)

        def call_parser(ctx: IntakeContext) -> None:
            try:
                if self._parser is None:
                    raise UpstreamParseError("AI parsing disabled: GEMINI_API_KEY not set")
                ctx.parsed_lines = list(self._parser.parse(ctx.inputs["free_text"], ctx.catalog.summary()))
            except UpstreamParseError as exc:
                logger.warning("parse_degraded session=%s reason=%s", ctx.session.session_id, exc.message)
                ctx.upstream_error = exc
                ctx.parsed_lines = []
            except Exception as exc:
                logger.exception("parse_collaborator_failed session=%s", ctx.session.session_id)
                ctx.upstream_error = UpstreamParseError(
                    f"AI order parsing failed: {exc}", {"error": type(exc).__name__}
                )
                ctx.parsed_lines = []

        def build(ctx: IntakeContext) -> None:
            ctx.review = self._resolver.build_review(ctx.parsed_lines, ctx.catalog)

        def commit(ctx: IntakeContext) -> None:
            value = self._session_value(ctx.session, ctx.review, ctx.session.cart)
            ctx.session.review = ctx.review
            ctx.value = value

        try:
            return self._execute(
                context,
                [
                    Step("load_session", self._step_load_session),
                    Step("claim_session", claim),
                    Step("ai_parse", call_parser),
                    Step("build_review", build),
                    Step("commit", commit),
                ],
            )
        finally:
            for session in claimed:
                session.parse_in_flight = False

    def _review_edit(self, operation: str, session_id: str, index: int, edit: Callable) -> OperationResult:
        context = IntakeContext(operation, inputs={"session_id": session_id, "index": index})

        def apply(ctx: IntakeContext) -> None:
            ctx.review = copy.deepcopy(ctx.session.review)
            edit(ctx.review, ctx.catalog)

        def commit(ctx: IntakeContext) -> None:
            value = self._session_value(ctx.session, ctx.review, ctx.session.cart)
            ctx.session.review = ctx.review
            ctx.value = value

        return self._execute(
            context,
            [
                Step("load_session", self._step_load_session),
                Step(operation, apply),
                Step("commit", commit),
            ],
        )

    def select_product(self, session_id: str, index: int, product_id: str) -> OperationResult:
        return self._review_edit(
            "select_product",
            session_id,
            index,
            lambda review, catalog: self._resolver.select(review, index, product_id, catalog),
        )

    def clear_selection(self, session_id: str, index: int) -> OperationResult:
        return self._review_edit(
            "clear_selection", session_id, index, lambda review, catalog: self._resolver.clear(review, index)
        )

    def confirm_review(self, session_id: str) -> OperationResult:
        """Gate, confirm the review into cart lines, merge them, and empty the review list."""
        context = IntakeContext("confirm_review", inputs={"session_id": session_id})

        def confirm(ctx: IntakeContext) -> None:
            if not ctx.session.review.lines:
                raise ValidationError("Nothing to confirm", {"session_id": ctx.session.session_id})
            ctx.new_lines = self._resolver.confirm(ctx.session.review, ctx.catalog)

        def merge(ctx: IntakeContext) -> None:
            ctx.cart = merge_lines(ctx.session.cart, ctx.new_lines)

        def commit(ctx: IntakeContext) -> None:
            emptied = ReviewList()
            value = self._session_value(ctx.session, emptied, ctx.cart)
            ctx.session.cart = ctx.cart
            ctx.session.review = emptied
            ctx.value = value

        return self._execute(
            context,
            [
                Step("load_session", self._step_load_session),
                Step("account_gate", self._step_gate),
                Step("confirm_review", confirm),
                Step("merge_cart", merge),
                Step("commit", commit),
            ],
        )

    def reorder(
        self,
        session_id: str,
        order_id: str,
        adjustments: Optional[Dict[LineKey, float]] = None,
        removals: Optional[Set[LineKey]] = None,
    ) -> OperationResult:
        """One-tap (or edited) re-order of a historical order into the session cart."""
        context = IntakeContext("reorder", inputs={"session_id": session_id, "order_id": order_id})

        def prepare(ctx: IntakeContext) -> None:
            order = self._orders.get_order(order_id)
            if order.buyer_id != ctx.session.buyer_id:
                raise NotFoundError("Order does not exist", {"order_id": order_id})
            for quantity in (adjustments or {}).values():
                validate_amount(quantity, "quantity")
            ctx.new_lines = list(prepare_reorder(order, adjustments, removals))
            if not ctx.new_lines:
                raise ValidationError("Nothing left to re-order", {"order_id": order_id})

        def merge(ctx: IntakeContext) -> None:
            ctx.cart = merge_lines(ctx.session.cart, ctx.new_lines)

        def commit(ctx: IntakeContext) -> None:
            value = self._session_value(ctx.session, ctx.session.review, ctx.cart)
            ctx.session.cart = ctx.cart
            ctx.value = value

        return self._execute(
            context,
            [
                Step("load_session", self._step_load_session),
                Step("account_gate", self._step_gate),
                Step("prepare_reorder", prepare),
                Step("merge_cart", merge),
                Step("commit", commit),
            ],
        )

    def update_cart(
        self,
        session_id: str,
        action: str,
        product_id: str,
        unit: Any = Unit.KG,
        quantity: Optional[float] = None,
    ) -> OperationResult:
        """Manual cart editing: add a catalog product, adjust by a delta, set or remove a line.

        Editing is allowed for restricted accounts; only confirmations are gated.
        """
        context = IntakeContext(
            "update_cart", inputs={"session_id": session_id, "action": action, "product_id": product_id}
        )

        def edit(ctx: IntakeContext) -> None:
            line_unit = Unit.parse(unit)
            cart = ctx.session.cart
            if action not in CART_ACTIONS:
                raise ValidationError("Unknown cart action", {"action": action, "allowed": list(CART_ACTIONS)})
            if action == "remove":
                ctx.cart = remove_line(cart, product_id, line_unit)
                return
            if action == "adjust":
                ctx.cart = adjust_quantity(cart, product_id, line_unit, finite_delta(quantity, "quantity"))
                return
            amount = validate_amount(quantity, "quantity")
            if action == "add":
                product = ctx.catalog.get(product_id)
                if product is None:
                    raise ValidationError("Unknown product id", {"product_id": product_id})
                if amount <= 0:
                    raise ValidationError("Quantity must be positive", {"field": "quantity", "value": quantity})
                ctx.cart = merge_lines(cart, [CartLine(product.id, amount, product.default_price, line_unit)])
            else:
                ctx.cart = set_quantity(cart, product_id, line_unit, amount)

        def commit(ctx: IntakeContext) -> None:
            value = self._session_value(ctx.session, ctx.session.review, ctx.cart)
            ctx.session.cart = ctx.cart
            ctx.value = value

        return self._execute(
            context,
            [
                Step("load_session", self._step_load_session),
                Step("edit_cart", edit),
                Step("commit", commit),
            ],
        )

    # ---------------------------------------------------------------- checkout

    def quote(self, session_id: str, payment_method: Any) -> OperationResult:
        context = IntakeContext("quote", inputs={"session_id": session_id})

        def price(ctx: IntakeContext) -> None:
            method = parse_payment_method(payment_method)
            totals = self._pricing.checkout_totals(ctx.session.cart, method)
            ctx.value = {"cart": cart_to_dict(ctx.session.cart), **totals.to_dict()}

        return self._execute(context, [Step("load_session", self._step_load_session), Step("price", price)])

    def checkout(self, session_id: str, request: CheckoutRequest) -> OperationResult:
        """Purpose: Turn the session cart into a PENDING order.
        Inputs/Outputs: Inputs are the session id and a CheckoutRequest; output value is
            the placed order plus its totals.
        Side Effects / State: Creates and saves an Order; clears the session cart.
        Dependencies: Account gate, PricingEngine.checkout_totals, OrderStore.
        Failure Modes: ValidationError for missing fields, an unknown payment method or an
            empty cart; AccountRestrictedError from the gate. A store write failure
            leaves no order behind and propagates; the cart is kept.
        If Removed: Buyers cannot place orders.
        Testing Notes: A restricted buyer keeps the cart and no order is created.
        """
        # Validate the explicit request before pricing, then gate, price, place.
        context = IntakeContext("checkout", inputs={"session_id": session_id})
        state: Dict[str, Any] = {}

        def validate(ctx: IntakeContext) -> None:
            missing = [
                name
                for name in ("delivery_date", "delivery_time", "contact_name")
                if not str(getattr(request, name, "") or "").strip()
            ]
            if missing:
                raise ValidationError("Missing required checkout fields", {"missing": missing})
            state["method"] = parse_payment_method(request.payment_method)
            if not ctx.session.cart:
                raise ValidationError("Cart is empty", {"session_id": ctx.session.session_id})

        def price(ctx: IntakeContext) -> None:
            state["totals"] = self._pricing.checkout_totals(ctx.session.cart, state["method"])

        def place(ctx: IntakeContext) -> None:
            totals = state["totals"]
            order = self._orders.create_order(ctx.session.buyer_id, ctx.session.cart, totals.total)
            try:
                order.payment_method = state["method"]
                order.delivery = DeliveryDetails(
                    delivery_date=request.delivery_date.strip(),
                    delivery_time=request.delivery_time.strip(),
                    contact_name=request.contact_name.strip(),
                    location=(request.location or "").strip(),
                )
                self._orders.save(order)
            except Exception:
                logger.exception("order_rollback order=%s", order.id)
                self._orders.discard(order.id)
                raise
            state["order"] = order

        def commit(ctx: IntakeContext) -> None:
            value = {"order": order_to_dict(state["order"]), "totals": state["totals"].to_dict()}
            ctx.session.cart = ()
            ctx.value = value

        return self._execute(
            context,
            [
                Step("load_session", self._step_load_session),
                Step("validate_request", validate),
                Step("account_gate", self._step_gate),
                Step("price", price),
                Step("place_order", place),
                Step("commit", commit),
            ],
        )

    # --------------------------------------------------------------- lifecycle

    def _save_or_restore(self, order: Order, before: Order) -> None:
        # Lifecycle helpers mutate the stored instance; undo that if the write fails.
        try:
            self._orders.save(order)
        except Exception:
            logger.exception("order_transition_rollback order=%s", order.id)
            self._orders.restore(before)
            raise

    def advance_order(self, order_id: str, status: Any) -> OperationResult:
        context = IntakeContext("advance_order", inputs={"order_id": order_id, "status": status})

        def move(ctx: IntakeContext) -> None:
            target = parse_status(status)
            order = self._orders.get_order(order_id)
            before = copy.deepcopy(order)
            changed = advance(order, target, self._clock())
            if changed:
                self._save_or_restore(order, before)
            ctx.value = {"changed": changed, "order": order_to_dict(order)}

        return self._execute(context, [Step("advance", move)])

    def verify_order(self, order_id: str) -> OperationResult:
        context = IntakeContext("verify_order", inputs={"order_id": order_id})

        def verify(ctx: IntakeContext) -> None:
            order = self._orders.get_order(order_id)
            before = copy.deepcopy(order)
            changed = mark_verified(order, self._clock())
            if changed:
                self._save_or_restore(order, before)
            ctx.value = {"changed": changed, "order": order_to_dict(order)}

        return self._execute(context, [Step("verify", verify)])

    def dashboard(self, buyer_id: str) -> OperationResult:
        context = IntakeContext("dashboard", inputs={"buyer_id": buyer_id})

        def poll(ctx: IntakeContext) -> None:
            ctx.value = self._poller.poll(buyer_id).to_dict()

        return self._execute(context, [Step("poll_snapshot", poll)])

    def set_restriction(self, buyer_id: str, restricted: bool) -> OperationResult:
        context = IntakeContext("set_restriction", inputs={"buyer_id": buyer_id})

        def apply(ctx: IntakeContext) -> None:
            if not str(buyer_id or "").strip():
                raise ValidationError("Buyer id is required", {"field": "buyer_id"})
            if restricted:
                self._accounts.restrict(buyer_id)
            else:
                self._accounts.clear(buyer_id)
            logger.info("account_restriction buyer=%s restricted=%s", buyer_id, restricted)
            ctx.value = {
                "buyer_id": buyer_id,
                "is_restricted": self._accounts.has_outstanding_invoices(buyer_id),
            }

        return self._execute(context, [Step("set_restriction", apply)])

    # ----------------------------------------------------------------- catalog

    def list_products(self) -> List[Dict[str, Any]]:
        return [
            {**asdict(product), "unit": product.unit.value, "default_price": money(product.default_price)}
            for product in self._catalog.get_all_products()
        ]

    def add_product(self, record: Dict[str, Any]) -> OperationResult:
        context = IntakeContext("add_product", inputs={"record": record})

        def add(ctx: IntakeContext) -> None:
            product = product_from_record(record)
            if product is None:
                raise ValidationError("Product id and name are required", {"record": record})
            self._catalog.add_product(product)
            ctx.value = {**asdict(product), "unit": product.unit.value}

        return self._execute(context, [Step("add_product", add)])

    # ---------------------------------------------------------------- sourcing

    def _sheet(self, sheet_id: str) -> ComparisonSheet:
        sheet = self._comparisons.get(sheet_id)
        if sheet is None:
            raise NotFoundError("Comparison does not exist", {"comparison_id": sheet_id})
        return sheet

    def build_comparison(
        self,
        customer_context: str,
        customer_location: str = "",
        lines: Optional[Iterable[InvoiceLine]] = None,
        document: Optional[bytes] = None,
        mime_type: str = "application/pdf",
    ) -> OperationResult:
        """Build a comparison from explicit invoice lines or an uploaded invoice document.

        An extraction failure yields an empty comparison plus the upstream error kind.
        """
        context = IntakeContext("build_comparison", inputs={"customer_context": customer_context})
        state: Dict[str, Any] = {"lines": list(lines or [])}

        def extract(ctx: IntakeContext) -> None:
            try:
                if self._invoice_extractor is None:
                    raise UpstreamParseError("AI invoice extraction disabled: GEMINI_API_KEY not set")
                state["lines"] = list(self._invoice_extractor.extract(document, mime_type))
            except UpstreamParseError as exc:
                logger.warning("invoice_extract_degraded reason=%s", exc.message)
                ctx.upstream_error = exc
                state["lines"] = []
            except Exception as exc:
                logger.exception("invoice_extract_collaborator_failed mime_type=%s", mime_type)
                ctx.upstream_error = UpstreamParseError(
                    f"AI invoice extraction failed: {exc}", {"error": type(exc).__name__}
                )
                state["lines"] = []

        def build(ctx: IntakeContext) -> None:
            sheet = build_comparison(
                state["lines"],
                self._catalog.snapshot(),
                customer_context,
                customer_location,
                self._customer_savings_percent,
                self._wholesale_target_percent,
            )
            if ctx.upstream_error is None:
                self._comparisons[sheet.id] = sheet
            ctx.value = sheet.to_dict()

        return self._execute(
            context,
            [
                Step("extract_invoice", extract, skip_if=lambda ctx: document is None),
                Step("build_comparison", build),
            ],
        )

    def update_percentages(
        self, sheet_id: str, customer_savings_percent: Any, wholesale_target_percent: Any
    ) -> OperationResult:
        context = IntakeContext("update_percentages", inputs={"comparison_id": sheet_id})

        def update(ctx: IntakeContext) -> None:
            sheet = self._sheet(sheet_id)
            sheet.set_percentages(customer_savings_percent, wholesale_target_percent)
            ctx.value = sheet.to_dict()

        return self._execute(context, [Step("set_percentages", update)])

    def dispatch(self, sheet_id: str, wholesaler_ids: Sequence[str]) -> OperationResult:
        context = IntakeContext("dispatch", inputs={"comparison_id": sheet_id})

        def send(ctx: IntakeContext) -> None:
            requests = dispatch_price_requests(self._sheet(sheet_id), wholesaler_ids, self._clock())
            self._price_requests.extend(requests)
            ctx.value = [price_request_to_dict(request) for request in requests]

        return self._execute(context, [Step("dispatch_requests", send)])

    def price_requests(self, supplier_id: Optional[str] = None) -> List[Dict[str, Any]]:
        return [
            price_request_to_dict(request)
            for request in self._price_requests
            if supplier_id is None or request.supplier_id == supplier_id
        ]
