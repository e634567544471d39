import logging

import pytest

from conftest import BANANA_ORDER
from produce_intake.cart import merge_lines
from produce_intake.domain import ParsedLine, PaymentMethod, Unit
from produce_intake.errors import AmbiguityUnresolvedError, NotFoundError, ValidationError
from produce_intake.pricing import PricingEngine
from produce_intake.resolver import ISSUE_MISSING_SUGGESTIONS, AmbiguityResolver, LineState


@pytest.fixture
def resolver():
    return AmbiguityResolver()


def test_banana_line_is_pending_with_both_varieties(resolver, catalog):
    review = resolver.build_review(BANANA_ORDER, catalog)
    bananas, tomatoes = review.lines
    assert bananas.state is LineState.PENDING
    assert bananas.candidates == ["p-banana-cav", "p-banana-lady"]
    assert tomatoes.state is LineState.RESOLVED
    assert tomatoes.product_id == "p1"
    assert review.pending_indexes() == [0]


def test_confirm_with_pending_line_is_rejected_without_changes(resolver, catalog):
    review = resolver.build_review(BANANA_ORDER, catalog)
    with pytest.raises(AmbiguityUnresolvedError) as excinfo:
        resolver.confirm(review, catalog)
    assert excinfo.value.details["pending"] == [0]
    assert excinfo.value.details["products"] == ["bananas"]
    assert review.lines[0].parsed.selected_product_id is None
    assert review.pending_indexes() == [0]


def test_select_then_confirm_gives_catalog_priced_lines(resolver, catalog):
    review = resolver.build_review(BANANA_ORDER, catalog)
    resolver.select(review, 0, "p-banana-lady", catalog)
    lines = resolver.confirm(review, catalog)
    assert [(line.product_id, line.quantity, line.unit) for line in lines] == [
        ("p-banana-lady", 100, Unit.KG),
        ("p1", 5, Unit.KG),
    ]
    assert lines[0].unit_price == catalog.get("p-banana-lady").default_price
    assert lines[1].unit_price == catalog.get("p1").default_price


def test_unique_name_match_auto_resolves(resolver, catalog):
    review = resolver.build_review([ParsedLine("lettuce", 3, Unit.EACH)], catalog)
    assert review.lines[0].state is LineState.RESOLVED
    assert review.lines[0].product_id == "p2"


def test_misspelt_unique_name_still_auto_resolves(resolver, catalog):
    review = resolver.build_review([ParsedLine("egplants", 2)], catalog)
    assert review.lines[0].product_id == "p4"


def test_several_name_matches_stay_pending(resolver, catalog):
    review = resolver.build_review([ParsedLine("tomatoes", 5)], catalog)
    line = review.lines[0]
    assert line.state is LineState.PENDING
    assert line.candidates == ["p1", "p1-truss"]


def test_ambiguous_line_without_suggestions_is_flagged(resolver, catalog, caplog):
    caplog.set_level(logging.WARNING, logger="pz.resolver")
    review = resolver.build_review([ParsedLine("lettuce", 2, is_ambiguous=True)], catalog)
    line = review.lines[0]
    assert line.state is LineState.PENDING
    assert line.issue == ISSUE_MISSING_SUGGESTIONS
    assert review.issues() == [{"index": 0, "product_name": "lettuce", "issue": ISSUE_MISSING_SUGGESTIONS}]
    assert "ambiguous_without_suggestions" in caplog.text
    with pytest.raises(AmbiguityUnresolvedError):
        resolver.confirm(review, catalog)


def test_unknown_ids_from_the_model_are_ignored(resolver, catalog):
    parsed = ParsedLine(
        "bananas",
        10,
        is_ambiguous=True,
        suggested_product_ids=["p-banana-cav", "p-ghost"],
        selected_product_id="p-ghost",
    )
    review = resolver.build_review([parsed], catalog)
    line = review.lines[0]
    assert line.parsed.selected_product_id is None
    assert line.candidates == ["p-banana-cav"]
    assert line.state is LineState.PENDING


def test_build_review_does_not_mutate_input(resolver, catalog):
    parsed = ParsedLine("bananas", 1, suggested_product_ids=["p-ghost"], selected_product_id="p-ghost")
    resolver.build_review([parsed], catalog)
    assert parsed.selected_product_id == "p-ghost"


def test_clear_returns_any_line_to_pending(resolver, catalog):
    review = resolver.build_review([ParsedLine("lettuce", 3)] + BANANA_ORDER, catalog)
    resolver.select(review, 1, "p-banana-cav", catalog)
    resolver.clear(review, 0)
    resolver.clear(review, 1)
    assert review.pending_indexes() == [0, 1]


def test_select_rejects_unknown_product_and_bad_index(resolver, catalog):
    review = resolver.build_review(BANANA_ORDER, catalog)
    with pytest.raises(ValidationError):
        resolver.select(review, 0, "p-ghost", catalog)
    with pytest.raises(NotFoundError):
        resolver.select(review, 7, "p1", catalog)
    assert review.lines[0].parsed.selected_product_id is None


@pytest.mark.parametrize("quantity", [0, -3, float("nan"), float("inf"), None])
def test_unusable_quantity_rejected(resolver, catalog, quantity):
    with pytest.raises(ValidationError):
        resolver.build_review([ParsedLine("lettuce", quantity)], catalog)


def test_reselecting_same_product_keeps_totals(resolver, catalog):
    review = resolver.build_review(BANANA_ORDER, catalog)
    resolver.select(review, 0, "p-banana-cav", catalog)
    first = PricingEngine().checkout_totals(resolver.confirm(review, catalog), PaymentMethod.INVOICE)
    resolver.select(review, 0, "p-banana-cav", catalog)
    second = PricingEngine().checkout_totals(resolver.confirm(review, catalog), PaymentMethod.INVOICE)
    assert first.total == second.total


def test_confirmed_lines_round_trip_through_merge(resolver, catalog):
    parsed = [ParsedLine("lettuce", 2), ParsedLine("apples", 4), ParsedLine("lettuce", 1)]
    review = resolver.build_review(parsed, catalog)
    cart = merge_lines((), resolver.confirm(review, catalog))
    assert len(cart) == 2
    assert cart[0].quantity == 3


def test_divergence_between_model_and_matcher_is_logged(resolver, catalog, caplog):
    caplog.set_level(logging.INFO, logger="pz.resolver")
    resolver.build_review([ParsedLine("lettuce", 1, selected_product_id="p3")], catalog)
    assert "matcher_divergence" in caplog.text
