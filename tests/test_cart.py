import pytest

from conftest import T0
from produce_intake.cart import (
    adjust_quantity,
    environmental_impact,
    merge_lines,
    prepare_reorder,
    remove_line,
    set_quantity,
)
from produce_intake.domain import CartLine, Order, Unit
from produce_intake.errors import ValidationError

TOMATO = CartLine("p1", 5, 4.50)
LETTUCE_EACH = CartLine("p2", 10, 1.20, Unit.EACH)


def test_merge_sums_matching_keys_and_appends_new_ones():
    cart = merge_lines((TOMATO,), [CartLine("p1", 2, 4.50), LETTUCE_EACH])
    assert cart == (CartLine("p1", 7, 4.50), LETTUCE_EACH)


def test_same_product_in_another_unit_is_a_separate_line():
    cart = merge_lines((CartLine("p2", 3, 1.20),), [LETTUCE_EACH])
    assert len(cart) == 2


def test_merging_nothing_leaves_cart_unchanged():
    cart = (TOMATO, LETTUCE_EACH)
    assert merge_lines(cart, []) == cart


def test_existing_line_keeps_its_price():
    cart = merge_lines((TOMATO,), [CartLine("p1", 1, 9.99)])
    assert cart[0].unit_price == 4.50


def test_merge_drops_lines_that_net_to_zero():
    assert merge_lines((TOMATO,), [CartLine("p1", -5, 4.50)]) == ()


def test_adjust_to_zero_or_below_removes_line():
    cart = (TOMATO, LETTUCE_EACH)
    assert adjust_quantity(cart, "p1", Unit.KG, -5) == (LETTUCE_EACH,)
    assert adjust_quantity(cart, "p1", Unit.KG, -9) == (LETTUCE_EACH,)
    assert adjust_quantity(cart, "p1", Unit.KG, 1)[0].quantity == 6


def test_adjust_missing_line_raises():
    with pytest.raises(ValidationError):
        adjust_quantity((TOMATO,), "p2", Unit.KG, 1)


def test_set_and_remove():
    cart = (TOMATO, LETTUCE_EACH)
    assert set_quantity(cart, "p2", Unit.EACH, 4)[1].quantity == 4
    assert set_quantity(cart, "p2", Unit.EACH, 0) == (TOMATO,)
    assert remove_line(cart, "p1", Unit.KG) == (LETTUCE_EACH,)


def test_functions_do_not_mutate_input():
    cart = (TOMATO,)
    merge_lines(cart, [CartLine("p1", 3, 4.50)])
    adjust_quantity(cart, "p1", Unit.KG, 2)
    assert cart == (TOMATO,)


def _order(lines):
    return Order(id="o-1", buyer_id="b1", lines=lines, total_amount=0.0, placed_at=T0)


def test_reorder_applies_adjustments_and_removals():
    order = _order([TOMATO, LETTUCE_EACH, CartLine("p3", 2, 3.80)])
    cart = prepare_reorder(order, {("p1", Unit.KG): 12, ("p3", Unit.KG): 0}, {("p2", Unit.EACH)})
    assert cart == (CartLine("p1", 12, 4.50),)
    assert order.lines[0].quantity == 5


def test_reorder_collapses_duplicate_history_lines():
    order = _order([TOMATO, CartLine("p1", 1, 4.50)])
    assert prepare_reorder(order) == (CartLine("p1", 6, 4.50),)


def test_environmental_impact_uses_per_kg_metrics(products):
    by_id = {product.id: product for product in products}
    impact = environmental_impact((TOMATO, CartLine("ghost", 3, 1.0)), by_id)
    assert impact["co2_kg"] == pytest.approx(5 * by_id["p1"].co2_savings_per_kg)
    assert impact["water_litres"] == 0
