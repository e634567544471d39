from datetime import timedelta

import pytest

from conftest import T0
from produce_intake.config import BASE_DIR, load_settings
from produce_intake.domain import CartLine, OrderStatus
from produce_intake.lifecycle import advance
from produce_intake.prompt_loader import load_prompt, render_prompt
from produce_intake.snapshot import DashboardPoller
from produce_intake.step_runner import Step, StepRunner
from produce_intake.store import InMemoryCatalog


class TraceOnly:
    def __init__(self):
        self.trace = []
        self.seen = []

    def log(self, event, detail, status="success"):
        self.trace.append((event, status))


def test_step_runner_traces_skips_and_errors():
    def boom(ctx):
        raise RuntimeError("nope")

    runner = StepRunner(
        [
            Step("first", lambda ctx: ctx.seen.append("first")),
            Step("skipped", lambda ctx: ctx.seen.append("skipped"), skip_if=lambda ctx: True),
            Step("broken", boom),
            Step("never", lambda ctx: ctx.seen.append("never")),
        ]
    )
    ctx = TraceOnly()
    with pytest.raises(RuntimeError):
        runner.run(ctx)
    assert runner.step_names == ["first", "skipped", "broken", "never"]
    assert ctx.seen == ["first"]
    assert ctx.trace == [
        ("first", "success"),
        ("skipped", "skipped"),
        ("broken", "error"),
    ]


def test_each_poll_is_an_isolated_snapshot(products, order_store, accounts, clock):
    poller = DashboardPoller(order_store, InMemoryCatalog(products), accounts, clock=clock)

    order = order_store.create_order("b1", [CartLine("p1", 5, 4.50)], 22.5)
    for status in (OrderStatus.CONFIRMED, OrderStatus.READY_FOR_DELIVERY, OrderStatus.SHIPPED, OrderStatus.DELIVERED):
        advance(order, status, clock.tick(minutes=1))
    first = poller.poll("b1")
    assert first.tracking_order.id == order.id
    assert first.countdown == "90:00"
    assert first.pending_verification is True
    assert first.is_restricted is False

    clock.tick(minutes=89)
    second = poller.poll("b1")
    assert second.countdown == "01:00"
    assert first.countdown == "90:00"

    order.is_fully_verified = True
    assert second.tracking_order.is_fully_verified is False


def test_settings_defaults(monkeypatch):
    for name in (
        "CATALOG_PATH",
        "ORDERS_PATH",
        "PAY_NOW_DISCOUNT",
        "VERIFICATION_WINDOW_MINUTES",
        "CUSTOMER_SAVINGS_PERCENT",
        "WHOLESALE_TARGET_PERCENT",
        "GEMINI_API_KEY",
    ):
        monkeypatch.delenv(name, raising=False)
    settings = load_settings()
    assert settings.catalog_path == (BASE_DIR / "resources" / "catalog.json").resolve()
    assert settings.orders_path is None
    assert settings.pay_now_discount == pytest.approx(0.10)
    assert settings.verification_window_minutes == 90
    assert settings.customer_savings_percent == 30
    assert settings.wholesale_target_percent == 55
    assert settings.gemini_api_key == ""


@pytest.mark.parametrize(
    "name,value",
    [
        ("PAY_NOW_DISCOUNT", "1.5"),
        ("PAY_NOW_DISCOUNT", "ten"),
        ("VERIFICATION_WINDOW_MINUTES", "0"),
        ("CUSTOMER_SAVINGS_PERCENT", "150"),
        ("CUSTOMER_SAVINGS_PERCENT", "-1"),
        ("WHOLESALE_TARGET_PERCENT", "nan"),
        ("WHOLESALE_TARGET_PERCENT", "-5"),
    ],
)
def test_settings_reject_bad_numbers(monkeypatch, name, value):
    monkeypatch.setenv(name, value)
    with pytest.raises(ValueError):
        load_settings()


def test_prompt_rendering_keeps_json_braces(tmp_path):
    (tmp_path / "demo.md").write_bytes('\ufeffText: "$order_text" -> {"items": []} $missing'.encode("utf-8"))
    assert load_prompt(tmp_path / "demo.md").startswith("Text")
    rendered = render_prompt(tmp_path, "demo", order_text="5kg tomatoes")
    assert rendered == 'Text: "5kg tomatoes" -> {"items": []} $missing'


def test_bundled_order_prompt_renders():
    rendered = render_prompt(BASE_DIR / "prompts", "parse_order", order_text="bananas", catalog_summary="p1: Tomatoes")
    assert "bananas" in rendered
    assert "p1: Tomatoes" in rendered
    assert "$order_text" not in rendered


def test_snapshot_window_is_configurable(products, order_store, accounts, clock):
    poller = DashboardPoller(order_store, InMemoryCatalog(products), accounts, window=timedelta(minutes=30), clock=clock)
    order = order_store.create_order("b2", [CartLine("p1", 1, 4.50)], 4.5)
    for status in (OrderStatus.CONFIRMED, OrderStatus.READY_FOR_DELIVERY, OrderStatus.SHIPPED, OrderStatus.DELIVERED):
        advance(order, status, clock.tick(minutes=1))
    clock.tick(minutes=31)
    snap = poller.poll("b2")
    assert snap.countdown == "00:00"
    assert snap.pending_verification is False
    assert snap.taken_at > T0
