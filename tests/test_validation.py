"""Tests for order eligibility checks."""

from dataclasses import replace
from decimal import Decimal

import pytest

from config.recon_rules import PriceBounds, ReconRules
from recon_core.errors import InvalidOrderError
from recon_core.validation import check_order


def test_valid_order_passes(make_order, rules: ReconRules) -> None:
    check_order(make_order("b1", "BUY", 1, "0"), rules)


@pytest.mark.parametrize(
    "change,reason",
    [
        ({"quantity": True}, "quantity must be an integer"),
        ({"quantity": 1.5}, "quantity must be an integer"),
        ({"price": Decimal("NaN")}, "not a finite decimal"),
        ({"price": Decimal("Infinity")}, "not a finite decimal"),
        ({"side": "SHORT"}, "unknown side"),
    ],
)
def test_malformed_orders(make_order, rules: ReconRules, change: dict, reason: str) -> None:
    order = replace(make_order("b1", "BUY", 1, "10"), **change)
    with pytest.raises(InvalidOrderError, match=reason) as excinfo:
        check_order(order, rules)
    assert excinfo.value.order_id == "b1"


def test_time_checked_before_price(make_order, rules: ReconRules) -> None:
    with pytest.raises(InvalidOrderError) as excinfo:
        check_order(make_order("b1", "BUY", 1, None, executed_at=None), rules)
    assert excinfo.value.reason == "missing execution time"


def test_custom_bounds(make_order) -> None:
    rules = ReconRules(prices=PriceBounds(min_price=Decimal("1"), max_price=Decimal("10")))
    check_order(make_order("ok", "BUY", 1, "10"), rules)
    with pytest.raises(InvalidOrderError, match="outside bounds"):
        check_order(make_order("low", "BUY", 1, "0.99"), rules)
