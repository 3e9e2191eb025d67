"""
Order eligibility and sanity checks.

Runs before any position mutation: an order that fails here is skipped and
left unconsumed.
"""

from __future__ import annotations

from decimal import Decimal

from config.recon_rules import ReconRules
from recon_core.contracts import Order, OrderSide
from recon_core.errors import InvalidOrderError


def check_order(order: Order, rules: ReconRules) -> None:
    """Raise InvalidOrderError if *order* must not be applied."""
    if order.executed_at is None:
        raise InvalidOrderError(order.id, "missing execution time")
    if order.price is None:
        raise InvalidOrderError(order.id, "missing price")
    if not isinstance(order.side, OrderSide):
        raise InvalidOrderError(order.id, f"unknown side {order.side!r}")
    # bool is an int subclass; a True quantity is a data defect
    if isinstance(order.quantity, bool) or not isinstance(order.quantity, int):
        raise InvalidOrderError(order.id, f"quantity must be an integer, got {order.quantity!r}")
    if order.quantity <= 0:
        raise InvalidOrderError(order.id, f"non-positive quantity {order.quantity}")
    price = order.price
    if not isinstance(price, Decimal) or not price.is_finite():
        raise InvalidOrderError(order.id, f"price is not a finite decimal: {price!r}")
    bounds = rules.prices
    if price < bounds.min_price or price > bounds.max_price:
        raise InvalidOrderError(
            order.id,
            f"price {price} outside bounds [{bounds.min_price}, {bounds.max_price}]",
        )
