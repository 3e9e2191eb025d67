"""
Read normalized order records from JSON lines.

One object per line with keys id, user_id, symbol, side, quantity, price,
executed_at. price and executed_at may be null (such orders are stored but
never reconciled). Broker-specific column mapping happens upstream.
"""

from __future__ import annotations

import json
import re
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any

from recon_core.contracts import Order, OrderSide

_REQUIRED = ("id", "user_id", "symbol", "side", "quantity")


class OrderFileError(ValueError):
    """Raised when an order record cannot be parsed."""


def _parse_ts(raw: Any) -> datetime | None:
    if raw is None:
        return None
    ts = datetime.fromisoformat(str(raw).replace("Z", "+00:00"))
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


def _parse_quantity(raw: Any) -> int:
    """Whole share counts only: ints, integral floats, or digit strings."""
    # bool is an int subclass; true/false are not quantities
    if isinstance(raw, bool):
        raise OrderFileError(f"quantity must be a whole number, got {raw!r}")
    if isinstance(raw, int):
        return raw
    if isinstance(raw, float) and raw.is_integer():
        return int(raw)
    if isinstance(raw, str) and re.fullmatch(r"[+-]?[0-9]+", raw.strip()):
        return int(raw)
    raise OrderFileError(f"quantity must be a whole number, got {raw!r}")


def parse_order(record: dict[str, Any]) -> Order:
    missing = [k for k in _REQUIRED if record.get(k) in (None, "")]
    if missing:
        raise OrderFileError(f"missing fields: {', '.join(missing)}")
    try:
        side = OrderSide(str(record["side"]).upper())
    except ValueError as exc:
        raise OrderFileError(f"unknown side {record['side']!r}") from exc
    quantity = _parse_quantity(record["quantity"])
    try:
        price = None if record.get("price") is None else Decimal(str(record["price"]))
        executed_at = _parse_ts(record.get("executed_at"))
    except (ValueError, InvalidOperation) as exc:
        raise OrderFileError(str(exc)) from exc
    return Order(
        id=str(record["id"]),
        user_id=str(record["user_id"]),
        symbol=str(record["symbol"]).upper(),
        side=side,
        quantity=quantity,
        price=price,
        executed_at=executed_at,
    )


def read_orders(path: str | Path) -> list[Order]:
    """Parse every non-blank line of *path*. Errors name the offending line."""
    orders: list[Order] = []
    with open(path) as f:
        for lineno, line in enumerate(f, start=1):
            if not line.strip():
                continue
            try:
                record = json.loads(line)
                if not isinstance(record, dict):
                    raise OrderFileError(f"expected an object, got {type(record).__name__}")
                orders.append(parse_order(record))
            except (json.JSONDecodeError, OrderFileError) as exc:
                raise OrderFileError(f"{Path(path).name}:{lineno}: {exc}") from exc
    return orders
