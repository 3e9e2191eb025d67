"""Pytest fixtures: order factories and temp stores for deterministic tests."""

from datetime import datetime, timezone
from decimal import Decimal
from pathlib import Path
from typing import Callable

import pytest

from config.recon_rules import ReconRules
from ledger.trade_store import TradeStore
from recon_core.contracts import Order, OrderSide


def _ts(year: int, month: int, day: int, hour: int = 15, minute: int = 0) -> datetime:
    """UTC timestamp. 15:00 UTC in January is 10:00 New York (regular session)."""
    return datetime(year, month, day, hour, minute, 0, tzinfo=timezone.utc)


OrderFactory = Callable[..., Order]


@pytest.fixture
def user_id() -> str:
    return "user-1"


@pytest.fixture
def symbol() -> str:
    return "AAPL"


@pytest.fixture
def rules() -> ReconRules:
    return ReconRules()


@pytest.fixture
def make_order(user_id: str, symbol: str) -> OrderFactory:
    """Build an Order; minute offsets keep fills strictly ordered by default."""

    def _make(
        oid: str,
        side: str,
        qty: int,
        price: str | None,
        minute: int = 0,
        *,
        day: int = 2,
        sym: str | None = None,
        user: str | None = None,
        executed_at: datetime | None | str = "default",
    ) -> Order:
        ts = _ts(2024, 1, day, 15, minute) if executed_at == "default" else executed_at
        return Order(
            id=oid,
            user_id=user or user_id,
            symbol=sym or symbol,
            side=OrderSide(side),
            quantity=qty,
            price=None if price is None else Decimal(price),
            executed_at=ts,  # type: ignore[arg-type]
        )

    return _make


@pytest.fixture
def store(tmp_path: Path) -> TradeStore:
    return TradeStore(tmp_path / "recon.db")
