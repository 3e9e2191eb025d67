"""
Data contracts for recon-core: Order, Position, Trade and the Order Source /
Trade Sink interfaces.

Orders are the immutable input fills; Trades are the persisted round-trip
aggregates; Position is the transient open inventory rebuilt per
(user, symbol) partition. No I/O here; these are plain dataclasses.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Mapping, Protocol, Sequence

from recon_core.errors import InvariantViolation

# (order id, shares of that order attributed to a trade), in fill order
Allocations = tuple[tuple[str, int], ...]


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class OrderSide(str, Enum):
    """Side of a broker execution."""

    BUY = "BUY"
    SELL = "SELL"

    @property
    def trade_side(self) -> TradeSide:
        """Direction a fill of this side opens when the position is flat."""
        if self is OrderSide.BUY:
            return TradeSide.LONG
        return TradeSide.SHORT


class TradeSide(str, Enum):
    """Direction of a position or trade."""

    LONG = "LONG"
    SHORT = "SHORT"

    @property
    def opposite(self) -> TradeSide:
        if self is TradeSide.LONG:
            return TradeSide.SHORT
        return TradeSide.LONG

    @property
    def entry_order_side(self) -> OrderSide:
        """Order side that adds to a position of this direction."""
        if self is TradeSide.LONG:
            return OrderSide.BUY
        return OrderSide.SELL


class TradeStatus(str, Enum):
    OPEN = "OPEN"
    CLOSED = "CLOSED"


class HoldingPeriod(str, Enum):
    """INTRADAY when closed within the swing threshold (or still open)."""

    INTRADAY = "INTRADAY"
    SWING = "SWING"


class MarketSession(str, Enum):
    """Session the trade was opened in, in exchange local time."""

    PRE_MARKET = "PRE_MARKET"
    REGULAR = "REGULAR"
    AFTER_HOURS = "AFTER_HOURS"


# ---------------------------------------------------------------------------
# Input
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Order:
    """One broker execution (fill). Read-only to the engine.

    ``price`` and ``executed_at`` are nullable: such orders are ineligible and
    skipped. ``trade_id`` is the idempotency tag stamped by the Trade Sink.
    """

    id: str
    user_id: str
    symbol: str
    side: OrderSide
    quantity: int
    price: Decimal | None
    executed_at: datetime | None
    trade_id: str | None = None

    @property
    def is_consumed(self) -> bool:
        return self.trade_id is not None


# ---------------------------------------------------------------------------
# Output aggregate
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Trade:
    """A persisted open position or one fully matched closed lot.

    For a CLOSED trade open_quantity == close_quantity; for an OPEN trade
    close_quantity == 0, avg_exit_price is None and pnl is 0.

    ``order_allocations`` splits each contributing order's shares across
    trades: an order that straddles a partial close or reversal is
    allocated to more than one trade. ``time_in_trade`` is whole seconds
    from open to close, set once the trade is CLOSED.
    """

    user_id: str
    symbol: str
    side: TradeSide
    status: TradeStatus
    open_quantity: int
    avg_entry_price: Decimal
    open_time: datetime
    close_quantity: int = 0
    avg_exit_price: Decimal | None = None
    pnl: Decimal = Decimal("0")
    orders_in_trade: tuple[str, ...] = ()
    order_allocations: Allocations = ()
    close_time: datetime | None = None
    time_in_trade: int | None = None
    cost_basis: Decimal = Decimal("0")
    proceeds: Decimal | None = None
    holding_period: HoldingPeriod = HoldingPeriod.INTRADAY
    market_session: MarketSession = MarketSession.REGULAR
    id: str | None = None

    @property
    def orders_count(self) -> int:
        return len(self.orders_in_trade)

    @property
    def is_open(self) -> bool:
        return self.status is TradeStatus.OPEN

    def check_invariants(self) -> None:
        """Raise InvariantViolation if quantities or status fields disagree."""
        if self.open_quantity <= 0:
            raise InvariantViolation(
                f"Trade {self.id or '<new>'} {self.symbol}: open_quantity must be positive, got {self.open_quantity}"
            )
        if self.status is TradeStatus.CLOSED:
            if self.close_quantity != self.open_quantity:
                raise InvariantViolation(
                    f"CLOSED trade {self.id or '<new>'} {self.symbol}: open_quantity {self.open_quantity} "
                    f"!= close_quantity {self.close_quantity}"
                )
            if self.avg_exit_price is None:
                raise InvariantViolation(f"CLOSED trade {self.id or '<new>'} {self.symbol} has no exit price")
        else:
            if self.close_quantity != 0:
                raise InvariantViolation(
                    f"OPEN trade {self.id or '<new>'} {self.symbol}: close_quantity must be 0, got {self.close_quantity}"
                )
            if self.pnl != 0 or self.avg_exit_price is not None:
                raise InvariantViolation(f"OPEN trade {self.id or '<new>'} {self.symbol} carries realized fields")
        if not self.orders_in_trade:
            raise InvariantViolation(f"Trade {self.id or '<new>'} {self.symbol} has no contributing orders")
        # empty when the trade was resumed from a record without allocations
        if self.order_allocations:
            allocated = sum(qty for _, qty in self.order_allocations)
            expected = self.open_quantity + self.close_quantity
            if allocated != expected:
                raise InvariantViolation(
                    f"Trade {self.id or '<new>'} {self.symbol}: allocations total {allocated}, expected {expected}"
                )


# ---------------------------------------------------------------------------
# Transient state
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Position:
    """Open inventory for one (user, symbol) at a point in the fill stream.

    ``side`` is None when flat. ``trade_id`` is the persisted OPEN trade this
    position drafts.
    """

    user_id: str
    symbol: str
    side: TradeSide | None = None
    quantity: int = 0
    avg_entry_price: Decimal = Decimal("0")
    order_ids: tuple[str, ...] = ()
    allocations: Allocations = ()
    open_time: datetime | None = None
    trade_id: str | None = None

    @property
    def is_flat(self) -> bool:
        return self.side is None

    @classmethod
    def flat(cls, user_id: str, symbol: str) -> Position:
        return cls(user_id=user_id, symbol=symbol)

    @classmethod
    def from_trade(cls, trade: Trade) -> Position:
        """Resume from the OPEN trade persisted by a previous run."""
        if not trade.is_open:
            raise InvariantViolation(f"Cannot resume position from {trade.status.value} trade {trade.id}")
        return cls(
            user_id=trade.user_id,
            symbol=trade.symbol,
            side=trade.side,
            quantity=trade.open_quantity,
            avg_entry_price=trade.avg_entry_price,
            order_ids=tuple(trade.orders_in_trade),
            allocations=tuple(trade.order_allocations),
            open_time=trade.open_time,
            trade_id=trade.id,
        )


@dataclass(frozen=True)
class SkippedOrder:
    """An ineligible order left unconsumed, with the reason it was skipped."""

    order: Order
    reason: str


@dataclass
class PartitionResult:
    """Trades emitted for one (user, symbol) pass, in emission order."""

    user_id: str
    symbol: str
    closed: list[Trade] = field(default_factory=list)
    open: list[Trade] = field(default_factory=list)
    skipped: list[SkippedOrder] = field(default_factory=list)
    consumed: int = 0
    # lifecycle events, published only once the pass has been committed
    events: list[tuple[str, dict]] = field(default_factory=list)

    @property
    def trades(self) -> list[Trade]:
        return self.closed + self.open


# ---------------------------------------------------------------------------
# Collaborator interfaces
# ---------------------------------------------------------------------------


class OrderSource(Protocol):
    def fetch_unconsumed_orders(self, user_id: str, symbol: str | None = None) -> list[Order]:
        ...


class TradeSink(Protocol):
    def fetch_open_trade(self, user_id: str, symbol: str) -> Trade | None:
        ...

    def save(self, trade: Trade) -> str:
        ...

    def update(self, trade_id: str, patch: Mapping[str, Any]) -> None:
        ...

    def link_orders(self, order_ids: Sequence[str], trade_id: str) -> int:
        ...
