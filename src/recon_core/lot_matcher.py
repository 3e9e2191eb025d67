"""
Lot Matcher: open position + opposing fill -> closed lot, remainder, reversal.

Pure computation, no side effects. Invoked by the Position Tracker for every
fill whose side opposes the current position direction.

    matched = min(Q, q)
    pnl     = (P - E) * matched   for LONG
              (E - P) * matched   for SHORT

If the fill is larger than the position the residual q - matched opens a new
position in the opposite direction at P (a reversal).
"""

from __future__ import annotations

import decimal
from dataclasses import dataclass, replace
from decimal import Decimal

from config.recon_rules import ReconRules
from recon_core.contracts import Allocations, Order, Position, Trade, TradeSide, TradeStatus
from recon_core.errors import InvariantViolation
from recon_core.sessions import holding_period, market_session, time_in_trade


@dataclass(frozen=True)
class LotMatch:
    """Outcome of matching one opposing fill against the open position.

    ``closed_lot`` carries the position's trade id when the fill consumed the
    whole position (the OPEN trade is finalized); otherwise its id is None and
    it must be saved as a new trade. ``remaining`` is flat when nothing of
    the old position is left.
    """

    matched: int
    realized_pnl: Decimal
    closed_lot: Trade
    remaining: Position
    reversal: Position | None

    @property
    def full_close(self) -> bool:
        return self.remaining.is_flat


def round_pnl(value: Decimal, rules: ReconRules) -> Decimal:
    places = rules.pnl.places
    if places is None:
        return value
    return value.quantize(Decimal(1).scaleb(-places), rounding=getattr(decimal, rules.pnl.rounding))


def realized_pnl(side: TradeSide, entry: Decimal, exit_: Decimal, quantity: int, rules: ReconRules) -> Decimal:
    """Signed P&L: positive when price moved in favour of the held direction."""
    if side is TradeSide.LONG:
        raw = (exit_ - entry) * quantity
    else:
        raw = (entry - exit_) * quantity
    return round_pnl(raw, rules)


def take_allocations(allocations: Allocations, quantity: int) -> tuple[Allocations, Allocations]:
    """Split entry allocations first-in first-out: (taken for *quantity*, left over)."""
    taken: list[tuple[str, int]] = []
    left: list[tuple[str, int]] = []
    need = quantity
    for order_id, qty in allocations:
        if need <= 0:
            left.append((order_id, qty))
        elif qty <= need:
            taken.append((order_id, qty))
            need -= qty
        else:
            taken.append((order_id, need))
            left.append((order_id, qty - need))
            need = 0
    return tuple(taken), tuple(left)


def match_lot(position: Position, order: Order, rules: ReconRules) -> LotMatch:
    """Match *order* against *position*. Caller has already validated the order."""
    if position.is_flat or position.side is None:
        raise InvariantViolation(f"Lot match on flat position for {position.symbol}")
    if order.side is position.side.entry_order_side:
        raise InvariantViolation(f"Order {order.id} does not oppose {position.side.value} position")
    if position.quantity <= 0:
        raise InvariantViolation(f"Open position {position.symbol} has quantity {position.quantity}")
    if order.price is None or order.executed_at is None:
        raise InvariantViolation(f"Order {order.id} reached the lot matcher without price or time")
    if position.open_time is None:
        raise InvariantViolation(f"Open position {position.symbol} has no open time")

    entry = position.avg_entry_price
    exit_price = order.price
    matched = min(position.quantity, order.quantity)
    pnl = realized_pnl(position.side, entry, exit_price, matched, rules)
    full_close = matched == position.quantity
    entry_allocs, left_allocs = take_allocations(position.allocations, matched)
    lot_allocs = (entry_allocs + ((order.id, matched),)) if position.allocations else ()

    closed_lot = Trade(
        id=position.trade_id if full_close else None,
        user_id=position.user_id,
        symbol=position.symbol,
        side=position.side,
        status=TradeStatus.CLOSED,
        open_quantity=matched,
        close_quantity=matched,
        avg_entry_price=entry,
        avg_exit_price=exit_price,
        pnl=pnl,
        orders_in_trade=position.order_ids + (order.id,),
        order_allocations=lot_allocs,
        open_time=position.open_time,
        close_time=order.executed_at,
        time_in_trade=time_in_trade(position.open_time, order.executed_at),
        cost_basis=entry * matched,
        proceeds=exit_price * matched,
        holding_period=holding_period(position.open_time, order.executed_at, rules),
        market_session=market_session(position.open_time, rules),
    )

    if full_close:
        remaining = Position.flat(position.user_id, position.symbol)
    else:
        remaining = replace(position, quantity=position.quantity - matched, allocations=left_allocs)

    reversal = None
    residual = order.quantity - matched
    if residual > 0:
        reversal = Position(
            user_id=position.user_id,
            symbol=position.symbol,
            side=position.side.opposite,
            quantity=residual,
            avg_entry_price=exit_price,
            order_ids=(order.id,),
            allocations=((order.id, residual),),
            open_time=order.executed_at,
        )

    if remaining.quantity < 0 or (reversal is not None and not full_close):
        raise InvariantViolation(
            f"Lot match for {position.symbol} left quantity {remaining.quantity} with residual {residual}"
        )
    return LotMatch(
        matched=matched,
        realized_pnl=pnl,
        closed_lot=closed_lot,
        remaining=remaining,
        reversal=reversal,
    )
