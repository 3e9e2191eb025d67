"""
Position Tracker: one (user, symbol) fill stream -> Trade aggregates.

Walks eligible fills in execution-time order and keeps the open inventory
as an explicit Position value:

    NONE  --fill-->            OPEN(dir)
    OPEN  --same-side fill-->  OPEN(dir, larger qty)          (weighted avg entry)
    OPEN  --opposing fill-->   [CLOSED lot] + OPEN(dir, smaller qty) | NONE | OPEN(opposite dir)

Every state change is written through the injected Trade Sink as it happens;
the caller owns the transaction around the whole pass.
"""

from __future__ import annotations

import logging
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, Sequence

from config.recon_rules import ReconRules
from recon_core.contracts import (
    Order,
    PartitionResult,
    Position,
    SkippedOrder,
    Trade,
    TradeSink,
    TradeStatus,
)
from recon_core.errors import InvalidOrderError, InvariantViolation
from recon_core.lot_matcher import match_lot
from recon_core.sessions import market_session
from recon_core.validation import check_order

logger = logging.getLogger("recon.tracker")


def _utc(ts: datetime) -> datetime:
    if ts.tzinfo is None:
        return ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc)


def sort_fills(orders: Sequence[Order]) -> list[Order]:
    """Ascending by execution time; ties keep source order."""
    return sorted(orders, key=lambda o: _utc(o.executed_at))  # type: ignore[arg-type]


class PositionTracker:
    """
    Apply fills for one partition through a Trade Sink.

    The tracker holds no state between calls; ``process`` rebuilds the
    Position from the symbol's persisted OPEN trade (if any) every time.
    """

    def __init__(self, sink: TradeSink, rules: ReconRules | None = None) -> None:
        self._sink = sink
        self._rules = rules or ReconRules()
        self._events: list[tuple[str, dict]] = []

    def _emit(self, event_type: str, **payload: Any) -> None:
        self._events.append((event_type, payload))

    def _link(self, order_id: str, trade_id: str) -> None:
        linked = self._sink.link_orders([order_id], trade_id)
        if linked != 1:
            raise InvariantViolation(f"Linking order {order_id} to trade {trade_id} updated {linked} orders, expected 1")

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    def process(
        self,
        user_id: str,
        symbol: str,
        orders: Sequence[Order],
        open_trade: Trade | None = None,
    ) -> PartitionResult:
        """Apply *orders* on top of *open_trade* and return the emitted trades.

        ``closed`` lists CLOSED lots in the order they were closed; ``open``
        holds the symbol's OPEN trade when this pass opened or changed it.
        ``events`` collects the lifecycle events for the caller to publish
        once its transaction commits.
        """
        result = PartitionResult(user_id=user_id, symbol=symbol)
        self._events = result.events
        if open_trade is not None:
            if open_trade.user_id != user_id or open_trade.symbol != symbol:
                raise InvariantViolation(f"Open trade {open_trade.id} does not belong to {user_id}/{symbol}")
            position = Position.from_trade(open_trade)
        else:
            position = Position.flat(user_id, symbol)
        current = open_trade
        touched = False

        eligible: list[Order] = []
        for order in orders:
            if order.user_id != user_id or order.symbol != symbol:
                raise InvariantViolation(f"Order {order.id} ({order.user_id}/{order.symbol}) routed to {user_id}/{symbol}")
            try:
                if order.trade_id is not None:
                    raise InvalidOrderError(order.id, f"already linked to trade {order.trade_id}")
                check_order(order, self._rules)
            except InvalidOrderError as exc:
                logger.warning("Skipping order %s (%s): %s", order.id, symbol, exc.reason)
                result.skipped.append(SkippedOrder(order=order, reason=exc.reason))
                self._emit("order_skipped", order=order, reason=exc.reason)
                continue
            eligible.append(order)

        for order in sort_fills(eligible):
            if position.is_flat:
                position, current = self._open(position, order)
                touched = True
            elif order.side is position.side.entry_order_side:  # type: ignore[union-attr]
                position, current = self._add(position, current, order)
                touched = True
            else:
                position, current, lot, touched = self._close(position, current, order, touched)
                result.closed.append(lot)
            result.consumed += 1

        if not position.is_flat:
            if current is None or current.id != position.trade_id:
                raise InvariantViolation(f"Open position {user_id}/{symbol} lost its trade record")
            if touched:
                result.open.append(current)
        logger.debug(
            "Partition %s/%s: %d fills applied, %d closed, %d open, %d skipped",
            user_id, symbol, result.consumed, len(result.closed), len(result.open), len(result.skipped),
        )
        return result

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def _open(self, position: Position, order: Order) -> tuple[Position, Trade]:
        """NONE -> OPEN: new position from a single fill, persisted immediately."""
        if order.price is None or order.executed_at is None:
            raise InvariantViolation(f"Opening {position.symbol} from order {order.id} without price or time")
        drafted = Position(
            user_id=position.user_id,
            symbol=position.symbol,
            side=order.side.trade_side,
            quantity=order.quantity,
            avg_entry_price=order.price,
            order_ids=(order.id,),
            allocations=((order.id, order.quantity),),
            open_time=order.executed_at,
        )
        return self._persist_new_position(drafted, link_order_id=order.id)

    def _persist_new_position(self, drafted: Position, *, link_order_id: str | None) -> tuple[Position, Trade]:
        if drafted.side is None or drafted.open_time is None:
            raise InvariantViolation(f"Persisting {drafted.symbol} position without side or open time")
        trade = Trade(
            user_id=drafted.user_id,
            symbol=drafted.symbol,
            side=drafted.side,
            status=TradeStatus.OPEN,
            open_quantity=drafted.quantity,
            avg_entry_price=drafted.avg_entry_price,
            orders_in_trade=drafted.order_ids,
            order_allocations=drafted.allocations,
            open_time=drafted.open_time,
            cost_basis=drafted.avg_entry_price * drafted.quantity,
            market_session=market_session(drafted.open_time, self._rules),
        )
        trade.check_invariants()
        trade_id = self._sink.save(trade)
        trade = replace(trade, id=trade_id)
        if link_order_id is not None:
            self._link(link_order_id, trade_id)
        self._emit("trade_opened", trade=trade)
        return replace(drafted, trade_id=trade_id), trade

    def _add(self, position: Position, current: Trade | None, order: Order) -> tuple[Position, Trade]:
        """Same-direction fill: weighted-average entry, quantity grows, same trade."""
        if order.price is None:
            raise InvariantViolation(f"Adding order {order.id} to {position.symbol} without a price")
        if current is None or position.trade_id is None:
            raise InvariantViolation(f"Adding to {position.symbol} without an OPEN trade record")
        new_qty = position.quantity + order.quantity
        new_avg = (position.avg_entry_price * position.quantity + order.price * order.quantity) / new_qty
        position = replace(
            position,
            quantity=new_qty,
            avg_entry_price=new_avg,
            order_ids=position.order_ids + (order.id,),
            # untracked when resumed from a record without allocations
            allocations=(position.allocations + ((order.id, order.quantity),)) if position.allocations else (),
        )
        patch = {
            "open_quantity": new_qty,
            "avg_entry_price": new_avg,
            "orders_in_trade": position.order_ids,
            "order_allocations": position.allocations,
            "cost_basis": new_avg * new_qty,
        }
        current = self._update_open(current, patch)
        self._link(order.id, position.trade_id)
        self._emit("trade_updated", trade=current)
        return position, current

    def _close(
        self,
        position: Position,
        current: Trade | None,
        order: Order,
        touched: bool,
    ) -> tuple[Position, Trade | None, Trade, bool]:
        """Opposing fill: emit the matched lot, then remainder / flat / reversal."""
        if current is None or position.trade_id is None:
            raise InvariantViolation(f"Closing {position.symbol} without an OPEN trade record")
        match = match_lot(position, order, self._rules)
        lot = match.closed_lot
        lot.check_invariants()

        if match.full_close:
            # the OPEN trade is the lot: finalize it in place
            patch = {
                "status": lot.status,
                "close_quantity": lot.close_quantity,
                "avg_exit_price": lot.avg_exit_price,
                "pnl": lot.pnl,
                "orders_in_trade": lot.orders_in_trade,
                "order_allocations": lot.order_allocations,
                "close_time": lot.close_time,
                "time_in_trade": lot.time_in_trade,
                "proceeds": lot.proceeds,
                "holding_period": lot.holding_period,
            }
            if lot.open_quantity != current.open_quantity:
                raise InvariantViolation(
                    f"Full close of {current.id} matched {lot.open_quantity} of {current.open_quantity}"
                )
            self._sink.update(position.trade_id, patch)
            lot = replace(current, **patch)
            lot.check_invariants()
            current = None
            touched = False
        else:
            lot = replace(lot, id=self._sink.save(lot))
            remaining = match.remaining
            current = self._update_open(
                current,
                {
                    "open_quantity": remaining.quantity,
                    "order_allocations": remaining.allocations,
                    "cost_basis": remaining.avg_entry_price * remaining.quantity,
                },
            )
            touched = True
        if lot.id is None:
            raise InvariantViolation(f"Closed lot for order {order.id} was not assigned an id")
        self._link(order.id, lot.id)
        self._emit("trade_closed", trade=lot, realized_pnl=match.realized_pnl)

        position = match.remaining
        if match.reversal is not None:
            # the closing order is already linked to the lot it closed
            position, current = self._persist_new_position(match.reversal, link_order_id=None)
            touched = True
        return position, current, lot, touched

    def _update_open(self, current: Trade, patch: dict[str, Any]) -> Trade:
        if current.id is None or not current.is_open:
            raise InvariantViolation(f"Update of non-OPEN trade {current.id}")
        updated = replace(current, **patch)
        updated.check_invariants()
        self._sink.update(current.id, patch)
        return updated
