"""Tests for the position tracker against an in-memory trade sink. No database."""

from dataclasses import replace
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Mapping, Sequence

import pytest

from recon_core.contracts import MarketSession, Order, Trade, TradeSide, TradeStatus
from recon_core.errors import InvariantViolation, TradeSinkError
from recon_core.position_tracker import PositionTracker, sort_fills


class MemorySink:
    """Trade Sink backed by dicts. Enforces one OPEN trade per partition."""

    def __init__(self) -> None:
        self.trades: dict[str, Trade] = {}
        self.links: dict[str, str] = {}
        self._next = 0

    def fetch_open_trade(self, user_id: str, symbol: str) -> Trade | None:
        for t in self.trades.values():
            if t.user_id == user_id and t.symbol == symbol and t.status is TradeStatus.OPEN:
                return t
        return None

    def save(self, trade: Trade) -> str:
        if trade.status is TradeStatus.OPEN and self.fetch_open_trade(trade.user_id, trade.symbol):
            raise TradeSinkError("second OPEN trade")
        self._next += 1
        tid = f"T{self._next}"
        self.trades[tid] = replace(trade, id=tid)
        return tid

    def update(self, trade_id: str, patch: Mapping[str, Any]) -> None:
        current = self.trades.get(trade_id)
        if current is None or current.status is not TradeStatus.OPEN:
            raise TradeSinkError(f"{trade_id} is not OPEN")
        self.trades[trade_id] = replace(current, **patch)

    def link_orders(self, order_ids: Sequence[str], trade_id: str) -> int:
        if trade_id not in self.trades:
            raise TradeSinkError(f"unknown trade {trade_id}")
        n = 0
        for oid in order_ids:
            if oid not in self.links:
                self.links[oid] = trade_id
                n += 1
        return n


class FailingSink(MemorySink):
    def link_orders(self, order_ids: Sequence[str], trade_id: str) -> int:
        raise TradeSinkError("disk full")


@pytest.fixture
def sink() -> MemorySink:
    return MemorySink()


@pytest.fixture
def tracker(sink: MemorySink) -> PositionTracker:
    return PositionTracker(sink)


def _process(tracker: PositionTracker, orders: list[Order], open_trade: Trade | None = None):
    return tracker.process("user-1", "AAPL", orders, open_trade)


class TestScenarios:
    def test_single_buy_opens_long(self, tracker, sink, make_order) -> None:
        result = _process(tracker, [make_order("b1", "BUY", 100, "150")])
        assert result.closed == []
        assert len(result.open) == 1
        t = result.open[0]
        assert t.side is TradeSide.LONG
        assert t.status is TradeStatus.OPEN
        assert t.open_quantity == 100
        assert t.avg_entry_price == Decimal("150")
        assert t.pnl == 0
        assert t.orders_in_trade == ("b1",)
        assert sink.links == {"b1": t.id}
        assert result.consumed == 1

    def test_buy_then_sell_closes_one_trade(self, tracker, sink, make_order) -> None:
        result = _process(
            tracker,
            [make_order("b1", "BUY", 100, "150", 0), make_order("s1", "SELL", 100, "160", 10)],
        )
        assert len(result.trades) == 1
        t = result.trades[0]
        assert t.status is TradeStatus.CLOSED
        assert t.open_quantity == t.close_quantity == 100
        assert t.avg_entry_price == Decimal("150")
        assert t.avg_exit_price == Decimal("160")
        assert t.pnl == Decimal("1000.00")
        assert t.orders_count == 2
        # the OPEN trade was finalized in place: one row in the sink
        assert list(sink.trades) == [t.id]
        assert sink.trades[t.id].status is TradeStatus.CLOSED
        assert sink.links == {"b1": t.id, "s1": t.id}

    def test_reversal_long_to_short(self, tracker, sink, make_order) -> None:
        result = _process(
            tracker,
            [make_order("b1", "BUY", 100, "150", 0), make_order("s1", "SELL", 150, "160", 10)],
        )
        assert [t.status for t in result.trades] == [TradeStatus.CLOSED, TradeStatus.OPEN]
        closed, short = result.trades
        assert closed.open_quantity == closed.close_quantity == 100
        assert closed.pnl == Decimal("1000.00")
        assert short.side is TradeSide.SHORT
        assert short.open_quantity == 50
        assert short.avg_entry_price == Decimal("160")
        assert short.pnl == 0
        assert short.orders_in_trade == ("s1",)
        assert short.open_time == datetime(2024, 1, 2, 15, 10, tzinfo=timezone.utc)
        # closing order is linked once, to the lot it closed
        assert sink.links["s1"] == closed.id

    def test_short_cover(self, tracker, make_order) -> None:
        result = _process(
            tracker,
            [make_order("s1", "SELL", 100, "150", 0), make_order("b1", "BUY", 100, "140", 10)],
        )
        assert len(result.trades) == 1
        t = result.trades[0]
        assert t.side is TradeSide.SHORT
        assert t.status is TradeStatus.CLOSED
        assert t.avg_entry_price == Decimal("150")
        assert t.avg_exit_price == Decimal("140")
        assert t.pnl == Decimal("1000.00")

    def test_null_price_order_is_skipped(self, tracker, sink, make_order) -> None:
        result = _process(tracker, [make_order("b1", "BUY", 100, None)])
        assert result.trades == []
        assert [s.order.id for s in result.skipped] == ["b1"]
        assert result.skipped[0].reason == "missing price"
        assert sink.trades == {}
        assert sink.links == {}


class TestAccumulation:
    def test_same_side_fills_average_entry(self, tracker, sink, make_order) -> None:
        result = _process(
            tracker,
            [make_order("b1", "BUY", 100, "10", 0), make_order("b2", "BUY", 300, "12", 5)],
        )
        assert len(result.trades) == 1
        t = result.trades[0]
        assert t.open_quantity == 400
        assert t.avg_entry_price == Decimal("11.5")
        assert t.cost_basis == Decimal("4600.0")
        assert t.orders_in_trade == ("b1", "b2")
        assert sink.links == {"b1": t.id, "b2": t.id}

    def test_scale_in_then_full_exit(self, tracker, make_order) -> None:
        result = _process(
            tracker,
            [
                make_order("b1", "BUY", 100, "10", 0),
                make_order("b2", "BUY", 100, "12", 5),
                make_order("s1", "SELL", 200, "13", 10),
            ],
        )
        assert len(result.trades) == 1
        t = result.trades[0]
        assert t.status is TradeStatus.CLOSED
        assert t.avg_entry_price == Decimal("11")
        assert t.pnl == Decimal("400.00")
        assert t.orders_in_trade == ("b1", "b2", "s1")


class TestPartialClose:
    def test_partial_close_emits_lot_and_remainder(self, tracker, sink, make_order) -> None:
        result = _process(
            tracker,
            [make_order("b1", "BUY", 100, "150", 0), make_order("s1", "SELL", 50, "160", 10)],
        )
        assert [t.status for t in result.trades] == [TradeStatus.CLOSED, TradeStatus.OPEN]
        lot, remainder = result.trades
        assert lot.open_quantity == lot.close_quantity == 50
        assert lot.pnl == Decimal("500.00")
        assert lot.orders_in_trade == ("b1", "s1")
        assert remainder.open_quantity == 50
        assert remainder.avg_entry_price == Decimal("150")
        assert remainder.orders_in_trade == ("b1",)
        assert sink.trades[remainder.id].open_quantity == 50
        assert sink.links == {"b1": remainder.id, "s1": lot.id}

    def test_two_partial_closes_fifo(self, tracker, make_order) -> None:
        result = _process(
            tracker,
            [
                make_order("b1", "BUY", 100, "10", 0),
                make_order("s1", "SELL", 30, "11", 5),
                make_order("s2", "SELL", 70, "12", 10),
            ],
        )
        assert [t.close_quantity for t in result.closed] == [30, 70]
        assert [t.pnl for t in result.closed] == [Decimal("30.00"), Decimal("140.00")]
        assert result.open == []


class TestResume:
    def test_resumes_from_persisted_open_trade(self, tracker, sink, make_order) -> None:
        first = _process(tracker, [make_order("b1", "BUY", 100, "150", 0)])
        open_trade = first.open[0]
        second = _process(tracker, [make_order("s1", "SELL", 100, "160", 10)], open_trade)
        assert len(second.trades) == 1
        t = second.trades[0]
        assert t.id == open_trade.id
        assert t.status is TradeStatus.CLOSED
        assert t.orders_in_trade == ("b1", "s1")
        assert t.pnl == Decimal("1000.00")

    def test_untouched_open_trade_not_returned(self, tracker, make_order) -> None:
        first = _process(tracker, [make_order("b1", "BUY", 100, "150", 0)])
        second = _process(tracker, [], first.open[0])
        assert second.trades == []

    def test_open_trade_of_other_symbol_rejected(self, tracker, make_order) -> None:
        first = tracker.process("user-1", "MSFT", [make_order("m1", "BUY", 1, "10", sym="MSFT")])
        with pytest.raises(InvariantViolation):
            _process(tracker, [], first.open[0])


class TestOrdering:
    def test_out_of_order_input_applied_by_execution_time(self, tracker, make_order) -> None:
        sell = make_order("s1", "SELL", 100, "160", 10)
        buy = make_order("b1", "BUY", 100, "150", 0)
        result = _process(tracker, [sell, buy])
        assert len(result.trades) == 1
        assert result.trades[0].side is TradeSide.LONG
        assert result.trades[0].pnl == Decimal("1000.00")

    def test_sort_fills_is_stable_and_tz_aware(self, make_order) -> None:
        ts = datetime(2024, 1, 2, 15, 0, tzinfo=timezone.utc)
        a = make_order("a", "BUY", 1, "1", executed_at=ts)
        b = make_order("b", "BUY", 1, "1", executed_at=ts)
        naive_earlier = make_order("c", "BUY", 1, "1", executed_at=datetime(2024, 1, 2, 14, 0))
        assert [o.id for o in sort_fills([a, b, naive_earlier])] == ["c", "a", "b"]


class TestSkipping:
    @pytest.mark.parametrize(
        "kwargs,reason",
        [
            ({"qty": 0, "price": "10"}, "non-positive quantity 0"),
            ({"qty": -5, "price": "10"}, "non-positive quantity -5"),
            ({"qty": 5, "price": "-1"}, "outside bounds"),
            ({"qty": 5, "price": "2000000"}, "outside bounds"),
        ],
    )
    def test_invalid_orders_skipped(self, tracker, sink, make_order, kwargs, reason) -> None:
        result = _process(tracker, [make_order("x1", "BUY", kwargs["qty"], kwargs["price"])])
        assert result.trades == []
        assert reason in result.skipped[0].reason
        assert sink.links == {}

    def test_missing_execution_time_skipped(self, tracker, make_order) -> None:
        result = _process(tracker, [make_order("x1", "BUY", 10, "10", executed_at=None)])
        assert result.skipped[0].reason == "missing execution time"

    def test_already_linked_order_skipped(self, tracker, make_order) -> None:
        linked = replace(make_order("b1", "BUY", 10, "10"), trade_id="T99")
        result = _process(tracker, [linked])
        assert result.trades == []
        assert "already linked to trade T99" in result.skipped[0].reason

    def test_skipped_order_does_not_break_stream(self, tracker, make_order) -> None:
        result = _process(
            tracker,
            [
                make_order("b1", "BUY", 100, "150", 0),
                make_order("bad", "SELL", 100, None, 5),
                make_order("s1", "SELL", 100, "160", 10),
            ],
        )
        assert len(result.closed) == 1
        assert [s.order.id for s in result.skipped] == ["bad"]

    def test_foreign_order_raises(self, tracker, make_order) -> None:
        with pytest.raises(InvariantViolation):
            _process(tracker, [make_order("m1", "BUY", 1, "10", sym="MSFT")])


class TestEventsAndFailures:
    def test_events_in_order(self, tracker, sink, make_order) -> None:
        result = _process(
            tracker,
            [
                make_order("b1", "BUY", 100, "10", 0),
                make_order("b2", "BUY", 100, "10", 1),
                make_order("s1", "SELL", 250, "11", 2),
                make_order("bad", "BUY", 0, "10", 3),
            ],
        )
        assert [e for e, _ in result.events] == [
            "order_skipped",
            "trade_opened",
            "trade_updated",
            "trade_closed",
            "trade_opened",
        ]
        closed_payload = result.events[3][1]
        assert closed_payload["realized_pnl"] == Decimal("200.00")

    def test_events_reset_between_passes(self, tracker, make_order) -> None:
        first = _process(tracker, [make_order("b1", "BUY", 10, "10", 0)])
        second = _process(tracker, [make_order("s1", "SELL", 10, "11", 5)], first.open[0])
        assert [e for e, _ in first.events] == ["trade_opened"]
        assert [e for e, _ in second.events] == ["trade_closed"]

    def test_sink_failure_propagates(self, make_order) -> None:
        tracker = PositionTracker(FailingSink())
        with pytest.raises(TradeSinkError):
            _process(tracker, [make_order("b1", "BUY", 10, "10")])

    def test_link_of_already_linked_order_raises(self, tracker, sink, make_order) -> None:
        # another writer stamped the order after it was read
        sink.links["b1"] = "T0"
        with pytest.raises(InvariantViolation, match="updated 0 orders, expected 1"):
            _process(tracker, [make_order("b1", "BUY", 10, "10")])

    def test_market_session_recorded(self, tracker, make_order) -> None:
        # 13:00 UTC in January is 08:00 New York
        early = make_order("b1", "BUY", 10, "10", executed_at=datetime(2024, 1, 2, 13, 0, tzinfo=timezone.utc))
        result = _process(tracker, [early])
        assert result.open[0].market_session is MarketSession.PRE_MARKET



class TestAllocations:
    def test_open_and_add_allocate_whole_orders(self, tracker, sink, make_order) -> None:
        result = _process(
            tracker,
            [make_order("b1", "BUY", 100, "10", 0), make_order("b2", "BUY", 50, "12", 5)],
        )
        t = result.open[0]
        assert t.order_allocations == (("b1", 100), ("b2", 50))
        assert t.time_in_trade is None
        assert sink.trades[t.id].order_allocations == t.order_allocations

    def test_reversal_splits_closing_order(self, tracker, sink, make_order) -> None:
        result = _process(
            tracker,
            [make_order("b1", "BUY", 100, "150", 0), make_order("s1", "SELL", 150, "160", 10)],
        )
        closed, short = result.trades
        assert closed.order_allocations == (("b1", 100), ("s1", 100))
        assert short.order_allocations == (("s1", 50),)
        assert closed.time_in_trade == 600
        assert sink.trades[closed.id].time_in_trade == 600
        assert sink.trades[short.id].order_allocations == (("s1", 50),)

    def test_partial_close_moves_entry_shares_to_lot(self, tracker, sink, make_order) -> None:
        result = _process(
            tracker,
            [
                make_order("b1", "BUY", 60, "10", 0),
                make_order("b2", "BUY", 40, "10", 1),
                make_order("s1", "SELL", 80, "11", 2),
            ],
        )
        lot, remainder = result.trades
        assert lot.order_allocations == (("b1", 60), ("b2", 20), ("s1", 80))
        assert remainder.order_allocations == (("b2", 20),)
        assert sink.trades[remainder.id].order_allocations == (("b2", 20),)

    def test_resumed_allocations_carry_forward(self, tracker, make_order) -> None:
        first = _process(tracker, [make_order("b1", "BUY", 100, "150", 0)])
        second = _process(tracker, [make_order("s1", "SELL", 30, "160", 10)], first.open[0])
        lot, remainder = second.trades
        assert lot.order_allocations == (("b1", 30), ("s1", 30))
        assert remainder.order_allocations == (("b1", 70),)
