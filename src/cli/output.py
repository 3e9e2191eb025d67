"""
Human-readable reconciliation output for the terminal.
"""

from __future__ import annotations

from decimal import Decimal
from typing import Sequence

from recon_core.contracts import SkippedOrder, Trade, TradeStatus


def _money(value: Decimal | None) -> str:
    if value is None:
        return "-"
    return f"{value:,.2f}"


def format_trade(trade: Trade) -> str:
    """Multi-line block for one trade."""
    lines = [
        f"Symbol   : {trade.symbol}",
        f"Side     : {trade.side.value}",
        f"Status   : {trade.status.value}",
        f"Open qty : {trade.open_quantity}",
    ]
    if trade.status is TradeStatus.CLOSED:
        lines.append(f"Close qty: {trade.close_quantity}")
    lines.append(f"Entry    : {_money(trade.avg_entry_price)}")
    if trade.avg_exit_price is not None:
        lines.append(f"Exit     : {_money(trade.avg_exit_price)}")
    lines.append(f"P&L      : {_money(trade.pnl)}")
    if trade.time_in_trade is not None:
        lines.append(f"Held     : {trade.time_in_trade}s")
    lines.append(f"Orders   : {trade.orders_count} ({', '.join(trade.orders_in_trade)})")
    return "\n".join(lines)


def format_trade_row(trade: Trade) -> str:
    opened = trade.open_time.strftime("%Y-%m-%d %H:%M")
    return (
        f"{opened}  {trade.symbol:<8s} {trade.side.value:<5s} {trade.status.value:<6s} "
        f"{trade.open_quantity:>8d} @ {_money(trade.avg_entry_price):>12s} -> {_money(trade.avg_exit_price):>12s}  "
        f"P&L {_money(trade.pnl):>12s}"
    )


def format_trade_table(trades: Sequence[Trade]) -> str:
    if not trades:
        return "No trades."
    return "\n".join(format_trade_row(t) for t in trades)


def format_run_summary(user_id: str, trades: Sequence[Trade], skipped: Sequence[SkippedOrder] = ()) -> str:
    """Totals for one run: completed, open, winners, losers, win rate, P&L."""
    completed = [t for t in trades if t.status is TradeStatus.CLOSED]
    open_trades = [t for t in trades if t.status is TradeStatus.OPEN]
    total_pnl = sum((t.pnl for t in completed), Decimal("0"))
    winners = sum(1 for t in completed if t.pnl > 0)
    losers = sum(1 for t in completed if t.pnl < 0)
    win_rate = (winners / len(completed) * 100) if completed else 0.0
    lines = [
        f"=== Reconciliation: user {user_id} ===",
        f"New/changed trades: {len(trades)}",
        f"Completed         : {len(completed)}",
        f"Open              : {len(open_trades)}",
        f"Winners / Losers  : {winners} / {losers}",
        f"Win rate          : {win_rate:.1f}%",
        f"Total P&L         : {_money(total_pnl)}",
    ]
    if skipped:
        lines.append(f"Skipped orders    : {len(skipped)}")
        for s in skipped:
            lines.append(f"  {s.order.id} ({s.order.symbol}): {s.reason}")
    return "\n".join(lines)
