"""
Trade store: SQLite-backed Order Source and Trade Sink.

Decimals are stored as TEXT, timestamps as UTC ISO strings, order lists as
JSON arrays. All writes for one (user, symbol) pass go through a
``TradeSession`` inside a single immediate transaction: commit on success,
rollback on any exception, so order links never outlive a failed pass.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from pathlib import Path
from typing import Any, Iterator, Mapping, Sequence

from recon_core.contracts import (
    Allocations,
    HoldingPeriod,
    MarketSession,
    Order,
    OrderSide,
    Trade,
    TradeSide,
    TradeStatus,
)
from recon_core.errors import InvariantViolation, TradeSinkError

logger = logging.getLogger("recon.store")

_ORDER_COLUMNS = "id, user_id, symbol, side, quantity, price, executed_at, trade_id"
_TRADE_COLUMNS = (
    "id, user_id, symbol, side, status, open_quantity, close_quantity, avg_entry_price, "
    "avg_exit_price, pnl, orders_in_trade, orders_count, order_allocations, open_time, close_time, "
    "time_in_trade, cost_basis, proceeds, holding_period, market_session"
)

# Fields an OPEN trade may change while fills accumulate or when it is finalized.
UPDATABLE_FIELDS = frozenset(
    {
        "status",
        "open_quantity",
        "close_quantity",
        "avg_entry_price",
        "avg_exit_price",
        "pnl",
        "orders_in_trade",
        "order_allocations",
        "close_time",
        "time_in_trade",
        "cost_basis",
        "proceeds",
        "holding_period",
    }
)


def _utc(ts: datetime) -> datetime:
    if ts.tzinfo is None:
        return ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc)


def _ts_out(ts: datetime | None) -> str | None:
    if ts is None:
        return None
    return _utc(ts).isoformat(timespec="microseconds")


def _ts_in(raw: str | None) -> datetime | None:
    if raw is None:
        return None
    ts = datetime.fromisoformat(raw.replace("Z", "+00:00"))
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


def _dec_out(value: Decimal | None) -> str | None:
    return None if value is None else str(value)


def _dec_in(raw: str | None) -> Decimal | None:
    return None if raw is None else Decimal(raw)


def _allocations_out(allocations: Allocations) -> str:
    """Stored as a JSON object of order id -> allocated shares, in fill order."""
    return json.dumps(dict(allocations))


def _allocations_in(raw: str) -> Allocations:
    return tuple((oid, int(qty)) for oid, qty in json.loads(raw).items())


def _column_value(value: Any) -> Any:
    """Python value -> SQLite column value."""
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, datetime):
        return _ts_out(value)
    if isinstance(value, (list, tuple)):
        return json.dumps(list(value))
    return value


def _row_to_order(row: Sequence[Any]) -> Order:
    oid, user_id, symbol, side, qty, price, executed_at, trade_id = row
    return Order(
        id=oid,
        user_id=user_id,
        symbol=symbol,
        side=OrderSide(side),
        quantity=int(qty),
        price=_dec_in(price),
        executed_at=_ts_in(executed_at),
        trade_id=trade_id,
    )


def _row_to_trade(row: Sequence[Any]) -> Trade:
    (
        tid, user_id, symbol, side, status, open_qty, close_qty, avg_entry,
        avg_exit, pnl, orders_json, _orders_count, allocations_json, open_time, close_time,
        held_seconds, cost_basis, proceeds, holding, session,
    ) = row
    return Trade(
        id=tid,
        user_id=user_id,
        symbol=symbol,
        side=TradeSide(side),
        status=TradeStatus(status),
        open_quantity=int(open_qty),
        close_quantity=int(close_qty),
        avg_entry_price=Decimal(avg_entry),
        avg_exit_price=_dec_in(avg_exit),
        pnl=Decimal(pnl),
        orders_in_trade=tuple(json.loads(orders_json)),
        order_allocations=_allocations_in(allocations_json),
        open_time=_ts_in(open_time),  # type: ignore[arg-type]
        close_time=_ts_in(close_time),
        time_in_trade=None if held_seconds is None else int(held_seconds),
        cost_basis=Decimal(cost_basis),
        proceeds=_dec_in(proceeds),
        holding_period=HoldingPeriod(holding),
        market_session=MarketSession(session),
    )


def _select_orders(c: sqlite3.Connection, user_id: str, symbol: str | None) -> list[Order]:
    q = f"SELECT {_ORDER_COLUMNS} FROM orders WHERE user_id = ? AND trade_id IS NULL"
    params: list = [user_id]
    if symbol is not None:
        q += " AND symbol = ?"
        params.append(symbol)
    q += " ORDER BY executed_at ASC, seq ASC"
    return [_row_to_order(r) for r in c.execute(q, params).fetchall()]


def _select_open_trade(c: sqlite3.Connection, user_id: str, symbol: str) -> Trade | None:
    row = c.execute(
        f"SELECT {_TRADE_COLUMNS} FROM trades WHERE user_id = ? AND symbol = ? AND status = 'OPEN'",
        (user_id, symbol),
    ).fetchone()
    return _row_to_trade(row) if row else None


@contextmanager
def _sink_errors(action: str) -> Iterator[None]:
    try:
        yield
    except sqlite3.Error as exc:
        raise TradeSinkError(f"{action} failed: {exc}") from exc


class TradeSession:
    """Order Source and Trade Sink for one (user, symbol) inside an open transaction."""

    def __init__(self, conn: sqlite3.Connection, user_id: str, symbol: str) -> None:
        self._conn = conn
        self.user_id = user_id
        self.symbol = symbol

    def _check_partition(self, user_id: str, symbol: str | None) -> None:
        if user_id != self.user_id or (symbol is not None and symbol != self.symbol):
            raise InvariantViolation(
                f"Session for {self.user_id}/{self.symbol} asked for {user_id}/{symbol}"
            )

    def fetch_unconsumed_orders(self, user_id: str, symbol: str | None = None) -> list[Order]:
        self._check_partition(user_id, symbol)
        with _sink_errors("fetch unconsumed orders"):
            return _select_orders(self._conn, self.user_id, self.symbol)

    def fetch_open_trade(self, user_id: str, symbol: str) -> Trade | None:
        self._check_partition(user_id, symbol)
        with _sink_errors("fetch open trade"):
            return _select_open_trade(self._conn, user_id, symbol)

    def save(self, trade: Trade) -> str:
        """Insert a new trade. At most one OPEN trade per (user, symbol) is enforced by index."""
        self._check_partition(trade.user_id, trade.symbol)
        trade_id = trade.id or str(uuid.uuid4())
        now = _ts_out(datetime.now(timezone.utc))
        with _sink_errors(f"save trade {trade_id}"):
            self._conn.execute(
                f"""INSERT INTO trades ({_TRADE_COLUMNS}, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    trade_id,
                    trade.user_id,
                    trade.symbol,
                    trade.side.value,
                    trade.status.value,
                    trade.open_quantity,
                    trade.close_quantity,
                    _dec_out(trade.avg_entry_price),
                    _dec_out(trade.avg_exit_price),
                    _dec_out(trade.pnl),
                    json.dumps(list(trade.orders_in_trade)),
                    trade.orders_count,
                    _allocations_out(trade.order_allocations),
                    _ts_out(trade.open_time),
                    _ts_out(trade.close_time),
                    trade.time_in_trade,
                    _dec_out(trade.cost_basis),
                    _dec_out(trade.proceeds),
                    trade.holding_period.value,
                    trade.market_session.value,
                    now,
                    now,
                ),
            )
        logger.debug("Saved %s %s trade %s for %s", trade.status.value, trade.symbol, trade_id, trade.user_id)
        return trade_id

    def update(self, trade_id: str, patch: Mapping[str, Any]) -> None:
        """Apply *patch* to an OPEN trade. CLOSED trades are immutable."""
        unknown = set(patch) - UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Fields not updatable: {sorted(unknown)}")
        if not patch:
            return
        assignments = [f"{key} = ?" for key in patch]
        params = [
            _allocations_out(val) if key == "order_allocations" else _column_value(val)
            for key, val in patch.items()
        ]
        if "orders_in_trade" in patch:
            assignments.append("orders_count = ?")
            params.append(len(patch["orders_in_trade"]))
        assignments.append("updated_at = ?")
        params.append(_ts_out(datetime.now(timezone.utc)))
        params.extend([trade_id, self.user_id, self.symbol])
        with _sink_errors(f"update trade {trade_id}"):
            cur = self._conn.execute(
                f"UPDATE trades SET {', '.join(assignments)} "
                "WHERE id = ? AND user_id = ? AND symbol = ? AND status = 'OPEN'",
                params,
            )
        if cur.rowcount != 1:
            raise TradeSinkError(f"Trade {trade_id} is not an OPEN trade of {self.user_id}/{self.symbol}")

    def link_orders(self, order_ids: Sequence[str], trade_id: str) -> int:
        """Stamp still-unlinked orders with *trade_id*. Returns how many were stamped."""
        now = _ts_out(datetime.now(timezone.utc))
        linked = 0
        with _sink_errors(f"link orders to {trade_id}"):
            for oid in order_ids:
                cur = self._conn.execute(
                    "UPDATE orders SET trade_id = ?, linked_at = ? "
                    "WHERE id = ? AND user_id = ? AND trade_id IS NULL",
                    (trade_id, now, oid, self.user_id),
                )
                linked += cur.rowcount
        return linked


class TradeStore:
    """SQLite-backed order and trade storage. One file per path."""

    def __init__(self, path: str | Path, *, busy_timeout: float = 10.0) -> None:
        self._path = Path(path)
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._busy_timeout = busy_timeout
        self._init_schema()

    @property
    def path(self) -> Path:
        return self._path

    def _conn(self, *, autocommit: bool = False) -> sqlite3.Connection:
        if autocommit:
            conn = sqlite3.connect(str(self._path), timeout=self._busy_timeout, isolation_level=None)
        else:
            conn = sqlite3.connect(str(self._path), timeout=self._busy_timeout)
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    def _init_schema(self) -> None:
        with self._conn() as c:
            c.execute(
                """
                CREATE TABLE IF NOT EXISTS trades (
                    id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL,
                    symbol TEXT NOT NULL,
                    side TEXT NOT NULL CHECK (side IN ('LONG', 'SHORT')),
                    status TEXT NOT NULL CHECK (status IN ('OPEN', 'CLOSED')),
                    open_quantity INTEGER NOT NULL CHECK (open_quantity > 0),
                    close_quantity INTEGER NOT NULL,
                    avg_entry_price TEXT NOT NULL,
                    avg_exit_price TEXT,
                    pnl TEXT NOT NULL,
                    orders_in_trade TEXT NOT NULL,
                    orders_count INTEGER NOT NULL,
                    order_allocations TEXT NOT NULL,
                    open_time TEXT NOT NULL,
                    close_time TEXT,
                    time_in_trade INTEGER,
                    cost_basis TEXT NOT NULL,
                    proceeds TEXT,
                    holding_period TEXT NOT NULL,
                    market_session TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    CHECK (status = 'OPEN' OR open_quantity = close_quantity),
                    CHECK (status = 'CLOSED' OR close_quantity = 0)
                )
                """
            )
            c.execute(
                "CREATE UNIQUE INDEX IF NOT EXISTS trades_one_open "
                "ON trades (user_id, symbol) WHERE status = 'OPEN'"
            )
            c.execute(
                """
                CREATE TABLE IF NOT EXISTS orders (
                    seq INTEGER PRIMARY KEY AUTOINCREMENT,
                    id TEXT NOT NULL UNIQUE,
                    user_id TEXT NOT NULL,
                    symbol TEXT NOT NULL,
                    side TEXT NOT NULL CHECK (side IN ('BUY', 'SELL')),
                    quantity INTEGER NOT NULL,
                    price TEXT,
                    executed_at TEXT,
                    trade_id TEXT REFERENCES trades (id),
                    linked_at TEXT
                )
                """
            )
            c.execute("CREATE INDEX IF NOT EXISTS orders_unconsumed ON orders (user_id, trade_id, symbol)")

    # ------------------------------------------------------------------
    # Partition transaction
    # ------------------------------------------------------------------

    @contextmanager
    def partition(self, user_id: str, symbol: str) -> Iterator[TradeSession]:
        """Hold the store's write lock for one (user, symbol) pass.

        Commits when the block exits cleanly; rolls back and re-raises on any
        exception. sqlite errors surface as TradeSinkError.
        """
        try:
            conn = self._conn(autocommit=True)
        except sqlite3.Error as exc:
            raise TradeSinkError(f"Could not open store {self._path}: {exc}") from exc
        try:
            with _sink_errors(f"lock partition {user_id}/{symbol}"):
                conn.execute("BEGIN IMMEDIATE")
            try:
                yield TradeSession(conn, user_id, symbol)
            except BaseException:
                if conn.in_transaction:
                    conn.execute("ROLLBACK")
                logger.info("Rolled back partition %s/%s", user_id, symbol)
                raise
            try:
                conn.execute("COMMIT")
            except sqlite3.Error as exc:
                if conn.in_transaction:
                    conn.execute("ROLLBACK")
                raise TradeSinkError(f"commit of partition {user_id}/{symbol} failed: {exc}") from exc
        finally:
            conn.close()

    # ------------------------------------------------------------------
    # Order intake and reads
    # ------------------------------------------------------------------

    def add_orders(self, orders: Sequence[Order]) -> int:
        """Insert already-validated orders; ids already present are ignored. Returns rows inserted."""
        inserted = 0
        with self._conn() as c:
            for o in orders:
                cur = c.execute(
                    """INSERT OR IGNORE INTO orders (id, user_id, symbol, side, quantity, price, executed_at, trade_id)
                       VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
                    (
                        o.id,
                        o.user_id,
                        o.symbol,
                        o.side.value,
                        o.quantity,
                        _dec_out(o.price),
                        _ts_out(o.executed_at),
                        o.trade_id,
                    ),
                )
                inserted += cur.rowcount
        return inserted

    def fetch_unconsumed_orders(self, user_id: str, symbol: str | None = None) -> list[Order]:
        """Orders with no trade link, ascending by execution time."""
        with self._conn() as c:
            return _select_orders(c, user_id, symbol)

    def fetch_open_trade(self, user_id: str, symbol: str) -> Trade | None:
        with self._conn() as c:
            return _select_open_trade(c, user_id, symbol)

    def get_order(self, order_id: str) -> Order | None:
        with self._conn() as c:
            row = c.execute(f"SELECT {_ORDER_COLUMNS} FROM orders WHERE id = ?", (order_id,)).fetchone()
        return _row_to_order(row) if row else None

    def get_trade(self, trade_id: str) -> Trade | None:
        with self._conn() as c:
            row = c.execute(f"SELECT {_TRADE_COLUMNS} FROM trades WHERE id = ?", (trade_id,)).fetchone()
        return _row_to_trade(row) if row else None

    def list_trades(
        self,
        user_id: str,
        *,
        status: TradeStatus | None = None,
        symbol: str | None = None,
    ) -> list[Trade]:
        """Trades for a user in open-time order."""
        q = f"SELECT {_TRADE_COLUMNS} FROM trades WHERE user_id = ?"
        params: list = [user_id]
        if status is not None:
            q += " AND status = ?"
            params.append(status.value)
        if symbol is not None:
            q += " AND symbol = ?"
            params.append(symbol)
        q += " ORDER BY open_time ASC, created_at ASC"
        with self._conn() as c:
            rows = c.execute(q, params).fetchall()
        return [_row_to_trade(r) for r in rows]

    def list_users(self) -> list[str]:
        """Users that still have unconsumed orders."""
        with self._conn() as c:
            rows = c.execute(
                "SELECT DISTINCT user_id FROM orders WHERE trade_id IS NULL ORDER BY user_id"
            ).fetchall()
        return [r[0] for r in rows]

    def count_orders(self, user_id: str, *, consumed: bool | None = None) -> int:
        q = "SELECT COUNT(*) FROM orders WHERE user_id = ?"
        if consumed is True:
            q += " AND trade_id IS NOT NULL"
        elif consumed is False:
            q += " AND trade_id IS NULL"
        with self._conn() as c:
            row = c.execute(q, (user_id,)).fetchone()
        return row[0] if row else 0
