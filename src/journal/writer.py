"""
Trade journal: append-only JSON lines. One line per trade lifecycle event or skipped order.
"""

import json
from dataclasses import asdict, is_dataclass
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from pathlib import Path
from typing import Any

from recon_core.contracts import Order, Trade


def _serialize(obj: Any) -> Any:
    if isinstance(obj, datetime):
        return obj.isoformat()
    if isinstance(obj, Decimal):
        return str(obj)
    if isinstance(obj, Enum):
        return obj.value
    if is_dataclass(obj) and not isinstance(obj, type):
        return {k: _serialize(v) for k, v in asdict(obj).items()}
    if isinstance(obj, dict):
        return {k: _serialize(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple)):
        return [_serialize(x) for x in obj]
    return obj


class JournalWriter:
    """Append-only journal. Each line is a JSON object with event type and payload."""

    def __init__(self, path: str | Path, *, echo_stdout: bool = False) -> None:
        self._path = Path(path)
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._echo = echo_stdout

    def _write(self, event_type: str, payload: dict) -> None:
        record = {"ts_utc": datetime.now(timezone.utc).isoformat(), "event": event_type, **payload}
        line = json.dumps(_serialize(record)) + "\n"
        with open(self._path, "a") as f:
            f.write(line)
        if self._echo:
            print(line.rstrip())

    def trade_opened(self, trade: Trade) -> None:
        self._write("trade_opened", {"trade": trade})

    def trade_updated(self, trade: Trade) -> None:
        self._write("trade_updated", {"trade": trade})

    def trade_closed(self, trade: Trade, **extra: Any) -> None:
        self._write("trade_closed", {"trade": trade, **extra})

    def order_skipped(self, order: Order, reason: str) -> None:
        self._write("order_skipped", {"order_id": order.id, "user_id": order.user_id, "symbol": order.symbol, "reason": reason})

    def record(self, event_type: str, payload: dict) -> None:
        """Dispatch a reconciliation event (the ``on_event`` callback signature)."""
        if event_type == "trade_opened":
            self.trade_opened(payload["trade"])
        elif event_type == "trade_updated":
            self.trade_updated(payload["trade"])
        elif event_type == "trade_closed":
            self.trade_closed(payload["trade"], realized_pnl=payload.get("realized_pnl"))
        elif event_type == "order_skipped":
            self.order_skipped(payload["order"], payload["reason"])
        elif event_type == "partition_failed":
            self._write(event_type, dict(payload))
