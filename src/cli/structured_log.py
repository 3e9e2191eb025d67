"""
Structured JSON event logger for log aggregators.

Emits one JSON object per line to stderr. Optional webhook: when configured,
alert events (partition_failed, error) are POSTed to the URL.
"""

from __future__ import annotations

import json
import logging
import sys
import urllib.request
from datetime import datetime, timezone
from typing import Any

from recon_core.contracts import Trade

logger = logging.getLogger("recon.events")


class StructuredEventLogger:
    """Emit structured JSON events to stderr and optional webhook."""

    _ALERT_EVENTS = frozenset({"partition_failed", "error"})

    def __init__(
        self,
        *,
        enabled: bool = True,
        webhook_url: str = "",
        stream: Any = None,
    ) -> None:
        self._enabled = enabled
        self._webhook_url = webhook_url.strip()
        self._stream = stream or sys.stderr

    def _emit(self, event_type: str, **fields: Any) -> dict:
        record = {
            "ts": datetime.now(timezone.utc).isoformat(),
            "event": event_type,
            **fields,
        }
        if self._enabled:
            self._stream.write(json.dumps(record, default=str) + "\n")
            self._stream.flush()

        if self._webhook_url and event_type in self._ALERT_EVENTS:
            self._post_webhook(record)

        return record

    def _post_webhook(self, record: dict) -> None:
        try:
            data = json.dumps(record, default=str).encode("utf-8")
            req = urllib.request.Request(
                self._webhook_url,
                data=data,
                headers={"Content-Type": "application/json"},
                method="POST",
            )
            urllib.request.urlopen(req, timeout=5)
        except Exception as exc:
            logger.warning("Webhook POST failed: %s", exc)

    def run_start(self, user_id: str, orders: int, symbols: list[str]) -> dict:
        return self._emit("run_start", user_id=user_id, orders=orders, symbols=symbols)

    def order_skipped(self, user_id: str, symbol: str, order_id: str, reason: str) -> dict:
        return self._emit("order_skipped", user_id=user_id, symbol=symbol, order_id=order_id, reason=reason)

    def trade_opened(self, trade: Trade) -> dict:
        return self._emit(
            "trade_opened",
            user_id=trade.user_id,
            symbol=trade.symbol,
            trade_id=trade.id,
            side=trade.side.value,
            qty=trade.open_quantity,
            entry=str(trade.avg_entry_price),
        )

    def trade_closed(self, trade: Trade) -> dict:
        return self._emit(
            "trade_closed",
            user_id=trade.user_id,
            symbol=trade.symbol,
            trade_id=trade.id,
            side=trade.side.value,
            qty=trade.close_quantity,
            pnl=str(trade.pnl),
            held_s=trade.time_in_trade,
        )

    def partition_failed(self, user_id: str, symbol: str, error: str) -> dict:
        return self._emit("partition_failed", user_id=user_id, symbol=symbol, error=error)

    def run_complete(self, user_id: str, closed: int, opened: int, skipped: int, failed: list[str]) -> dict:
        return self._emit(
            "run_complete",
            user_id=user_id,
            closed=closed,
            open=opened,
            skipped=skipped,
            failed=failed,
        )

    def error(self, message: str, detail: str = "") -> dict:
        return self._emit("error", message=message, detail=detail)

    def handle(self, event_type: str, payload: dict) -> None:
        """``on_event`` callback: map reconciliation events onto log records."""
        if event_type == "run_start":
            self.run_start(payload["user_id"], payload["orders"], payload["symbols"])
        elif event_type == "order_skipped":
            order = payload["order"]
            self.order_skipped(order.user_id, order.symbol, order.id, payload["reason"])
        elif event_type == "trade_opened":
            self.trade_opened(payload["trade"])
        elif event_type == "trade_closed":
            self.trade_closed(payload["trade"])
        elif event_type == "partition_failed":
            self.partition_failed(payload["user_id"], payload["symbol"], payload["error"])
        elif event_type == "run_complete":
            self.run_complete(
                payload["user_id"], payload["closed"], payload["open"], payload["skipped"], payload["failed"]
            )
