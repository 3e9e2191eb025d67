"""
Ledger: durable orders and trades (SQLite).

The only component that touches durable state. Depends on recon_core.contracts;
no dependency from recon_core back to ledger.
"""

from ledger.order_file import OrderFileError, read_orders
from ledger.trade_store import TradeSession, TradeStore

__all__ = [
    "OrderFileError",
    "read_orders",
    "TradeSession",
    "TradeStore",
]
