"""
recon-core: order-to-trade reconciliation rules.

Position Tracker (state machine per user x symbol) and Lot Matcher (pure
arithmetic). No storage of its own: the Trade Sink is injected.
"""

from recon_core.contracts import (
    Order,
    OrderSide,
    PartitionResult,
    Position,
    Trade,
    TradeSide,
    TradeStatus,
)
from recon_core.errors import (
    InvalidOrderError,
    InvariantViolation,
    ReconciliationError,
    TradeSinkError,
)
from recon_core.lot_matcher import match_lot
from recon_core.position_tracker import PositionTracker

__all__ = [
    "InvalidOrderError",
    "InvariantViolation",
    "match_lot",
    "Order",
    "OrderSide",
    "PartitionResult",
    "Position",
    "PositionTracker",
    "ReconciliationError",
    "Trade",
    "TradeSide",
    "TradeSinkError",
    "TradeStatus",
]
