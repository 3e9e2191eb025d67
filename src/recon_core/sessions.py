"""Market session and holding period classification for trades."""

from __future__ import annotations

import math
from datetime import datetime, timezone
from zoneinfo import ZoneInfo

from config.recon_rules import ReconRules
from recon_core.contracts import HoldingPeriod, MarketSession


def _utc(ts: datetime) -> datetime:
    if ts.tzinfo is None:
        return ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc)


def market_session(open_time: datetime, rules: ReconRules) -> MarketSession:
    """Classify *open_time* against the regular session in the exchange time zone."""
    local = _utc(open_time).astimezone(ZoneInfo(rules.sessions.timezone)).time()
    if local < rules.sessions.regular_open:
        return MarketSession.PRE_MARKET
    if local < rules.sessions.regular_close:
        return MarketSession.REGULAR
    return MarketSession.AFTER_HOURS


def holding_period(open_time: datetime, close_time: datetime | None, rules: ReconRules) -> HoldingPeriod:
    """INTRADAY when still open or closed within the swing threshold."""
    if close_time is None:
        return HoldingPeriod.INTRADAY
    held_hours = (_utc(close_time) - _utc(open_time)).total_seconds() / 3600
    if held_hours <= rules.holding.swing_after_hours:
        return HoldingPeriod.INTRADAY
    return HoldingPeriod.SWING


def time_in_trade(open_time: datetime, close_time: datetime) -> int:
    """Whole seconds held, rounded down."""
    return math.floor((_utc(close_time) - _utc(open_time)).total_seconds())
