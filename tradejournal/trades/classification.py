"""Holding-period bucket and market-session classification for trades."""

from __future__ import annotations

from datetime import datetime, time, timedelta
from typing import Optional
from zoneinfo import ZoneInfo

from ..models import HoldingPeriod, MarketSession

# Upper bounds (exclusive) for each bucket; anything longer is LONG_TERM.
HOLDING_CUTOFFS: tuple[tuple[timedelta, HoldingPeriod], ...] = (
    (timedelta(minutes=5), HoldingPeriod.SCALP),
    (timedelta(hours=24), HoldingPeriod.INTRADAY),
    (timedelta(days=30), HoldingPeriod.SWING),
    (timedelta(days=365), HoldingPeriod.POSITION),
)

REGULAR_OPEN = time(9, 30)
REGULAR_CLOSE = time(16, 0)


def holding_period(entry: Optional[datetime], exit_: Optional[datetime]) -> Optional[HoldingPeriod]:
    """Bucket a closed trade by duration. Open trades (no exit) get None."""
    if entry is None or exit_ is None:
        return None
    held = exit_ - entry
    for cutoff, bucket in HOLDING_CUTOFFS:
        if held < cutoff:
            return bucket
    return HoldingPeriod.LONG_TERM


def to_exchange_time(ts: datetime, exchange_tz: str = "America/New_York") -> datetime:
    """Naive timestamps are already exchange-local; aware ones are converted."""
    if ts.tzinfo is None:
        return ts
    return ts.astimezone(ZoneInfo(exchange_tz))


def market_session(ts: datetime, exchange_tz: str = "America/New_York") -> MarketSession:
    """PRE_MARKET before 09:30, REGULAR until 16:00, AFTER_HOURS from 16:00."""
    local = to_exchange_time(ts, exchange_tz).time()
    if local < REGULAR_OPEN:
        return MarketSession.PRE_MARKET
    if local < REGULAR_CLOSE:
        return MarketSession.REGULAR
    return MarketSession.AFTER_HOURS
