"""Trade construction: FIFO lot matching, classification, the Trade Builder."""

from .builder import BuildResult, TradeBuilder, verify_trade_integrity
from .classification import holding_period, market_session
from .position_tracker import Fill, PositionTracker

__all__ = [
    "BuildResult",
    "Fill",
    "PositionTracker",
    "TradeBuilder",
    "holding_period",
    "market_session",
    "verify_trade_integrity",
]
