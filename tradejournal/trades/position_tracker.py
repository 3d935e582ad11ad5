"""FIFO lot book: tracks running signed positions per symbol.

Processes executions chronologically and answers, for each one: how much
of it closed existing lots (and at what realized P&L), how much opened new
exposure, and whether the position went flat or flipped sign on the way.

Closing executions always consume the oldest open lot first.
"""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

logger = logging.getLogger(__name__)

EPSILON = 1e-9


@dataclass
class Lot:
    """Unclosed remainder of one opening execution."""

    order_id: str
    quantity: float  # always positive
    price: float
    timestamp: datetime


@dataclass
class Position:
    """Running inventory for a single symbol."""

    symbol: str
    quantity: float = 0.0  # signed: + long, - short
    lots: deque[Lot] = field(default_factory=deque)

    @property
    def direction(self) -> str:
        if self.quantity > EPSILON:
            return "long"
        if self.quantity < -EPSILON:
            return "short"
        return "flat"


@dataclass
class Fill:
    """What one execution did to the position."""

    closed_quantity: float = 0.0
    opened_quantity: float = 0.0
    realized_pnl: float = 0.0
    closed_lots: list[tuple[str, float, float]] = field(default_factory=list)  # (order_id, qty, entry price)
    prior_quantity: float = 0.0
    remaining_quantity: float = 0.0

    @property
    def flattened(self) -> bool:
        """The position passed through zero during this execution."""
        return self.closed_quantity > EPSILON and abs(self.prior_quantity) - self.closed_quantity <= EPSILON

    @property
    def flipped(self) -> bool:
        return self.flattened and self.opened_quantity > EPSILON


class PositionTracker:
    """Track per-symbol FIFO lots as executions are applied.

    Usage::

        tracker = PositionTracker()
        for order in sorted_orders:
            fill = tracker.apply(order.symbol, order.id, order.signed_quantity,
                                 order.price, order.order_executed_time)
    """

    def __init__(self) -> None:
        self._positions: dict[str, Position] = {}
        self._fills = 0

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def position(self, symbol: str) -> Position:
        key = symbol.upper().strip()
        pos = self._positions.get(key)
        if pos is None:
            pos = Position(symbol=key)
            self._positions[key] = pos
        return pos

    def apply(
        self,
        symbol: str,
        order_id: str,
        signed_quantity: float,
        price: float,
        timestamp: datetime,
    ) -> Fill:
        """Apply one execution. Positive quantity buys, negative sells."""
        pos = self.position(symbol)
        self._fills += 1
        fill = Fill(prior_quantity=pos.quantity)

        qty = abs(signed_quantity)
        if qty <= EPSILON:
            fill.remaining_quantity = pos.quantity
            return fill

        buying = signed_quantity > 0
        reducing = (pos.quantity < -EPSILON and buying) or (pos.quantity > EPSILON and not buying)

        if reducing:
            closing = min(qty, abs(pos.quantity))
            fill.closed_quantity = closing
            fill.realized_pnl, fill.closed_lots = self._consume(pos, closing, price, short=buying)
            pos.quantity += closing if buying else -closing
            if abs(pos.quantity) <= EPSILON:
                pos.quantity = 0.0
            qty -= closing

        if qty > EPSILON:
            pos.lots.append(Lot(order_id=order_id, quantity=qty, price=price, timestamp=timestamp))
            pos.quantity += qty if buying else -qty
            fill.opened_quantity = qty

        fill.remaining_quantity = pos.quantity
        return fill

    def open_positions(self) -> dict[str, float]:
        """Return {symbol: signed qty} for every non-flat symbol."""
        return {s: p.quantity for s, p in self._positions.items() if p.direction != "flat"}

    @property
    def stats(self) -> dict[str, Any]:
        """Summary statistics for logging."""
        return {
            "fills_processed": self._fills,
            "symbols": len(self._positions),
            "open_positions": len(self.open_positions()),
        }

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    @staticmethod
    def _consume(
        pos: Position, quantity: float, exit_price: float, *, short: bool,
    ) -> tuple[float, list[tuple[str, float, float]]]:
        """Close ``quantity`` against the oldest lots. Returns (pnl, consumed)."""
        realized = 0.0
        consumed: list[tuple[str, float, float]] = []
        left = quantity
        while left > EPSILON and pos.lots:
            lot = pos.lots[0]
            take = min(lot.quantity, left)
            if short:
                realized += (lot.price - exit_price) * take
            else:
                realized += (exit_price - lot.price) * take
            consumed.append((lot.order_id, take, lot.price))
            lot.quantity -= take
            left -= take
            if lot.quantity <= EPSILON:
                pos.lots.popleft()
        if left > EPSILON:
            logger.warning(
                "[POSITION_TRACKER] %s: %.4f closed with no open lot to match",
                pos.symbol, left,
            )
        return realized, consumed
