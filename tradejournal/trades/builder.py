"""Trade Builder: group a user's executions into round-trip trades.

Per symbol, orders are walked in ``(executed time, sequence)`` order
through a FIFO lot book. Every return to flat closes a trade; a sign flip
closes the old trade with the closing part of the order and opens the
opposite-side trade with the remainder. Whatever is still open at the end
is an OPEN trade.

Orders consumed here get ``used_in_trade`` and a ``trade_id`` back-link and
are never reconsidered, so re-running on unchanged data changes nothing.
An OPEN trade from a previous run is resumed (same id) by replaying its
recorded allocations, so new executions continue it rather than starting
a duplicate. An incremental build that receives executions older than
already attributed ones for a symbol resets and rebuilds that symbol.
``rebuild_user_trades`` is the explicit path that clears all attribution
first and recomputes from scratch.

Every build holds a per-user advisory lock.
"""

from __future__ import annotations

import logging
import warnings
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Iterable, Optional

from ..config import Settings, get_settings
from ..errors import DataIntegrityWarning, LockUnavailable
from ..models import (
    Order,
    OrderAllocation,
    OrderSide,
    Trade,
    TradeSide,
    TradeStatus,
    utcnow,
)
from ..storage.base import Store
from .classification import holding_period, market_session
from .position_tracker import EPSILON, PositionTracker

logger = logging.getLogger(__name__)


def _order_time(order: Order) -> Optional[datetime]:
    return order.order_executed_time or order.order_placed_time


def _sort_key(order: Order) -> tuple:
    ts = _order_time(order)
    return (ts is None, ts or datetime.min, order.sequence)


def verify_trade_integrity(trade: Trade, orders: Iterable[Order]) -> list[str]:
    """Return ids of orders in the trade whose symbol differs from the trade's.

    Any mismatch means the matcher mixed symbols. It is logged at error
    level and raised as a ``DataIntegrityWarning``; the trade itself is left
    untouched.
    """
    by_id = {o.id: o for o in orders}
    mismatched = [
        oid for oid in trade.orders_in_trade
        if oid in by_id and by_id[oid].symbol != trade.symbol
    ]
    if mismatched:
        message = (
            f"Trade {trade.id} ({trade.symbol}) references orders with a different "
            f"symbol: {', '.join(f'{oid}={by_id[oid].symbol}' for oid in mismatched)}"
        )
        logger.error("[TRADE_BUILDER] %s", message)
        warnings.warn(message, DataIntegrityWarning, stacklevel=2)
    return mismatched


@dataclass
class _TradeState:
    trade: Trade
    entries: list[tuple[Order, float]] = field(default_factory=list)
    exits: list[tuple[Order, float]] = field(default_factory=list)
    realized: float = 0.0
    resumed: bool = False
    touched: bool = False

    @property
    def orders(self) -> list[Order]:
        return [o for o, _ in self.entries] + [o for o, _ in self.exits]


@dataclass
class BuildResult:
    user_id: str
    new_trades: list[Trade] = field(default_factory=list)
    updated_trades: list[Trade] = field(default_factory=list)
    orders: list[Order] = field(default_factory=list)
    skipped_order_ids: list[str] = field(default_factory=list)
    _orders_by_trade: dict[str, list[Order]] = field(default_factory=dict, repr=False)

    @property
    def trades(self) -> list[Trade]:
        return self.new_trades + self.updated_trades

    def to_dict(self) -> dict[str, Any]:
        trades = self.trades
        return {
            "user_id": self.user_id,
            "trades_created": len(self.new_trades),
            "trades_updated": len(self.updated_trades),
            "closed": sum(1 for t in trades if t.status == TradeStatus.CLOSED),
            "open": sum(1 for t in trades if t.status == TradeStatus.OPEN),
            "orders_attributed": len(self.orders),
            "orders_skipped": len(self.skipped_order_ids),
        }


class TradeBuilder:
    def __init__(self, store: Store, *, settings: Optional[Settings] = None) -> None:
        self.store = store
        self.settings = settings or get_settings()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def process_user_orders(self, user_id: str) -> BuildResult:
        """Compute trades for unattributed orders. Writes nothing."""
        result = BuildResult(user_id=user_id)
        tracker = PositionTracker()
        states: dict[str, _TradeState] = {}
        finished: list[_TradeState] = []

        for trade in await self.store.list_trades(user_id, status=TradeStatus.OPEN):
            if trade.symbol in states:
                logger.warning(
                    "[TRADE_BUILDER] %s has more than one OPEN %s trade; resuming %s only",
                    user_id, trade.symbol, states[trade.symbol].trade.id,
                )
                continue
            states[trade.symbol] = await self._resume(trade, tracker)

        touched_orders: list[Order] = []
        for order in await self.store.list_orders(user_id, used_in_trade=False):
            ts = _order_time(order)
            if ts is None or order.price is None or order.quantity <= EPSILON:
                logger.warning(
                    "[TRADE_BUILDER] Skipping order %s (%s): missing time, price or quantity",
                    order.id, order.symbol,
                )
                result.skipped_order_ids.append(order.id)
                continue
            self._apply(order, ts, tracker, states, finished, user_id)
            touched_orders.append(order)

        for state in finished:
            self._finalize(state, closed=True)
        for state in states.values():
            self._finalize(state, closed=False)

        for state in finished + list(states.values()):
            if state.resumed:
                if state.touched:
                    result.updated_trades.append(state.trade)
            else:
                result.new_trades.append(state.trade)
            result._orders_by_trade[state.trade.id] = state.orders

        result.orders = touched_orders
        logger.info(
            "[TRADE_BUILDER] %s: %s (%s)", user_id, result.to_dict(), tracker.stats,
        )
        return result

    async def persist_trades(self, result: BuildResult) -> BuildResult:
        """Write trades and order attribution in one transaction."""
        for trade in result.trades:
            verify_trade_integrity(trade, result._orders_by_trade.get(trade.id, []))

        async with self.store.transaction():
            if result.new_trades:
                await self.store.insert_trades(result.new_trades)
            if result.updated_trades:
                await self.store.update_trades(result.updated_trades)
            if result.orders:
                await self.store.update_orders(result.orders)
        return result

    async def build_for_user(self, user_id: str) -> Optional[BuildResult]:
        """Incremental run after new orders were committed.

        Symbols that received executions older than ones already attributed
        are reset and rebuilt so matching stays in time order. Returns None
        when another build for the user holds the lock; that run (or the
        next trigger) picks the orders up.
        """
        try:
            async with self.store.lock(f"trades:{user_id}"):
                backdated = await self._backdated_symbols(user_id)
                if backdated:
                    logger.warning(
                        "[TRADE_BUILDER] %s: orders older than attributed ones for %s; rebuilding",
                        user_id, backdated,
                    )
                    await self.reset_attribution(user_id, symbols=backdated)
                result = await self.process_user_orders(user_id)
                return await self.persist_trades(result)
        except LockUnavailable:
            logger.info("[TRADE_BUILDER] Build for %s already running; skipped", user_id)
            return None

    async def reset_attribution(
        self, user_id: str, symbols: Optional[Iterable[str]] = None,
    ) -> dict[str, int]:
        """Delete non-BLANK trades and clear the orders' trade links.

        ``symbols`` narrows the reset; by default every symbol is cleared.
        """
        wanted = set(symbols) if symbols is not None else None
        trades = await self.store.list_trades(user_id)
        doomed = [
            t.id for t in trades
            if t.status != TradeStatus.BLANK and (wanted is None or t.symbol in wanted)
        ]
        orders = [
            o for o in await self.store.list_orders(user_id, used_in_trade=True)
            if wanted is None or o.symbol in wanted
        ]
        for order in orders:
            order.used_in_trade = False
            order.trade_id = None

        async with self.store.transaction():
            deleted = await self.store.delete_trades(doomed)
            await self.store.update_orders(orders)

        logger.info(
            "[TRADE_BUILDER] Reset %s: %d trades deleted, %d orders released",
            user_id, deleted, len(orders),
        )
        return {"trades_deleted": deleted, "orders_released": len(orders)}

    async def rebuild_user_trades(self, user_id: str) -> BuildResult:
        """Reset attribution and recompute everything. Raises LockUnavailable."""
        async with self.store.lock(f"trades:{user_id}"):
            await self.reset_attribution(user_id)
            result = await self.process_user_orders(user_id)
            return await self.persist_trades(result)

    async def ensure_blank_trade(self, user_id: str, day: date) -> Trade:
        """At most one zero-quantity placeholder per user and day."""
        for trade in await self.store.list_trades(user_id, status=TradeStatus.BLANK):
            if trade.trade_date == day:
                return trade
        trade = Trade(
            user_id=user_id,
            symbol="",
            status=TradeStatus.BLANK,
            trade_date=day,
            entry_date=datetime.combine(day, datetime.min.time()),
        )
        await self.store.insert_trades([trade])
        logger.info("[TRADE_BUILDER] Blank trade %s for %s on %s", trade.id, user_id, day)
        return trade

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    async def _backdated_symbols(self, user_id: str) -> list[str]:
        """Symbols with an unattributed order older than their latest attributed one."""
        latest: dict[str, datetime] = {}
        for order in await self.store.list_orders(user_id, used_in_trade=True):
            ts = _order_time(order)
            if ts is not None and (order.symbol not in latest or ts > latest[order.symbol]):
                latest[order.symbol] = ts

        backdated: set[str] = set()
        for order in await self.store.list_orders(user_id, used_in_trade=False):
            ts = _order_time(order)
            if ts is None or order.price is None or order.quantity <= EPSILON:
                continue
            if order.symbol in latest and ts < latest[order.symbol]:
                backdated.add(order.symbol)
        return sorted(backdated)

    async def _resume(self, trade: Trade, tracker: PositionTracker) -> _TradeState:
        """Rebuild lots and legs of an OPEN trade from its allocations."""
        state = _TradeState(trade=trade, resumed=True)
        orders = {o.id: o for o in await self.store.get_orders(
            a.order_id for a in trade.order_allocations
        )}
        allocations = [a for a in trade.order_allocations if a.order_id in orders]
        if len(allocations) != len(trade.order_allocations):
            logger.warning(
                "[TRADE_BUILDER] Open trade %s references %d missing order(s)",
                trade.id, len(trade.order_allocations) - len(allocations),
            )
        allocations.sort(key=lambda a: _sort_key(orders[a.order_id]))

        short = trade.side == TradeSide.SHORT
        for alloc in allocations:
            order = orders[alloc.order_id]
            opening = alloc.role == "entry"
            signed = alloc.quantity if opening != short else -alloc.quantity
            fill = tracker.apply(
                trade.symbol, order.id, signed, order.price or 0.0, _order_time(order),
            )
            if opening:
                state.entries.append((order, alloc.quantity))
            else:
                state.exits.append((order, alloc.quantity))
                state.realized += fill.realized_pnl
        return state

    def _new_state(self, user_id: str, order: Order) -> _TradeState:
        side = TradeSide.LONG if order.side == OrderSide.BUY else TradeSide.SHORT
        return _TradeState(
            trade=Trade(user_id=user_id, symbol=order.symbol, side=side),
            touched=True,
        )

    def _apply(
        self,
        order: Order,
        ts: datetime,
        tracker: PositionTracker,
        states: dict[str, _TradeState],
        finished: list[_TradeState],
        user_id: str,
    ) -> None:
        fill = tracker.apply(order.symbol, order.id, order.signed_quantity, order.price, ts)
        state = states.get(order.symbol)

        if state is not None and fill.closed_quantity > EPSILON:
            state.exits.append((order, fill.closed_quantity))
            state.realized += fill.realized_pnl
            state.touched = True
            self._link(order, state)
            if fill.flattened:
                finished.append(state)
                del states[order.symbol]
                state = None

        if fill.opened_quantity > EPSILON:
            if state is None:
                state = self._new_state(user_id, order)
                states[order.symbol] = state
            state.entries.append((order, fill.opened_quantity))
            state.touched = True
            self._link(order, state)

    @staticmethod
    def _link(order: Order, state: _TradeState) -> None:
        order.used_in_trade = True
        if order.trade_id is None:
            order.trade_id = state.trade.id

    def _finalize(self, state: _TradeState, *, closed: bool) -> None:
        trade = state.trade
        entry_qty = sum(q for _, q in state.entries)
        exit_qty = sum(q for _, q in state.exits)
        entry_notional = sum((o.price or 0.0) * q for o, q in state.entries)
        exit_notional = sum((o.price or 0.0) * q for o, q in state.exits)

        legs = sorted(
            [(o, q, "entry") for o, q in state.entries] + [(o, q, "exit") for o, q in state.exits],
            key=lambda leg: _sort_key(leg[0]),
        )
        ordered_ids: list[str] = []
        for o, _, _ in legs:
            if o.id not in ordered_ids:
                ordered_ids.append(o.id)

        trade.quantity = round(entry_qty, 8)
        trade.entry_price = round(entry_notional / entry_qty, 6) if entry_qty > EPSILON else None
        trade.entry_date = _order_time(state.entries[0][0]) if state.entries else None
        trade.cost_basis = round(entry_notional, 2)
        trade.proceeds = round(exit_notional, 2)
        trade.pnl = round(state.realized, 2) if state.exits else None
        trade.orders_in_trade = ordered_ids
        trade.order_allocations = [
            OrderAllocation(order_id=o.id, quantity=q, role=role) for o, q, role in legs
        ]
        trade.executions = len(ordered_ids)
        trade.market_session = (
            market_session(trade.entry_date, self.settings.exchange_tz)
            if trade.entry_date else None
        )
        trade.is_calculated = True
        trade.updated_at = utcnow()

        if closed:
            trade.status = TradeStatus.CLOSED
            trade.remaining_quantity = 0.0
            trade.exit_price = round(exit_notional / exit_qty, 6) if exit_qty > EPSILON else None
            trade.exit_date = max(_order_time(o) for o, _ in state.exits)
            trade.holding_period = holding_period(trade.entry_date, trade.exit_date)
            trade.time_in_trade_seconds = int((trade.exit_date - trade.entry_date).total_seconds())
        else:
            trade.status = TradeStatus.OPEN
            trade.remaining_quantity = round(entry_qty - exit_qty, 8)
            trade.exit_price = None
            trade.exit_date = None
            trade.holding_period = None
            trade.time_in_trade_seconds = None
