"""In-process Store for local dev and tests.

Every read and write goes through ``copy.deepcopy`` so callers never hold a
live reference into the tables, which keeps compare-and-set honest.
``transaction()`` snapshots all tables and restores them if the block
raises. Snapshots are store-wide, so overlapping transactions from
concurrent tasks roll each other back; this store is not meant for
concurrent writers beyond what the tests exercise.
"""

from __future__ import annotations

import copy
import itertools
import logging
import threading
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, AsyncIterator, Iterable, Optional

from ..errors import LockUnavailable
from ..models import (
    BrokerCsvFormat,
    FeedbackItem,
    FeedbackStatus,
    FormatStatus,
    ImportBatch,
    MigrationStatus,
    Order,
    OrderStaging,
    Trade,
    TradeStatus,
    utcnow,
)
from .base import Store

logger = logging.getLogger(__name__)

_TABLES = ("formats", "staging", "orders", "trades", "batches", "feedback", "idempotency")


def _order_sort_key(o: Order) -> tuple:
    ts = o.order_executed_time or o.order_placed_time
    return (ts is None, ts or datetime.min, o.sequence)


class InMemoryStore(Store):
    def __init__(self) -> None:
        self.formats: dict[str, BrokerCsvFormat] = {}
        self.staging: dict[str, OrderStaging] = {}
        self.orders: dict[str, Order] = {}
        self.trades: dict[str, Trade] = {}
        self.batches: dict[str, ImportBatch] = {}
        self.feedback: dict[str, FeedbackItem] = {}
        self.idempotency: dict[str, dict[str, Any]] = {}
        self._sequence = itertools.count(1)
        self._locks: set[str] = set()
        self._mutex = threading.Lock()

    # ------------------------------------------------------------------
    # Concurrency
    # ------------------------------------------------------------------

    @asynccontextmanager
    async def lock(self, name: str) -> AsyncIterator[None]:
        with self._mutex:
            if name in self._locks:
                raise LockUnavailable(name)
            self._locks.add(name)
        try:
            yield
        finally:
            with self._mutex:
                self._locks.discard(name)

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[None]:
        snapshot = {t: copy.deepcopy(getattr(self, t)) for t in _TABLES}
        try:
            yield
        except BaseException:
            for t, data in snapshot.items():
                setattr(self, t, data)
            logger.debug("[MEMORY_STORE] Transaction rolled back")
            raise

    # ------------------------------------------------------------------
    # Broker formats
    # ------------------------------------------------------------------

    async def get_format(self, format_id: str) -> Optional[BrokerCsvFormat]:
        return copy.deepcopy(self.formats.get(format_id))

    async def find_format(
        self, broker_id: str, header_signature: str,
    ) -> Optional[BrokerCsvFormat]:
        matches = [
            f for f in self.formats.values()
            if f.broker_id == broker_id and f.header_signature == header_signature
        ]
        if not matches:
            return None
        return copy.deepcopy(max(matches, key=lambda f: f.created_at))

    async def insert_format(self, fmt: BrokerCsvFormat) -> BrokerCsvFormat:
        self.formats[fmt.id] = copy.deepcopy(fmt)
        return copy.deepcopy(fmt)

    async def update_format(self, fmt: BrokerCsvFormat) -> BrokerCsvFormat:
        self.formats[fmt.id] = copy.deepcopy(fmt)
        return copy.deepcopy(fmt)

    async def list_formats(
        self, status: Optional[FormatStatus] = None,
    ) -> list[BrokerCsvFormat]:
        rows = [
            f for f in self.formats.values() if status is None or f.status == status
        ]
        return copy.deepcopy(sorted(rows, key=lambda f: f.created_at))

    # ------------------------------------------------------------------
    # Staging
    # ------------------------------------------------------------------

    def _staging_matches(
        self,
        row: OrderStaging,
        user_id: Optional[str],
        format_id: Optional[str],
        statuses: Optional[set[MigrationStatus]],
        import_batch_id: Optional[str] = None,
    ) -> bool:
        if user_id is not None and row.user_id != user_id:
            return False
        if format_id is not None and row.broker_csv_format_id != format_id:
            return False
        if statuses is not None and row.migration_status not in statuses:
            return False
        if import_batch_id is not None and row.import_batch_id != import_batch_id:
            return False
        return True

    async def insert_staging(self, rows: list[OrderStaging]) -> list[OrderStaging]:
        for row in rows:
            self.staging[row.id] = copy.deepcopy(row)
        return copy.deepcopy(rows)

    async def get_staging(self, row_id: str) -> Optional[OrderStaging]:
        return copy.deepcopy(self.staging.get(row_id))

    async def list_staging(
        self,
        *,
        user_id: Optional[str] = None,
        format_id: Optional[str] = None,
        statuses: Optional[Iterable[MigrationStatus]] = None,
        import_batch_id: Optional[str] = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> list[OrderStaging]:
        wanted = set(statuses) if statuses is not None else None
        rows = [
            r for r in self.staging.values()
            if self._staging_matches(r, user_id, format_id, wanted, import_batch_id)
        ]
        rows.sort(key=lambda r: (r.created_at, r.row_index))
        end = None if limit is None else offset + limit
        return copy.deepcopy(rows[offset:end])

    async def count_staging(
        self,
        *,
        user_id: Optional[str] = None,
        format_id: Optional[str] = None,
        statuses: Optional[Iterable[MigrationStatus]] = None,
    ) -> int:
        wanted = set(statuses) if statuses is not None else None
        return sum(
            1 for r in self.staging.values()
            if self._staging_matches(r, user_id, format_id, wanted)
        )

    async def update_staging(self, row: OrderStaging) -> OrderStaging:
        row.updated_at = utcnow()
        self.staging[row.id] = copy.deepcopy(row)
        return copy.deepcopy(row)

    async def compare_and_set_staging_status(
        self,
        row_id: str,
        expected: MigrationStatus,
        new: MigrationStatus,
        changes: Optional[dict[str, Any]] = None,
    ) -> Optional[OrderStaging]:
        with self._mutex:
            row = self.staging.get(row_id)
            if row is None or row.migration_status != expected:
                return None
            row.migration_status = new
            for key, value in (changes or {}).items():
                setattr(row, key, copy.deepcopy(value))
            row.updated_at = utcnow()
            return copy.deepcopy(row)

    # ------------------------------------------------------------------
    # Orders
    # ------------------------------------------------------------------

    async def insert_orders(self, orders: list[Order]) -> list[Order]:
        stored: list[Order] = []
        for order in orders:
            order = copy.deepcopy(order)
            order.sequence = next(self._sequence)
            self.orders[order.id] = order
            stored.append(copy.deepcopy(order))
        return stored

    async def order_exists(self, order: Order) -> bool:
        key = order.duplicate_key()
        return any(o.duplicate_key() == key for o in self.orders.values())

    async def find_order_by_staging_id(self, staging_id: str) -> Optional[Order]:
        for order in self.orders.values():
            if order.staging_id == staging_id:
                return copy.deepcopy(order)
        return None

    async def list_orders(
        self,
        user_id: str,
        *,
        used_in_trade: Optional[bool] = None,
    ) -> list[Order]:
        rows = [
            o for o in self.orders.values()
            if o.user_id == user_id
            and (used_in_trade is None or o.used_in_trade == used_in_trade)
        ]
        return copy.deepcopy(sorted(rows, key=_order_sort_key))

    async def get_orders(self, order_ids: Iterable[str]) -> list[Order]:
        return [copy.deepcopy(self.orders[i]) for i in order_ids if i in self.orders]

    async def update_orders(self, orders: list[Order]) -> None:
        for order in orders:
            self.orders[order.id] = copy.deepcopy(order)

    # ------------------------------------------------------------------
    # Trades
    # ------------------------------------------------------------------

    async def insert_trades(self, trades: list[Trade]) -> list[Trade]:
        for trade in trades:
            self.trades[trade.id] = copy.deepcopy(trade)
        return copy.deepcopy(trades)

    async def update_trades(self, trades: list[Trade]) -> None:
        for trade in trades:
            trade.updated_at = utcnow()
            self.trades[trade.id] = copy.deepcopy(trade)

    async def delete_trades(self, trade_ids: Iterable[str]) -> int:
        removed = 0
        for trade_id in list(trade_ids):
            if self.trades.pop(trade_id, None) is not None:
                removed += 1
        return removed

    async def list_trades(
        self,
        user_id: str,
        *,
        status: Optional[TradeStatus] = None,
    ) -> list[Trade]:
        rows = [
            t for t in self.trades.values()
            if t.user_id == user_id and (status is None or t.status == status)
        ]
        rows.sort(key=lambda t: (t.entry_date is None, t.entry_date or datetime.min, t.created_at))
        return copy.deepcopy(rows)

    # ------------------------------------------------------------------
    # Import batches, feedback, idempotency
    # ------------------------------------------------------------------

    async def insert_import_batch(self, batch: ImportBatch) -> ImportBatch:
        self.batches[batch.id] = copy.deepcopy(batch)
        return copy.deepcopy(batch)

    async def update_import_batch(self, batch: ImportBatch) -> ImportBatch:
        self.batches[batch.id] = copy.deepcopy(batch)
        return copy.deepcopy(batch)

    async def get_import_batch(self, batch_id: str) -> Optional[ImportBatch]:
        return copy.deepcopy(self.batches.get(batch_id))

    async def insert_feedback(self, item: FeedbackItem) -> FeedbackItem:
        self.feedback[item.id] = copy.deepcopy(item)
        return copy.deepcopy(item)

    async def update_feedback(self, item: FeedbackItem) -> FeedbackItem:
        self.feedback[item.id] = copy.deepcopy(item)
        return copy.deepcopy(item)

    async def list_feedback(
        self,
        *,
        format_id: Optional[str] = None,
        status: Optional[FeedbackStatus] = None,
    ) -> list[FeedbackItem]:
        rows = [
            f for f in self.feedback.values()
            if (format_id is None or f.format_id == format_id)
            and (status is None or f.status == status)
        ]
        return copy.deepcopy(sorted(rows, key=lambda f: f.created_at))

    async def get_idempotent_result(self, key: str) -> Optional[dict[str, Any]]:
        entry = self.idempotency.get(key)
        return copy.deepcopy(entry["result"]) if entry else None

    async def put_idempotent_result(
        self, key: str, result: dict[str, Any], created_at: datetime,
    ) -> None:
        self.idempotency[key] = {"result": copy.deepcopy(result), "created_at": created_at}
