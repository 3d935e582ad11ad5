"""Supabase (PostgREST) implementation of the Store port.

Reads connection info from environment (via Settings):
    SUPABASE_URL          – project URL (e.g. https://xxx.supabase.co)
    SUPABASE_SERVICE_KEY  – service_role key (bypasses RLS)

The supabase-py client is synchronous; every call runs in a worker thread
via ``asyncio.to_thread``. Named locks and the per-row compare-and-set
map onto Postgres: locks through the ``try_acquire_lock`` / ``release_lock``
RPCs over a leased ``app_locks`` table, compare-and-set through a filtered
``update`` whose returned rows tell us whether we won.

PostgREST has no multi-request transactions. ``transaction()`` here only
marks the scope in the logs; batches that must be atomic go through a
single ``insert`` call, which Postgres applies as one statement.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, AsyncIterator, Iterable, Optional

from ..config import Settings, get_settings
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
    from_record,
    plain_value,
    to_record,
    utcnow,
)
from .base import Store

logger = logging.getLogger(__name__)

FORMATS = "broker_csv_formats"
STAGING = "order_staging"
ORDERS = "orders"
TRADES = "trades"
BATCHES = "import_batches"
FEEDBACK = "ai_ingest_checks"
IDEMPOTENCY = "idempotency_keys"


def _create_client(settings: Settings):
    from supabase import create_client

    client = create_client(settings.supabase_url, settings.supabase_service_key)
    logger.info("[SUPABASE] Client initialized for %s", settings.supabase_url)
    return client


class SupabaseStore(Store):
    def __init__(self, client: Any = None, *, settings: Optional[Settings] = None) -> None:
        self.settings = settings or get_settings()
        self._client = client

    @property
    def client(self) -> Any:
        if self._client is None:
            self._client = _create_client(self.settings)
        return self._client

    async def _run(self, fn, *args, **kwargs):
        return await asyncio.to_thread(fn, *args, **kwargs)

    async def _select(self, build) -> list[dict[str, Any]]:
        """Run a query builder callback and return ``resp.data``."""
        resp = await self._run(lambda: build(self.client).execute())
        return resp.data or []

    # ------------------------------------------------------------------
    # Concurrency
    # ------------------------------------------------------------------

    @asynccontextmanager
    async def lock(self, name: str) -> AsyncIterator[None]:
        # Leased row in app_locks (storage/sql/supabase_schema.sql); an expired
        # lease is taken over, so a dead holder cannot block the name forever.
        holder = uuid.uuid4().hex
        resp = await self._run(
            lambda: self.client.rpc("try_acquire_lock", {
                "lock_name": name,
                "lock_holder": holder,
                "ttl_seconds": self.settings.lock_ttl_seconds,
            }).execute()
        )
        if not resp.data:
            raise LockUnavailable(name)
        try:
            yield
        finally:
            try:
                await self._run(
                    lambda: self.client.rpc(
                        "release_lock", {"lock_name": name, "lock_holder": holder},
                    ).execute()
                )
            except Exception:
                logger.exception("[SUPABASE] Failed to release lock %s", name)

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[None]:
        logger.debug("[SUPABASE] Begin write scope")
        yield
        logger.debug("[SUPABASE] End write scope")

    # ------------------------------------------------------------------
    # Broker formats
    # ------------------------------------------------------------------

    async def get_format(self, format_id: str) -> Optional[BrokerCsvFormat]:
        rows = await self._select(
            lambda c: c.table(FORMATS).select("*").eq("id", format_id).limit(1)
        )
        return from_record(BrokerCsvFormat, rows[0]) if rows else None

    async def find_format(
        self, broker_id: str, header_signature: str,
    ) -> Optional[BrokerCsvFormat]:
        rows = await self._select(
            lambda c: c.table(FORMATS)
            .select("*")
            .eq("broker_id", broker_id)
            .eq("header_signature", header_signature)
            .order("created_at", desc=True)
            .limit(1)
        )
        return from_record(BrokerCsvFormat, rows[0]) if rows else None

    async def insert_format(self, fmt: BrokerCsvFormat) -> BrokerCsvFormat:
        rows = await self._select(lambda c: c.table(FORMATS).insert(to_record(fmt)))
        return from_record(BrokerCsvFormat, rows[0]) if rows else fmt

    async def update_format(self, fmt: BrokerCsvFormat) -> BrokerCsvFormat:
        rows = await self._select(
            lambda c: c.table(FORMATS).update(to_record(fmt)).eq("id", fmt.id)
        )
        return from_record(BrokerCsvFormat, rows[0]) if rows else fmt

    async def list_formats(
        self, status: Optional[FormatStatus] = None,
    ) -> list[BrokerCsvFormat]:
        def build(c):
            q = c.table(FORMATS).select("*")
            if status is not None:
                q = q.eq("status", status.value)
            return q.order("created_at")

        return [from_record(BrokerCsvFormat, r) for r in await self._select(build)]

    # ------------------------------------------------------------------
    # Staging
    # ------------------------------------------------------------------

    @staticmethod
    def _filter_staging(q, user_id, format_id, statuses, import_batch_id=None):
        if user_id is not None:
            q = q.eq("user_id", user_id)
        if format_id is not None:
            q = q.eq("broker_csv_format_id", format_id)
        if statuses is not None:
            q = q.in_("migration_status", [s.value for s in statuses])
        if import_batch_id is not None:
            q = q.eq("import_batch_id", import_batch_id)
        return q

    async def insert_staging(self, rows: list[OrderStaging]) -> list[OrderStaging]:
        if not rows:
            return []
        data = await self._select(
            lambda c: c.table(STAGING).insert([to_record(r) for r in rows])
        )
        return [from_record(OrderStaging, r) for r in data] or rows

    async def get_staging(self, row_id: str) -> Optional[OrderStaging]:
        rows = await self._select(
            lambda c: c.table(STAGING).select("*").eq("id", row_id).limit(1)
        )
        return from_record(OrderStaging, rows[0]) if rows else None

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
        statuses = list(statuses) if statuses is not None else None

        def build(c):
            q = self._filter_staging(
                c.table(STAGING).select("*"), user_id, format_id, statuses, import_batch_id,
            )
            q = q.order("created_at").order("row_index")
            if limit is not None:
                q = q.range(offset, offset + limit - 1)
            return q

        return [from_record(OrderStaging, r) for r in await self._select(build)]

    async def count_staging(
        self,
        *,
        user_id: Optional[str] = None,
        format_id: Optional[str] = None,
        statuses: Optional[Iterable[MigrationStatus]] = None,
    ) -> int:
        statuses = list(statuses) if statuses is not None else None
        resp = await self._run(
            lambda: self._filter_staging(
                self.client.table(STAGING).select("id", count="exact"),
                user_id, format_id, statuses,
            ).execute()
        )
        return resp.count or 0

    async def update_staging(self, row: OrderStaging) -> OrderStaging:
        row.updated_at = utcnow()
        rows = await self._select(
            lambda c: c.table(STAGING).update(to_record(row)).eq("id", row.id)
        )
        return from_record(OrderStaging, rows[0]) if rows else row

    async def compare_and_set_staging_status(
        self,
        row_id: str,
        expected: MigrationStatus,
        new: MigrationStatus,
        changes: Optional[dict[str, Any]] = None,
    ) -> Optional[OrderStaging]:
        patch = {k: plain_value(v) for k, v in (changes or {}).items()}
        patch["migration_status"] = new.value
        patch["updated_at"] = utcnow().isoformat()
        rows = await self._select(
            lambda c: c.table(STAGING)
            .update(patch)
            .eq("id", row_id)
            .eq("migration_status", expected.value)
        )
        return from_record(OrderStaging, rows[0]) if rows else None

    # ------------------------------------------------------------------
    # Orders
    # ------------------------------------------------------------------

    async def insert_orders(self, orders: list[Order]) -> list[Order]:
        if not orders:
            return []
        payload = []
        for o in orders:
            record = to_record(o)
            record.pop("sequence", None)  # bigserial
            payload.append(record)
        rows = await self._select(lambda c: c.table(ORDERS).insert(payload))
        return [from_record(Order, r) for r in rows]

    async def order_exists(self, order: Order) -> bool:
        executed = order.order_executed_time.isoformat() if order.order_executed_time else None

        def build(c):
            q = (
                c.table(ORDERS)
                .select("id")
                .eq("user_id", order.user_id)
                .eq("broker_id", order.broker_id)
                .eq("symbol", order.symbol)
                .eq("side", order.side.value)
                .eq("quantity", order.quantity)
            )
            q = q.eq("order_executed_time", executed) if executed else q.is_("order_executed_time", "null")
            return q.limit(1)

        return bool(await self._select(build))

    async def find_order_by_staging_id(self, staging_id: str) -> Optional[Order]:
        rows = await self._select(
            lambda c: c.table(ORDERS).select("*").eq("staging_id", staging_id).limit(1)
        )
        return from_record(Order, rows[0]) if rows else None

    async def list_orders(
        self,
        user_id: str,
        *,
        used_in_trade: Optional[bool] = None,
    ) -> list[Order]:
        def build(c):
            q = c.table(ORDERS).select("*").eq("user_id", user_id)
            if used_in_trade is not None:
                q = q.eq("used_in_trade", used_in_trade)
            return q.order("order_executed_time").order("sequence")

        return [from_record(Order, r) for r in await self._select(build)]

    async def get_orders(self, order_ids: Iterable[str]) -> list[Order]:
        ids = list(order_ids)
        if not ids:
            return []
        rows = await self._select(lambda c: c.table(ORDERS).select("*").in_("id", ids))
        by_id = {r["id"]: from_record(Order, r) for r in rows}
        return [by_id[i] for i in ids if i in by_id]

    async def update_orders(self, orders: list[Order]) -> None:
        for order in orders:
            await self._select(
                lambda c, o=order: c.table(ORDERS)
                .update({"used_in_trade": o.used_in_trade, "trade_id": o.trade_id})
                .eq("id", o.id)
            )

    # ------------------------------------------------------------------
    # Trades
    # ------------------------------------------------------------------

    async def insert_trades(self, trades: list[Trade]) -> list[Trade]:
        if not trades:
            return []
        rows = await self._select(
            lambda c: c.table(TRADES).insert([to_record(t) for t in trades])
        )
        return [from_record(Trade, r) for r in rows] or trades

    async def update_trades(self, trades: list[Trade]) -> None:
        for trade in trades:
            trade.updated_at = utcnow()
            await self._select(
                lambda c, t=trade: c.table(TRADES).update(to_record(t)).eq("id", t.id)
            )

    async def delete_trades(self, trade_ids: Iterable[str]) -> int:
        ids = list(trade_ids)
        if not ids:
            return 0
        rows = await self._select(lambda c: c.table(TRADES).delete().in_("id", ids))
        return len(rows)

    async def list_trades(
        self,
        user_id: str,
        *,
        status: Optional[TradeStatus] = None,
    ) -> list[Trade]:
        def build(c):
            q = c.table(TRADES).select("*").eq("user_id", user_id)
            if status is not None:
                q = q.eq("status", status.value)
            return q.order("entry_date")

        return [from_record(Trade, r) for r in await self._select(build)]

    # ------------------------------------------------------------------
    # Import batches, feedback, idempotency
    # ------------------------------------------------------------------

    async def insert_import_batch(self, batch: ImportBatch) -> ImportBatch:
        rows = await self._select(lambda c: c.table(BATCHES).insert(to_record(batch)))
        return from_record(ImportBatch, rows[0]) if rows else batch

    async def update_import_batch(self, batch: ImportBatch) -> ImportBatch:
        rows = await self._select(
            lambda c: c.table(BATCHES).update(to_record(batch)).eq("id", batch.id)
        )
        return from_record(ImportBatch, rows[0]) if rows else batch

    async def get_import_batch(self, batch_id: str) -> Optional[ImportBatch]:
        rows = await self._select(
            lambda c: c.table(BATCHES).select("*").eq("id", batch_id).limit(1)
        )
        return from_record(ImportBatch, rows[0]) if rows else None

    async def insert_feedback(self, item: FeedbackItem) -> FeedbackItem:
        rows = await self._select(lambda c: c.table(FEEDBACK).insert(to_record(item)))
        return from_record(FeedbackItem, rows[0]) if rows else item

    async def update_feedback(self, item: FeedbackItem) -> FeedbackItem:
        rows = await self._select(
            lambda c: c.table(FEEDBACK).update(to_record(item)).eq("id", item.id)
        )
        return from_record(FeedbackItem, rows[0]) if rows else item

    async def list_feedback(
        self,
        *,
        format_id: Optional[str] = None,
        status: Optional[FeedbackStatus] = None,
    ) -> list[FeedbackItem]:
        def build(c):
            q = c.table(FEEDBACK).select("*")
            if format_id is not None:
                q = q.eq("format_id", format_id)
            if status is not None:
                q = q.eq("status", status.value)
            return q.order("created_at")

        return [from_record(FeedbackItem, r) for r in await self._select(build)]

    async def get_idempotent_result(self, key: str) -> Optional[dict[str, Any]]:
        rows = await self._select(
            lambda c: c.table(IDEMPOTENCY).select("result").eq("key", key).limit(1)
        )
        return rows[0]["result"] if rows else None

    async def put_idempotent_result(
        self, key: str, result: dict[str, Any], created_at: datetime,
    ) -> None:
        await self._select(
            lambda c: c.table(IDEMPOTENCY).upsert({
                "key": key,
                "result": result,
                "created_at": created_at.isoformat(),
            })
        )

