"""Persistence port used by every service in the ingestion core.

Services never touch a database client directly; they receive a
``Store`` and call these typed operations. Two implementations ship:
``InMemoryStore`` (local dev, tests) and ``SupabaseStore``.

Conventions:
- every method is a coroutine
- reads return detached copies; mutate, then call the matching update
- ``lock(name)`` is a non-blocking advisory lock that raises
  ``LockUnavailable`` when another holder has it
- ``transaction()`` groups writes that must land together
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from contextlib import AbstractAsyncContextManager
from datetime import datetime
from typing import Any, Iterable, Optional

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
)


class Store(ABC):
    # ------------------------------------------------------------------
    # Concurrency
    # ------------------------------------------------------------------

    @abstractmethod
    def lock(self, name: str) -> AbstractAsyncContextManager[None]:
        """Non-blocking advisory lock. Raises ``LockUnavailable`` if held."""

    @abstractmethod
    def transaction(self) -> AbstractAsyncContextManager[None]:
        """All writes inside either land together or not at all."""

    # ------------------------------------------------------------------
    # Broker formats
    # ------------------------------------------------------------------

    @abstractmethod
    async def get_format(self, format_id: str) -> Optional[BrokerCsvFormat]: ...

    @abstractmethod
    async def find_format(
        self, broker_id: str, header_signature: str,
    ) -> Optional[BrokerCsvFormat]:
        """Most recently created format for this broker + signature."""

    @abstractmethod
    async def insert_format(self, fmt: BrokerCsvFormat) -> BrokerCsvFormat: ...

    @abstractmethod
    async def update_format(self, fmt: BrokerCsvFormat) -> BrokerCsvFormat: ...

    @abstractmethod
    async def list_formats(
        self, status: Optional[FormatStatus] = None,
    ) -> list[BrokerCsvFormat]: ...

    # ------------------------------------------------------------------
    # Staging
    # ------------------------------------------------------------------

    @abstractmethod
    async def insert_staging(self, rows: list[OrderStaging]) -> list[OrderStaging]: ...

    @abstractmethod
    async def get_staging(self, row_id: str) -> Optional[OrderStaging]: ...

    @abstractmethod
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
        """Ordered by (created_at, row_index)."""

    @abstractmethod
    async def count_staging(
        self,
        *,
        user_id: Optional[str] = None,
        format_id: Optional[str] = None,
        statuses: Optional[Iterable[MigrationStatus]] = None,
    ) -> int: ...

    @abstractmethod
    async def update_staging(self, row: OrderStaging) -> OrderStaging: ...

    @abstractmethod
    async def compare_and_set_staging_status(
        self,
        row_id: str,
        expected: MigrationStatus,
        new: MigrationStatus,
        changes: Optional[dict[str, Any]] = None,
    ) -> Optional[OrderStaging]:
        """Set ``new`` only if the row is still ``expected``.

        Returns the updated row, or ``None`` when another writer got there
        first.
        """

    # ------------------------------------------------------------------
    # Orders
    # ------------------------------------------------------------------

    @abstractmethod
    async def insert_orders(self, orders: list[Order]) -> list[Order]:
        """Batch insert; assigns each order a monotonically increasing ``sequence``."""

    @abstractmethod
    async def order_exists(self, order: Order) -> bool:
        """True when an order with the same duplicate key is already stored."""

    @abstractmethod
    async def find_order_by_staging_id(self, staging_id: str) -> Optional[Order]:
        """The order a staged row was migrated into, if one was written."""

    @abstractmethod
    async def list_orders(
        self,
        user_id: str,
        *,
        used_in_trade: Optional[bool] = None,
    ) -> list[Order]:
        """Ordered by (order_executed_time, sequence)."""

    @abstractmethod
    async def get_orders(self, order_ids: Iterable[str]) -> list[Order]: ...

    @abstractmethod
    async def update_orders(self, orders: list[Order]) -> None: ...

    # ------------------------------------------------------------------
    # Trades
    # ------------------------------------------------------------------

    @abstractmethod
    async def insert_trades(self, trades: list[Trade]) -> list[Trade]: ...

    @abstractmethod
    async def update_trades(self, trades: list[Trade]) -> None: ...

    @abstractmethod
    async def delete_trades(self, trade_ids: Iterable[str]) -> int: ...

    @abstractmethod
    async def list_trades(
        self,
        user_id: str,
        *,
        status: Optional[TradeStatus] = None,
    ) -> list[Trade]: ...

    # ------------------------------------------------------------------
    # Import batches, feedback, idempotency
    # ------------------------------------------------------------------

    @abstractmethod
    async def insert_import_batch(self, batch: ImportBatch) -> ImportBatch: ...

    @abstractmethod
    async def update_import_batch(self, batch: ImportBatch) -> ImportBatch: ...

    @abstractmethod
    async def get_import_batch(self, batch_id: str) -> Optional[ImportBatch]: ...

    @abstractmethod
    async def insert_feedback(self, item: FeedbackItem) -> FeedbackItem: ...

    @abstractmethod
    async def update_feedback(self, item: FeedbackItem) -> FeedbackItem: ...

    @abstractmethod
    async def list_feedback(
        self,
        *,
        format_id: Optional[str] = None,
        status: Optional[FeedbackStatus] = None,
    ) -> list[FeedbackItem]: ...

    @abstractmethod
    async def get_idempotent_result(self, key: str) -> Optional[dict[str, Any]]: ...

    @abstractmethod
    async def put_idempotent_result(
        self, key: str, result: dict[str, Any], created_at: datetime,
    ) -> None: ...
