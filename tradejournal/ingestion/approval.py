"""Format Approval Service: admin review of staged formats and row migration.

Approval runs under a per-format advisory lock. Each staged row is claimed
with a compare-and-set on ``migration_status`` (APPROVED/FAILED ->
MIGRATING) so a row can only ever produce one Order, even when two
processes race. Row failures are recorded on the row (FAILED, error text,
``retry_count``) and never stop the batch.

Staging rows are kept after migration, which is what ``rollback_available``
reports: a migration can be reversed by hand by deleting the created
Orders. Nothing here moves a row backwards.
"""

from __future__ import annotations

import logging
import time
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Optional

from ..config import Settings, get_settings
from ..errors import (
    ConcurrentApprovalError,
    LockUnavailable,
    MigrationError,
    ValidationError,
)
from ..models import (
    BrokerCsvFormat,
    FeedbackStatus,
    FormatStatus,
    ImportStatus,
    MappingResult,
    MigrationStatus,
    OrderStaging,
    plain_value,
    utcnow,
)
from ..parsing.mapping import MappingExecutor
from ..parsing.validation import build_order
from ..storage.base import Store
from ..trades.builder import TradeBuilder
from .feedback import FeedbackLog
from .format_registry import FormatRegistry
from .rate_limit import RateLimits
from .state_machine import check_staging

logger = logging.getLogger(__name__)


@dataclass
class MigrationResult:
    format_id: str
    migrated_count: int = 0
    failed_count: int = 0
    skipped_count: int = 0
    duration_ms: int = 0
    rollback_available: bool = True
    affected_users: list[str] = field(default_factory=list)
    errors: list[dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return plain_value(self)


class FormatApprovalService:
    """Approve/reject broker formats and move their staged rows.

    Usage::

        approvals = FormatApprovalService(store)
        result = await approvals.approve_format_and_migrate_orders(
            format_id, admin_id, corrected_mappings={"Qty": "quantity"},
            idempotency_key=request_id,
        )
    """

    def __init__(
        self,
        store: Store,
        *,
        settings: Optional[Settings] = None,
        limits: Optional[RateLimits] = None,
        trade_builder: Optional[TradeBuilder] = None,
    ) -> None:
        self.store = store
        self.settings = settings or get_settings()
        self.limits = limits or RateLimits(self.settings)
        self.registry = FormatRegistry(store, settings=self.settings)
        self.feedback = FeedbackLog(store)
        self.trade_builder = trade_builder or TradeBuilder(store, settings=self.settings)

    # ------------------------------------------------------------------
    # Approve / reject
    # ------------------------------------------------------------------

    async def approve_format_and_migrate_orders(
        self,
        format_id: str,
        admin_id: str,
        corrected_mappings: Optional[dict[str, str]] = None,
        idempotency_key: Optional[str] = None,
    ) -> MigrationResult:
        self.limits.approvals.hit(admin_id)

        cached = await self._cached_result(idempotency_key)
        if cached is not None:
            return cached

        try:
            async with self.store.lock(f"format:{format_id}"):
                # The first run may have finished while we waited for the lock.
                cached = await self._cached_result(idempotency_key)
                if cached is not None:
                    return cached

                started = time.monotonic()
                fmt = await self.registry.approve(format_id, admin_id, corrected_mappings)
                result = await self._migrate_format(fmt)
                await self.feedback.resolve_for_format(
                    format_id, FeedbackStatus.APPROVED, admin_id,
                )
                await self._rebuild_trades(result.affected_users)
                result.duration_ms = int((time.monotonic() - started) * 1000)

                if idempotency_key:
                    await self.store.put_idempotent_result(
                        idempotency_key, result.to_dict(), utcnow(),
                    )
        except LockUnavailable:
            logger.warning("[APPROVAL] Format %s is being approved elsewhere", format_id)
            raise ConcurrentApprovalError(format_id) from None

        logger.info(
            "[APPROVAL] Format %s approved by %s: %d migrated, %d failed, %d skipped in %dms",
            format_id, admin_id, result.migrated_count, result.failed_count,
            result.skipped_count, result.duration_ms,
        )
        return result

    async def _cached_result(self, idempotency_key: Optional[str]) -> Optional[MigrationResult]:
        if not idempotency_key:
            return None
        cached = await self.store.get_idempotent_result(idempotency_key)
        if cached is None:
            return None
        logger.info(
            "[APPROVAL] Idempotency key %s already used; returning cached result",
            idempotency_key,
        )
        return MigrationResult(**cached)

    async def reject_format(self, format_id: str, admin_id: str, reason: str) -> dict[str, Any]:
        """Reject the format and every PENDING row under it. Creates no Orders."""
        self.limits.approvals.hit(admin_id)
        try:
            async with self.store.lock(f"format:{format_id}"):
                fmt = await self.registry.reject(format_id, admin_id, reason)
                rejected = 0
                rows = await self.store.list_staging(
                    format_id=format_id, statuses=[MigrationStatus.PENDING],
                )
                for row in rows:
                    check_staging(row.migration_status, MigrationStatus.REJECTED)
                    updated = await self.store.compare_and_set_staging_status(
                        row.id, MigrationStatus.PENDING, MigrationStatus.REJECTED,
                        {"processing_errors": row.processing_errors + [f"Format rejected: {reason}"]},
                    )
                    if updated is not None:
                        rejected += 1
                await self._close_batches({r.import_batch_id for r in rows}, ImportStatus.FAILED)
        except LockUnavailable:
            raise ConcurrentApprovalError(format_id) from None

        await self.feedback.resolve_for_format(format_id, FeedbackStatus.DISMISSED, admin_id)
        logger.info(
            "[APPROVAL] Format %s rejected by %s: %d staged rows rejected",
            fmt.id, admin_id, rejected,
        )
        return {"format_id": fmt.id, "rejected_count": rejected, "reason": reason}

    # ------------------------------------------------------------------
    # Recovery
    # ------------------------------------------------------------------

    async def process_orphaned_staging_records(self, admin_id: str) -> dict[str, Any]:
        """Finish migrations that an earlier approval left behind.

        Rows stuck in MIGRATING past the stale window are released to FAILED,
        then every approved format with PENDING/FAILED rows is migrated
        again. Safe to call repeatedly.
        """
        started = time.monotonic()
        reclaimed = await self._reclaim_stale()

        processed = failed = skipped = 0
        checked = 0
        errors: list[dict[str, Any]] = []
        affected: set[str] = set()

        for fmt in await self.store.list_formats(FormatStatus.APPROVED):
            waiting = await self.store.count_staging(
                format_id=fmt.id,
                statuses=[MigrationStatus.PENDING, MigrationStatus.FAILED],
            )
            if not waiting:
                continue
            checked += 1
            try:
                async with self.store.lock(f"format:{fmt.id}"):
                    result = await self._migrate_format(fmt)
            except LockUnavailable:
                logger.info("[APPROVAL] Format %s locked; orphans left for next run", fmt.id)
                continue
            processed += result.migrated_count
            failed += result.failed_count
            skipped += result.skipped_count
            errors.extend(result.errors)
            affected.update(result.affected_users)

        await self._rebuild_trades(sorted(affected))
        logger.info(
            "[APPROVAL] Orphan run by %s: %d formats, %d migrated, %d failed, %d skipped, %d reclaimed",
            admin_id, checked, processed, failed, skipped, reclaimed,
        )
        return {
            "processed": processed,
            "errors": failed,
            "skipped": skipped,
            "reclaimed": reclaimed,
            "approved_formats_checked": checked,
            "error_details": errors,
            "duration_ms": int((time.monotonic() - started) * 1000),
        }

    # ------------------------------------------------------------------
    # Dashboards
    # ------------------------------------------------------------------

    async def approval_stats(self, since: Optional[datetime] = None) -> dict[str, Any]:
        since = since or utcnow() - timedelta(days=7)
        formats = await self.store.list_formats()
        approved = [f for f in formats if f.approved_at and f.approved_at >= since]
        rejected = [f for f in formats if f.rejected_at and f.rejected_at >= since]
        by_admin = Counter(f.approved_by for f in approved)
        return {
            "since": since.isoformat(),
            "approved": len(approved),
            "rejected": len(rejected),
            "pending_review": sum(1 for f in formats if f.status == FormatStatus.PENDING_REVIEW),
            "approvals_by_admin": dict(by_admin),
        }

    async def pending_staging_stats(self) -> dict[str, Any]:
        counts = {
            s.value: await self.store.count_staging(statuses=[s]) for s in MigrationStatus
        }
        capped = [
            r for r in await self.store.list_staging(statuses=[MigrationStatus.FAILED])
            if r.retry_count >= self.settings.max_retry_attempts
        ]
        return {"by_status": counts, "failed_at_retry_cap": len(capped)}

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    async def _migrate_format(self, fmt: BrokerCsvFormat) -> MigrationResult:
        """Migrate PENDING and retryable FAILED rows. Caller holds the format lock."""
        result = MigrationResult(format_id=fmt.id)
        mapping = fmt.mapping_result(self.settings.review_threshold)
        executor = MappingExecutor(mapping, exchange_tz=self.settings.exchange_tz)
        batches: dict[str, Any] = {}
        affected: set[str] = set()
        batch_size = max(self.settings.migration_batch_size, 1)

        # PENDING rows are promoted to APPROVED first so a crash between the
        # two steps leaves them claimable.
        for row in await self.store.list_staging(
            format_id=fmt.id, statuses=[MigrationStatus.PENDING],
        ):
            await self.store.compare_and_set_staging_status(
                row.id, MigrationStatus.PENDING, MigrationStatus.APPROVED,
            )

        candidates = await self.store.list_staging(
            format_id=fmt.id, statuses=[MigrationStatus.APPROVED, MigrationStatus.FAILED],
        )
        for start in range(0, len(candidates), batch_size):
            chunk = candidates[start : start + batch_size]
            for row in chunk:
                if (
                    row.migration_status == MigrationStatus.FAILED
                    and row.retry_count >= self.settings.max_retry_attempts
                ):
                    result.skipped_count += 1
                    continue
                outcome = await self._migrate_row(row, fmt, executor, mapping, batches)
                if outcome is None:
                    result.skipped_count += 1
                elif outcome.migration_status == MigrationStatus.MIGRATED:
                    result.migrated_count += 1
                    affected.add(row.user_id)
                else:
                    result.failed_count += 1
                    result.errors.append({
                        "staging_id": row.id,
                        "row_index": row.row_index,
                        "error": outcome.processing_errors[-1] if outcome.processing_errors else "",
                    })
            logger.debug(
                "[APPROVAL] Format %s: batch %d-%d done",
                fmt.id, start, start + len(chunk),
            )

        await self._close_batches(set(batches), ImportStatus.COMPLETED)
        result.affected_users = sorted(affected)
        return result

    async def _migrate_row(
        self,
        row: OrderStaging,
        fmt: BrokerCsvFormat,
        executor: MappingExecutor,
        mapping: MappingResult,
        batches: dict[str, Any],
    ) -> Optional[OrderStaging]:
        """Claim, map, insert. Returns the final row, or None if someone else claimed it."""
        now = utcnow()
        check_staging(row.migration_status, MigrationStatus.MIGRATING)
        claimed = await self.store.compare_and_set_staging_status(
            row.id, row.migration_status, MigrationStatus.MIGRATING, {"claimed_at": now},
        )
        if claimed is None:
            logger.debug("[APPROVAL] Row %s claimed by another process", row.id)
            return None

        batch = batches.get(claimed.import_batch_id)
        if batch is None and claimed.import_batch_id not in batches:
            batch = await self.store.get_import_batch(claimed.import_batch_id)
            batches[claimed.import_batch_id] = batch
        tags = batch.account_tags if batch is not None else None

        try:
            # An earlier run may have written the order and died before marking the row.
            existing = await self.store.find_order_by_staging_id(claimed.id)
            if existing is not None:
                logger.warning(
                    "[APPROVAL] Row %s already produced order %s; linking it",
                    claimed.id, existing.id,
                )
                return await self.store.compare_and_set_staging_status(
                    claimed.id, MigrationStatus.MIGRATING, MigrationStatus.MIGRATED,
                    {"migrated_order_id": existing.id, "migrated_at": utcnow()},
                )

            values = executor.map_row(claimed.raw_csv_row)
            order = build_order(
                values,
                user_id=claimed.user_id,
                broker_id=fmt.broker_id,
                import_batch_id=claimed.import_batch_id,
                staging_id=claimed.id,
                account_tags=tags,
                now=now,
            )
            if await self.store.order_exists(order):
                raise MigrationError(
                    f"Duplicate of an existing order ({order.symbol} {order.side.value} "
                    f"{order.quantity:g} at {order.order_executed_time})"
                )
            async with self.store.transaction():
                stored = await self.store.insert_orders([order])
                done = await self.store.compare_and_set_staging_status(
                    claimed.id, MigrationStatus.MIGRATING, MigrationStatus.MIGRATED,
                    {
                        "migrated_order_id": stored[0].id,
                        "migrated_at": utcnow(),
                        "initial_mapped_data": {
                            **claimed.initial_mapped_data,
                            "confidence": mapping.overall_confidence,
                        },
                    },
                )
                if done is None:
                    raise MigrationError(f"Row {claimed.id} left MIGRATING during insert")
            return done
        except (ValidationError, MigrationError) as exc:
            message = "; ".join(exc.issues) if isinstance(exc, ValidationError) else str(exc)
            logger.warning("[APPROVAL] Row %s failed: %s", claimed.id, message)
        except Exception as exc:
            message = f"Unexpected error: {exc!r}"
            logger.exception("[APPROVAL] Row %s failed unexpectedly", claimed.id)

        failed = await self.store.compare_and_set_staging_status(
            claimed.id, MigrationStatus.MIGRATING, MigrationStatus.FAILED,
            {
                "processing_errors": claimed.processing_errors + [message],
                "retry_count": claimed.retry_count + 1,
                "last_retry_at": utcnow(),
            },
        )
        return failed or claimed

    async def _reclaim_stale(self) -> int:
        cutoff = utcnow() - timedelta(minutes=self.settings.stale_migration_minutes)
        reclaimed = 0
        for row in await self.store.list_staging(statuses=[MigrationStatus.MIGRATING]):
            if row.claimed_at is not None and row.claimed_at > cutoff:
                continue
            updated = await self.store.compare_and_set_staging_status(
                row.id, MigrationStatus.MIGRATING, MigrationStatus.FAILED,
                {
                    "processing_errors": row.processing_errors + [
                        f"Migration abandoned (claimed at {row.claimed_at}); released for retry"
                    ],
                    "retry_count": row.retry_count + 1,
                    "last_retry_at": utcnow(),
                },
            )
            if updated is not None:
                reclaimed += 1
        if reclaimed:
            logger.warning("[APPROVAL] Released %d stale MIGRATING row(s)", reclaimed)
        return reclaimed

    async def _close_batches(self, batch_ids: set[str], status: ImportStatus) -> None:
        """Finish PENDING_REVIEW batches once none of their rows wait for review."""
        for batch_id in batch_ids:
            batch = await self.store.get_import_batch(batch_id)
            if batch is None or batch.status != ImportStatus.PENDING_REVIEW:
                continue
            rows = await self.store.list_staging(import_batch_id=batch_id)
            if any(r.migration_status == MigrationStatus.PENDING for r in rows):
                continue
            batch.imported_rows = sum(
                1 for r in rows if r.migration_status == MigrationStatus.MIGRATED
            )
            batch.failed_rows = sum(
                1 for r in rows if r.migration_status == MigrationStatus.FAILED
            )
            batch.status = status
            batch.completed_at = utcnow()
            await self.store.update_import_batch(batch)

    async def _rebuild_trades(self, user_ids: list[str]) -> None:
        for user_id in user_ids:
            await self.trade_builder.build_for_user(user_id)
