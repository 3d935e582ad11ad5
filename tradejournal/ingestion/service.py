"""CSV Ingestion Service: one upload in, one definitive outcome out.

Flow for ``ingest``:

1. Strict CSV parse. A ``ParseError`` propagates and nothing is written.
2. Resolve the broker format. An approved format supplies its reviewed
   mapping; otherwise the Column Mapper proposes one (AI failures come back
   as a fail-safe result, never an exception).
3. Branch:
   - approved format, confidence at or above the threshold, nothing to
     review: every valid row is inserted as an Order in one transaction;
   - inline corrections from the uploader that satisfy the required
     fields: same direct insert, for this user only;
   - anything else: every row is staged PENDING for admin review.

The upload counter moves only when Orders were committed.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Optional, Union

from ..config import Settings, get_settings
from ..errors import StagingLimitExceeded, ValidationError
from ..models import (
    BrokerCsvFormat,
    ImportBatch,
    ImportStatus,
    MappingResult,
    Order,
    plain_value,
    utcnow,
)
from ..parsing.column_mapper import ColumnMapper, apply_corrections
from ..parsing.csv_reader import ParsedCsv, read_csv
from ..parsing.mapping import MappingExecutor
from ..parsing.validation import build_order
from ..storage.base import Store
from ..trades.builder import TradeBuilder
from .feedback import FeedbackLog
from .format_registry import FormatRegistry
from .rate_limit import RateLimits
from .staging import OrderStagingService

logger = logging.getLogger(__name__)

STATUS_IMPORTED = "imported"
STATUS_PENDING_REVIEW = "pending_review"


def broker_key(broker_name: str) -> str:
    """'Charles Schwab' -> 'charles-schwab'."""
    slug = re.sub(r"[^a-z0-9]+", "-", (broker_name or "").strip().lower()).strip("-")
    return slug or "unknown"


@dataclass
class IngestResult:
    status: str
    import_batch_id: str
    format_id: str
    total_rows: int
    imported_count: int = 0
    staged_count: int = 0
    skipped_duplicates: int = 0
    row_errors: list[dict[str, Any]] = field(default_factory=list)
    mapping: Optional[MappingResult] = None

    @property
    def requires_review(self) -> bool:
        return self.status == STATUS_PENDING_REVIEW

    def to_dict(self) -> dict[str, Any]:
        out = plain_value(self)
        out["requires_review"] = self.requires_review
        return out


class IngestionService:
    """Entry point for broker CSV uploads.

    Usage::

        service = IngestionService(store)
        result = await service.ingest(data, "trades.csv", user_id, "Schwab")
        if result.requires_review:
            ...  # show the mapping, offer inline corrections
    """

    def __init__(
        self,
        store: Store,
        *,
        mapper: Optional[ColumnMapper] = None,
        settings: Optional[Settings] = None,
        limits: Optional[RateLimits] = None,
        trade_builder: Optional[TradeBuilder] = None,
    ) -> None:
        self.store = store
        self.settings = settings or get_settings()
        self.mapper = mapper or ColumnMapper(settings=self.settings)
        self.limits = limits or RateLimits(self.settings)
        self.registry = FormatRegistry(store, settings=self.settings)
        self.staging = OrderStagingService(store, settings=self.settings)
        self.feedback = FeedbackLog(store, self.limits.feedback)
        self.trade_builder = trade_builder or TradeBuilder(store, settings=self.settings)

    async def ingest(
        self,
        csv_bytes: Union[bytes, str],
        filename: str,
        user_id: str,
        broker_name: str,
        account_tags: Optional[list[str]] = None,
        corrected_mappings: Optional[dict[str, str]] = None,
    ) -> IngestResult:
        self.limits.uploads.require(user_id)
        parsed = read_csv(csv_bytes)
        broker_id = broker_key(broker_name)
        samples = parsed.sample_rows(self.settings.sample_rows)
        logger.info(
            "[INGEST] %s: %d rows, %d columns from %s (%s)",
            user_id, len(parsed), len(parsed.headers), filename, broker_id,
        )

        known = await self.registry.find(broker_id, parsed.headers)
        if known is not None and known.is_approved:
            mapping = known.mapping_result(self.settings.review_threshold)
        else:
            mapping = await self.mapper.map_columns(parsed.headers, samples, broker_name)

        fmt, created = await self.registry.find_or_create(
            broker_id, parsed.headers, samples, mapping,
            format_name=f"{broker_name} ({len(parsed.headers)} columns)",
        )
        batch = await self.store.insert_import_batch(ImportBatch(
            user_id=user_id,
            broker_id=broker_id,
            filename=filename,
            format_id=fmt.id,
            total_rows=len(parsed),
            mapping_confidence=mapping.overall_confidence,
            account_tags=list(account_tags or []),
        ))

        if corrected_mappings:
            corrected = apply_corrections(
                mapping, corrected_mappings, threshold=self.settings.review_threshold,
            )
            if not corrected.missing_required:
                await self.feedback.record_user_correction(
                    fmt.id, user_id, mapping, corrected, import_batch_id=batch.id,
                )
                await self.registry.apply_correction_decay(fmt, mapping, corrected)
                return await self._import_direct(parsed, corrected, fmt, batch, account_tags)
            logger.warning(
                "[INGEST] Corrected mapping from %s still misses %s; staging instead",
                user_id, corrected.missing_required,
            )

        if (
            fmt.is_approved
            and mapping.overall_confidence >= self.settings.review_threshold
            and not mapping.requires_user_review
        ):
            return await self._import_direct(parsed, mapping, fmt, batch, account_tags)

        return await self._stage(parsed, mapping, fmt, batch, created)

    # ------------------------------------------------------------------
    # Branches
    # ------------------------------------------------------------------

    async def _import_direct(
        self,
        parsed: ParsedCsv,
        mapping: MappingResult,
        fmt: BrokerCsvFormat,
        batch: ImportBatch,
        account_tags: Optional[list[str]],
    ) -> IngestResult:
        executor = MappingExecutor(mapping, exchange_tz=self.settings.exchange_tz)
        now = utcnow()
        orders: list[Order] = []
        row_errors: list[dict[str, Any]] = []
        seen: set[tuple] = set()
        skipped = 0

        for index, raw in enumerate(parsed.rows):
            values = executor.map_row(raw)
            try:
                order = build_order(
                    values,
                    user_id=batch.user_id,
                    broker_id=batch.broker_id,
                    import_batch_id=batch.id,
                    account_tags=account_tags,
                    now=now,
                )
            except ValidationError as exc:
                line = parsed.line_numbers[index] if index < len(parsed.line_numbers) else None
                logger.debug("[INGEST] Row %d rejected: %s", index, exc.issues)
                row_errors.append({"row_index": index, "line": line, "issues": exc.issues})
                continue

            key = order.duplicate_key()
            if key in seen or await self.store.order_exists(order):
                skipped += 1
                continue
            seen.add(key)
            orders.append(order)

        async with self.store.transaction():
            stored = await self.store.insert_orders(orders) if orders else []
            batch.imported_rows = len(stored)
            batch.failed_rows = len(row_errors)
            batch.skipped_duplicates = skipped
            batch.errors = [f"row {e['row_index']}: {'; '.join(e['issues'])}" for e in row_errors]
            batch.status = ImportStatus.COMPLETED
            batch.completed_at = utcnow()
            await self.store.update_import_batch(batch)

        if row_errors:
            await self._stage_invalid(parsed, mapping, fmt, batch, row_errors)

        if stored:
            self.limits.uploads.hit(batch.user_id)
            await self.trade_builder.build_for_user(batch.user_id)

        logger.info(
            "[INGEST] Batch %s imported: %d orders, %d row errors, %d duplicates (format %s)",
            batch.id, len(stored), len(row_errors), skipped, fmt.id,
        )
        return IngestResult(
            status=STATUS_IMPORTED,
            import_batch_id=batch.id,
            format_id=fmt.id,
            total_rows=len(parsed),
            imported_count=len(stored),
            skipped_duplicates=skipped,
            row_errors=row_errors,
            mapping=mapping,
        )

    async def _stage(
        self,
        parsed: ParsedCsv,
        mapping: MappingResult,
        fmt: BrokerCsvFormat,
        batch: ImportBatch,
        created: bool,
    ) -> IngestResult:
        try:
            rows = await self.staging.stage_rows(
                user_id=batch.user_id, fmt=fmt, batch=batch, parsed=parsed, mapping=mapping,
            )
        except Exception as exc:
            batch.status = ImportStatus.FAILED
            batch.errors = [str(exc)]
            batch.completed_at = utcnow()
            await self.store.update_import_batch(batch)
            raise

        if created:
            await self.feedback.record_ai_mapping(
                fmt.id, mapping, user_id=batch.user_id, import_batch_id=batch.id,
            )

        batch.staged_rows = len(rows)
        batch.status = ImportStatus.PENDING_REVIEW
        if mapping.failed and mapping.error:
            batch.errors = [f"AI mapping unavailable: {mapping.error}"]
        await self.store.update_import_batch(batch)

        logger.info(
            "[INGEST] Batch %s staged for review: %d rows (format %s, confidence %.2f)",
            batch.id, len(rows), fmt.id, mapping.overall_confidence,
        )
        return IngestResult(
            status=STATUS_PENDING_REVIEW,
            import_batch_id=batch.id,
            format_id=fmt.id,
            total_rows=len(parsed),
            staged_count=len(rows),
            mapping=mapping,
        )

    async def _stage_invalid(
        self,
        parsed: ParsedCsv,
        mapping: MappingResult,
        fmt: BrokerCsvFormat,
        batch: ImportBatch,
        row_errors: list[dict[str, Any]],
    ) -> None:
        """Keep rows that failed validation visible in staging."""
        try:
            rows = await self.staging.stage_rows(
                user_id=batch.user_id, fmt=fmt, batch=batch, parsed=parsed, mapping=mapping,
                row_indices=[e["row_index"] for e in row_errors],
            )
        except StagingLimitExceeded as exc:
            logger.warning("[INGEST] Invalid rows of batch %s not staged: %s", batch.id, exc)
            return
        batch.staged_rows = len(rows)
        await self.store.update_import_batch(batch)
