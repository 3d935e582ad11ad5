"""Order Staging Service: the holding area for rows under untrusted formats.

Each CSV data row becomes one ``OrderStaging`` record (PENDING) carrying
the raw cells and a best-effort mapped preview. Rows leave staging only by
migration (MIGRATED, kept for traceability) or rejection (REJECTED).
"""

from __future__ import annotations

import logging
from collections import Counter
from typing import Any, Iterable, Optional

from ..config import Settings, get_settings
from ..errors import StagingLimitExceeded
from ..models import (
    BrokerCsvFormat,
    ImportBatch,
    MappingResult,
    MigrationStatus,
    OrderStaging,
    Page,
)
from ..parsing.csv_reader import ParsedCsv
from ..parsing.mapping import MappingExecutor, to_json_values
from ..parsing.validation import diagnose_row, validate_values
from ..storage.base import Store

logger = logging.getLogger(__name__)


class OrderStagingService:
    def __init__(self, store: Store, *, settings: Optional[Settings] = None) -> None:
        self.store = store
        self.settings = settings or get_settings()

    async def stage_rows(
        self,
        *,
        user_id: str,
        fmt: BrokerCsvFormat,
        batch: ImportBatch,
        parsed: ParsedCsv,
        mapping: MappingResult,
        row_indices: Optional[Iterable[int]] = None,
    ) -> list[OrderStaging]:
        """Write rows as PENDING (all of them unless ``row_indices`` narrows it).

        Raises ``StagingLimitExceeded`` before writing anything.
        """
        wanted = sorted(set(row_indices)) if row_indices is not None else range(len(parsed))
        pending = await self.store.count_staging(
            user_id=user_id, statuses=[MigrationStatus.PENDING],
        )
        limit = self.settings.max_staged_per_user
        if pending + len(wanted) > limit:
            logger.warning(
                "[STAGING] User %s would exceed staging limit (%d pending + %d new > %d)",
                user_id, pending, len(wanted), limit,
            )
            raise StagingLimitExceeded(user_id, pending + len(wanted), limit)

        executor = MappingExecutor(mapping, exchange_tz=self.settings.exchange_tz)
        rows: list[OrderStaging] = []
        for index in wanted:
            raw = parsed.rows[index]
            values = executor.map_row(raw)
            issues = validate_values(values)
            rows.append(OrderStaging(
                user_id=user_id,
                broker_csv_format_id=fmt.id,
                import_batch_id=batch.id,
                row_index=index,
                raw_csv_row=dict(raw),
                initial_mapped_data={
                    "values": to_json_values(values),
                    "confidence": mapping.overall_confidence,
                    "issues": issues,
                },
                processing_errors=list(issues),
            ))

        stored = await self.store.insert_staging(rows)
        logger.info(
            "[STAGING] Staged %d rows for user %s under format %s (batch %s)",
            len(stored), user_id, fmt.id, batch.id,
        )
        return stored

    async def list_staged(
        self,
        user_id: str,
        *,
        status: Optional[MigrationStatus] = None,
        format_id: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> Page:
        statuses = [status] if status is not None else None
        total = await self.store.count_staging(
            user_id=user_id, format_id=format_id, statuses=statuses,
        )
        items = await self.store.list_staging(
            user_id=user_id, format_id=format_id, statuses=statuses,
            limit=limit, offset=offset,
        )
        return Page(items=items, total=total, has_more=offset + len(items) < total)

    async def staging_status(self, user_id: str) -> dict[str, Any]:
        """Per-status counts for one user, plus whether anything awaits review."""
        rows = await self.store.list_staging(user_id=user_id)
        counts = Counter(r.migration_status.value for r in rows)
        by_status = {s.value: counts.get(s.value, 0) for s in MigrationStatus}
        return {
            "user_id": user_id,
            "total": len(rows),
            "by_status": by_status,
            "awaiting_review": by_status[MigrationStatus.PENDING.value] > 0,
            "limit": self.settings.max_staged_per_user,
        }

    async def admin_stats(self) -> dict[str, Any]:
        pending = await self.store.list_staging(statuses=[MigrationStatus.PENDING])
        per_format = Counter(r.broker_csv_format_id for r in pending)
        per_user = Counter(r.user_id for r in pending)
        oldest = min((r.created_at for r in pending), default=None)
        return {
            "total_pending": len(pending),
            "pending_by_format": dict(per_format),
            "users_with_pending": len(per_user),
            "oldest_pending_at": oldest.isoformat() if oldest else None,
        }

    async def list_errors(
        self,
        *,
        status: Optional[MigrationStatus] = None,
        format_id: Optional[str] = None,
        limit: int = 50,
    ) -> list[dict[str, Any]]:
        """Diagnostic records for FAILED (and by default PENDING) rows."""
        statuses = [status] if status is not None else [
            MigrationStatus.FAILED, MigrationStatus.PENDING,
        ]
        rows = await self.store.list_staging(
            format_id=format_id, statuses=statuses, limit=limit,
        )

        formats: dict[str, Optional[BrokerCsvFormat]] = {}
        out: list[dict[str, Any]] = []
        for row in rows:
            fid = row.broker_csv_format_id
            if fid not in formats:
                formats[fid] = await self.store.get_format(fid)
            fmt = formats[fid]
            mappings = list(fmt.field_mappings) if fmt else []

            values = MappingExecutor(mappings, exchange_tz=self.settings.exchange_tz).map_row(
                row.raw_csv_row,
            )
            diagnosis = diagnose_row(row.raw_csv_row, mappings, values)
            out.append({
                "staging_id": row.id,
                "user_id": row.user_id,
                "format_id": fid,
                "import_batch_id": row.import_batch_id,
                "row_index": row.row_index,
                "migration_status": row.migration_status.value,
                "retry_count": row.retry_count,
                "processing_errors": list(row.processing_errors),
                **diagnosis,
            })
        return out
