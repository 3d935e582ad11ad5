"""Broker Format Registry: one reusable mapping per (broker, header signature).

Formats are shared across users. A new signature starts PENDING_REVIEW
with the mapper's overall confidence; only an admin approval makes it
APPROVED. A REJECTED format is never revived: the next upload with the
same headers creates a fresh format that records ``supersedes_id``.
"""

from __future__ import annotations

import hashlib
import logging
from dataclasses import replace
from typing import Any, Optional

from ..config import Settings, get_settings
from ..errors import FormatNotFoundError
from ..models import (
    BrokerCsvFormat,
    FormatStatus,
    MappingResult,
    MigrationStatus,
    Page,
    utcnow,
)
from ..parsing.column_mapper import apply_corrections
from ..parsing.confidence import count_corrections, decay_confidence
from ..parsing.schema import METADATA_FIELD
from ..storage.base import Store
from .state_machine import transition_format

logger = logging.getLogger(__name__)

PENDING_SORT_KEYS = ("created_at", "confidence", "pending_count")


def compute_signature(headers: list[str]) -> str:
    """SHA-256 of the sorted, trimmed, case-folded headers joined with '|'."""
    normalized = sorted(h.strip().casefold() for h in headers)
    return hashlib.sha256("|".join(normalized).encode("utf-8")).hexdigest()


class FormatRegistry:
    def __init__(self, store: Store, *, settings: Optional[Settings] = None) -> None:
        self.store = store
        self.settings = settings or get_settings()

    async def get(self, format_id: str) -> BrokerCsvFormat:
        fmt = await self.store.get_format(format_id)
        if fmt is None:
            raise FormatNotFoundError(format_id)
        return fmt

    async def find(self, broker_id: str, headers: list[str]) -> Optional[BrokerCsvFormat]:
        """Current (non-rejected) format for these headers, if any."""
        fmt = await self.store.find_format(broker_id, compute_signature(headers))
        if fmt is None or fmt.status == FormatStatus.REJECTED:
            return None
        return fmt

    async def find_or_create(
        self,
        broker_id: str,
        headers: list[str],
        sample_data: list[dict[str, Any]],
        mapping: MappingResult,
        *,
        format_name: Optional[str] = None,
    ) -> tuple[BrokerCsvFormat, bool]:
        """Return ``(format, created)``.

        An existing format has its usage counted and keeps its approval
        state. A rejected one is superseded by a fresh PENDING_REVIEW format.
        """
        signature = compute_signature(headers)
        existing = await self.store.find_format(broker_id, signature)

        if existing is not None and existing.status != FormatStatus.REJECTED:
            existing.usage_count += 1
            existing.last_used_at = utcnow()
            existing = await self.store.update_format(existing)
            logger.info(
                "[FORMAT_REGISTRY] Reusing format %s (%s, uses=%d, approved=%s)",
                existing.id, broker_id, existing.usage_count, existing.is_approved,
            )
            return existing, False

        fmt = BrokerCsvFormat(
            broker_id=broker_id,
            header_signature=signature,
            format_name=format_name or f"{broker_id} ({len(headers)} columns)",
            headers=list(headers),
            sample_data=[dict(r) for r in sample_data[: self.settings.sample_rows]],
            field_mappings=list(mapping.mappings),
            confidence=mapping.overall_confidence,
            last_used_at=utcnow(),
            supersedes_id=existing.id if existing is not None else None,
        )
        fmt = await self.store.insert_format(fmt)
        if existing is not None:
            logger.info(
                "[FORMAT_REGISTRY] Format %s supersedes rejected format %s",
                fmt.id, existing.id,
            )
        else:
            logger.info(
                "[FORMAT_REGISTRY] Created format %s for %s (confidence=%.2f)",
                fmt.id, broker_id, fmt.confidence,
            )
        return fmt, True

    def corrected_mapping(
        self, fmt: BrokerCsvFormat, corrections: Optional[dict[str, str]],
    ) -> MappingResult:
        """The format's mapping with ``{header: field}`` corrections merged in."""
        base = fmt.mapping_result(self.settings.review_threshold)
        if not corrections:
            return base
        return apply_corrections(base, corrections, threshold=self.settings.review_threshold)

    async def apply_correction_decay(
        self, fmt: BrokerCsvFormat, before: MappingResult, after: MappingResult,
    ) -> BrokerCsvFormat:
        """Lower the format's confidence in proportion to what a human changed."""
        corrected = count_corrections(before.mappings, after.mappings)
        if corrected == 0:
            return fmt
        total = sum(1 for m in before.mappings if m.field != METADATA_FIELD) or len(before.mappings)
        old = fmt.confidence
        fmt.confidence = decay_confidence(old, corrected, total)
        logger.info(
            "[FORMAT_REGISTRY] Format %s: %d corrected mapping(s), confidence %.2f -> %.2f",
            fmt.id, corrected, old, fmt.confidence,
        )
        return await self.store.update_format(fmt)

    async def approve(
        self,
        format_id: str,
        admin_id: str,
        corrections: Optional[dict[str, str]] = None,
    ) -> BrokerCsvFormat:
        """Mark approved, merge corrections and confirm every mapping.

        Re-approving an APPROVED format is allowed and only re-merges.
        """
        fmt = await self.get(format_id)
        if corrections:
            before = fmt.mapping_result(self.settings.review_threshold)
            after = self.corrected_mapping(fmt, corrections)
            fmt = await self.apply_correction_decay(fmt, before, after)
            fmt.field_mappings = list(after.mappings)

        # A reviewed mapping is trusted as a whole, metadata columns included.
        fmt.field_mappings = [replace(m, confidence=1.0) for m in fmt.field_mappings]

        if not fmt.is_approved:
            transition_format(fmt, FormatStatus.APPROVED)
            fmt.approved_by = admin_id
            fmt.approved_at = utcnow()
            logger.info("[FORMAT_REGISTRY] Format %s approved by %s", fmt.id, admin_id)
        return await self.store.update_format(fmt)

    async def reject(self, format_id: str, admin_id: str, reason: str) -> BrokerCsvFormat:
        fmt = await self.get(format_id)
        transition_format(fmt, FormatStatus.REJECTED)
        fmt.rejected_by = admin_id
        fmt.rejected_at = utcnow()
        fmt.rejection_reason = reason
        logger.info("[FORMAT_REGISTRY] Format %s rejected by %s: %s", fmt.id, admin_id, reason)
        return await self.store.update_format(fmt)

    async def list_pending_formats(
        self,
        *,
        page: int = 1,
        page_size: int = 20,
        sort_by: str = "created_at",
        descending: bool = True,
    ) -> Page:
        """Formats awaiting review, each with its count of PENDING staged rows."""
        if sort_by not in PENDING_SORT_KEYS:
            raise ValueError(f"sort_by must be one of {PENDING_SORT_KEYS}")
        page = max(page, 1)
        page_size = max(page_size, 1)

        formats = await self.store.list_formats(FormatStatus.PENDING_REVIEW)
        items: list[dict[str, Any]] = []
        for fmt in formats:
            pending = await self.store.count_staging(
                format_id=fmt.id, statuses=[MigrationStatus.PENDING],
            )
            items.append({"format": fmt, "pending_count": pending})

        if sort_by == "pending_count":
            items.sort(key=lambda i: i["pending_count"], reverse=descending)
        else:
            items.sort(key=lambda i: getattr(i["format"], sort_by), reverse=descending)

        start = (page - 1) * page_size
        window = items[start : start + page_size]
        return Page(items=window, total=len(items), has_more=start + page_size < len(items))
