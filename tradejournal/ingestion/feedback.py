"""Audit trail for mapping decisions (the "AI ingest to check" items).

An item is written when a new format is sent to review (source ``ai``)
and when a user corrects a mapping inline at upload time (source
``user``). Admin approval or rejection of the format resolves every open
item for it. Items are append-only apart from that resolution.
"""

from __future__ import annotations

import logging
from typing import Optional

from ..models import FeedbackItem, FeedbackStatus, MappingResult, utcnow
from ..parsing.confidence import count_corrections
from ..storage.base import Store
from .rate_limit import WindowedRateLimiter

logger = logging.getLogger(__name__)


class FeedbackLog:
    def __init__(self, store: Store, limiter: Optional[WindowedRateLimiter] = None) -> None:
        self.store = store
        self.limiter = limiter

    async def record_ai_mapping(
        self,
        format_id: str,
        mapping: MappingResult,
        *,
        user_id: Optional[str] = None,
        import_batch_id: Optional[str] = None,
    ) -> FeedbackItem:
        item = FeedbackItem(
            format_id=format_id,
            source="ai",
            user_id=user_id,
            import_batch_id=import_batch_id,
            ai_mapping=list(mapping.mappings),
            confidence=mapping.overall_confidence,
            note="; ".join(mapping.suggestions) or None,
        )
        item = await self.store.insert_feedback(item)
        logger.debug("[FEEDBACK] AI mapping for format %s queued for review", format_id)
        return item

    async def record_user_correction(
        self,
        format_id: str,
        user_id: str,
        ai_mapping: MappingResult,
        corrected: MappingResult,
        *,
        import_batch_id: Optional[str] = None,
    ) -> FeedbackItem:
        """Log an inline correction. Counts against the user's feedback limit."""
        if self.limiter is not None:
            self.limiter.hit(user_id)
        changed = count_corrections(ai_mapping.mappings, corrected.mappings)
        item = FeedbackItem(
            format_id=format_id,
            source="user",
            user_id=user_id,
            import_batch_id=import_batch_id,
            ai_mapping=list(ai_mapping.mappings),
            corrected_mapping=list(corrected.mappings),
            corrected_fields=changed,
            confidence=corrected.overall_confidence,
        )
        item = await self.store.insert_feedback(item)
        logger.info(
            "[FEEDBACK] User %s corrected %d mapping(s) for format %s",
            user_id, changed, format_id,
        )
        return item

    async def resolve_for_format(
        self, format_id: str, status: FeedbackStatus, reviewed_by: str,
    ) -> int:
        """Close every PENDING item for a format. Returns how many changed."""
        items = await self.store.list_feedback(format_id=format_id, status=FeedbackStatus.PENDING)
        now = utcnow()
        for item in items:
            item.status = status
            item.reviewed_by = reviewed_by
            item.resolved_at = now
            await self.store.update_feedback(item)
        if items:
            logger.info(
                "[FEEDBACK] %d item(s) for format %s marked %s",
                len(items), format_id, status.value,
            )
        return len(items)
