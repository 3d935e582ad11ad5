"""Column Mapper: CSV headers + sample rows -> scored field mapping.

Flow:
  1. No AI configured      -> heuristic header table (source ``heuristic``)
  2. AI configured         -> Claude suggestions, bounded by a timeout
  3. AI failed / timed out -> heuristic table, result marked ``failed`` and
                              forced into review so ingestion stages

``map_columns`` never raises. It writes nothing.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

from ..config import Settings, get_settings
from ..errors import MappingError
from ..models import FieldMapping, MappingResult
from .claude_mapper import ClaudeMappingClient, MappingPort
from .confidence import fail_safe, summarize
from .mapping import normalize_side, parse_number, parse_timestamp
from .schema import (
    DATE_FIELDS,
    HEURISTIC_HEADERS,
    METADATA_CONFIDENCE,
    METADATA_FIELD,
    NUMBER_FIELDS,
    normalize_header,
)

logger = logging.getLogger(__name__)


def _sample_ratio(field_name: str, values: list[str]) -> Optional[float]:
    """Share of non-empty sample values that parse as the field's type."""
    values = [v for v in values if v and v.strip()]
    if not values:
        return None
    if field_name in DATE_FIELDS:
        ok = sum(1 for v in values if parse_timestamp(v) is not None)
    elif field_name in NUMBER_FIELDS:
        ok = sum(1 for v in values if parse_number(v) is not None)
    elif field_name == "side":
        ok = sum(1 for v in values if normalize_side(v) is not None)
    else:
        return None
    return ok / len(values)


def heuristic_mappings(
    headers: list[str],
    sample_rows: list[dict[str, str]],
) -> list[FieldMapping]:
    """Exact-name lookup in the header table, scaled by how well samples parse."""
    out: list[FieldMapping] = []
    for header in headers:
        hit = HEURISTIC_HEADERS.get(normalize_header(header))
        if hit is None:
            out.append(FieldMapping(
                header=header,
                field=METADATA_FIELD,
                confidence=METADATA_CONFIDENCE,
                rationale="No clear pattern match, storing in broker_metadata",
            ))
            continue

        field_name, confidence = hit
        ratio = _sample_ratio(field_name, [r.get(header, "") for r in sample_rows])
        rationale = "Heuristic header match"
        if ratio is not None and ratio < 1.0:
            confidence = round(confidence * ratio, 4)
            rationale = f"Heuristic header match, {ratio:.0%} of samples parse"
        out.append(FieldMapping(
            header=header, field=field_name, confidence=confidence, rationale=rationale,
        ))
    return out


class ColumnMapper:
    """Produce a MappingResult for a set of headers.

    Usage::

        mapper = ColumnMapper()                  # Claude if ANTHROPIC_API_KEY is set
        result = await mapper.map_columns(headers, sample_rows, broker_name="Schwab")
    """

    def __init__(
        self,
        port: Optional[MappingPort] = None,
        *,
        settings: Optional[Settings] = None,
        use_ai: bool = True,
    ) -> None:
        self.settings = settings or get_settings()
        if port is None and use_ai and self.settings.anthropic_api_key:
            port = ClaudeMappingClient(
                self.settings.anthropic_api_key,
                self.settings.mapping_model,
                timeout=self.settings.mapping_timeout,
            )
        self.port = port

    async def map_columns(
        self,
        headers: list[str],
        sample_rows: list[dict[str, str]],
        broker_name: Optional[str] = None,
    ) -> MappingResult:
        threshold = self.settings.review_threshold
        samples = sample_rows[: self.settings.sample_rows]

        if self.port is None:
            logger.info("[COLUMN_MAPPER] No AI configured; using heuristic mapping")
            return summarize(
                heuristic_mappings(headers, samples),
                source="heuristic",
                threshold=threshold,
            )

        try:
            suggestion = await asyncio.wait_for(
                self.port.suggest(headers, samples, broker_name),
                timeout=self.settings.mapping_timeout,
            )
        except asyncio.TimeoutError:
            logger.warning(
                "[COLUMN_MAPPER] AI mapping timed out after %.1fs; forcing review",
                self.settings.mapping_timeout,
            )
            return fail_safe(
                heuristic_mappings(headers, samples), "timeout", threshold=threshold,
            )
        except MappingError as exc:
            logger.warning("[COLUMN_MAPPER] AI mapping failed: %s; forcing review", exc)
            return fail_safe(
                heuristic_mappings(headers, samples), str(exc), threshold=threshold,
            )
        except Exception as exc:
            logger.warning(
                "[COLUMN_MAPPER] Unexpected AI port error; forcing review", exc_info=True,
            )
            return fail_safe(
                heuristic_mappings(headers, samples), repr(exc), threshold=threshold,
            )

        result = summarize(
            suggestion.mappings,
            source="claude",
            threshold=threshold,
            suggestions=suggestion.suggestions,
        )
        logger.info(
            "[COLUMN_MAPPER] overall=%.2f review=%s missing=%s",
            result.overall_confidence, result.requires_user_review, result.missing_required,
        )
        return result


def apply_corrections(
    base: MappingResult,
    corrections: dict[str, str],
    *,
    threshold: float,
) -> MappingResult:
    """Re-score a mapping after a human set ``{header: field}`` explicitly.

    Corrected headers get full confidence; untouched headers keep theirs.
    """
    by_header = base.by_header()
    merged: list[FieldMapping] = []
    for header, m in by_header.items():
        if header in corrections:
            merged.append(FieldMapping(
                header=header,
                field=corrections[header],
                confidence=1.0,
                rationale="Corrected by reviewer",
                combined_with=list(m.combined_with),
                transform=m.transform,
            ))
        else:
            merged.append(m)
    for header, field_name in corrections.items():
        if header not in by_header:
            merged.append(FieldMapping(
                header=header, field=field_name, confidence=1.0,
                rationale="Added by reviewer",
            ))
    return summarize(merged, source="user", threshold=threshold)
