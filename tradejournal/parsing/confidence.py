"""Confidence scoring for column mappings.

Turns a raw list of per-header suggestions (from Claude, the heuristic
table, or a human) into a consistent ``MappingResult``:

- suggestions below the medium band are demoted to ``broker_metadata``
- two headers claiming one canonical field: the stronger claim wins
- overall confidence is a weighted mean over every header, with the
  critical trading fields weighted 3x
- review is required below the threshold or when a required field
  has no column

This module does no I/O. Callers decide what to do with the result.
"""

from __future__ import annotations

from typing import Iterable, Optional

from ..models import FieldMapping, MappingResult
from .schema import (
    CANONICAL_FIELDS,
    CONFIDENCE_MEDIUM,
    EXECUTION_TIMESTAMP,
    METADATA_CONFIDENCE,
    METADATA_FIELD,
    REQUIRED_FIELDS,
    TIMESTAMP_FIELDS,
    TRANSFORMS,
    is_critical,
)

DEFAULT_REVIEW_THRESHOLD = 0.7
CRITICAL_WEIGHT = 3.0
DECAY_FACTOR = 0.5
DECAY_FLOOR = 0.05


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def summarize(
    mappings: Iterable[FieldMapping],
    *,
    source: str,
    threshold: float = DEFAULT_REVIEW_THRESHOLD,
    suggestions: Optional[list[str]] = None,
) -> MappingResult:
    """Normalise suggestions and compute the aggregate fields."""
    cleaned = resolve_conflicts([_demote_if_weak(m) for m in mappings])
    overall = overall_confidence(cleaned)
    missing = missing_required(cleaned)

    notes = list(suggestions or [])
    notes.extend(_suggestions(cleaned, missing))

    return MappingResult(
        mappings=cleaned,
        overall_confidence=overall,
        requires_user_review=requires_review(overall, missing, threshold),
        missing_required=missing,
        suggestions=notes,
        source=source,
    )


def overall_confidence(mappings: list[FieldMapping]) -> float:
    if not mappings:
        return 0.0
    total = 0.0
    weight_sum = 0.0
    for m in mappings:
        weight = CRITICAL_WEIGHT if is_critical(m.field) else 1.0
        total += m.confidence * weight
        weight_sum += weight
    return round(total / weight_sum, 4)


def missing_required(mappings: list[FieldMapping]) -> list[str]:
    mapped = {m.field for m in mappings if m.field != METADATA_FIELD}
    missing = [f for f in REQUIRED_FIELDS if f not in mapped]
    if not any(f in mapped for f in TIMESTAMP_FIELDS):
        missing.append(EXECUTION_TIMESTAMP)
    return missing


def requires_review(
    overall: float,
    missing: list[str],
    threshold: float = DEFAULT_REVIEW_THRESHOLD,
) -> bool:
    return overall < threshold or bool(missing)


def resolve_conflicts(mappings: list[FieldMapping]) -> list[FieldMapping]:
    """Keep the strongest header per canonical field; demote the rest."""
    winners: dict[str, FieldMapping] = {}
    for m in mappings:
        if m.field == METADATA_FIELD:
            continue
        current = winners.get(m.field)
        if current is None or m.confidence > current.confidence:
            winners[m.field] = m

    out: list[FieldMapping] = []
    for m in mappings:
        if m.field != METADATA_FIELD and winners.get(m.field) is not m:
            out.append(_to_metadata(
                m, f"{m.field} already mapped from {winners[m.field].header!r}",
            ))
        else:
            out.append(m)
    return out


def decay_confidence(old: float, corrected: int, total: int) -> float:
    """Lower a format's confidence after a human corrected some mappings.

    ``new = old * (1 - 0.5 * corrected / total)``, never below 0.05.
    """
    if total <= 0 or corrected <= 0:
        return old
    ratio = min(corrected / total, 1.0)
    return round(max(old * (1.0 - DECAY_FACTOR * ratio), DECAY_FLOOR), 4)


def count_corrections(
    before: list[FieldMapping],
    after: list[FieldMapping],
) -> int:
    """How many headers ended up on a different canonical field."""
    old = {m.header: m.field for m in before}
    return sum(1 for m in after if old.get(m.header, METADATA_FIELD) != m.field)


def fail_safe(
    mappings: list[FieldMapping],
    error: str,
    *,
    threshold: float = DEFAULT_REVIEW_THRESHOLD,
) -> MappingResult:
    """Best-effort result after the AI call failed. Always forces review."""
    result = summarize(
        mappings,
        source="heuristic",
        threshold=threshold,
        suggestions=[f"AI mapping unavailable ({error}); heuristic mapping used"],
    )
    result.failed = True
    result.error = error
    result.requires_user_review = True
    result.overall_confidence = min(result.overall_confidence, round(threshold - 0.01, 4))
    return result


# ---------------------------------------------------------------------------
# Internal
# ---------------------------------------------------------------------------


def _to_metadata(
    m: FieldMapping, reason: str, confidence: float = METADATA_CONFIDENCE,
) -> FieldMapping:
    return FieldMapping(
        header=m.header,
        field=METADATA_FIELD,
        confidence=confidence,
        rationale=reason,
    )


def _demote_if_weak(m: FieldMapping) -> FieldMapping:
    conf = min(max(float(m.confidence or 0.0), 0.0), 1.0)
    transform = m.transform if m.transform in TRANSFORMS else None
    m = FieldMapping(
        header=m.header,
        field=m.field,
        confidence=conf,
        rationale=m.rationale,
        combined_with=list(m.combined_with),
        transform=transform,
    )
    if m.field == METADATA_FIELD:
        if not m.confidence:
            m.confidence = METADATA_CONFIDENCE
        return m
    if m.field not in CANONICAL_FIELDS:
        return _to_metadata(m, f"Unknown field {m.field!r}, storing in broker_metadata")
    if m.confidence < CONFIDENCE_MEDIUM:
        return _to_metadata(
            m,
            m.rationale or "Low confidence mapping, storing in broker_metadata",
            m.confidence or METADATA_CONFIDENCE,
        )
    return m


def _suggestions(mappings: list[FieldMapping], missing: list[str]) -> list[str]:
    notes: list[str] = []
    if missing:
        notes.append(f"Missing required fields: {', '.join(missing)}")
    weak = [
        m.header for m in mappings
        if m.field != METADATA_FIELD and m.confidence < 0.6
    ]
    if weak:
        notes.append(f"Please review low-confidence mappings: {', '.join(weak)}")
    if not any(m.field != METADATA_FIELD for m in mappings):
        notes.append("No column mappings found")
    return notes
