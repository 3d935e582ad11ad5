"""Ask Claude to map unknown CSV headers onto the canonical order schema.

The call sits behind ``MappingPort`` so the column mapper can be driven by
a fake in tests. ``ClaudeMappingClient`` raises ``MappingError`` on any
failure (network, API, unparseable JSON); the column mapper is the layer
that turns that into a fail-safe result.
"""

from __future__ import annotations

import json
import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Optional

from ..errors import MappingError
from ..models import FieldMapping
from .schema import CRITICAL_FIELDS, METADATA_FIELD, ORDER_FIELDS

logger = logging.getLogger(__name__)

_SYSTEM_PROMPT = (
    "You map CSV headers from brokerage order exports onto a fixed order "
    "schema. Be conservative: a wrong mapping is worse than no mapping. "
    "Respond with a single JSON object only. No explanation."
)

_JSON_OBJECT = re.compile(r"\{[\s\S]*\}")


@dataclass
class MappingSuggestion:
    """Raw per-header suggestions as returned by the model."""

    mappings: list[FieldMapping]
    suggestions: list[str] = field(default_factory=list)
    reported_confidence: Optional[float] = None


class MappingPort(ABC):
    """Anything that can suggest a header -> field mapping."""

    @abstractmethod
    async def suggest(
        self,
        headers: list[str],
        sample_rows: list[dict[str, str]],
        broker_name: Optional[str] = None,
    ) -> MappingSuggestion:
        """Return suggestions or raise ``MappingError``."""


def build_prompt(
    headers: list[str],
    sample_rows: list[dict[str, str]],
    broker_name: Optional[str] = None,
) -> str:
    """User-message prompt listing the schema, the headers and sample data."""
    field_lines = "\n".join(f"- {name}: {desc}" for name, desc in ORDER_FIELDS.items())
    header_lines = "\n".join(f'{i + 1}. "{h}"' for i, h in enumerate(headers))
    samples = json.dumps(sample_rows[:5], indent=2, default=str)

    return (
        f"Map CSV headers from {broker_name or 'a trading broker'} to our order fields.\n\n"
        f"CRITICAL FIELDS (map these first): {', '.join(CRITICAL_FIELDS)}\n\n"
        f"ORDER FIELDS:\n{field_lines}\n\n"
        f"CSV HEADERS:\n{header_lines}\n\n"
        f"SAMPLE ROWS:\n{samples}\n\n"
        "Rules:\n"
        "1. Map each header to exactly one order field, or to "
        f'"{METADATA_FIELD}" if nothing fits.\n'
        "2. Confidence 0.9-1.0 exact match, 0.7-0.9 clear with context, "
        "0.5-0.7 reasonable, below 0.5 uncertain (stored as metadata).\n"
        "3. Only use order_executed_time for execution/fill/trade time headers; "
        "if unsure prefer order_placed_time.\n"
        '4. If a date and a time live in separate columns, map the date column and '
        'list the time column in "combined_with".\n'
        '5. Optional "transform": one of uppercase, lowercase, number, date.\n\n'
        "Respond as JSON:\n"
        '{"mappings": {"<header>": {"field": "<order field>", "confidence": 0.95, '
        '"reasoning": "...", "combined_with": [], "transform": null}}, '
        '"overallConfidence": 0.85, "suggestions": ["..."]}'
    )


def parse_response(text: str, headers: list[str]) -> MappingSuggestion:
    """Parse the model's JSON reply. Raises ``MappingError`` when unusable."""
    text = text.strip()

    # Strip markdown fences if present
    if text.startswith("```"):
        lines = text.split("\n")
        start = 1 if lines[0].startswith("```") else 0
        end = -1 if lines[-1].strip() == "```" else len(lines)
        text = "\n".join(lines[start:end]).strip()

    try:
        payload = json.loads(text)
    except json.JSONDecodeError:
        match = _JSON_OBJECT.search(text)
        if not match:
            raise MappingError("Claude response contained no JSON object")
        try:
            payload = json.loads(match.group(0))
        except json.JSONDecodeError as exc:
            raise MappingError(f"Claude response is not valid JSON: {exc}") from exc

    if not isinstance(payload, dict) or not isinstance(payload.get("mappings"), dict):
        raise MappingError("Claude response has no 'mappings' object")

    raw: dict[str, Any] = payload["mappings"]
    mappings: list[FieldMapping] = []
    for header in headers:
        entry = raw.get(header)
        if not isinstance(entry, dict):
            mappings.append(FieldMapping(
                header=header,
                field=METADATA_FIELD,
                confidence=0.1,
                rationale="Not mapped by Claude",
            ))
            continue
        combined = entry.get("combined_with") or []
        if isinstance(combined, str):
            combined = [combined]
        try:
            confidence = float(entry.get("confidence") or 0.0)
        except (TypeError, ValueError):
            confidence = 0.0
        mappings.append(FieldMapping(
            header=header,
            field=str(entry.get("field") or METADATA_FIELD),
            confidence=confidence,
            rationale=str(entry.get("reasoning") or ""),
            combined_with=[c for c in combined if c in headers and c != header],
            transform=entry.get("transform"),
        ))

    reported = payload.get("overallConfidence")
    return MappingSuggestion(
        mappings=mappings,
        suggestions=[str(s) for s in payload.get("suggestions") or []],
        reported_confidence=float(reported) if isinstance(reported, (int, float)) else None,
    )


class ClaudeMappingClient(MappingPort):
    """MappingPort backed by the Anthropic Messages API.

    The async client carries the mapping timeout itself, so a slow call is
    abandoned by the SDK instead of holding a worker thread.
    """

    def __init__(
        self,
        api_key: str,
        model: str = "claude-sonnet-4-5-20250929",
        *,
        timeout: float = 20.0,
        max_retries: int = 0,
    ) -> None:
        self.api_key = api_key
        self.model = model
        self.timeout = timeout
        self.max_retries = max_retries
        self._client = None

    @property
    def client(self):
        if self._client is None:
            import anthropic

            self._client = anthropic.AsyncAnthropic(
                api_key=self.api_key,
                timeout=self.timeout,
                max_retries=self.max_retries,
            )
        return self._client

    async def suggest(
        self,
        headers: list[str],
        sample_rows: list[dict[str, str]],
        broker_name: Optional[str] = None,
    ) -> MappingSuggestion:
        prompt = build_prompt(headers, sample_rows, broker_name)
        try:
            message = await self.client.messages.create(
                model=self.model,
                max_tokens=2048,
                system=_SYSTEM_PROMPT,
                messages=[{"role": "user", "content": prompt}],
            )
            text = message.content[0].text
        except Exception as exc:
            raise MappingError(f"Claude call failed: {exc}") from exc

        suggestion = parse_response(text, headers)
        logger.info(
            "[CLAUDE_MAPPER] %s: Claude mapped %d/%d headers",
            broker_name or "unknown broker",
            sum(1 for m in suggestion.mappings if m.field != METADATA_FIELD),
            len(headers),
        )
        return suggestion
