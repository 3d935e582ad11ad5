"""Apply a column mapping to raw CSV rows.

The MappingExecutor turns one raw row (``{header: text}``) into canonical
order values: numbers cleaned, timestamps parsed, side and order type
normalised, unmapped columns kept under ``broker_metadata``. It never
raises on bad cell values; anything it cannot parse is left as ``None``
and reported by the validation step.
"""

from __future__ import annotations

import logging
import math
import re
from datetime import datetime
from typing import Any, Optional
from zoneinfo import ZoneInfo

import pandas as pd

from ..models import FieldMapping, MappingResult
from .schema import DATE_FIELDS, METADATA_FIELD, NUMBER_FIELDS

logger = logging.getLogger(__name__)

# Broker side labels -> BUY / SELL
SIDE_MAP: dict[str, str] = {
    "BUY": "BUY",
    "BOT": "BUY",
    "B": "BUY",
    "BOUGHT": "BUY",
    "YOU BOUGHT": "BUY",
    "BUY TO OPEN": "BUY",
    "BUY TO CLOSE": "BUY",
    "BUY TO COVER": "BUY",
    "SELL": "SELL",
    "SLD": "SELL",
    "S": "SELL",
    "SOLD": "SELL",
    "YOU SOLD": "SELL",
    "SELL TO OPEN": "SELL",
    "SELL TO CLOSE": "SELL",
    "SELL SHORT": "SELL",
}

ORDER_TYPE_MAP: dict[str, str] = {
    "MKT": "MARKET",
    "MARKET": "MARKET",
    "LMT": "LIMIT",
    "LIMIT": "LIMIT",
    "STP": "STOP",
    "STOP": "STOP",
    "STP LMT": "STOP_LIMIT",
    "STOP LIMIT": "STOP_LIMIT",
    "STOP_LIMIT": "STOP_LIMIT",
}

_BUY_WORDS = re.compile(r"\b(BUY|BOT|BOUGHT|PURCHASE|PURCHASED)\b")
_SELL_WORDS = re.compile(r"\b(SELL|SLD|SOLD|SALE)\b")
_ACTION_HEADERS = ("action", "type", "transaction", "activity", "description", "side")

_NUMBER_STRIP = re.compile(r"[\s$,]")


# ---------------------------------------------------------------------------
# Cell parsers
# ---------------------------------------------------------------------------


def parse_number(value: Any) -> Optional[float]:
    """'$1,234.50' -> 1234.5, '(12)' -> -12.0, '' or 'NaN' -> None."""
    if value is None:
        return None
    if isinstance(value, (int, float)):
        return float(value) if math.isfinite(value) else None
    text = _NUMBER_STRIP.sub("", str(value))
    if not text:
        return None
    negative = False
    if text.startswith("(") and text.endswith(")"):
        negative = True
        text = text[1:-1]
    try:
        number = float(text)
    except ValueError:
        return None
    if not math.isfinite(number):
        return None
    return -number if negative else number


def parse_timestamp(value: Any, exchange_tz: str = "America/New_York") -> Optional[datetime]:
    """Parse a broker date/time string into a naive exchange-local datetime.

    Accepts ISO 8601, ``MM/DD/YYYY [HH:MM[:SS]]`` and ``YYYY/MM/DD ...``.
    Timestamps carrying an offset are converted to the exchange timezone.
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        ts = pd.Timestamp(value)
    else:
        text = str(value).strip()
        if not text:
            return None
        ts = pd.to_datetime(text, errors="coerce")
    if ts is None or pd.isna(ts):
        return None
    if ts.tzinfo is not None:
        ts = ts.tz_convert(ZoneInfo(exchange_tz)).tz_localize(None)
    return ts.to_pydatetime()


def normalize_side(value: Any) -> Optional[str]:
    if value is None:
        return None
    key = " ".join(str(value).strip().upper().split())
    return SIDE_MAP.get(key)


def normalize_order_type(value: Any) -> str:
    if value is None:
        return "MARKET"
    key = " ".join(str(value).strip().upper().replace("-", " ").split())
    return ORDER_TYPE_MAP.get(key, "MARKET")


def infer_side_from_text(text: str) -> Optional[str]:
    upper = text.upper()
    if _BUY_WORDS.search(upper):
        return "BUY"
    if _SELL_WORDS.search(upper):
        return "SELL"
    return None


# ---------------------------------------------------------------------------
# Executor
# ---------------------------------------------------------------------------


class MappingExecutor:
    """Apply one mapping to any number of raw rows.

    Usage::

        executor = MappingExecutor(result.mappings)
        values = executor.map_row(raw_row)
    """

    def __init__(
        self,
        mappings: list[FieldMapping] | MappingResult,
        *,
        exchange_tz: str = "America/New_York",
    ) -> None:
        if isinstance(mappings, MappingResult):
            mappings = mappings.mappings
        self.mappings = list(mappings)
        self.exchange_tz = exchange_tz

    def map_row(self, raw: dict[str, str]) -> dict[str, Any]:
        """Return canonical values plus ``broker_metadata`` for one row."""
        lookup = {k.strip().lower(): k for k in raw}

        def _cell(header: str) -> Optional[str]:
            key = header if header in raw else lookup.get(header.strip().lower())
            if key is None:
                return None
            val = raw.get(key)
            return None if val is None else str(val)

        values: dict[str, Any] = {}
        metadata: dict[str, Any] = {}

        for m in self.mappings:
            text = _cell(m.header)
            if m.combined_with:
                parts = [text] + [_cell(h) for h in m.combined_with]
                text = " ".join(p.strip() for p in parts if p and p.strip())

            if m.field == METADATA_FIELD:
                if text not in (None, ""):
                    metadata[m.header] = text
                continue

            values[m.field] = self._convert(m, text)

        self._fill_timestamps(values)
        self._resolve_side(values, metadata)

        values["order_type"] = normalize_order_type(values.get("order_type"))
        values[METADATA_FIELD] = metadata
        return values

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _convert(self, m: FieldMapping, text: Optional[str]) -> Any:
        if text is None or text.strip() == "":
            return None
        transform = m.transform
        if transform is None:
            if m.field in DATE_FIELDS:
                transform = "date"
            elif m.field in NUMBER_FIELDS:
                transform = "number"

        if transform == "date":
            return parse_timestamp(text, self.exchange_tz)
        if transform == "number":
            return parse_number(text)
        if transform == "uppercase":
            return text.strip().upper()
        if transform == "lowercase":
            return text.strip().lower()

        if m.field == "symbol":
            return text.strip().upper()
        if m.field == "tags":
            return [t.strip() for t in re.split(r"[,;|]", text) if t.strip()]
        return text.strip()

    @staticmethod
    def _fill_timestamps(values: dict[str, Any]) -> None:
        placed = values.get("order_placed_time")
        executed = values.get("order_executed_time")
        if executed is None and placed is not None:
            values["order_executed_time"] = placed
        elif placed is None and executed is not None:
            values["order_placed_time"] = executed

    @staticmethod
    def _resolve_side(values: dict[str, Any], metadata: dict[str, Any]) -> None:
        """Side from the mapped column, then action-like metadata, then qty sign.

        The quantity sign is only used when no side label was given at all.
        """
        raw_side = values.get("side")
        side = normalize_side(raw_side)
        if side is None and raw_side:
            side = infer_side_from_text(str(raw_side))

        if side is None:
            for header, text in metadata.items():
                if any(word in header.lower() for word in _ACTION_HEADERS):
                    side = infer_side_from_text(str(text))
                    if side:
                        break

        qty = values.get("quantity")
        if side is None and not raw_side and isinstance(qty, float) and qty != 0:
            side = "BUY" if qty > 0 else "SELL"

        if side is None and raw_side:
            # keep the unrecognised label so diagnostics can show it
            values["side"] = raw_side
            values["side_invalid"] = True
        else:
            values["side"] = side
        if isinstance(qty, float):
            values["quantity"] = abs(qty)


def to_json_values(values: dict[str, Any]) -> dict[str, Any]:
    """Mapped values with datetimes as ISO strings, for staging storage."""
    out: dict[str, Any] = {}
    for key, val in values.items():
        if isinstance(val, datetime):
            out[key] = val.isoformat()
        else:
            out[key] = val
    return out
