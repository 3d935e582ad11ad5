"""Strict CSV reader for broker exports.

Broker files are read as text (UTF-8 with BOM tolerance, Latin-1 as a last
resort) and split with ``csv.reader(strict=True)`` so that malformed input
fails loudly instead of being padded with NaN: an unterminated quote or a
row whose column count differs from the header raises ``ParseError`` with
the offending line number.
"""

from __future__ import annotations

import csv
import io
import logging
from dataclasses import dataclass, field
from typing import Union

from ..errors import ParseError

logger = logging.getLogger(__name__)


@dataclass
class ParsedCsv:
    headers: list[str]
    rows: list[dict[str, str]]
    line_numbers: list[int] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.rows)

    def sample_rows(self, n: int) -> list[dict[str, str]]:
        return [dict(r) for r in self.rows[:n]]


def _decode(data: Union[bytes, str]) -> str:
    if isinstance(data, str):
        return data.lstrip("\ufeff")
    try:
        return data.decode("utf-8-sig")
    except UnicodeDecodeError:
        logger.info("[CSV] Input is not UTF-8; decoding as latin-1")
        return data.decode("latin-1")


def _dedupe_headers(raw: list[str]) -> list[str]:
    """Trim headers, name blank ones, and suffix repeats the way pandas does."""
    seen: dict[str, int] = {}
    headers: list[str] = []
    for i, h in enumerate(raw):
        name = h.strip() or f"Column {i + 1}"
        if name in seen:
            seen[name] += 1
            name = f"{name}.{seen[name]}"
        else:
            seen[name] = 0
        headers.append(name)
    return headers


def read_csv(data: Union[bytes, str]) -> ParsedCsv:
    """Parse a broker export into headers plus one dict per data row.

    Blank lines are skipped. Trailing empty cells beyond the header width
    (a common trailing-comma artefact) are dropped; any other width
    mismatch is a ``ParseError``.
    """
    content = _decode(data)
    if not content.strip():
        raise ParseError("file is empty")

    reader = csv.reader(io.StringIO(content), strict=True)
    headers: list[str] = []
    rows: list[dict[str, str]] = []
    line_numbers: list[int] = []

    try:
        for raw in reader:
            if not any(cell.strip() for cell in raw):
                continue

            if not headers:
                headers = _dedupe_headers(raw)
                continue

            if len(raw) > len(headers) and not any(c.strip() for c in raw[len(headers):]):
                raw = raw[: len(headers)]

            if len(raw) != len(headers):
                raise ParseError(
                    f"expected {len(headers)} columns, found {len(raw)}",
                    line=reader.line_num,
                )

            rows.append({h: v.strip() for h, v in zip(headers, raw)})
            line_numbers.append(reader.line_num)
    except csv.Error as exc:
        raise ParseError(f"malformed CSV ({exc})", line=reader.line_num) from exc

    if not rows:
        raise ParseError("no data rows after the header")

    logger.debug("[CSV] Parsed %d rows x %d columns", len(rows), len(headers))
    return ParsedCsv(headers=headers, rows=rows, line_numbers=line_numbers)
