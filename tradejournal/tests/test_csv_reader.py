"""Tests for the strict CSV reader."""

from __future__ import annotations

import pytest

from tradejournal.errors import ParseError
from tradejournal.parsing.csv_reader import read_csv

from .support import ROUND_TRIP_CSV


# ── Happy path ───────────────────────────────────────────────────────────────

def test_reads_headers_and_rows():
    parsed = read_csv(ROUND_TRIP_CSV)
    assert parsed.headers == ["Symbol", "Side", "Qty", "Price", "Exec Time"]
    assert len(parsed) == 2
    assert parsed.rows[0]["Symbol"] == "AAPL"
    assert parsed.rows[1]["Side"] == "SELL"
    assert parsed.line_numbers == [2, 3]


def test_bytes_with_bom_are_decoded():
    parsed = read_csv(b"\xef\xbb\xbfSymbol,Qty\nAAPL,1\n")
    assert parsed.headers == ["Symbol", "Qty"]


def test_latin1_fallback():
    parsed = read_csv("Symbol,Note\nAAPL,caf\xe9\n".encode("latin-1"))
    assert parsed.rows[0]["Note"] == "caf\xe9"


def test_blank_lines_and_trailing_commas_are_tolerated():
    parsed = read_csv("Symbol,Qty\n\nAAPL,1,,\n\nMSFT,2\n")
    assert [r["Symbol"] for r in parsed.rows] == ["AAPL", "MSFT"]


def test_duplicate_and_blank_headers_are_named():
    parsed = read_csv("Price,Price,\n1,2,3\n")
    assert parsed.headers == ["Price", "Price.1", "Column 3"]


def test_quoted_commas_stay_in_one_cell():
    parsed = read_csv('Symbol,Description\nAAPL,"Apple, Inc."\n')
    assert parsed.rows[0]["Description"] == "Apple, Inc."


def test_sample_rows_are_copies():
    parsed = read_csv(ROUND_TRIP_CSV)
    sample = parsed.sample_rows(1)
    assert sample == [parsed.rows[0]]
    sample[0]["Symbol"] = "XXX"
    assert parsed.rows[0]["Symbol"] != "XXX"
    assert len(parsed) == 2


# ── Malformed input ──────────────────────────────────────────────────────────

def test_inconsistent_column_count_reports_line():
    with pytest.raises(ParseError) as exc_info:
        read_csv("Symbol,Qty\nAAPL,1\nMSFT,2,3\n")
    assert exc_info.value.line == 3
    assert "line 3" in str(exc_info.value)


def test_unterminated_quote_is_a_parse_error():
    with pytest.raises(ParseError):
        read_csv('Symbol,Qty\n"AAPL,1\n')


def test_empty_file():
    with pytest.raises(ParseError):
        read_csv(b"")


def test_header_only():
    with pytest.raises(ParseError):
        read_csv("Symbol,Qty\n")
