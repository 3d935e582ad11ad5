"""Tests for the Column Mapper, confidence scoring and the Claude reply parser."""

from __future__ import annotations

from types import SimpleNamespace

import anthropic
import pytest

from tradejournal.errors import MappingError
from tradejournal.models import FieldMapping
from tradejournal.parsing.claude_mapper import ClaudeMappingClient, parse_response
from tradejournal.parsing.column_mapper import ColumnMapper, apply_corrections, heuristic_mappings
from tradejournal.parsing.confidence import (
    count_corrections,
    decay_confidence,
    overall_confidence,
    summarize,
)
from tradejournal.parsing.csv_reader import read_csv

from .support import (
    ROUND_TRIP_CSV,
    FailingMappingPort,
    FakeMappingPort,
    SlowMappingPort,
    _run,
    make_settings,
)

HEADERS = ["Symbol", "Side", "Qty", "Price", "Exec Time"]
SAMPLES = read_csv(ROUND_TRIP_CSV).rows

GOOD = {
    "Symbol": ("symbol", 0.95),
    "Side": ("side", 0.95),
    "Qty": ("quantity", 0.95),
    "Price": ("price", 0.9),
    "Exec Time": ("order_executed_time", 0.9),
}


# ── Heuristic mapping ────────────────────────────────────────────────────────

def test_heuristic_maps_known_headers():
    result = summarize(heuristic_mappings(HEADERS, SAMPLES), source="heuristic")
    fields = result.by_field()
    assert fields["symbol"].header == "Symbol"
    assert fields["quantity"].header == "Qty"
    assert fields["order_executed_time"].header == "Exec Time"
    assert result.missing_required == []
    assert result.overall_confidence >= 0.7
    assert result.requires_user_review is False


def test_heuristic_scales_confidence_by_sample_parse_rate():
    samples = [{"Qty": "100"}, {"Qty": "lots"}]
    [m] = heuristic_mappings(["Qty"], samples)
    assert m.field == "quantity"
    assert m.confidence == pytest.approx(0.45)


def test_unknown_headers_go_to_metadata():
    [m] = heuristic_mappings(["Mystery"], [{"Mystery": "x"}])
    assert m.field == "broker_metadata"
    assert m.confidence == pytest.approx(0.1)


# ── Confidence scoring ───────────────────────────────────────────────────────

def test_weak_suggestions_are_demoted():
    result = summarize(
        [FieldMapping("Sym", "symbol", 0.4), FieldMapping("Q", "quantity", 0.9)],
        source="claude",
    )
    by_header = result.by_header()
    assert by_header["Sym"].field == "broker_metadata"
    assert "symbol" in result.missing_required
    assert result.requires_user_review


def test_unknown_field_is_demoted():
    result = summarize([FieldMapping("X", "favourite_colour", 0.99)], source="claude")
    assert result.mappings[0].field == "broker_metadata"


def test_conflicting_claims_keep_the_stronger():
    result = summarize(
        [FieldMapping("Date", "order_executed_time", 0.6),
         FieldMapping("Fill Time", "order_executed_time", 0.9)],
        source="claude",
    )
    by_header = result.by_header()
    assert by_header["Fill Time"].field == "order_executed_time"
    assert by_header["Date"].field == "broker_metadata"


def test_missing_timestamp_is_reported_once():
    result = summarize(
        [FieldMapping("S", "symbol", 1), FieldMapping("Q", "quantity", 1), FieldMapping("B", "side", 1)],
        source="user",
    )
    assert result.missing_required == ["execution_timestamp"]
    assert result.requires_user_review


def test_placed_time_satisfies_timestamp_requirement():
    result = summarize(
        [FieldMapping("S", "symbol", 1), FieldMapping("Q", "quantity", 1),
         FieldMapping("B", "side", 1), FieldMapping("T", "order_placed_time", 1)],
        source="user",
    )
    assert result.missing_required == []
    assert not result.requires_user_review


def test_critical_fields_weigh_more():
    critical = overall_confidence([FieldMapping("S", "symbol", 1.0), FieldMapping("N", "broker_metadata", 0.1)])
    plain = overall_confidence([FieldMapping("F", "fees", 1.0), FieldMapping("N", "broker_metadata", 0.1)])
    assert critical == pytest.approx((3.0 + 0.1) / 4)
    assert plain == pytest.approx((1.0 + 0.1) / 2)
    assert critical > plain


def test_decay_confidence():
    assert decay_confidence(0.9, 1, 5) == pytest.approx(0.81)
    assert decay_confidence(0.9, 0, 5) == pytest.approx(0.9)
    assert decay_confidence(0.06, 10, 10) == pytest.approx(0.05)


def test_count_corrections():
    before = [FieldMapping("A", "symbol", 0.9), FieldMapping("B", "broker_metadata", 0.1)]
    after = [FieldMapping("A", "symbol", 1.0), FieldMapping("B", "quantity", 1.0)]
    assert count_corrections(before, after) == 1


def test_apply_corrections_sets_full_confidence():
    base = summarize([FieldMapping("Amt", "broker_metadata", 0.1)], source="claude")
    corrected = apply_corrections(base, {"Amt": "quantity"}, threshold=0.7)
    [m] = corrected.mappings
    assert (m.field, m.confidence) == ("quantity", 1.0)
    assert corrected.source == "user"


# ── ColumnMapper with an AI port ─────────────────────────────────────────────

def test_mapper_without_port_uses_heuristics():
    mapper = ColumnMapper(settings=make_settings())
    result = _run(mapper.map_columns(HEADERS, SAMPLES, "Test"))
    assert result.source == "heuristic"
    assert not result.failed


def test_mapper_uses_port_suggestions():
    port = FakeMappingPort(GOOD, suggestions=["looks like a fills export"])
    mapper = ColumnMapper(port, settings=make_settings())
    result = _run(mapper.map_columns(HEADERS, SAMPLES, "Test"))
    assert port.calls == 1
    assert result.source == "claude"
    assert result.overall_confidence >= 0.9
    assert "looks like a fills export" in result.suggestions


def test_mapper_failure_forces_review():
    mapper = ColumnMapper(FailingMappingPort(), settings=make_settings())
    result = _run(mapper.map_columns(HEADERS, SAMPLES, "Test"))
    assert result.failed
    assert result.requires_user_review
    assert result.overall_confidence < 0.7
    assert "model unavailable" in result.error
    # heuristic mapping is still provided for the review screen
    assert result.by_field()["symbol"].header == "Symbol"


def test_mapper_unexpected_error_forces_review():
    mapper = ColumnMapper(FailingMappingPort(RuntimeError("boom")), settings=make_settings())
    result = _run(mapper.map_columns(HEADERS, SAMPLES, "Test"))
    assert result.failed and result.requires_user_review


def test_mapper_timeout_forces_review():
    mapper = ColumnMapper(SlowMappingPort(), settings=make_settings(mapping_timeout=0.05))
    result = _run(mapper.map_columns(HEADERS, SAMPLES, "Test"))
    assert result.failed
    assert result.error == "timeout"
    assert result.requires_user_review


# ── Claude reply parsing ─────────────────────────────────────────────────────

def test_parse_response_handles_fences_and_missing_headers():
    text = (
        "```json\n"
        '{"mappings": {"Symbol": {"field": "symbol", "confidence": 0.95, "reasoning": "ticker"},'
        ' "Date": {"field": "order_executed_time", "confidence": 0.8, "combined_with": ["Time", "Nope"]}},'
        ' "overallConfidence": 0.8, "suggestions": ["check dates"]}\n'
        "```"
    )
    suggestion = parse_response(text, ["Symbol", "Date", "Time"])
    by_header = {m.header: m for m in suggestion.mappings}
    assert by_header["Symbol"].field == "symbol"
    assert by_header["Date"].combined_with == ["Time"]
    assert by_header["Time"].field == "broker_metadata"
    assert suggestion.reported_confidence == pytest.approx(0.8)
    assert suggestion.suggestions == ["check dates"]


def test_parse_response_extracts_embedded_json():
    text = 'Sure! {"mappings": {"Qty": {"field": "quantity", "confidence": 0.9}}} Hope that helps.'
    suggestion = parse_response(text, ["Qty"])
    assert suggestion.mappings[0].field == "quantity"


def test_parse_response_rejects_garbage():
    with pytest.raises(MappingError):
        parse_response("I cannot help with that.", ["Qty"])
    with pytest.raises(MappingError):
        parse_response('{"something": 1}', ["Qty"])


# ── Claude client ────────────────────────────────────────────────────────────

class _FakeAsyncAnthropic:
    created: list[dict] = []

    def __init__(self, **kwargs):
        _FakeAsyncAnthropic.created.append(kwargs)
        self.messages = self

    async def create(self, **kwargs):
        text = '{"mappings": {"Qty": {"field": "quantity", "confidence": 0.9}}}'
        return SimpleNamespace(content=[SimpleNamespace(text=text)])


def test_claude_client_is_bounded_by_mapping_timeout(monkeypatch):
    _FakeAsyncAnthropic.created.clear()
    monkeypatch.setattr(anthropic, "AsyncAnthropic", _FakeAsyncAnthropic)
    mapper = ColumnMapper(settings=make_settings(anthropic_api_key="sk-test", mapping_timeout=7.5))

    assert isinstance(mapper.port, ClaudeMappingClient)
    suggestion = _run(mapper.port.suggest(["Qty"], [{"Qty": "10"}]))

    assert suggestion.mappings[0].field == "quantity"
    [kwargs] = _FakeAsyncAnthropic.created
    assert kwargs["timeout"] == 7.5
    assert kwargs["max_retries"] == 0
