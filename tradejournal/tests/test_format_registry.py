"""Tests for the broker format registry."""

from __future__ import annotations

import pytest

from tradejournal.errors import FormatNotFoundError, IllegalTransitionError
from tradejournal.ingestion.format_registry import FormatRegistry, compute_signature
from tradejournal.models import FieldMapping, FormatStatus, MigrationStatus, OrderStaging
from tradejournal.parsing.confidence import summarize
from tradejournal.storage.memory import InMemoryStore

from .support import _run, make_settings

HEADERS = ["Symbol", "Side", "Qty", "Exec Time", "Notes"]


def _mapping(symbol_conf: float = 0.9):
    return summarize(
        [
            FieldMapping("Symbol", "symbol", symbol_conf),
            FieldMapping("Side", "side", 0.9),
            FieldMapping("Qty", "quantity", 0.9),
            FieldMapping("Exec Time", "order_executed_time", 0.9),
            FieldMapping("Notes", "broker_metadata", 0.1),
        ],
        source="claude",
    )


def _registry(store=None) -> FormatRegistry:
    return FormatRegistry(store or InMemoryStore(), settings=make_settings())


def _create(registry: FormatRegistry, headers=HEADERS, mapping=None, broker="schwab"):
    return _run(registry.find_or_create(broker, headers, [], mapping or _mapping()))


# ── Signatures ───────────────────────────────────────────────────────────────

def test_signature_ignores_order_case_and_whitespace():
    assert compute_signature(["Symbol", "Qty"]) == compute_signature([" qty", "SYMBOL "])
    assert compute_signature(["Symbol", "Qty"]) != compute_signature(["Symbol", "Quantity"])


# ── find_or_create ───────────────────────────────────────────────────────────

def test_new_signature_creates_pending_format():
    registry = _registry()
    fmt, created = _create(registry)
    assert created
    assert fmt.status == FormatStatus.PENDING_REVIEW
    assert not fmt.is_approved
    assert fmt.confidence == pytest.approx(_mapping().overall_confidence)
    assert fmt.usage_count == 1


def test_existing_signature_is_reused():
    registry = _registry()
    first, _ = _create(registry)
    again, created = _create(registry, headers=list(reversed(HEADERS)))
    assert not created
    assert again.id == first.id
    assert again.usage_count == 2


def test_same_headers_different_broker_is_a_new_format():
    registry = _registry()
    first, _ = _create(registry)
    other, created = _create(registry, broker="fidelity")
    assert created and other.id != first.id


def test_rejected_format_is_superseded():
    registry = _registry()
    fmt, _ = _create(registry)
    _run(registry.reject(fmt.id, "admin-1", "wrong columns"))

    assert _run(registry.find("schwab", HEADERS)) is None
    fresh, created = _create(registry)
    assert created
    assert fresh.id != fmt.id
    assert fresh.supersedes_id == fmt.id
    assert fresh.status == FormatStatus.PENDING_REVIEW


def test_get_unknown_format():
    with pytest.raises(FormatNotFoundError):
        _run(_registry().get("missing"))


# ── Approve / reject ─────────────────────────────────────────────────────────

def test_approve_merges_corrections_and_decays_confidence():
    registry = _registry()
    fmt, _ = _create(registry)
    approved = _run(registry.approve(fmt.id, "admin-1", {"Notes": "tags"}))

    assert approved.is_approved
    assert approved.approved_by == "admin-1"
    assert approved.approved_at is not None
    assert {m.header: m.field for m in approved.field_mappings}["Notes"] == "tags"
    assert approved.confidence < fmt.confidence
    # a reviewed mapping is fully trusted
    assert all(m.confidence == 1.0 for m in approved.field_mappings)
    assert approved.mapping_result(0.7).requires_user_review is False


def test_stored_mapping_is_scored_against_configured_threshold():
    store = InMemoryStore()
    fmt, _ = _create(FormatRegistry(store, settings=make_settings()))

    strict = FormatRegistry(store, settings=make_settings(review_threshold=0.95))
    lenient = FormatRegistry(store, settings=make_settings(review_threshold=0.5))
    assert strict.corrected_mapping(fmt, None).requires_user_review is True
    assert lenient.corrected_mapping(fmt, None).requires_user_review is False


def test_reapproval_is_allowed():
    registry = _registry()
    fmt, _ = _create(registry)
    _run(registry.approve(fmt.id, "admin-1"))
    again = _run(registry.approve(fmt.id, "admin-2"))
    assert again.is_approved
    assert again.approved_by == "admin-1"


def test_approved_format_cannot_be_rejected():
    registry = _registry()
    fmt, _ = _create(registry)
    _run(registry.approve(fmt.id, "admin-1"))
    with pytest.raises(IllegalTransitionError):
        _run(registry.reject(fmt.id, "admin-1", "too late"))


def test_reject_records_reason():
    registry = _registry()
    fmt, _ = _create(registry)
    rejected = _run(registry.reject(fmt.id, "admin-1", "not a trade export"))
    assert rejected.status == FormatStatus.REJECTED
    assert rejected.rejection_reason == "not a trade export"
    assert rejected.rejected_by == "admin-1"


# ── Pending list ─────────────────────────────────────────────────────────────

def test_list_pending_formats_sorts_and_paginates():
    store = InMemoryStore()
    registry = _registry(store)
    low, _ = _create(registry, headers=["A", "B"], mapping=_mapping(0.6))
    busy, _ = _create(registry, headers=["C", "D"])
    approved, _ = _create(registry, headers=["E", "F"])
    _run(registry.approve(approved.id, "admin-1"))

    rows = [
        OrderStaging(user_id="u1", broker_csv_format_id=busy.id, import_batch_id="b",
                     row_index=i, raw_csv_row={})
        for i in range(3)
    ]
    rows.append(OrderStaging(user_id="u1", broker_csv_format_id=busy.id, import_batch_id="b",
                             row_index=3, raw_csv_row={}, migration_status=MigrationStatus.REJECTED))
    _run(store.insert_staging(rows))

    page = _run(registry.list_pending_formats(sort_by="pending_count"))
    assert page.total == 2
    assert [i["format"].id for i in page.items] == [busy.id, low.id]
    assert [i["pending_count"] for i in page.items] == [3, 0]

    page = _run(registry.list_pending_formats(sort_by="confidence", descending=False, page_size=1))
    assert [i["format"].id for i in page.items] == [low.id]
    assert page.has_more

    with pytest.raises(ValueError):
        _run(registry.list_pending_formats(sort_by="name"))
