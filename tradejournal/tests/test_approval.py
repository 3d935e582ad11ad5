"""Tests for format approval, rejection, row migration and orphan recovery."""

from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest

from tradejournal.errors import (
    ConcurrentApprovalError,
    FormatNotFoundError,
    IllegalTransitionError,
    RateLimitExceeded,
)
from tradejournal.ingestion.approval import FormatApprovalService, MigrationResult
from tradejournal.ingestion.rate_limit import RateLimits
from tradejournal.ingestion.service import IngestionService
from tradejournal.models import (
    FeedbackStatus,
    FormatStatus,
    ImportStatus,
    MigrationStatus,
    OrderStaging,
    TradeStatus,
    utcnow,
)
from tradejournal.storage.memory import InMemoryStore

from .support import HEADERS, ROUND_TRIP_CSV, UNKNOWN_CSV, _run, make_settings

USER = "user-1"
ADMIN = "admin-1"

OPAQUE_CSV = (
    "Col A,Col B,Col C,Col D,Col E\n"
    "NVDA,BOT,10,850.00,2024-03-01 10:00:00\n"
    "NVDA,SLD,10,860.00,2024-03-01 10:05:00\n"
)


def _setup(**overrides):
    settings = make_settings(**overrides)
    store = InMemoryStore()
    limits = RateLimits(settings)
    ingestion = IngestionService(store, settings=settings, limits=limits)
    approvals = FormatApprovalService(store, settings=settings, limits=limits)
    return store, ingestion, approvals


def _stage(ingestion, csv_text, user_id=USER):
    result = _run(ingestion.ingest(csv_text, "export.csv", user_id, "Test Broker"))
    assert result.status == "pending_review"
    return result


def _rows(store, format_id, status=None):
    statuses = [status] if status is not None else None
    return _run(store.list_staging(format_id=format_id, statuses=statuses))


# ── Approval and migration ───────────────────────────────────────────────────

def test_approval_migrates_every_staged_row():
    store, ingestion, approvals = _setup()
    staged = _stage(ingestion, ROUND_TRIP_CSV)

    result = _run(approvals.approve_format_and_migrate_orders(staged.format_id, ADMIN))

    assert result.migrated_count == 2
    assert result.failed_count == 0
    assert result.affected_users == [USER]
    assert result.rollback_available

    rows = _rows(store, staged.format_id)
    assert {r.migration_status for r in rows} == {MigrationStatus.MIGRATED}
    orders = {o.id: o for o in _run(store.list_orders(USER))}
    for row in rows:
        assert orders[row.migrated_order_id].staging_id == row.id

    fmt = _run(store.get_format(staged.format_id))
    assert fmt.status == FormatStatus.APPROVED
    assert fmt.approved_by == ADMIN

    [item] = _run(store.list_feedback(format_id=fmt.id))
    assert item.status == FeedbackStatus.APPROVED and item.reviewed_by == ADMIN

    batch = _run(store.get_import_batch(staged.import_batch_id))
    assert batch.status == ImportStatus.COMPLETED
    assert batch.imported_rows == 2

    [trade] = _run(store.list_trades(USER))
    assert trade.status == TradeStatus.CLOSED
    assert trade.pnl == 200.0


def test_idempotency_key_returns_cached_result():
    store, ingestion, approvals = _setup()
    staged = _stage(ingestion, ROUND_TRIP_CSV)

    first = _run(approvals.approve_format_and_migrate_orders(
        staged.format_id, ADMIN, idempotency_key="req-1",
    ))
    second = _run(approvals.approve_format_and_migrate_orders(
        staged.format_id, ADMIN, idempotency_key="req-1",
    ))

    assert isinstance(second, MigrationResult)
    assert second.migrated_count == first.migrated_count == 2
    assert len(_run(store.list_orders(USER))) == 2


def test_reapproval_creates_no_new_orders():
    store, ingestion, approvals = _setup()
    staged = _stage(ingestion, ROUND_TRIP_CSV)
    _run(approvals.approve_format_and_migrate_orders(staged.format_id, ADMIN))

    again = _run(approvals.approve_format_and_migrate_orders(staged.format_id, "admin-2"))

    assert again.migrated_count == 0
    assert len(_run(store.list_orders(USER))) == 2
    assert _run(store.get_format(staged.format_id)).approved_by == ADMIN


def test_admin_corrections_are_used_for_migration():
    store, ingestion, approvals = _setup()
    staged = _stage(ingestion, OPAQUE_CSV)

    result = _run(approvals.approve_format_and_migrate_orders(
        staged.format_id, ADMIN,
        corrected_mappings={
            "Col A": "symbol",
            "Col B": "side",
            "Col C": "quantity",
            "Col D": "price",
            "Col E": "order_executed_time",
        },
    ))

    assert result.migrated_count == 2
    orders = _run(store.list_orders(USER))
    assert [(o.symbol, o.side.value, o.price) for o in orders] == [
        ("NVDA", "BUY", 850.0), ("NVDA", "SELL", 860.0),
    ]


def test_bad_row_fails_without_stopping_the_batch():
    store, ingestion, approvals = _setup()
    csv_text = (
        f"{HEADERS}\n"
        "AAPL,BUY,100,10.00,2024-03-01 09:45:00\n"
        "$$$,BUY,100,10.00,2024-03-01 09:46:00\n"
        "AAPL,SELL,100,12.00,2024-03-01 10:15:00\n"
    )
    staged = _stage(ingestion, csv_text)

    result = _run(approvals.approve_format_and_migrate_orders(staged.format_id, ADMIN))

    assert result.migrated_count == 2
    assert result.failed_count == 1
    assert result.errors[0]["row_index"] == 1
    [failed] = _rows(store, staged.format_id, MigrationStatus.FAILED)
    assert failed.retry_count == 1
    assert failed.last_retry_at is not None
    assert "Invalid symbol" in failed.processing_errors[-1]


def test_duplicate_rows_fail_on_migration():
    store, ingestion, approvals = _setup()
    staged = _stage(ingestion, ROUND_TRIP_CSV)
    _stage(ingestion, ROUND_TRIP_CSV)

    result = _run(approvals.approve_format_and_migrate_orders(staged.format_id, ADMIN))

    assert result.migrated_count == 2
    assert result.failed_count == 2
    assert all("Duplicate" in e["error"] for e in result.errors)
    assert len(_run(store.list_orders(USER))) == 2


def test_approval_while_locked_is_a_conflict():
    store, ingestion, approvals = _setup()
    staged = _stage(ingestion, ROUND_TRIP_CSV)

    async def scenario():
        async with store.lock(f"format:{staged.format_id}"):
            await approvals.approve_format_and_migrate_orders(staged.format_id, ADMIN)

    with pytest.raises(ConcurrentApprovalError):
        _run(scenario())
    assert _run(store.list_orders(USER)) == []
    assert _run(store.get_format(staged.format_id)).status == FormatStatus.PENDING_REVIEW


class _SlowFeedbackStore(InMemoryStore):
    """Yields to the event loop while feedback is being resolved."""

    async def list_feedback(self, **kwargs):
        await asyncio.sleep(0.05)
        return await super().list_feedback(**kwargs)


def test_retry_during_approval_cannot_rerun_it():
    settings = make_settings()
    store = _SlowFeedbackStore()
    limits = RateLimits(settings)
    ingestion = IngestionService(store, settings=settings, limits=limits)
    approvals = FormatApprovalService(store, settings=settings, limits=limits)
    staged = _stage(ingestion, ROUND_TRIP_CSV)

    async def scenario():
        first = asyncio.create_task(approvals.approve_format_and_migrate_orders(
            staged.format_id, ADMIN, idempotency_key="key-1",
        ))
        await asyncio.sleep(0.01)
        with pytest.raises(ConcurrentApprovalError):
            await approvals.approve_format_and_migrate_orders(
                staged.format_id, ADMIN, idempotency_key="key-1",
            )
        return await first

    first = _run(scenario())
    again = _run(approvals.approve_format_and_migrate_orders(
        staged.format_id, ADMIN, idempotency_key="key-1",
    ))

    assert first.migrated_count == 2
    assert again.migrated_count == 2
    assert len(_run(store.list_orders(USER))) == 2


def test_unknown_format():
    _, _, approvals = _setup()
    with pytest.raises(FormatNotFoundError):
        _run(approvals.approve_format_and_migrate_orders("missing", ADMIN))


def test_approval_rate_limit():
    _, ingestion, approvals = _setup(approvals_per_minute=1)
    staged = _stage(ingestion, ROUND_TRIP_CSV)
    _run(approvals.approve_format_and_migrate_orders(staged.format_id, ADMIN))
    with pytest.raises(RateLimitExceeded):
        _run(approvals.approve_format_and_migrate_orders(staged.format_id, ADMIN))


# ── Rejection ────────────────────────────────────────────────────────────────

def test_rejection_rejects_rows_and_dismisses_feedback():
    store, ingestion, approvals = _setup()
    staged = _stage(ingestion, UNKNOWN_CSV)

    out = _run(approvals.reject_format(staged.format_id, ADMIN, "not a trade export"))

    assert out == {
        "format_id": staged.format_id, "rejected_count": 2, "reason": "not a trade export",
    }
    rows = _rows(store, staged.format_id)
    assert {r.migration_status for r in rows} == {MigrationStatus.REJECTED}
    assert rows[0].processing_errors[-1] == "Format rejected: not a trade export"
    assert _run(store.list_orders(USER)) == []

    [item] = _run(store.list_feedback(format_id=staged.format_id))
    assert item.status == FeedbackStatus.DISMISSED

    batch = _run(store.get_import_batch(staged.import_batch_id))
    assert batch.status == ImportStatus.FAILED

    with pytest.raises(IllegalTransitionError):
        _run(approvals.approve_format_and_migrate_orders(staged.format_id, ADMIN))


def test_rejected_format_is_superseded_on_next_upload():
    store, ingestion, approvals = _setup()
    staged = _stage(ingestion, UNKNOWN_CSV)
    _run(approvals.reject_format(staged.format_id, ADMIN, "garbage"))

    again = _stage(ingestion, UNKNOWN_CSV)

    assert again.format_id != staged.format_id
    fmt = _run(store.get_format(again.format_id))
    assert fmt.supersedes_id == staged.format_id


# ── Orphan recovery ──────────────────────────────────────────────────────────

def _orphan(store, format_id, symbol, **changes):
    row = OrderStaging(
        user_id=USER,
        broker_csv_format_id=format_id,
        import_batch_id="batch-orphan",
        row_index=0,
        raw_csv_row={
            "Symbol": symbol,
            "Side": "BUY",
            "Qty": "1",
            "Price": "50.00",
            "Exec Time": "2024-03-06 10:00:00",
        },
        **changes,
    )
    [stored] = _run(store.insert_staging([row]))
    return stored


def test_orphan_processing_recovers_left_behind_rows():
    store, ingestion, approvals = _setup()
    staged = _stage(ingestion, ROUND_TRIP_CSV)
    _run(approvals.approve_format_and_migrate_orders(staged.format_id, ADMIN))

    pending = _orphan(store, staged.format_id, "AMD")
    stale = _orphan(
        store, staged.format_id, "INTC",
        migration_status=MigrationStatus.MIGRATING,
        claimed_at=utcnow() - timedelta(hours=1),
    )
    capped = _orphan(
        store, staged.format_id, "QCOM",
        migration_status=MigrationStatus.FAILED,
        retry_count=3,
    )

    out = _run(approvals.process_orphaned_staging_records(ADMIN))

    assert out["reclaimed"] == 1
    assert out["processed"] == 2
    assert out["skipped"] == 1
    assert out["approved_formats_checked"] == 1

    assert _run(store.get_staging(pending.id)).migration_status == MigrationStatus.MIGRATED
    recovered = _run(store.get_staging(stale.id))
    assert recovered.migration_status == MigrationStatus.MIGRATED
    assert recovered.retry_count == 1
    assert _run(store.get_staging(capped.id)).migration_status == MigrationStatus.FAILED

    # a second run has nothing left to do
    out = _run(approvals.process_orphaned_staging_records(ADMIN))
    assert out["processed"] == 0 and out["reclaimed"] == 0


def test_row_whose_order_was_written_before_a_crash_is_linked():
    store, ingestion, approvals = _setup()
    staged = _stage(ingestion, ROUND_TRIP_CSV)
    _run(approvals.approve_format_and_migrate_orders(staged.format_id, ADMIN))

    # order committed, row never marked MIGRATED
    row = _rows(store, staged.format_id)[0]
    order_id = row.migrated_order_id
    stuck = store.staging[row.id]
    stuck.migration_status = MigrationStatus.MIGRATING
    stuck.claimed_at = utcnow() - timedelta(hours=1)
    stuck.migrated_order_id = None

    out = _run(approvals.process_orphaned_staging_records(ADMIN))

    assert out["reclaimed"] == 1
    assert out["processed"] == 1
    assert out["errors"] == 0
    recovered = _run(store.get_staging(row.id))
    assert recovered.migration_status == MigrationStatus.MIGRATED
    assert recovered.migrated_order_id == order_id
    assert len(_run(store.list_orders(USER))) == 2


def test_recent_migrating_rows_are_left_alone():
    store, ingestion, approvals = _setup()
    staged = _stage(ingestion, ROUND_TRIP_CSV)
    _run(approvals.approve_format_and_migrate_orders(staged.format_id, ADMIN))
    busy = _orphan(
        store, staged.format_id, "AMD",
        migration_status=MigrationStatus.MIGRATING,
        claimed_at=utcnow(),
    )

    out = _run(approvals.process_orphaned_staging_records(ADMIN))

    assert out["reclaimed"] == 0
    assert _run(store.get_staging(busy.id)).migration_status == MigrationStatus.MIGRATING


def test_pending_formats_are_not_touched_by_orphan_processing():
    store, ingestion, approvals = _setup()
    staged = _stage(ingestion, ROUND_TRIP_CSV)

    out = _run(approvals.process_orphaned_staging_records(ADMIN))

    assert out["approved_formats_checked"] == 0
    assert {r.migration_status for r in _rows(store, staged.format_id)} == {
        MigrationStatus.PENDING,
    }


# ── Dashboards ───────────────────────────────────────────────────────────────

def test_stats():
    _, ingestion, approvals = _setup()
    approved = _stage(ingestion, ROUND_TRIP_CSV)
    rejected = _stage(ingestion, UNKNOWN_CSV)
    _stage(ingestion, OPAQUE_CSV)
    _run(approvals.approve_format_and_migrate_orders(approved.format_id, ADMIN))
    _run(approvals.reject_format(rejected.format_id, "admin-2", "nope"))

    stats = _run(approvals.approval_stats())
    assert stats["approved"] == 1
    assert stats["rejected"] == 1
    assert stats["pending_review"] == 1
    assert stats["approvals_by_admin"] == {ADMIN: 1}

    staging = _run(approvals.pending_staging_stats())
    assert staging["by_status"]["MIGRATED"] == 2
    assert staging["by_status"]["REJECTED"] == 2
    assert staging["by_status"]["PENDING"] == 2
    assert staging["failed_at_retry_cap"] == 0
