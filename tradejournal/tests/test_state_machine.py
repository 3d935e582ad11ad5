"""Tests for the staging-row and format status machines."""

from __future__ import annotations

import pytest

from tradejournal.errors import IllegalTransitionError
from tradejournal.ingestion.state_machine import (
    can_transition_staging,
    transition_format,
    transition_staging,
)
from tradejournal.models import BrokerCsvFormat, FormatStatus, MigrationStatus, OrderStaging

S = MigrationStatus


def _row(status: MigrationStatus) -> OrderStaging:
    return OrderStaging(
        user_id="u1", broker_csv_format_id="f1", import_batch_id="b1",
        row_index=0, raw_csv_row={}, migration_status=status,
    )


@pytest.mark.parametrize("current, target", [
    (S.PENDING, S.APPROVED),
    (S.PENDING, S.REJECTED),
    (S.APPROVED, S.MIGRATING),
    (S.MIGRATING, S.MIGRATED),
    (S.MIGRATING, S.FAILED),
    (S.FAILED, S.MIGRATING),
])
def test_legal_staging_moves(current, target):
    row = transition_staging(_row(current), target)
    assert row.migration_status == target


@pytest.mark.parametrize("current, target", [
    (S.MIGRATED, S.PENDING),
    (S.MIGRATED, S.MIGRATING),
    (S.REJECTED, S.PENDING),
    (S.REJECTED, S.APPROVED),
    (S.PENDING, S.MIGRATED),
    (S.FAILED, S.REJECTED),
])
def test_illegal_staging_moves(current, target):
    row = _row(current)
    with pytest.raises(IllegalTransitionError):
        transition_staging(row, target)
    assert row.migration_status == current


def test_terminal_states_have_no_exits():
    for target in S:
        assert not can_transition_staging(S.MIGRATED, target)
        assert not can_transition_staging(S.REJECTED, target)


def test_format_cannot_leave_rejected():
    fmt = BrokerCsvFormat(broker_id="b", header_signature="sig", format_name="f", headers=[])
    transition_format(fmt, FormatStatus.REJECTED)
    assert not fmt.is_approved
    with pytest.raises(IllegalTransitionError):
        transition_format(fmt, FormatStatus.APPROVED)
