"""Explicit state machines for staged rows and broker formats.

All status changes go through ``transition_staging`` / ``transition_format``
(or ``check_staging`` for compare-and-set writes), so an illegal move such
as MIGRATED -> PENDING is an ``IllegalTransitionError`` rather than a
silent field overwrite.

Staged row::

    PENDING ──> APPROVED ──> MIGRATING ──> MIGRATED
       │                        │  ▲
       │                        ▼  │ (retry)
       └──> REJECTED          FAILED

Broker format::

    PENDING_REVIEW ──> APPROVED
          └──────────> REJECTED
"""

from __future__ import annotations

from ..errors import IllegalTransitionError
from ..models import BrokerCsvFormat, FormatStatus, MigrationStatus, OrderStaging

STAGING_TRANSITIONS: dict[MigrationStatus, frozenset[MigrationStatus]] = {
    MigrationStatus.PENDING: frozenset({MigrationStatus.APPROVED, MigrationStatus.REJECTED}),
    MigrationStatus.APPROVED: frozenset({MigrationStatus.MIGRATING}),
    MigrationStatus.MIGRATING: frozenset({MigrationStatus.MIGRATED, MigrationStatus.FAILED}),
    MigrationStatus.FAILED: frozenset({MigrationStatus.MIGRATING}),
    MigrationStatus.MIGRATED: frozenset(),
    MigrationStatus.REJECTED: frozenset(),
}

FORMAT_TRANSITIONS: dict[FormatStatus, frozenset[FormatStatus]] = {
    FormatStatus.PENDING_REVIEW: frozenset({FormatStatus.APPROVED, FormatStatus.REJECTED}),
    FormatStatus.APPROVED: frozenset(),
    FormatStatus.REJECTED: frozenset(),
}


def can_transition_staging(current: MigrationStatus, target: MigrationStatus) -> bool:
    return target in STAGING_TRANSITIONS[current]


def check_staging(current: MigrationStatus, target: MigrationStatus) -> None:
    if not can_transition_staging(current, target):
        raise IllegalTransitionError("staging", current.value, target.value)


def transition_staging(row: OrderStaging, target: MigrationStatus) -> OrderStaging:
    """Move a staged row to ``target`` in place. Raises on illegal moves."""
    check_staging(row.migration_status, target)
    row.migration_status = target
    return row


def check_format(current: FormatStatus, target: FormatStatus) -> None:
    if target not in FORMAT_TRANSITIONS[current]:
        raise IllegalTransitionError("format", current.value, target.value)


def transition_format(fmt: BrokerCsvFormat, target: FormatStatus) -> BrokerCsvFormat:
    check_format(fmt.status, target)
    fmt.status = target
    return fmt
