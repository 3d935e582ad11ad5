"""Error taxonomy for CSV ingestion, staging, approval and trade building.

File-level errors (``ParseError``) abort an upload. Row-level errors
(``ValidationError``, ``MigrationError``) are recorded on the row and the
batch continues. ``MappingError`` never escapes the column mapper; it is
turned into a fail-safe mapping that forces staging.
"""

from __future__ import annotations

from typing import Optional


class TradeJournalError(Exception):
    """Base class for every error raised by the ingestion core."""


class ParseError(TradeJournalError):
    """The uploaded file is not well-formed CSV."""

    def __init__(self, message: str, *, line: Optional[int] = None) -> None:
        self.line = line
        if line is not None:
            message = f"line {line}: {message}"
        super().__init__(message)


class MappingError(TradeJournalError):
    """The external AI mapping call failed, timed out, or returned garbage."""


class ValidationError(TradeJournalError):
    """A mapped row is missing a required field or has a malformed value."""

    def __init__(self, issues: list[str]) -> None:
        self.issues = list(issues)
        super().__init__("Validation failed: " + "; ".join(self.issues))


class MigrationError(TradeJournalError):
    """A staged row could not be turned into an Order."""


class ConcurrentApprovalError(TradeJournalError):
    """Another approval holds the format lock. Safe to retry."""

    retryable = True

    def __init__(self, format_id: str) -> None:
        self.format_id = format_id
        super().__init__(
            f"Another approval for format {format_id} is in progress, retry shortly"
        )


class IllegalTransitionError(TradeJournalError):
    """A status change not allowed by the state machine."""

    def __init__(self, kind: str, current: str, target: str) -> None:
        self.kind = kind
        self.current = current
        self.target = target
        super().__init__(f"Illegal {kind} transition {current} -> {target}")


class FormatNotFoundError(TradeJournalError):
    def __init__(self, format_id: str) -> None:
        self.format_id = format_id
        super().__init__(f"Broker CSV format {format_id} not found")


class RateLimitExceeded(TradeJournalError):
    """A windowed counter is full. Callers are denied, never let through."""

    def __init__(self, scope: str, key: str, limit: int, retry_after: float) -> None:
        self.scope = scope
        self.key = key
        self.limit = limit
        self.retry_after = retry_after
        super().__init__(
            f"{scope} limit of {limit} reached for {key}; retry in {retry_after:.0f}s"
        )


class StagingLimitExceeded(TradeJournalError):
    def __init__(self, user_id: str, pending: int, limit: int) -> None:
        self.user_id = user_id
        self.pending = pending
        self.limit = limit
        super().__init__(
            f"Staging limit exceeded: {pending} pending orders (maximum {limit})"
        )


class LockUnavailable(TradeJournalError):
    """Raised by the storage layer when a non-blocking advisory lock is taken."""

    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"Lock {name} is held by another operation")


class DataIntegrityWarning(UserWarning):
    """A built trade references orders that do not belong to it."""
