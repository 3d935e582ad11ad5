"""Typed records shared by the ingestion core.

Every entity is a plain dataclass. ``to_record`` / ``from_record`` convert
them to and from JSON-friendly dicts (enums as values, datetimes as ISO
strings) for the Supabase tables.
"""

from __future__ import annotations

import typing
import uuid
from dataclasses import MISSING, dataclass, field, fields, is_dataclass
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Optional, Union


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


# ---------------------------------------------------------------------------
# Status enums
# ---------------------------------------------------------------------------


class MigrationStatus(str, Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    MIGRATING = "MIGRATING"
    MIGRATED = "MIGRATED"
    FAILED = "FAILED"
    REJECTED = "REJECTED"


class FormatStatus(str, Enum):
    PENDING_REVIEW = "PENDING_REVIEW"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


class ImportStatus(str, Enum):
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    PENDING_REVIEW = "PENDING_REVIEW"
    FAILED = "FAILED"


class FeedbackStatus(str, Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    DISMISSED = "DISMISSED"


class OrderSide(str, Enum):
    BUY = "BUY"
    SELL = "SELL"


class TradeSide(str, Enum):
    LONG = "LONG"
    SHORT = "SHORT"


class TradeStatus(str, Enum):
    OPEN = "OPEN"
    CLOSED = "CLOSED"
    BLANK = "BLANK"


class HoldingPeriod(str, Enum):
    SCALP = "SCALP"
    INTRADAY = "INTRADAY"
    SWING = "SWING"
    POSITION = "POSITION"
    LONG_TERM = "LONG_TERM"


class MarketSession(str, Enum):
    PRE_MARKET = "PRE_MARKET"
    REGULAR = "REGULAR"
    AFTER_HOURS = "AFTER_HOURS"


# ---------------------------------------------------------------------------
# Column mapping
# ---------------------------------------------------------------------------


@dataclass
class FieldMapping:
    """One CSV header mapped to a canonical field (or ``broker_metadata``)."""

    header: str
    field: str
    confidence: float
    rationale: str = ""
    combined_with: list[str] = field(default_factory=list)
    transform: Optional[str] = None  # uppercase | lowercase | number | date


@dataclass
class MappingResult:
    mappings: list[FieldMapping] = field(default_factory=list)
    overall_confidence: float = 0.0
    requires_user_review: bool = True
    missing_required: list[str] = field(default_factory=list)
    suggestions: list[str] = field(default_factory=list)
    source: str = "heuristic"  # claude | heuristic | user | format
    failed: bool = False
    error: Optional[str] = None

    def by_field(self) -> dict[str, FieldMapping]:
        """Canonical field -> mapping, excluding the metadata bucket."""
        return {
            m.field: m for m in self.mappings if m.field != "broker_metadata"
        }

    def by_header(self) -> dict[str, FieldMapping]:
        return {m.header: m for m in self.mappings}


# ---------------------------------------------------------------------------
# Persistent entities
# ---------------------------------------------------------------------------


@dataclass
class BrokerCsvFormat:
    broker_id: str
    header_signature: str
    format_name: str
    headers: list[str]
    id: str = field(default_factory=new_id)
    sample_data: list[dict[str, Any]] = field(default_factory=list)
    field_mappings: list[FieldMapping] = field(default_factory=list)
    confidence: float = 0.0
    status: FormatStatus = FormatStatus.PENDING_REVIEW
    usage_count: int = 1
    created_at: datetime = field(default_factory=utcnow)
    last_used_at: Optional[datetime] = None
    approved_by: Optional[str] = None
    approved_at: Optional[datetime] = None
    rejected_by: Optional[str] = None
    rejected_at: Optional[datetime] = None
    rejection_reason: Optional[str] = None
    supersedes_id: Optional[str] = None

    @property
    def is_approved(self) -> bool:
        return self.status == FormatStatus.APPROVED

    def mapping_result(self, threshold: float) -> MappingResult:
        """The stored field mappings as a MappingResult (source ``format``),
        scored against the caller's review threshold."""
        from .parsing.confidence import summarize

        return summarize(list(self.field_mappings), source="format", threshold=threshold)


@dataclass
class OrderStaging:
    user_id: str
    broker_csv_format_id: str
    import_batch_id: str
    row_index: int
    raw_csv_row: dict[str, str]
    id: str = field(default_factory=new_id)
    initial_mapped_data: dict[str, Any] = field(default_factory=dict)
    migration_status: MigrationStatus = MigrationStatus.PENDING
    retry_count: int = 0
    processing_errors: list[str] = field(default_factory=list)
    last_retry_at: Optional[datetime] = None
    claimed_at: Optional[datetime] = None
    migrated_order_id: Optional[str] = None
    migrated_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class Order:
    user_id: str
    broker_id: str
    import_batch_id: str
    symbol: str
    side: OrderSide
    quantity: float
    id: str = field(default_factory=new_id)
    price: Optional[float] = None
    order_type: str = "MARKET"
    order_status: Optional[str] = None
    order_placed_time: Optional[datetime] = None
    order_executed_time: Optional[datetime] = None
    order_id: Optional[str] = None
    parent_order_id: Optional[str] = None
    time_in_force: Optional[str] = None
    stop_price: Optional[float] = None
    order_updated_time: Optional[datetime] = None
    order_cancelled_time: Optional[datetime] = None
    account_id: Optional[str] = None
    order_account: Optional[str] = None
    order_route: Optional[str] = None
    tags: list[str] = field(default_factory=list)
    commission: Optional[float] = None
    fees: Optional[float] = None
    broker_metadata: dict[str, Any] = field(default_factory=dict)
    staging_id: Optional[str] = None
    used_in_trade: bool = False
    trade_id: Optional[str] = None
    sequence: int = 0
    created_at: datetime = field(default_factory=utcnow)

    @property
    def signed_quantity(self) -> float:
        return self.quantity if self.side == OrderSide.BUY else -self.quantity

    def duplicate_key(self) -> tuple:
        return (
            self.user_id,
            self.broker_id,
            self.symbol,
            self.order_executed_time,
            self.side.value,
            float(self.quantity),
        )


@dataclass
class OrderAllocation:
    """How much of one order a trade consumed, and on which leg."""

    order_id: str
    quantity: float
    role: str  # entry | exit


@dataclass
class Trade:
    user_id: str
    symbol: str
    id: str = field(default_factory=new_id)
    side: Optional[TradeSide] = None
    status: TradeStatus = TradeStatus.OPEN
    quantity: float = 0.0
    remaining_quantity: float = 0.0
    entry_price: Optional[float] = None
    exit_price: Optional[float] = None
    pnl: Optional[float] = None
    entry_date: Optional[datetime] = None
    exit_date: Optional[datetime] = None
    holding_period: Optional[HoldingPeriod] = None
    market_session: Optional[MarketSession] = None
    orders_in_trade: list[str] = field(default_factory=list)
    order_allocations: list[OrderAllocation] = field(default_factory=list)
    executions: int = 0
    cost_basis: float = 0.0
    proceeds: float = 0.0
    time_in_trade_seconds: Optional[int] = None
    trade_date: Optional[date] = None
    is_calculated: bool = False
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class ImportBatch:
    user_id: str
    broker_id: str
    filename: str
    id: str = field(default_factory=new_id)
    status: ImportStatus = ImportStatus.PROCESSING
    format_id: Optional[str] = None
    total_rows: int = 0
    imported_rows: int = 0
    staged_rows: int = 0
    failed_rows: int = 0
    skipped_duplicates: int = 0
    mapping_confidence: Optional[float] = None
    account_tags: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    created_at: datetime = field(default_factory=utcnow)
    completed_at: Optional[datetime] = None


@dataclass
class FeedbackItem:
    """Audit trail entry linking a mapping decision to a human correction."""

    format_id: str
    source: str  # ai | user | admin
    id: str = field(default_factory=new_id)
    user_id: Optional[str] = None
    import_batch_id: Optional[str] = None
    status: FeedbackStatus = FeedbackStatus.PENDING
    ai_mapping: list[FieldMapping] = field(default_factory=list)
    corrected_mapping: list[FieldMapping] = field(default_factory=list)
    corrected_fields: int = 0
    confidence: Optional[float] = None
    reviewed_by: Optional[str] = None
    note: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    resolved_at: Optional[datetime] = None


@dataclass
class Page:
    items: list[Any]
    total: int
    has_more: bool


# ---------------------------------------------------------------------------
# Record conversion
# ---------------------------------------------------------------------------


def plain_value(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if is_dataclass(value) and not isinstance(value, type):
        return to_record(value)
    if isinstance(value, (list, tuple)):
        return [plain_value(v) for v in value]
    if isinstance(value, dict):
        return {k: plain_value(v) for k, v in value.items()}
    return value


def to_record(obj: Any) -> dict[str, Any]:
    """Dataclass instance -> JSON-friendly dict."""
    return {f.name: plain_value(getattr(obj, f.name)) for f in fields(obj)}


def _coerce(value: Any, hint: Any) -> Any:
    if value is None:
        return None
    origin = typing.get_origin(hint)
    if origin is Union:
        args = [a for a in typing.get_args(hint) if a is not type(None)]
        return _coerce(value, args[0]) if len(args) == 1 else value
    if origin is list:
        args = typing.get_args(hint)
        inner = args[0] if args else Any
        return [_coerce(v, inner) for v in value]
    if not isinstance(hint, type):
        return value
    if issubclass(hint, Enum):
        return hint(value)
    if hint is datetime and isinstance(value, str):
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    if hint is date and isinstance(value, str):
        return date.fromisoformat(value[:10])
    if hint is float and isinstance(value, (int, str)):
        return float(value)
    if is_dataclass(hint) and isinstance(value, dict):
        return from_record(hint, value)
    return value


def from_record(cls: type, data: dict[str, Any]) -> Any:
    """Dict (e.g. a Supabase row) -> dataclass instance. Unknown keys are ignored."""
    hints = typing.get_type_hints(cls)
    kwargs = {}
    for f in fields(cls):
        if f.name not in data:
            continue
        # NULL columns fall back to the dataclass default when there is one
        has_default = f.default is not MISSING or f.default_factory is not MISSING
        if data[f.name] is None and has_default:
            continue
        kwargs[f.name] = _coerce(data[f.name], hints.get(f.name, Any))
    return cls(**kwargs)
