"""Row validation at the mapping boundary.

``validate_values`` lists everything wrong with one mapped row,
``build_order`` turns a clean row into a typed ``Order`` (or raises
``ValidationError``), and ``diagnose_row`` produces the admin-facing
debugging record for a staged row.
"""

from __future__ import annotations

import math
import re
from datetime import datetime, timedelta
from typing import Any, Optional

from ..errors import ValidationError
from ..models import FieldMapping, Order, OrderSide
from .schema import DATE_FIELDS, METADATA_FIELD, REQUIRED_FIELDS

SYMBOL_PATTERN = re.compile(r"^[A-Z0-9\-\.]{1,12}$")
MAX_QUANTITY = 1_000_000
MAX_PRICE = 1_000_000
MIN_DATE = datetime(1990, 1, 1)


def _max_date(now: Optional[datetime]) -> datetime:
    # Mapped timestamps are naive exchange-local; compare naive to naive.
    now = (now or datetime.now()).replace(tzinfo=None)
    return now + timedelta(days=365)


def validate_values(values: dict[str, Any], *, now: Optional[datetime] = None) -> list[str]:
    issues: list[str] = []

    for name in REQUIRED_FIELDS:
        if values.get(name) in (None, ""):
            issues.append(f"Missing required field: {name}")
    if values.get("order_executed_time") is None and values.get("order_placed_time") is None:
        issues.append("Missing required field: order_executed_time")

    symbol = values.get("symbol")
    if symbol and not SYMBOL_PATTERN.match(str(symbol)):
        issues.append(f"Invalid symbol {symbol!r}: must match {SYMBOL_PATTERN.pattern}")

    if values.get("side_invalid"):
        issues.append(f"Invalid side value {values.get('side')!r}")

    qty = values.get("quantity")
    if qty is not None:
        if not isinstance(qty, (int, float)) or not math.isfinite(qty):
            issues.append(f"Invalid quantity {qty!r}")
        elif qty <= 0:
            issues.append(f"Quantity must be positive, got {qty}")
        elif qty > MAX_QUANTITY:
            issues.append(f"Quantity {qty} exceeds maximum {MAX_QUANTITY}")

    for name in ("price", "stop_price"):
        price = values.get(name)
        if isinstance(price, (int, float)) and not (
            math.isfinite(price) and 0 <= price <= MAX_PRICE
        ):
            issues.append(f"Invalid {name} {price}: must be between 0 and {MAX_PRICE}")

    latest = _max_date(now)
    for name in sorted(DATE_FIELDS):
        ts = values.get(name)
        if ts is None:
            continue
        if not isinstance(ts, datetime):
            issues.append(f"Invalid date for {name}: {ts!r}")
        elif not MIN_DATE <= ts <= latest:
            issues.append(f"Date out of range for {name}: {ts.isoformat()}")

    return issues


def build_order(
    values: dict[str, Any],
    *,
    user_id: str,
    broker_id: str,
    import_batch_id: str,
    staging_id: Optional[str] = None,
    account_tags: Optional[list[str]] = None,
    now: Optional[datetime] = None,
) -> Order:
    """Validated mapped values -> Order. Raises ``ValidationError``."""
    issues = validate_values(values, now=now)
    if issues:
        raise ValidationError(issues)

    tags = list(values.get("tags") or [])
    for tag in account_tags or []:
        if tag not in tags:
            tags.append(tag)

    return Order(
        user_id=user_id,
        broker_id=broker_id,
        import_batch_id=import_batch_id,
        staging_id=staging_id,
        symbol=values["symbol"],
        side=OrderSide(values["side"]),
        quantity=float(values["quantity"]),
        price=values.get("price"),
        order_type=values.get("order_type") or "MARKET",
        order_status=values.get("order_status"),
        order_placed_time=values.get("order_placed_time"),
        order_executed_time=values.get("order_executed_time"),
        order_id=values.get("order_id"),
        parent_order_id=values.get("parent_order_id"),
        time_in_force=values.get("time_in_force"),
        stop_price=values.get("stop_price"),
        order_updated_time=values.get("order_updated_time"),
        order_cancelled_time=values.get("order_cancelled_time"),
        account_id=values.get("account_id"),
        order_account=values.get("order_account"),
        order_route=values.get("order_route"),
        tags=tags,
        commission=values.get("commission"),
        fees=values.get("fees"),
        broker_metadata=dict(values.get(METADATA_FIELD) or {}),
    )


def diagnose_row(
    raw_row: dict[str, str],
    mappings: list[FieldMapping],
    values: dict[str, Any],
    *,
    now: Optional[datetime] = None,
) -> dict[str, Any]:
    """Admin debugging record: raw cells, attempted mapping, every issue.

    For a missing required field, the issue names the CSV column that was
    supposed to feed it and what that column held.
    """
    field_to_header = {
        m.field: m.header for m in mappings if m.field != METADATA_FIELD
    }
    issues: list[str] = []
    for issue in validate_values(values, now=now):
        if issue.startswith("Missing required field: "):
            name = issue.rsplit(": ", 1)[1]
            header = field_to_header.get(name)
            if header is None and name == "order_executed_time":
                header = field_to_header.get("order_placed_time")
            if header is not None:
                issue = (
                    f"{issue} (column {header!r} holds {raw_row.get(header, '')!r})"
                )
            else:
                issue = f"{issue} (no CSV column is mapped to it)"
        issues.append(issue)

    for name in sorted(DATE_FIELDS):
        header = field_to_header.get(name)
        if header and raw_row.get(header) and values.get(name) is None:
            issues.append(f"Invalid date format in column {header!r}: {raw_row[header]!r}")

    return {
        "raw_csv_row": dict(raw_row),
        "attempted_mapping": {m.header: m.field for m in mappings},
        "mapped_values": {
            k: (v.isoformat() if isinstance(v, datetime) else v)
            for k, v in values.items()
        },
        "issues": issues,
    }
