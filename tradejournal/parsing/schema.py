"""Canonical order schema that every broker CSV is mapped onto.

Field descriptions double as the catalogue shown to Claude when it maps
columns, so keep them short and concrete.
"""

from __future__ import annotations

METADATA_FIELD = "broker_metadata"

# Critical fields first, then important, then optional. Order matters for
# the prompt.
ORDER_FIELDS: dict[str, str] = {
    # Critical
    "symbol": "Ticker symbol of the instrument (e.g. AAPL, SPY)",
    "side": "Direction of the order: BUY or SELL (Buy/Sell, Action, B/S)",
    "quantity": "Number of shares/contracts (Qty, Shares, Quantity)",
    "order_placed_time": "When the order was submitted (Time Placed, Order Time)",
    "order_executed_time": "When the order was filled (Exec Time, Fill Time, Trade Date)",
    # Important
    "price": "Fill or limit price per share (Price, Avg Price, Limit)",
    "order_type": "MARKET, LIMIT, STOP, STOP_LIMIT (Type, Order Type)",
    "order_status": "Order status (Filled, Cancelled, Working)",
    "order_id": "Broker order identifier (Order ID, Order #)",
    # Optional
    "parent_order_id": "Parent order identifier for brackets/OCO",
    "time_in_force": "DAY, GTC, IOC (TIF, Duration)",
    "stop_price": "Stop trigger price",
    "order_updated_time": "Last modification time",
    "order_cancelled_time": "Cancellation time",
    "account_id": "Account number",
    "order_account": "Account name or label",
    "order_route": "Route / exchange / venue",
    "tags": "User tags or categories",
    "commission": "Commission charged",
    "fees": "Regulatory and other fees",
}

CANONICAL_FIELDS = frozenset(ORDER_FIELDS) | {METADATA_FIELD}

CRITICAL_FIELDS = (
    "symbol",
    "side",
    "quantity",
    "order_placed_time",
    "order_executed_time",
)

# A row needs one of the two timestamps; the other is filled from it.
REQUIRED_FIELDS = ("symbol", "quantity", "side")
TIMESTAMP_FIELDS = ("order_executed_time", "order_placed_time")
EXECUTION_TIMESTAMP = "execution_timestamp"

DATE_FIELDS = frozenset({
    "order_placed_time",
    "order_executed_time",
    "order_updated_time",
    "order_cancelled_time",
})

NUMBER_FIELDS = frozenset({
    "quantity",
    "price",
    "stop_price",
    "commission",
    "fees",
})

TRANSFORMS = frozenset({"uppercase", "lowercase", "number", "date"})

# Confidence bands for per-header suggestions.
CONFIDENCE_HIGH = 0.8
CONFIDENCE_MEDIUM = 0.5
CONFIDENCE_LOW = 0.3
METADATA_CONFIDENCE = 0.1

# Lowercased, trimmed header -> (field, confidence). Exact matches only.
HEURISTIC_HEADERS: dict[str, tuple[str, float]] = {
    # symbol
    "symbol": ("symbol", 0.9),
    "ticker": ("symbol", 0.8),
    "instrument": ("symbol", 0.7),
    "stock": ("symbol", 0.7),
    "security": ("symbol", 0.6),
    # side
    "side": ("side", 0.9),
    "buy/sell": ("side", 0.9),
    "b/s": ("side", 0.8),
    "action": ("side", 0.7),
    "direction": ("side", 0.6),
    "transaction type": ("side", 0.6),
    # quantity
    "quantity": ("quantity", 0.9),
    "qty": ("quantity", 0.9),
    "shares": ("quantity", 0.8),
    "filled qty": ("quantity", 0.8),
    "volume": ("quantity", 0.7),
    "amount": ("quantity", 0.6),
    "size": ("quantity", 0.6),
    # price
    "price": ("price", 0.8),
    "limit price": ("price", 0.9),
    "limitprice": ("price", 0.9),
    "limit": ("price", 0.8),
    "avg price": ("price", 0.8),
    "average price": ("price", 0.8),
    "fill price": ("price", 0.9),
    "execution price": ("price", 0.7),
    # stop
    "stop price": ("stop_price", 0.9),
    "stopprice": ("stop_price", 0.9),
    "stop": ("stop_price", 0.8),
    # order type / status
    "order type": ("order_type", 0.9),
    "ordertype": ("order_type", 0.9),
    "type": ("order_type", 0.7),
    "status": ("order_status", 0.8),
    "order status": ("order_status", 0.9),
    "orderstatus": ("order_status", 0.9),
    "state": ("order_status", 0.7),
    # placed time
    "time placed": ("order_placed_time", 0.9),
    "timeplaced": ("order_placed_time", 0.9),
    "placed time": ("order_placed_time", 0.9),
    "order time": ("order_placed_time", 0.8),
    "submitted time": ("order_placed_time", 0.8),
    "created time": ("order_placed_time", 0.7),
    # executed time
    "exec time": ("order_executed_time", 0.9),
    "exectime": ("order_executed_time", 0.9),
    "executed time": ("order_executed_time", 0.9),
    "execution time": ("order_executed_time", 0.9),
    "exec date": ("order_executed_time", 0.8),
    "execution date": ("order_executed_time", 0.8),
    "fill time": ("order_executed_time", 0.8),
    "filled time": ("order_executed_time", 0.8),
    "fill date": ("order_executed_time", 0.8),
    "filled date": ("order_executed_time", 0.8),
    "trade time": ("order_executed_time", 0.7),
    "trade date": ("order_executed_time", 0.7),
    "date/time": ("order_executed_time", 0.7),
    "datetime": ("order_executed_time", 0.7),
    "date": ("order_executed_time", 0.6),
    # updated / cancelled
    "updated time": ("order_updated_time", 0.9),
    "last modified": ("order_updated_time", 0.8),
    "modified time": ("order_updated_time", 0.8),
    "cancelled time": ("order_cancelled_time", 0.9),
    "cancel time": ("order_cancelled_time", 0.8),
    # ids
    "order id": ("order_id", 0.9),
    "orderid": ("order_id", 0.9),
    "order #": ("order_id", 0.8),
    "order number": ("order_id", 0.8),
    "order ref": ("order_id", 0.8),
    "id": ("order_id", 0.7),
    "parent order": ("parent_order_id", 0.9),
    "parent id": ("parent_order_id", 0.8),
    "original order": ("parent_order_id", 0.7),
    # misc
    "time in force": ("time_in_force", 0.9),
    "tif": ("time_in_force", 0.8),
    "duration": ("time_in_force", 0.7),
    "account": ("account_id", 0.8),
    "account id": ("account_id", 0.9),
    "account number": ("account_id", 0.9),
    "acct": ("order_account", 0.7),
    "account name": ("order_account", 0.8),
    "route": ("order_route", 0.8),
    "exchange": ("order_route", 0.7),
    "venue": ("order_route", 0.7),
    "tags": ("tags", 0.9),
    "tag": ("tags", 0.8),
    "category": ("tags", 0.6),
    "commission": ("commission", 0.9),
    "comm": ("commission", 0.8),
    "fees": ("fees", 0.9),
    "fee": ("fees", 0.8),
    "reg fee": ("fees", 0.8),
}


def is_critical(field_name: str) -> bool:
    return field_name in CRITICAL_FIELDS


def normalize_header(header: str) -> str:
    return " ".join(header.strip().casefold().split())
