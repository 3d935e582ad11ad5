"""Shared helpers for the test suite: settings, fake AI ports, sample CSVs."""

from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Optional

from tradejournal.config import Settings
from tradejournal.errors import MappingError
from tradejournal.models import FieldMapping, Order, OrderSide
from tradejournal.parsing.claude_mapper import MappingPort, MappingSuggestion


def _run(coro):
    """Run an async service call from sync test code."""
    return asyncio.run(coro)


def make_settings(**overrides) -> Settings:
    """Settings that never touch the environment (no API key, no Supabase)."""
    return Settings(**overrides)


# ── CSV fixtures ─────────────────────────────────────────────────────────────

HEADERS = "Symbol,Side,Qty,Price,Exec Time"

ROUND_TRIP_CSV = (
    f"{HEADERS}\n"
    "AAPL,BUY,100,10.00,2024-03-01 09:45:00\n"
    "AAPL,SELL,100,12.00,2024-03-01 10:15:00\n"
)

SECOND_DAY_CSV = (
    f"{HEADERS}\n"
    "MSFT,BUY,10,400.00,2024-03-04 10:00:00\n"
    "MSFT,SELL,10,405.50,2024-03-04 11:30:00\n"
    "TSLA,SELL,5,180.00,2024-03-04 12:00:00\n"
)

# Headers the heuristic table does not know: every column lands in metadata.
UNKNOWN_CSV = (
    "Col A,Col B,Col C\n"
    "AAPL,BOT,100\n"
    "AAPL,SLD,100\n"
)


# ── Fake AI ports ────────────────────────────────────────────────────────────


class FakeMappingPort(MappingPort):
    """Returns fixed ``{header: (field, confidence)}`` suggestions."""

    def __init__(self, mapping: dict[str, tuple[str, float]], suggestions: Optional[list[str]] = None):
        self.mapping = mapping
        self.suggestions = suggestions or []
        self.calls = 0

    async def suggest(self, headers, sample_rows, broker_name=None):
        self.calls += 1
        return MappingSuggestion(
            mappings=[
                FieldMapping(
                    header=h,
                    field=self.mapping.get(h, ("broker_metadata", 0.1))[0],
                    confidence=self.mapping.get(h, ("broker_metadata", 0.1))[1],
                    rationale="fake",
                )
                for h in headers
            ],
            suggestions=list(self.suggestions),
        )


class FailingMappingPort(MappingPort):
    def __init__(self, error: Exception | None = None):
        self.error = error or MappingError("model unavailable")

    async def suggest(self, headers, sample_rows, broker_name=None):
        raise self.error


class SlowMappingPort(MappingPort):
    async def suggest(self, headers, sample_rows, broker_name=None):
        await asyncio.sleep(5)
        raise AssertionError("timeout should have fired first")


def make_order(
    symbol: str,
    side: str,
    quantity: float,
    price: float,
    executed: datetime,
    *,
    user_id: str = "user-1",
    broker_id: str = "test-broker",
) -> Order:
    return Order(
        user_id=user_id,
        broker_id=broker_id,
        import_batch_id="batch-1",
        symbol=symbol,
        side=OrderSide(side),
        quantity=quantity,
        price=price,
        order_executed_time=executed,
        order_placed_time=executed,
    )
