"""Broker CSV ingestion core for the trading journal.

Turns unknown-format broker exports into validated orders, gates new
formats behind admin review, and rebuilds round-trip trades.
"""

__version__ = "0.1.0"
