"""Persistence port and its implementations.

``get_store()`` picks Supabase when SUPABASE_URL / SUPABASE_SERVICE_KEY are
set, otherwise a process-local in-memory store so local dev keeps working.
"""

from __future__ import annotations

import logging
from typing import Optional

from ..config import Settings, get_settings
from .base import Store
from .memory import InMemoryStore

logger = logging.getLogger(__name__)

_store: Optional[Store] = None


def get_store(settings: Optional[Settings] = None) -> Store:
    global _store
    if _store is not None:
        return _store

    settings = settings or get_settings()
    if settings.supabase_configured:
        from .supabase_store import SupabaseStore

        _store = SupabaseStore(settings=settings)
    else:
        logger.info(
            "Supabase not configured (SUPABASE_URL / SUPABASE_SERVICE_KEY missing). "
            "Using the in-memory store."
        )
        _store = InMemoryStore()
    return _store


def set_store(store: Optional[Store]) -> None:
    """Override (or clear) the process-wide store."""
    global _store
    _store = store


__all__ = ["InMemoryStore", "Store", "get_store", "set_store"]
