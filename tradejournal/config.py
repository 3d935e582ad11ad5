"""Runtime settings for the ingestion core.

Reads everything from environment variables:
    ANTHROPIC_API_KEY      – Claude key for column mapping (optional)
    SUPABASE_URL           – project URL (optional)
    SUPABASE_SERVICE_KEY   – service_role key (optional)
    TRADEJOURNAL_*         – thresholds, limits and timeouts (see below)

Missing keys never fail startup: without Claude the mapper uses its
heuristic table, without Supabase the in-memory store is used.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Optional

logger = logging.getLogger(__name__)

_settings: Optional["Settings"] = None


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning("[CONFIG] %s=%r is not a number; using %s", name, raw, default)
        return default


def _env_int(name: str, default: int) -> int:
    return int(_env_float(name, default))


@dataclass(frozen=True)
class Settings:
    anthropic_api_key: Optional[str] = None
    mapping_model: str = "claude-sonnet-4-5-20250929"
    mapping_timeout: float = 20.0
    review_threshold: float = 0.7
    sample_rows: int = 5

    migration_batch_size: int = 100
    max_retry_attempts: int = 3
    max_staged_per_user: int = 50_000
    stale_migration_minutes: int = 15
    lock_ttl_seconds: int = 900

    uploads_per_day: int = 5
    approvals_per_minute: int = 5
    feedback_per_hour: int = 20

    exchange_tz: str = "America/New_York"

    supabase_url: Optional[str] = None
    supabase_service_key: Optional[str] = None

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            anthropic_api_key=os.environ.get("ANTHROPIC_API_KEY") or None,
            mapping_model=os.environ.get("TRADEJOURNAL_MAPPING_MODEL", cls.mapping_model),
            mapping_timeout=_env_float("TRADEJOURNAL_MAPPING_TIMEOUT", cls.mapping_timeout),
            review_threshold=_env_float("TRADEJOURNAL_REVIEW_THRESHOLD", cls.review_threshold),
            sample_rows=_env_int("TRADEJOURNAL_SAMPLE_ROWS", cls.sample_rows),
            migration_batch_size=_env_int(
                "TRADEJOURNAL_MIGRATION_BATCH_SIZE", cls.migration_batch_size,
            ),
            max_retry_attempts=_env_int("TRADEJOURNAL_MAX_RETRY_ATTEMPTS", cls.max_retry_attempts),
            max_staged_per_user=_env_int("TRADEJOURNAL_MAX_STAGED_PER_USER", cls.max_staged_per_user),
            stale_migration_minutes=_env_int(
                "TRADEJOURNAL_STALE_MIGRATION_MINUTES", cls.stale_migration_minutes,
            ),
            lock_ttl_seconds=_env_int("TRADEJOURNAL_LOCK_TTL_SECONDS", cls.lock_ttl_seconds),
            uploads_per_day=_env_int("TRADEJOURNAL_UPLOADS_PER_DAY", cls.uploads_per_day),
            approvals_per_minute=_env_int("TRADEJOURNAL_APPROVALS_PER_MINUTE", cls.approvals_per_minute),
            feedback_per_hour=_env_int("TRADEJOURNAL_FEEDBACK_PER_HOUR", cls.feedback_per_hour),
            exchange_tz=os.environ.get("TRADEJOURNAL_EXCHANGE_TZ", cls.exchange_tz),
            supabase_url=os.environ.get("SUPABASE_URL") or None,
            supabase_service_key=os.environ.get("SUPABASE_SERVICE_KEY") or None,
        )

    @property
    def supabase_configured(self) -> bool:
        return bool(self.supabase_url and self.supabase_service_key)


def get_settings() -> Settings:
    """Lazy-load settings from the environment (cached)."""
    global _settings
    if _settings is None:
        _settings = Settings.from_env()
    return _settings


def reset_settings() -> None:
    """Drop the cached settings so the next call re-reads the environment."""
    global _settings
    _settings = None
