"""FastAPI surface for the ingestion core.

Thin adapter: every route calls one service method and translates the
error taxonomy into status codes. Auth is handled upstream; the admin's
identity arrives in the ``X-Admin-Id`` header.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Any, Optional

from fastapi import FastAPI, Header
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from . import __version__
from .config import Settings, get_settings
from .errors import (
    ConcurrentApprovalError,
    FormatNotFoundError,
    IllegalTransitionError,
    LockUnavailable,
    ParseError,
    RateLimitExceeded,
    StagingLimitExceeded,
    TradeJournalError,
    ValidationError,
)
from .ingestion.approval import FormatApprovalService
from .ingestion.format_registry import FormatRegistry
from .ingestion.rate_limit import RateLimits
from .ingestion.service import IngestionService
from .ingestion.staging import OrderStagingService
from .models import MigrationStatus, plain_value
from .parsing.column_mapper import ColumnMapper
from .storage import get_store
from .storage.base import Store
from .trades.builder import TradeBuilder

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
)
logger = logging.getLogger(__name__)

# ─── Startup env-var check ───────────────────────────────────────────────────
logger.info(
    "[STARTUP] Env check: SUPABASE_URL=%s, SUPABASE_SERVICE_KEY=%s, ANTHROPIC_API_KEY=%s",
    "set" if os.environ.get("SUPABASE_URL") else "missing",
    "set" if os.environ.get("SUPABASE_SERVICE_KEY") else "missing",
    "set" if os.environ.get("ANTHROPIC_API_KEY") else "missing",
)

app = FastAPI(
    title="Trade Journal Ingestion",
    description="Broker CSV ingestion, format review and trade building",
    version=__version__,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:3000"],
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Admin-Id"],
)


# ─── Service wiring ──────────────────────────────────────────────────────────


@dataclass
class Services:
    store: Store
    ingestion: IngestionService
    approvals: FormatApprovalService
    registry: FormatRegistry
    staging: OrderStagingService
    trades: TradeBuilder

    @classmethod
    def build(
        cls,
        store: Store,
        *,
        settings: Optional[Settings] = None,
        mapper: Optional[ColumnMapper] = None,
    ) -> "Services":
        settings = settings or get_settings()
        limits = RateLimits(settings)
        trades = TradeBuilder(store, settings=settings)
        return cls(
            store=store,
            ingestion=IngestionService(
                store, mapper=mapper, settings=settings, limits=limits, trade_builder=trades,
            ),
            approvals=FormatApprovalService(
                store, settings=settings, limits=limits, trade_builder=trades,
            ),
            registry=FormatRegistry(store, settings=settings),
            staging=OrderStagingService(store, settings=settings),
            trades=trades,
        )


_services: Optional[Services] = None


def get_services() -> Services:
    global _services
    if _services is None:
        _services = Services.build(get_store())
    return _services


def set_services(services: Optional[Services]) -> None:
    global _services
    _services = services


# ─── Helpers ─────────────────────────────────────────────────────────────────


def _error(exc: Exception) -> JSONResponse:
    """Map the error taxonomy to an HTTP response."""
    if isinstance(exc, ValidationError):
        return JSONResponse({"error": str(exc), "issues": exc.issues}, status_code=400)
    if isinstance(exc, (ParseError, ValueError)):
        return JSONResponse({"error": str(exc)}, status_code=400)
    if isinstance(exc, FormatNotFoundError):
        return JSONResponse({"error": str(exc)}, status_code=404)
    if isinstance(exc, ConcurrentApprovalError):
        return JSONResponse({"error": str(exc), "retryable": True}, status_code=409)
    if isinstance(exc, (IllegalTransitionError, LockUnavailable)):
        return JSONResponse({"error": str(exc)}, status_code=409)
    if isinstance(exc, RateLimitExceeded):
        return JSONResponse(
            {"error": str(exc), "retry_after": round(exc.retry_after)},
            status_code=429,
            headers={"Retry-After": str(max(int(exc.retry_after), 1))},
        )
    if isinstance(exc, StagingLimitExceeded):
        return JSONResponse({"error": str(exc)}, status_code=429)
    logger.error("[API] Unhandled error: %s", exc, exc_info=True)
    return JSONResponse({"error": str(exc)}, status_code=500)


def _require_admin(admin_id: Optional[str]) -> Optional[JSONResponse]:
    if not admin_id:
        return JSONResponse({"error": "X-Admin-Id header required"}, status_code=401)
    return None


# ─── Endpoints ───────────────────────────────────────────────────────────────


@app.get("/health")
def health() -> dict[str, Any]:
    settings = get_settings()
    return {
        "status": "ok",
        "version": __version__,
        "supabase_connected": settings.supabase_configured,
        "ai_mapping_available": bool(settings.anthropic_api_key),
    }


class ImportRequest(BaseModel):
    user_id: str
    broker_name: str
    filename: str = "upload.csv"
    csv_text: str
    account_tags: list[str] = Field(default_factory=list)
    corrected_mappings: Optional[dict[str, str]] = None


@app.post("/imports")
async def create_import(req: ImportRequest) -> JSONResponse:
    """Upload a broker CSV. Returns "imported" with counts or "pending_review"."""
    try:
        result = await get_services().ingestion.ingest(
            req.csv_text,
            req.filename,
            req.user_id,
            req.broker_name,
            account_tags=req.account_tags,
            corrected_mappings=req.corrected_mappings,
        )
    except TradeJournalError as exc:
        return _error(exc)
    status = 201 if result.status == "imported" else 202
    return JSONResponse(result.to_dict(), status_code=status)


@app.get("/admin/formats/pending")
async def pending_formats(
    page: int = 1,
    page_size: int = 20,
    sort_by: str = "created_at",
    descending: bool = True,
    x_admin_id: Optional[str] = Header(default=None),
) -> JSONResponse:
    denied = _require_admin(x_admin_id)
    if denied:
        return denied
    try:
        result = await get_services().registry.list_pending_formats(
            page=page, page_size=page_size, sort_by=sort_by, descending=descending,
        )
    except ValueError as exc:
        return _error(exc)
    return JSONResponse(plain_value(result))


@app.get("/admin/staging/errors")
async def staging_errors(
    status: Optional[MigrationStatus] = None,
    format_id: Optional[str] = None,
    limit: int = 50,
    x_admin_id: Optional[str] = Header(default=None),
) -> JSONResponse:
    denied = _require_admin(x_admin_id)
    if denied:
        return denied
    errors = await get_services().staging.list_errors(
        status=status, format_id=format_id, limit=limit,
    )
    return JSONResponse({"errors": plain_value(errors), "count": len(errors)})


class ApproveRequest(BaseModel):
    corrected_mappings: Optional[dict[str, str]] = None
    idempotency_key: Optional[str] = None


@app.post("/admin/formats/{format_id}/approve")
async def approve_format(
    format_id: str,
    req: ApproveRequest,
    x_admin_id: Optional[str] = Header(default=None),
) -> JSONResponse:
    denied = _require_admin(x_admin_id)
    if denied:
        return denied
    try:
        result = await get_services().approvals.approve_format_and_migrate_orders(
            format_id, x_admin_id, req.corrected_mappings, req.idempotency_key,
        )
    except TradeJournalError as exc:
        return _error(exc)
    return JSONResponse(result.to_dict())


class RejectRequest(BaseModel):
    reason: str


@app.post("/admin/formats/{format_id}/reject")
async def reject_format(
    format_id: str,
    req: RejectRequest,
    x_admin_id: Optional[str] = Header(default=None),
) -> JSONResponse:
    denied = _require_admin(x_admin_id)
    if denied:
        return denied
    try:
        result = await get_services().approvals.reject_format(format_id, x_admin_id, req.reason)
    except TradeJournalError as exc:
        return _error(exc)
    return JSONResponse(result)


@app.post("/admin/staging/process-orphaned")
async def process_orphaned(x_admin_id: Optional[str] = Header(default=None)) -> JSONResponse:
    denied = _require_admin(x_admin_id)
    if denied:
        return denied
    result = await get_services().approvals.process_orphaned_staging_records(x_admin_id)
    return JSONResponse(result)


@app.post("/users/{user_id}/trades/rebuild")
async def rebuild_trades(user_id: str) -> JSONResponse:
    try:
        result = await get_services().trades.rebuild_user_trades(user_id)
    except TradeJournalError as exc:
        return _error(exc)
    return JSONResponse(result.to_dict())


@app.get("/users/{user_id}/staging")
async def user_staging(
    user_id: str,
    status: Optional[MigrationStatus] = None,
    format_id: Optional[str] = None,
    limit: int = 50,
    offset: int = 0,
) -> JSONResponse:
    services = get_services()
    page = await services.staging.list_staged(
        user_id, status=status, format_id=format_id, limit=limit, offset=offset,
    )
    summary = await services.staging.staging_status(user_id)
    return JSONResponse({**plain_value(page), "summary": summary})
