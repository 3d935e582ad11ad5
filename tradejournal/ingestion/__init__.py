"""Ingestion core: format registry, staging, upload and approval services."""

from .approval import FormatApprovalService, MigrationResult
from .format_registry import FormatRegistry, compute_signature
from .service import IngestionService, IngestResult
from .staging import OrderStagingService

__all__ = [
    "FormatApprovalService",
    "FormatRegistry",
    "IngestResult",
    "IngestionService",
    "MigrationResult",
    "OrderStagingService",
    "compute_signature",
]
