"""Column mapping layer: CSV reading, AI/heuristic mapping, confidence, validation.

- csv_reader     strict CSV split with line-numbered ParseError
- column_mapper  headers + samples -> scored MappingResult (never raises)
- confidence     demotion, conflict resolution, weighted overall score
- mapping        apply a mapping to raw rows
- validation     required-field checks, Order construction, diagnostics
"""

from .column_mapper import ColumnMapper
from .confidence import decay_confidence, summarize
from .csv_reader import ParsedCsv, read_csv
from .mapping import MappingExecutor
from .validation import build_order, diagnose_row, validate_values

# claude_mapper is imported by column_mapper; the anthropic SDK itself is
# only imported when a call is made.

__all__ = [
    "ColumnMapper",
    "MappingExecutor",
    "ParsedCsv",
    "build_order",
    "decay_confidence",
    "diagnose_row",
    "read_csv",
    "summarize",
    "validate_values",
]
