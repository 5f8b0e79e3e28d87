"""Time-log ingestion: parsing, strategy classification and shift reconciliation."""

from aba_billing.ingestion.classifier import classify_strategy, count_punches_per_day
from aba_billing.ingestion.readers import FileFormatError, preview_tabular, read_tabular
from aba_billing.ingestion.reconciler import (
    EventBasedReconciler,
    FingerprintScannerReconciler,
    StandardReconciler,
    extract_punches,
    group_punches,
    reconcile,
)
from aba_billing.ingestion.time_parser import (
    compute_worked_minutes,
    minutes_to_hours,
    parse_time_value,
    parse_work_date,
)
from aba_billing.ingestion.types import (
    ColumnMapping,
    IngestionStrategy,
    MappingError,
    RawPunchRow,
    ReconcileResult,
    ShiftRow,
    TimeLogMapping,
)

__all__ = [
    "classify_strategy",
    "count_punches_per_day",
    "FileFormatError",
    "preview_tabular",
    "read_tabular",
    "EventBasedReconciler",
    "FingerprintScannerReconciler",
    "StandardReconciler",
    "extract_punches",
    "group_punches",
    "reconcile",
    "compute_worked_minutes",
    "minutes_to_hours",
    "parse_time_value",
    "parse_work_date",
    "ColumnMapping",
    "IngestionStrategy",
    "MappingError",
    "RawPunchRow",
    "ReconcileResult",
    "ShiftRow",
    "TimeLogMapping",
]
