"""Choose the ingestion strategy for an uploaded time log."""

from __future__ import annotations

import logging
from collections import Counter
from typing import Any, Iterable, Mapping

from aba_billing.ingestion.time_parser import parse_work_date
from aba_billing.ingestion.types import ColumnMapping, IngestionStrategy

logger = logging.getLogger(__name__)


def employee_key(row: Mapping[str, Any], mapping: ColumnMapping) -> str:
    """Raw employee identifier for a row, trimmed ('' when absent)."""
    column = mapping.employee_column
    value = row.get(column) if column else None
    if value is None:
        return ""
    return str(value).strip()


def count_punches_per_day(
    rows: Iterable[Mapping[str, Any]],
    mapping: ColumnMapping,
) -> Counter[tuple[str, str]]:
    """Count rows per (employee, ISO work date); rows without a date are ignored."""
    counts: Counter[tuple[str, str]] = Counter()
    for row in rows:
        work_date = parse_work_date(row.get(mapping.work_date)) if mapping.work_date else None
        if work_date is None:
            continue
        counts[(employee_key(row, mapping), work_date.isoformat())] += 1
    return counts


def classify_strategy(
    rows: list[Mapping[str, Any]],
    mapping: ColumnMapping,
) -> IngestionStrategy:
    """Decide how rows are reconciled into shifts.

    Rules are applied in order, first match wins:

    1. Any (employee, date) group with more than one row and no event-type
       column mapped: fingerprint scanner, regardless of the IN/OUT mapping.
    2. IN and OUT mapped to the same column, or only IN mapped, with no
       event-type column: fingerprint scanner.
    3. IN and OUT mapped to different columns with no event-type column:
       fingerprint scanner (each row holds one punch in either column).
    4. Event-type column mapped and IN/OUT share a column: event based.
    5. Otherwise: standard, one row per shift.

    Pure function of its inputs.
    """
    if not rows:
        return IngestionStrategy.STANDARD

    has_event_type = bool(mapping.event_type)

    if not has_event_type:
        counts = count_punches_per_day(rows, mapping)
        if any(count > 1 for count in counts.values()):
            logger.info("Multiple punches per employee per day detected; using fingerprint scanner pairing")
            return IngestionStrategy.FINGERPRINT_SCANNER

        if mapping.same_time_column or mapping.only_in_time:
            return IngestionStrategy.FINGERPRINT_SCANNER

        if mapping.separate_time_columns:
            return IngestionStrategy.FINGERPRINT_SCANNER

    elif mapping.same_time_column:
        return IngestionStrategy.EVENT_BASED

    return IngestionStrategy.STANDARD
