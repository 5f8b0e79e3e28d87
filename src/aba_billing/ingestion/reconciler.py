"""Reconcile raw time-log rows into IN/OUT shift rows.

Three strategies, chosen by the classifier:

- Fingerprint scanner: punches are an undifferentiated sequence per
  (employee, date); they are sorted chronologically and paired 1st+2nd,
  3rd+4th, ... with a trailing punch becoming an IN-only row.
- Event based: each row carries a clock-in/clock-out marker; events are
  walked in order keeping one pending IN.
- Standard: one row is one shift, with IN/OUT columns or a duration column.

Every source row ends up either inside a ShiftRow or in the skipped list.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from datetime import date, datetime, time, timedelta
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Protocol

from aba_billing.ingestion.classifier import classify_strategy, employee_key
from aba_billing.ingestion.time_parser import (
    compute_worked_minutes,
    minutes_to_hours,
    parse_time_value,
    parse_work_date,
)
from aba_billing.ingestion.types import (
    ColumnMapping,
    IngestionStrategy,
    RawPunchRow,
    ReconcileResult,
    ShiftRow,
)

logger = logging.getLogger(__name__)

GroupKey = tuple[str, date]


def _is_blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def to_json_safe(value: Any) -> Any:
    """Convert a cell value (or row) into something JSON can store."""
    if isinstance(value, Mapping):
        return {str(key): to_json_safe(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_json_safe(item) for item in value]
    if isinstance(value, (datetime, date, time)):
        return value.isoformat()
    if isinstance(value, timedelta):
        # [h]:mm duration cells, to whole seconds
        return str(timedelta(seconds=round(value.total_seconds())))
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, float) and value != value:
        return None
    if value is None or isinstance(value, (str, int, float)):
        return value
    return str(value)


def _raw_identifiers(row: Mapping[str, Any], mapping: ColumnMapping) -> tuple[str | None, str | None]:
    name = row.get(mapping.employee_name) if mapping.employee_name else None
    external_id = row.get(mapping.employee_external_id) if mapping.employee_external_id else None
    return (
        str(name).strip() or None if name is not None else None,
        str(external_id).strip() or None if external_id is not None else None,
    )


# ===== Grouping =====


def extract_punches(
    rows: list[dict[str, Any]],
    mapping: ColumnMapping,
) -> tuple[list[RawPunchRow], list[int]]:
    """Reduce source rows to punches.

    The punch time is read from the IN column, falling back to the OUT
    column when IN is empty on that row. Rows with a blank employee, an
    unparseable work date or no time value are returned as skipped indices.
    """
    punches: list[RawPunchRow] = []
    skipped: list[int] = []

    for index, row in enumerate(rows):
        key = employee_key(row, mapping)
        work_date = parse_work_date(row.get(mapping.work_date)) if mapping.work_date else None
        if not key or work_date is None:
            skipped.append(index)
            continue

        time_value = row.get(mapping.in_time) if mapping.in_time else None
        if _is_blank(time_value) and mapping.out_time:
            time_value = row.get(mapping.out_time)
        if _is_blank(time_value):
            skipped.append(index)
            continue

        event_text = ""
        if mapping.event_type:
            event_text = str(row.get(mapping.event_type) or "").strip().lower()

        name_raw, external_id_raw = _raw_identifiers(row, mapping)
        punches.append(
            RawPunchRow(
                index=index,
                row=row,
                employee_key=key,
                employee_name_raw=name_raw,
                employee_external_id_raw=external_id_raw,
                work_date=work_date,
                time_value=time_value,
                event_text=event_text,
            )
        )

    return punches, skipped


def group_punches(punches: list[RawPunchRow]) -> dict[GroupKey, list[RawPunchRow]]:
    """Group punches by (employee, work date), keeping first-seen group order."""
    groups: dict[GroupKey, list[RawPunchRow]] = {}
    for punch in punches:
        groups.setdefault((punch.employee_key, punch.work_date), []).append(punch)
    return groups


def _shift(
    first: RawPunchRow,
    in_time: datetime | None,
    out_time: datetime | None,
    raw_json: dict[str, Any],
) -> ShiftRow:
    adjusted_out, minutes = compute_worked_minutes(in_time, out_time)
    return ShiftRow(
        row_index=first.index,
        employee_name_raw=first.employee_name_raw,
        employee_external_id_raw=first.employee_external_id_raw,
        work_date=first.work_date,
        in_time=in_time,
        out_time=adjusted_out,
        minutes_worked=minutes,
        hours_worked=minutes_to_hours(minutes),
        raw_json=raw_json,
    )


# ===== Strategies =====


class ShiftReconciler(Protocol):
    """Turns source rows into shift rows for one ingestion strategy."""

    strategy: IngestionStrategy

    def reconcile(self, rows: list[dict[str, Any]], mapping: ColumnMapping) -> ReconcileResult:
        ...


class FingerprintScannerReconciler:
    """Sequential pairing of undifferentiated punches."""

    strategy = IngestionStrategy.FINGERPRINT_SCANNER

    def pair_group(self, group: list[RawPunchRow]) -> tuple[list[ShiftRow], list[int]]:
        """Pair one (employee, date) group.

        Punches are sorted by parsed time; ties and unparseable punches keep
        their original order, with unparseable ones last.
        """
        parsed = [(punch, parse_time_value(punch.time_value, punch.work_date)) for punch in group]
        parsed.sort(key=lambda item: (item[1] is None, item[1] or datetime.min))

        shifts: list[ShiftRow] = []
        skipped: list[int] = []

        for start in range(0, len(parsed), 2):
            in_punch, in_time = parsed[start]
            out_punch, out_time = parsed[start + 1] if start + 1 < len(parsed) else (None, None)

            if in_time is None:
                logger.warning(
                    "Skipping punch pair for %s on %s: could not parse IN time %r",
                    in_punch.employee_key,
                    in_punch.work_date,
                    in_punch.time_value,
                )
                skipped.append(in_punch.index)
                if out_punch is not None:
                    skipped.append(out_punch.index)
                continue

            raw_punches = [to_json_safe(in_punch.row)]
            if out_punch is not None:
                raw_punches.append(to_json_safe(out_punch.row))

            shifts.append(
                _shift(
                    in_punch,
                    in_time,
                    out_time,
                    {
                        "rawPunches": raw_punches,
                        "originalInIndex": in_punch.index,
                        "originalOutIndex": out_punch.index if out_punch is not None else None,
                        "isIncomplete": out_time is None,
                    },
                )
            )

        return shifts, skipped

    def reconcile(self, rows: list[dict[str, Any]], mapping: ColumnMapping) -> ReconcileResult:
        punches, skipped = extract_punches(rows, mapping)
        groups = group_punches(punches)
        logger.info("Fingerprint scanner: pairing %d punches in %d groups", len(punches), len(groups))

        shifts: list[ShiftRow] = []
        for group in groups.values():
            group_shifts, group_skipped = self.pair_group(group)
            shifts.extend(group_shifts)
            skipped.extend(group_skipped)

        return _finish(self.strategy, rows, shifts, skipped, renumber=True)


class EventBasedReconciler:
    """Pairing driven by an explicit clock-in/clock-out column."""

    strategy = IngestionStrategy.EVENT_BASED

    def pair_group(self, group: list[RawPunchRow]) -> tuple[list[ShiftRow], list[int]]:
        """Pair one (employee, date) group of events.

        Events are ordered by the raw time text compared as strings, so
        "9:59" sorts after "10:00". A clock-in while another is pending is
        ignored; a pending IN left at the end becomes an IN-only row.
        """
        ordered = sorted(group, key=lambda punch: str(punch.time_value or "").strip())
        _warn_if_lexical_order_differs(ordered)

        shifts: list[ShiftRow] = []
        skipped: list[int] = []
        pending: RawPunchRow | None = None

        for event in ordered:
            if event.is_clock_in and pending is None:
                pending = event
            elif event.is_clock_out and pending is not None:
                in_time = parse_time_value(pending.time_value, pending.work_date)
                if in_time is None:
                    skipped.extend([pending.index, event.index])
                else:
                    raw_json = to_json_safe(pending.row)
                    raw_json.update(
                        {
                            "pairedWith": to_json_safe(event.row),
                            "originalInIndex": pending.index,
                            "originalOutIndex": event.index,
                        }
                    )
                    out_time = parse_time_value(event.time_value, event.work_date)
                    raw_json["isIncomplete"] = out_time is None
                    shifts.append(_shift(pending, in_time, out_time, raw_json))
                pending = None
            else:
                skipped.append(event.index)

        if pending is not None:
            in_time = parse_time_value(pending.time_value, pending.work_date)
            if in_time is None:
                skipped.append(pending.index)
            else:
                raw_json = to_json_safe(pending.row)
                raw_json.update(
                    {"unpaired": True, "originalIndex": pending.index, "isIncomplete": True}
                )
                shifts.append(_shift(pending, in_time, None, raw_json))

        return shifts, skipped

    def reconcile(self, rows: list[dict[str, Any]], mapping: ColumnMapping) -> ReconcileResult:
        punches, skipped = extract_punches(rows, mapping)
        groups = group_punches(punches)
        logger.info("Event based: pairing %d events in %d groups", len(punches), len(groups))

        shifts: list[ShiftRow] = []
        for group in groups.values():
            group_shifts, group_skipped = self.pair_group(group)
            shifts.extend(group_shifts)
            skipped.extend(group_skipped)

        return _finish(self.strategy, rows, shifts, skipped, renumber=True)


def _warn_if_lexical_order_differs(ordered: list[RawPunchRow]) -> None:
    times = [parse_time_value(punch.time_value, punch.work_date) for punch in ordered]
    known = [value for value in times if value is not None]
    if known != sorted(known):
        logger.warning(
            "Event order for %s on %s differs from chronological order",
            ordered[0].employee_key,
            ordered[0].work_date,
        )


class StandardReconciler:
    """One row per shift."""

    strategy = IngestionStrategy.STANDARD

    def __init__(self, reject_ambiguous_out: bool = False) -> None:
        self.reject_ambiguous_out = reject_ambiguous_out

    def reconcile(self, rows: list[dict[str, Any]], mapping: ColumnMapping) -> ReconcileResult:
        shifts: list[ShiftRow] = []
        skipped: list[int] = []
        warnings: list[str] = []

        for index, row in enumerate(rows):
            shift = self._reconcile_row(index, row, mapping, warnings)
            if shift is None:
                skipped.append(index)
            else:
                shifts.append(shift)

        result = _finish(self.strategy, rows, shifts, skipped, renumber=False)
        result.warnings.extend(warnings)
        return result

    def _reconcile_row(
        self,
        index: int,
        row: dict[str, Any],
        mapping: ColumnMapping,
        warnings: list[str],
    ) -> ShiftRow | None:
        if not employee_key(row, mapping):
            return None
        work_date = parse_work_date(row.get(mapping.work_date)) if mapping.work_date else None
        if work_date is None:
            return None

        raw_json = to_json_safe(row)
        in_raw = row.get(mapping.in_time) if mapping.in_time else None
        out_raw = row.get(mapping.out_time) if mapping.out_time else None

        in_time = None if _is_blank(in_raw) else parse_time_value(in_raw, work_date)
        out_time = None

        if not _is_blank(out_raw):
            if not _is_blank(in_raw) and str(in_raw).strip() == str(out_raw).strip():
                message = (
                    f"Row {index + 1}: source IN and OUT values are identical ({str(in_raw).strip()}); "
                    "check the column mapping"
                )
                if self.reject_ambiguous_out:
                    logger.warning("%s. Row rejected.", message)
                    warnings.append(f"{message}. Row rejected.")
                    return None
                logger.warning("%s. OUT time discarded.", message)
                warnings.append(f"{message}. OUT time discarded.")
                raw_json["ambiguousOut"] = True
            else:
                out_time = parse_time_value(out_raw, work_date)
                if in_time is not None and out_time is not None and out_time == in_time:
                    message = f"Row {index + 1}: parsed IN and OUT times are identical ({in_time.isoformat()})"
                    logger.warning("%s. OUT time discarded.", message)
                    warnings.append(f"{message}. OUT time discarded.")
                    raw_json["ambiguousOut"] = True
                    out_time = None

        minutes: int | None = None
        hours: Decimal | None = None

        if in_time is not None and out_time is not None:
            out_time, minutes = compute_worked_minutes(in_time, out_time)
            if minutes is None:
                logger.warning("Row %d: OUT time is not after IN time; hours not calculated", index + 1)
            hours = minutes_to_hours(minutes)
        elif mapping.minutes_worked and not _is_blank(row.get(mapping.minutes_worked)):
            minutes = _parse_minutes(row.get(mapping.minutes_worked))
            hours = minutes_to_hours(minutes)
        elif mapping.hours_worked and not _is_blank(row.get(mapping.hours_worked)):
            hours, minutes = _parse_hours(row.get(mapping.hours_worked))

        if in_time is None and minutes is None:
            return None

        raw_json["originalIndex"] = index
        raw_json["isIncomplete"] = out_time is None and minutes is None

        name_raw, external_id_raw = _raw_identifiers(row, mapping)
        return ShiftRow(
            row_index=index,
            employee_name_raw=name_raw,
            employee_external_id_raw=external_id_raw,
            work_date=work_date,
            in_time=in_time,
            out_time=out_time,
            minutes_worked=minutes,
            hours_worked=hours,
            raw_json=raw_json,
        )


def _parse_minutes(value: Any) -> int | None:
    if isinstance(value, timedelta):
        minutes = round(value.total_seconds()) // 60
        return minutes if minutes > 0 else None
    try:
        minutes = int(float(str(value).strip()))
    except ValueError:
        return None
    return minutes if minutes > 0 else None


def _parse_hours(value: Any) -> tuple[Decimal | None, int | None]:
    try:
        if isinstance(value, timedelta):
            hours = Decimal(round(value.total_seconds())) / 3600
        else:
            hours = Decimal(str(value).strip())
    except InvalidOperation:
        return None, None
    if not hours.is_finite() or hours <= 0:
        return None, None
    minutes = int((hours * 60).quantize(Decimal("1"), rounding=ROUND_HALF_UP))
    if minutes <= 0:
        return None, None
    return hours.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP), minutes


def _finish(
    strategy: IngestionStrategy,
    rows: list[dict[str, Any]],
    shifts: list[ShiftRow],
    skipped: list[int],
    renumber: bool,
) -> ReconcileResult:
    if renumber:
        for row_index, shift in enumerate(shifts):
            shift.row_index = row_index
    return ReconcileResult(
        strategy=strategy,
        rows=shifts,
        total_rows=len(rows),
        skipped_indices=sorted(set(skipped)),
    )


def get_reconciler(
    strategy: IngestionStrategy,
    reject_ambiguous_out: bool = False,
) -> ShiftReconciler:
    """Strategy object for an ingestion strategy."""
    if strategy is IngestionStrategy.FINGERPRINT_SCANNER:
        return FingerprintScannerReconciler()
    if strategy is IngestionStrategy.EVENT_BASED:
        return EventBasedReconciler()
    return StandardReconciler(reject_ambiguous_out=reject_ambiguous_out)


def reconcile(
    rows: list[dict[str, Any]],
    mapping: ColumnMapping,
    strategy: IngestionStrategy | None = None,
    reject_ambiguous_out: bool = False,
) -> ReconcileResult:
    """Classify (unless a strategy is given) and reconcile rows into shifts."""
    if strategy is None:
        strategy = classify_strategy(rows, mapping)
    logger.info("Reconciling %d rows with %s strategy", len(rows), strategy.value)
    result = get_reconciler(strategy, reject_ambiguous_out).reconcile(rows, mapping)
    if result.skipped_count:
        logger.info("Skipped %d of %d rows", result.skipped_count, result.total_rows)
    return result
